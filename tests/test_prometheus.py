from mail_queue.prometheus import QueueMetrics


def test_queue_metrics_counters_and_gauge():
    metrics = QueueMetrics()

    metrics.inc_sent("campaign")
    metrics.inc_failed(None)
    metrics.inc_retried("cancellation")
    metrics.inc_tick_skipped()
    metrics.set_pending(3)

    output = metrics.generate_latest()
    assert b'mq_sent_total{kind="campaign"} 1.0' in output
    assert b'mq_failed_total{kind="unknown"} 1.0' in output
    assert b'mq_retried_total{kind="cancellation"} 1.0' in output
    assert b"mq_ticks_skipped_total 1.0" in output
    assert b"mq_pending_messages 3.0" in output


def test_each_instance_has_its_own_registry():
    first = QueueMetrics()
    second = QueueMetrics()

    first.inc_sent("campaign")

    assert b'mq_sent_total{kind="campaign"}' not in second.generate_latest()
