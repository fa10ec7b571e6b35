"""Asynchronous email queue for the registration platform.

This package provides the delivery side of the registration application:

- Durable SQLite queue of outbound messages with priorities and scheduling
- Single-flight batch processor with bounded retries and linear backoff
- Jinja2 notification templates with a fallback that never blocks enqueue
- Campaign expansion into per-recipient messages
- Prometheus metrics and a small FastAPI operator API

Example:
    Wiring the pieces by hand::

        from mail_queue.persistence import Persistence
        from mail_queue.queue_service import QueueService
        from mail_queue.processor import BatchProcessor
        from mail_queue.transport import UnavailableTransport

        store = Persistence("/data/mail_queue.db")
        await store.init_db()
        queue = QueueService(store)
        processor = BatchProcessor(store, UnavailableTransport())
"""
