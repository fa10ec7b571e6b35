"""Single-flight batch processor draining the message queue."""

import time
from typing import Callable, Optional

from .logger import get_logger
from .models import (
    DUE_STATUSES,
    RETRYABLE_STATUSES,
    Message,
    MessageStatus,
    ProcessorStats,
    TickResult,
)
from .persistence import Persistence
from .transport import MailTransport

DEFAULT_BATCH_SIZE = 10
DEFAULT_MAX_BATCHES_PER_TICK = 10
DEFAULT_BACKOFF_STEP_SECONDS = 300
DEFAULT_STALE_AFTER_SECONDS = 900
SLOW_TICK_WARNING_SECONDS = 30.0


def _epoch_now() -> int:
    return int(time.time())


class BatchProcessor:
    """Deliver due messages in bounded batches through the configured transport.

    Only one tick (or retry sweep) runs at a time. The guard is a plain flag
    tested and set without an ``await`` in between, which is atomic on a
    single event loop; a call that finds it held returns immediately and
    touches nothing.

    A failed delivery is retried with linear backoff: after the n-th failed
    attempt the message becomes eligible again ``n * backoff_step_seconds``
    later, until ``max_attempts`` is reached and it is marked FAILED.
    """

    def __init__(
        self,
        persistence: Persistence,
        transport: MailTransport,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_batches_per_tick: int = DEFAULT_MAX_BATCHES_PER_TICK,
        backoff_step_seconds: int = DEFAULT_BACKOFF_STEP_SECONDS,
        stale_after_seconds: int = DEFAULT_STALE_AFTER_SECONDS,
        metrics=None,
        clock: Optional[Callable[[], int]] = None,
        log_delivery_activity: bool = False,
    ):
        self.persistence = persistence
        self.transport = transport
        self.batch_size = max(1, int(batch_size))
        self.max_batches_per_tick = max(1, int(max_batches_per_tick))
        self.backoff_step_seconds = int(backoff_step_seconds)
        self.stale_after_seconds = int(stale_after_seconds)
        self.metrics = metrics
        self._clock = clock or _epoch_now
        self._log_delivery_activity = bool(log_delivery_activity)
        self.logger = get_logger("processor")

        self._busy = False
        self._total_processed = 0
        self._total_errors = 0
        self._ticks_run = 0
        self._ticks_skipped = 0

    @property
    def is_processing(self) -> bool:
        return self._busy

    def _try_acquire(self) -> bool:
        if self._busy:
            return False
        self._busy = True
        return True

    def _release(self) -> None:
        self._busy = False

    # Tick ---------------------------------------------------------------------
    async def run_tick(self) -> TickResult:
        """Drain up to ``max_batches_per_tick`` batches of due messages."""
        if not self._try_acquire():
            self._ticks_skipped += 1
            if self.metrics:
                self.metrics.inc_tick_skipped()
            self.logger.debug("Processor tick skipped: previous run still in progress")
            return TickResult(skipped=True)

        result = TickResult()
        started = time.monotonic()
        try:
            self._ticks_run += 1
            for _ in range(self.max_batches_per_tick):
                batch = await self.persistence.fetch_due_messages(
                    limit=self.batch_size, now_ts=self._clock()
                )
                if not batch:
                    break
                result.batches += 1
                for message in batch:
                    await self._deliver(message, result)
            await self._refresh_pending_gauge()
        except Exception:
            self.logger.exception("Unhandled error in processor tick")
        finally:
            self._release()

        elapsed = time.monotonic() - started
        if elapsed > SLOW_TICK_WARNING_SECONDS:
            self.logger.warning(
                "Processor tick took %.1fs (%d messages in %d batches)",
                elapsed,
                result.processed,
                result.batches,
            )
        elif result.processed:
            self.logger.info(
                "Processor tick: %d processed, %d sent, %d retried, %d failed",
                result.processed,
                result.sent,
                result.retried,
                result.failed,
            )
        return result

    async def _deliver(self, message: Message, result: TickResult) -> bool:
        """Claim ``message`` and attempt one delivery. Return ``True`` when sent."""
        now = self._clock()
        if not await self.persistence.claim_message(message.id, now):
            self.logger.debug("Message %s no longer claimable, skipping", message.id)
            return False

        attempt = message.attempt_count + 1
        kind = message.kind.value
        result.processed += 1
        self._total_processed += 1
        try:
            await self.transport.send(message.recipient_email, message.subject, message.body)
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
            self._total_errors += 1
            result.errors.append({"id": message.id, "error": error})
            if attempt >= message.max_attempts:
                await self.persistence.mark_failed(message.id, error)
                result.failed += 1
                if self.metrics:
                    self.metrics.inc_failed(kind)
                self.logger.error(
                    "Message %s to %s failed permanently after %d attempts: %s",
                    message.id,
                    message.recipient_email,
                    attempt,
                    error,
                )
                self._log_delivery_event(message, "failed", error)
            else:
                retry_at = now + attempt * self.backoff_step_seconds
                await self.persistence.mark_retry(message.id, retry_at, error)
                result.retried += 1
                if self.metrics:
                    self.metrics.inc_retried(kind)
                self.logger.warning(
                    "Delivery of message %s failed (attempt %d/%d), retrying at %d: %s",
                    message.id,
                    attempt,
                    message.max_attempts,
                    retry_at,
                    error,
                )
                self._log_delivery_event(message, "retry", error)
            return False

        await self.persistence.mark_sent(message.id, self._clock())
        result.sent += 1
        if self.metrics:
            self.metrics.inc_sent(kind)
        self._log_delivery_event(message, "sent")
        return True

    def _log_delivery_event(self, message: Message, outcome: str, error: Optional[str] = None) -> None:
        if not self._log_delivery_activity:
            return
        if error:
            self.logger.info(
                "Delivery %s: id=%s kind=%s to=%s error=%s",
                outcome,
                message.id,
                message.kind.value,
                message.recipient_email,
                error,
            )
        else:
            self.logger.info(
                "Delivery %s: id=%s kind=%s to=%s",
                outcome,
                message.id,
                message.kind.value,
                message.recipient_email,
            )

    async def _refresh_pending_gauge(self) -> None:
        if self.metrics:
            self.metrics.set_pending(await self.persistence.count_active_messages())

    # Sweeps and operator actions ----------------------------------------------
    async def run_retry_sweep(self) -> int:
        """Re-queue FAILED messages with attempts left and orphaned PROCESSING rows."""
        if not self._try_acquire():
            self.logger.debug("Retry sweep skipped: processor busy")
            return 0
        requeued = 0
        try:
            now = self._clock()
            requeued += await self.persistence.requeue_failed_with_attempts_left(now)
            requeued += await self.persistence.requeue_stale_processing(
                now - self.stale_after_seconds, now
            )
            if requeued:
                self.logger.info("Retry sweep re-queued %d messages", requeued)
            await self._refresh_pending_gauge()
        except Exception:
            self.logger.exception("Unhandled error in retry sweep")
        finally:
            self._release()
        return requeued

    async def process_message(self, message_id: str) -> bool:
        """Attempt delivery of a single message right away.

        FAILED and CANCELLED messages are re-queued first. Returns ``True``
        only when the message was delivered by this call.
        """
        if not self._try_acquire():
            self.logger.info("Cannot process message %s now: processor busy", message_id)
            return False
        try:
            message = await self.persistence.get_message(message_id)
            if message is None or message.status in (MessageStatus.SENT, MessageStatus.PROCESSING):
                return False
            if message.status in RETRYABLE_STATUSES:
                await self.persistence.retry_message(message_id, self._clock())
                message = await self.persistence.get_message(message_id)
            if message is None or message.status not in DUE_STATUSES:
                return False
            delivered = await self._deliver(message, TickResult())
            await self._refresh_pending_gauge()
            return delivered
        finally:
            self._release()

    # Statistics ---------------------------------------------------------------
    async def stats(self) -> ProcessorStats:
        return ProcessorStats(
            is_processing=self._busy,
            total_processed=self._total_processed,
            total_errors=self._total_errors,
            ticks_run=self._ticks_run,
            ticks_skipped=self._ticks_skipped,
            pending=await self.persistence.count_status(MessageStatus.PENDING),
            failed=await self.persistence.count_status(MessageStatus.FAILED),
        )

    def reset_stats(self) -> None:
        self._total_processed = 0
        self._total_errors = 0
        self._ticks_run = 0
        self._ticks_skipped = 0
        self.logger.info("Processor statistics reset")
