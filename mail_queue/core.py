"""Service facade wiring the mail queue components together.

:class:`MailQueueCore` owns the store, queue service, processor, campaign
orchestrator, notification service and scheduler, and exposes the command
interface used by the HTTP API.
"""

from __future__ import annotations

import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .campaigns import CampaignOrchestrator, RegistrationSource
from .content import ContentGenerator
from .exceptions import MailQueueError, NotFoundError
from .logger import get_logger
from .models import Message, Registration
from .notifications import NotificationService
from .persistence import Persistence
from .processor import BatchProcessor
from .prometheus import QueueMetrics
from .queue_service import QueueService
from .scheduler import Scheduler
from .transport import MailTransport, UnavailableTransport


async def _no_registrations() -> List[Registration]:
    return []


class MailQueueCore:
    """Bundle of every mail queue component sharing one database."""

    def __init__(
        self,
        *,
        db_path: str = "/data/mail_queue.db",
        transport: Optional[MailTransport] = None,
        metrics: QueueMetrics | None = None,
        content: ContentGenerator | None = None,
        registration_source: Optional[RegistrationSource] = None,
        batch_size: int = 10,
        max_batches_per_tick: int = 10,
        default_max_attempts: int = 3,
        tick_interval: float = 60,
        retry_sweep_interval: float = 300,
        campaign_sweep_interval: float = 3600,
        retention_days: int = 30,
        test_mode: bool = False,
        log_delivery_activity: bool = False,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.logger = get_logger()
        self.metrics = metrics or QueueMetrics()
        if transport is None:
            self.logger.warning("No mail transport configured: messages will fail until SMTP is set up")
            transport = UnavailableTransport()
        self.transport = transport
        self.persistence = Persistence(db_path)
        self.queue = QueueService(
            self.persistence, default_max_attempts=default_max_attempts, clock=clock
        )
        self.processor = BatchProcessor(
            self.persistence,
            transport,
            batch_size=batch_size,
            max_batches_per_tick=max_batches_per_tick,
            metrics=self.metrics,
            clock=clock,
            log_delivery_activity=log_delivery_activity,
        )
        self.campaigns = CampaignOrchestrator(
            self.persistence,
            self.queue,
            registration_source or _no_registrations,
            clock=clock,
        )
        self.content = content or ContentGenerator()
        self.notifications = NotificationService(self.queue, self.content)
        self.scheduler = Scheduler(
            self.processor,
            self.campaigns,
            self.queue,
            tick_interval=tick_interval,
            retry_sweep_interval=retry_sweep_interval,
            campaign_sweep_interval=campaign_sweep_interval,
            retention_days=retention_days,
            test_mode=test_mode,
        )
        self._started_at: Optional[int] = None

    async def init(self) -> None:
        """Create the database schema."""
        await self.persistence.init_db()
        self.metrics.set_pending(await self.persistence.count_active_messages())

    async def start(self) -> None:
        """Initialise storage and start the background loops."""
        await self.init()
        await self.scheduler.start()
        self._started_at = int(time.time())
        self.logger.info("Mail queue started")

    async def stop(self) -> None:
        await self.scheduler.stop()
        close: Optional[Callable[[], Awaitable[None]]] = getattr(self.transport, "close", None)
        if close is not None:
            await close()
        self.logger.info("Mail queue stopped")

    # Commands -----------------------------------------------------------------
    async def handle_command(self, cmd: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Execute one of the operator commands and return a JSON-ready dict."""
        payload = payload or {}
        try:
            return await self._dispatch(cmd, payload)
        except MailQueueError as exc:
            return {"ok": False, "error": str(exc), "error_code": exc.code}

    async def _dispatch(self, cmd: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if cmd == "run now":
            self.scheduler.run_now()
            return {"ok": True}
        if cmd == "retrySweep":
            requeued = await self.processor.run_retry_sweep()
            return {"ok": True, "requeued": requeued}
        if cmd == "addMessage":
            return await self._handle_add_message(payload)
        if cmd == "listMessages":
            page = await self.queue.query(
                status=payload.get("status"),
                campaign_id=payload.get("campaign_id"),
                kind=payload.get("kind"),
                correlation_id=payload.get("correlation_id"),
                page=payload.get("page", 0),
                page_size=payload.get("page_size", 50),
            )
            return {"ok": True, **page.model_dump(mode="json")}
        if cmd == "getMessage":
            return {"ok": True, "message": (await self._require_message(payload)).model_dump(mode="json")}
        if cmd == "retryMessage":
            message = await self._require_message(payload)
            return {"ok": await self.queue.retry(message.id)}
        if cmd == "cancelMessage":
            message = await self._require_message(payload)
            return {"ok": await self.queue.cancel(message.id)}
        if cmd == "stats":
            processor_stats = await self.processor.stats()
            return {
                "ok": True,
                "processor": processor_stats.model_dump(),
                "messages": await self.queue.statistics(),
                "campaigns": await self.campaigns.statistics(),
            }
        if cmd == "listCampaigns":
            campaigns = await self.campaigns.list_campaigns(payload.get("status"))
            return {"ok": True, "campaigns": [c.model_dump(mode="json") for c in campaigns]}
        if cmd == "sendCampaign":
            campaign = await self.campaigns.send_campaign(payload.get("id", ""))
            return {"ok": True, "campaign": campaign.model_dump(mode="json")}
        if cmd == "cancelCampaign":
            campaign = await self.campaigns.cancel_campaign(payload.get("id", ""))
            return {"ok": True, "campaign": campaign.model_dump(mode="json")}
        return {"ok": False, "error": f"unknown command '{cmd}'"}

    async def _require_message(self, payload: Dict[str, Any]) -> Message:
        message = await self.queue.get(payload.get("id", ""))
        if message is None:
            raise NotFoundError(f"Message '{payload.get('id')}' not found")
        return message

    async def _handle_add_message(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        common = dict(
            recipient_email=payload.get("recipient_email", ""),
            recipient_name=payload.get("recipient_name"),
            subject=payload.get("subject", ""),
            body=payload.get("body", ""),
            kind=payload.get("kind", ""),
            correlation_id=payload.get("correlation_id"),
            priority=payload.get("priority"),
            max_attempts=payload.get("max_attempts"),
        )
        scheduled_at = payload.get("scheduled_at")
        if scheduled_at is not None:
            message = await self.queue.schedule(at=int(scheduled_at), **common)
        else:
            message = await self.queue.enqueue(**common)
        self.metrics.set_pending(await self.persistence.count_active_messages())
        return {"ok": True, "message": message.model_dump(mode="json")}

    def status(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "running": self.scheduler.running,
            "processing": self.processor.is_processing,
            "started_at": self._started_at,
        }
