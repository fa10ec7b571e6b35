"""Intake and operator operations on the message queue."""

import re
import time
import uuid
from typing import Any, Callable, Dict, Optional

from .exceptions import ValidationError
from .logger import get_logger
from .models import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_PRIORITY,
    ContentKind,
    Message,
    MessagePage,
    MessageStatus,
)
from .persistence import Persistence

MAX_SUBJECT_CHARS = 500
MAX_BODY_CHARS = 1024 * 1024
MAX_PAGE_SIZE = 500
SECONDS_PER_DAY = 86400

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _epoch_now() -> int:
    return int(time.time())


class QueueService:
    """Validate, build and persist messages, and expose operator actions.

    Every mutating call is a single committed write; nothing here talks to
    the mail transport.
    """

    def __init__(
        self,
        persistence: Persistence,
        *,
        default_priority: int = DEFAULT_PRIORITY,
        default_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.persistence = persistence
        self.default_priority = default_priority
        self.default_max_attempts = default_max_attempts
        self._clock = clock or _epoch_now
        self.logger = get_logger("queue")

    # Intake -------------------------------------------------------------------
    def _build_message(
        self,
        recipient_email: str,
        recipient_name: Optional[str],
        subject: str,
        body: str,
        kind: ContentKind,
        *,
        status: MessageStatus,
        scheduled_at: int,
        now: int,
        correlation_id: Optional[str] = None,
        priority: Optional[int] = None,
        max_attempts: Optional[int] = None,
        campaign_id: Optional[str] = None,
        campaign_name: Optional[str] = None,
    ) -> Message:
        email = (recipient_email or "").strip()
        if not email:
            raise ValidationError("Recipient email is required", field="recipient_email")
        if len(email) > 254 or not _EMAIL_RE.match(email):
            raise ValidationError(f"Invalid recipient email '{email}'", field="recipient_email")
        if not subject or not subject.strip():
            raise ValidationError("Subject is required", field="subject")
        if not body or not body.strip():
            raise ValidationError("Body is required", field="body")
        try:
            kind = ContentKind(kind)
        except ValueError as exc:
            raise ValidationError(f"Unknown message kind '{kind}'", field="kind") from exc

        max_attempts = self.default_max_attempts if max_attempts is None else int(max_attempts)
        if max_attempts < 1:
            raise ValidationError("max_attempts must be at least 1", field="max_attempts")
        priority = self.default_priority if priority is None else int(priority)

        subject = subject.strip()
        if len(subject) > MAX_SUBJECT_CHARS:
            self.logger.warning("Subject for %s truncated to %d characters", email, MAX_SUBJECT_CHARS)
            subject = subject[:MAX_SUBJECT_CHARS]
        if len(body) > MAX_BODY_CHARS:
            self.logger.warning("Body for %s truncated to %d characters", email, MAX_BODY_CHARS)
            body = body[:MAX_BODY_CHARS]

        name = (recipient_name or "").strip() or email.split("@", 1)[0]
        return Message(
            id=uuid.uuid4().hex,
            recipient_email=email,
            recipient_name=name,
            subject=subject,
            body=body,
            kind=kind,
            status=status,
            priority=priority,
            max_attempts=max_attempts,
            scheduled_at=scheduled_at,
            created_at=now,
            correlation_id=correlation_id,
            campaign_id=campaign_id,
            campaign_name=campaign_name,
        )

    async def enqueue(
        self,
        recipient_email: str,
        recipient_name: Optional[str],
        subject: str,
        body: str,
        kind: ContentKind,
        *,
        correlation_id: Optional[str] = None,
        priority: Optional[int] = None,
        max_attempts: Optional[int] = None,
    ) -> Message:
        """Queue a message for immediate delivery."""
        now = self._clock()
        message = self._build_message(
            recipient_email,
            recipient_name,
            subject,
            body,
            kind,
            status=MessageStatus.PENDING,
            scheduled_at=now,
            now=now,
            correlation_id=correlation_id,
            priority=priority,
            max_attempts=max_attempts,
        )
        await self.persistence.insert_message(message)
        self.logger.debug("Queued %s message %s for %s", message.kind.value, message.id, message.recipient_email)
        return message

    async def schedule(
        self,
        recipient_email: str,
        recipient_name: Optional[str],
        subject: str,
        body: str,
        kind: ContentKind,
        at: int,
        *,
        correlation_id: Optional[str] = None,
        priority: Optional[int] = None,
        max_attempts: Optional[int] = None,
    ) -> Message:
        """Queue a message that becomes eligible at ``at`` (epoch seconds).

        A time in the past is clamped to now.
        """
        now = self._clock()
        message = self._build_message(
            recipient_email,
            recipient_name,
            subject,
            body,
            kind,
            status=MessageStatus.SCHEDULED,
            scheduled_at=max(int(at), now),
            now=now,
            correlation_id=correlation_id,
            priority=priority,
            max_attempts=max_attempts,
        )
        await self.persistence.insert_message(message)
        self.logger.debug("Scheduled message %s for %s at %d", message.id, message.recipient_email, message.scheduled_at)
        return message

    async def enqueue_for_campaign(
        self,
        recipient_email: str,
        recipient_name: Optional[str],
        subject: str,
        body: str,
        campaign_id: str,
        campaign_name: str,
        *,
        correlation_id: Optional[str] = None,
        priority: Optional[int] = None,
        max_attempts: Optional[int] = None,
    ) -> Message:
        """Queue one message of a campaign expansion."""
        now = self._clock()
        message = self._build_message(
            recipient_email,
            recipient_name,
            subject,
            body,
            ContentKind.CAMPAIGN,
            status=MessageStatus.PENDING,
            scheduled_at=now,
            now=now,
            correlation_id=correlation_id,
            priority=priority,
            max_attempts=max_attempts,
            campaign_id=campaign_id,
            campaign_name=campaign_name,
        )
        await self.persistence.insert_message(message)
        return message

    # Operator actions ---------------------------------------------------------
    async def cancel(self, message_id: str) -> bool:
        """Cancel a PENDING or SCHEDULED message; ``False`` in any other state."""
        cancelled = await self.persistence.cancel_message(message_id)
        if cancelled:
            self.logger.info("Message %s cancelled", message_id)
        return cancelled

    async def retry(self, message_id: str) -> bool:
        """Give a FAILED or CANCELLED message a fresh round of attempts."""
        retried = await self.persistence.retry_message(message_id, self._clock())
        if retried:
            self.logger.info("Message %s re-queued for delivery", message_id)
        return retried

    async def get(self, message_id: str) -> Optional[Message]:
        return await self.persistence.get_message(message_id)

    async def query(
        self,
        status: Optional[MessageStatus] = None,
        campaign_id: Optional[str] = None,
        kind: Optional[ContentKind] = None,
        correlation_id: Optional[str] = None,
        page: int = 0,
        page_size: int = 50,
    ) -> MessagePage:
        """Return one page of matching messages, newest first."""
        page = max(0, int(page))
        page_size = min(max(1, int(page_size)), MAX_PAGE_SIZE)
        items, total = await self.persistence.list_messages(
            status=status,
            campaign_id=campaign_id,
            kind=kind,
            correlation_id=correlation_id,
            limit=page_size,
            offset=page * page_size,
        )
        return MessagePage(items=items, total=total, page=page, page_size=page_size)

    async def statistics(self) -> Dict[str, Any]:
        """Return message counts grouped by status and by kind."""
        by_status = await self.persistence.count_by("status")
        by_kind = await self.persistence.count_by("kind")
        for status in MessageStatus:
            by_status.setdefault(status.value, 0)
        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "by_kind": by_kind,
        }

    async def cleanup_sent(self, older_than_days: int = 30) -> int:
        """Delete SENT messages created more than ``older_than_days`` ago."""
        threshold = self._clock() - int(older_than_days) * SECONDS_PER_DAY
        removed = await self.persistence.delete_sent_before(threshold)
        if removed:
            self.logger.info("Removed %d delivered messages older than %d days", removed, older_than_days)
        return removed
