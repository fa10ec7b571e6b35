"""Registration lifecycle notifications queued on behalf of the registration app."""

from typing import Any, Dict, List, Optional

from .content import ContentGenerator
from .exceptions import ValidationError
from .logger import get_logger
from .models import ContentKind, Message, Registration, TeamMember
from .queue_service import QueueService


class NotificationService:
    """Render and queue the standard registration emails.

    Individual registrations always address the registrant. For teams,
    confirmations and approvals go to every member while a cancellation
    goes to the team leader only.
    """

    def __init__(self, queue_service: QueueService, content: ContentGenerator):
        self.queue_service = queue_service
        self.content = content
        self.logger = get_logger("notifications")

    async def _queue(
        self,
        kind: ContentKind,
        registration: Registration,
        email: str,
        name: str,
        member: Optional[TeamMember] = None,
    ) -> Optional[Message]:
        context: Dict[str, Any] = {"registration": registration}
        if member is not None:
            context["member"] = member
        rendered = self.content.render(kind, context)
        try:
            return await self.queue_service.enqueue(
                email,
                name,
                rendered.subject,
                rendered.body,
                kind,
                correlation_id=registration.id,
            )
        except ValidationError as exc:
            self.logger.warning(
                "Skipping %s for registration %s: %s", kind.value, registration.id, exc
            )
            return None

    async def _to_each_member(self, kind: ContentKind, registration: Registration) -> List[Message]:
        queued: List[Message] = []
        for member in registration.team_members:
            message = await self._queue(kind, registration, member.email, member.full_name, member)
            if message is not None:
                queued.append(message)
        self.logger.info(
            "Queued %d %s emails for team %s", len(queued), kind.value, registration.team_name
        )
        return queued

    async def _to_registrant(self, kind: ContentKind, registration: Registration) -> List[Message]:
        message = await self._queue(kind, registration, registration.email, registration.full_name)
        return [message] if message is not None else []

    async def registration_confirmation(self, registration: Registration) -> List[Message]:
        if registration.is_team:
            return await self._to_each_member(ContentKind.REGISTRATION_CONFIRMATION, registration)
        return await self._to_registrant(ContentKind.REGISTRATION_CONFIRMATION, registration)

    async def application_approval(self, registration: Registration) -> List[Message]:
        if registration.is_team:
            return await self._to_each_member(ContentKind.APPLICATION_APPROVAL, registration)
        return await self._to_registrant(ContentKind.APPLICATION_APPROVAL, registration)

    async def cancellation(self, registration: Registration) -> List[Message]:
        if not registration.is_team:
            return await self._to_registrant(ContentKind.CANCELLATION, registration)
        leader = registration.team_leader
        if leader is None:
            self.logger.warning(
                "No team leader for registration %s, cancellation email not sent", registration.id
            )
            return []
        message = await self._queue(
            ContentKind.CANCELLATION, registration, leader.email, leader.full_name, leader
        )
        return [message] if message is not None else []

    async def admin_notification(self, registration: Registration, admin_email: str) -> List[Message]:
        message = await self._queue(
            ContentKind.ADMIN_NOTIFICATION, registration, admin_email, "Administrator"
        )
        return [message] if message is not None else []
