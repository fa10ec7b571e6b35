"""Campaign lifecycle and expansion into per-recipient messages."""

import time
import uuid
from datetime import timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .exceptions import CampaignStateError, NotFoundError, ValidationError
from .logger import get_logger
from .models import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_PRIORITY,
    SENDABLE_CAMPAIGN_STATUSES,
    Audience,
    Campaign,
    CampaignStatus,
    CampaignType,
    Registration,
)
from .persistence import Persistence
from .queue_service import QueueService

RECENT_WINDOW_SECONDS = 7 * 86400
MAX_NAME_CHARS = 200

UPDATABLE_FIELDS = (
    "name",
    "description",
    "subject",
    "body",
    "campaign_type",
    "target_audience",
    "priority",
    "max_attempts",
)

RegistrationSource = Callable[[], Awaitable[List[Registration]]]


def _epoch_now() -> int:
    return int(time.time())


def _registered_epoch(registration: Registration) -> int:
    value = registration.registered_at
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


def personalize(template: str, registration: Registration, name: str, email: str) -> str:
    """Substitute the campaign tokens for one recipient."""
    if not template:
        return ""
    return (
        template.replace("{{fullName}}", name)
        .replace("{{email}}", email)
        .replace("{{teamName}}", registration.team_name or "")
        .replace("{{registrationDate}}", registration.registered_at.date().isoformat())
    )


class CampaignOrchestrator:
    """Store campaigns and expand them into queue messages when sent.

    ``registration_source`` is an async callable returning the current
    registrations; audience filtering happens here.
    """

    def __init__(
        self,
        persistence: Persistence,
        queue_service: QueueService,
        registration_source: RegistrationSource,
        *,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.persistence = persistence
        self.queue_service = queue_service
        self.registration_source = registration_source
        self._clock = clock or _epoch_now
        self.logger = get_logger("campaigns")

    # Validation ---------------------------------------------------------------
    def _validate(self, data: Dict[str, Any]) -> Dict[str, Any]:
        name = (data.get("name") or "").strip()
        if not name:
            raise ValidationError("Campaign name is required", field="name")
        if len(name) > MAX_NAME_CHARS:
            raise ValidationError(f"Campaign name must be at most {MAX_NAME_CHARS} characters", field="name")
        if not (data.get("subject") or "").strip():
            raise ValidationError("Campaign subject is required", field="subject")
        if not (data.get("body") or "").strip():
            raise ValidationError("Campaign body is required", field="body")
        if not data.get("campaign_type"):
            raise ValidationError("Campaign type is required", field="campaign_type")
        try:
            data["campaign_type"] = CampaignType(data["campaign_type"])
        except ValueError as exc:
            raise ValidationError(f"Unknown campaign type '{data['campaign_type']}'", field="campaign_type") from exc
        if not (data.get("created_by") or "").strip():
            raise ValidationError("Campaign creator is required", field="created_by")
        if int(data.get("max_attempts") or 0) < 1:
            raise ValidationError("max_attempts must be at least 1", field="max_attempts")
        data["name"] = name
        data["target_audience"] = self._resolve_audience(data.get("target_audience"))
        return data

    def _resolve_audience(self, value: Any) -> Audience:
        if value is None:
            return Audience.ALL
        try:
            return Audience(value)
        except ValueError:
            self.logger.warning("Unknown target audience '%s', using all registrations", value)
            return Audience.ALL

    async def _require(self, campaign_id: str) -> Campaign:
        campaign = await self.persistence.get_campaign(campaign_id)
        if campaign is None:
            raise NotFoundError(f"Campaign '{campaign_id}' not found")
        return campaign

    # CRUD ---------------------------------------------------------------------
    async def create_campaign(
        self,
        name: str,
        subject: str,
        body: str,
        campaign_type: CampaignType,
        created_by: str,
        *,
        description: Optional[str] = None,
        target_audience: Audience = Audience.ALL,
        priority: int = DEFAULT_PRIORITY,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> Campaign:
        data = self._validate(
            {
                "name": name,
                "subject": subject,
                "body": body,
                "campaign_type": campaign_type,
                "created_by": created_by,
                "target_audience": target_audience,
                "max_attempts": max_attempts,
            }
        )
        campaign = Campaign(
            id=uuid.uuid4().hex,
            description=description,
            priority=int(priority),
            status=CampaignStatus.DRAFT,
            created_at=self._clock(),
            **data,
        )
        await self.persistence.save_campaign(campaign)
        self.logger.info("Created campaign %s (%s)", campaign.id, campaign.name)
        return campaign

    async def update_campaign(self, campaign_id: str, **fields: Any) -> Campaign:
        """Update editable fields; refused once the campaign is sending or sent."""
        campaign = await self._require(campaign_id)
        if campaign.status in (CampaignStatus.SENDING, CampaignStatus.SENT):
            raise CampaignStateError(
                f"Cannot update campaign in status {campaign.status.value}"
            )
        unknown = set(fields) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Fields not editable: {', '.join(sorted(unknown))}")
        data = campaign.model_dump()
        data.update(fields)
        updated = Campaign(**self._validate(data))
        changes = updated.model_dump(mode="json", include=set(UPDATABLE_FIELDS))
        if not await self.persistence.update_campaign_fields(
            campaign_id, changes, locked_statuses=(CampaignStatus.SENDING, CampaignStatus.SENT)
        ):
            raise CampaignStateError(f"Campaign {campaign_id} changed status, update refused")
        return await self._require(campaign_id)

    async def _transition(
        self,
        campaign_id: str,
        to_status: CampaignStatus,
        action: str,
        *,
        scheduled_at: Optional[int] = None,
    ) -> Campaign:
        """Move a DRAFT or SCHEDULED campaign to ``to_status`` in one conditional write."""
        campaign = await self._require(campaign_id)
        if not campaign.can_be_sent or not await self.persistence.transition_campaign(
            campaign_id, SENDABLE_CAMPAIGN_STATUSES, to_status, scheduled_at=scheduled_at
        ):
            current = await self._require(campaign_id)
            raise CampaignStateError(
                f"Cannot {action} campaign in status {current.status.value}"
            )
        campaign.status = to_status
        if scheduled_at is not None:
            campaign.scheduled_at = scheduled_at
        return campaign

    async def schedule_campaign(self, campaign_id: str, at: int) -> Campaign:
        campaign = await self._transition(
            campaign_id,
            CampaignStatus.SCHEDULED,
            "schedule",
            scheduled_at=max(int(at), self._clock()),
        )
        self.logger.info("Campaign %s scheduled at %d", campaign.id, campaign.scheduled_at)
        return campaign

    async def cancel_campaign(self, campaign_id: str) -> Campaign:
        campaign = await self._transition(campaign_id, CampaignStatus.CANCELLED, "cancel")
        self.logger.info("Campaign %s cancelled", campaign.id)
        return campaign

    async def delete_campaign(self, campaign_id: str) -> None:
        await self._require(campaign_id)
        if not await self.persistence.delete_campaign(
            campaign_id, locked_statuses=(CampaignStatus.SENDING,)
        ):
            raise CampaignStateError("Cannot delete a campaign while it is being sent")
        self.logger.info("Campaign %s deleted", campaign_id)

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        return await self.persistence.get_campaign(campaign_id)

    async def list_campaigns(self, status: Optional[CampaignStatus] = None) -> List[Campaign]:
        return await self.persistence.list_campaigns(status)

    async def statistics(self) -> Dict[str, Any]:
        by_status = await self.persistence.count_campaigns_by_status()
        by_type = await self.persistence.count_campaign_types()
        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "by_type": by_type,
        }

    # Sending ------------------------------------------------------------------
    def select_recipients(
        self, registrations: List[Registration], audience: Any
    ) -> List[Registration]:
        """Filter registrations by audience; unknown audiences select everyone."""
        audience = self._resolve_audience(audience)
        if audience == Audience.INDIVIDUAL_REGISTRATIONS:
            return [r for r in registrations if not r.is_team]
        if audience == Audience.TEAM_REGISTRATIONS:
            return [r for r in registrations if r.is_team]
        if audience == Audience.RECENT_REGISTRATIONS:
            threshold = self._clock() - RECENT_WINDOW_SECONDS
            return [r for r in registrations if _registered_epoch(r) >= threshold]
        return list(registrations)

    def _addressee(self, registration: Registration) -> Optional[Tuple[str, str]]:
        """Return ``(email, name)`` to write to; team registrations go to the leader."""
        if not registration.is_team:
            return registration.email, registration.full_name
        leader = registration.team_leader
        if leader is None:
            return None
        return leader.email, leader.full_name

    async def send_campaign(self, campaign_id: str) -> Campaign:
        """Expand the campaign into one queued message per recipient."""
        campaign = await self._transition(campaign_id, CampaignStatus.SENDING, "send")
        self.logger.info("Sending campaign %s (%s)", campaign.id, campaign.name)

        try:
            registrations = await self.registration_source()
            recipients = self.select_recipients(registrations, campaign.target_audience)
            if not recipients:
                self.logger.warning("No recipients found for campaign %s", campaign.name)
                campaign.status = CampaignStatus.FAILED
                await self.persistence.save_campaign(campaign)
                return campaign

            queued = 0
            for registration in recipients:
                addressee = self._addressee(registration)
                if addressee is None:
                    self.logger.warning(
                        "Team registration %s has no leader, skipping", registration.id
                    )
                    continue
                email, name = addressee
                try:
                    await self.queue_service.enqueue_for_campaign(
                        email,
                        name,
                        personalize(campaign.subject, registration, name, email),
                        personalize(campaign.body, registration, name, email),
                        campaign.id,
                        campaign.name,
                        correlation_id=registration.id,
                        priority=campaign.priority,
                        max_attempts=campaign.max_attempts,
                    )
                    queued += 1
                except ValidationError as exc:
                    self.logger.warning(
                        "Campaign %s: recipient %s rejected: %s", campaign.id, email, exc
                    )

            campaign.total_recipients = len(recipients)
            campaign.emails_queued = queued
            campaign.emails_failed = len(recipients) - queued
            campaign.status = CampaignStatus.SENT
            campaign.sent_at = self._clock()
            await self.persistence.save_campaign(campaign)
            self.logger.info(
                "Campaign %s queued %d of %d messages", campaign.id, queued, len(recipients)
            )
            return campaign
        except Exception:
            self.logger.exception("Sending campaign %s failed", campaign.id)
            campaign.status = CampaignStatus.FAILED
            await self.persistence.save_campaign(campaign)
            raise

    async def process_scheduled_campaigns(self) -> int:
        """Send every scheduled campaign whose time has come.

        Returns the number of campaigns that ended up SENT.
        """
        due = await self.persistence.fetch_due_campaigns(self._clock())
        sent = 0
        for campaign in due:
            try:
                result = await self.send_campaign(campaign.id)
                if result.status == CampaignStatus.SENT:
                    sent += 1
            except CampaignStateError as exc:
                self.logger.info("Scheduled campaign %s skipped: %s", campaign.id, exc)
            except Exception:
                self.logger.exception("Scheduled campaign %s could not be sent", campaign.id)
        return sent
