"""Pydantic models for the mail queue.

This module defines the records persisted by the queue store and the
read-only registration context handed in by the registration application.

Models:
    - Message: an outbound email tracked by the queue
    - MessagePage: one page of a message query
    - Campaign: a bulk-send descriptor expanded into many messages
    - Registration / TeamMember / Plan: business context used for rendering
      and audience selection
    - ProcessorStats / TickResult: batch processor bookkeeping
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

DEFAULT_PRIORITY = 5
DEFAULT_MAX_ATTEMPTS = 3


class MessageStatus(str, Enum):
    """Delivery state of a queued message.

    Attributes:
        PENDING: Eligible once ``scheduled_at`` has passed.
        SCHEDULED: Explicitly scheduled for a future time.
        PROCESSING: Claimed by the running processor tick.
        SENT: Delivered (terminal).
        FAILED: Attempts exhausted (terminal until an operator retry).
        CANCELLED: Cancelled by an operator before being claimed.
    """

    PENDING = "PENDING"
    SCHEDULED = "SCHEDULED"
    PROCESSING = "PROCESSING"
    SENT = "SENT"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


DUE_STATUSES = (MessageStatus.PENDING, MessageStatus.SCHEDULED)
CANCELLABLE_STATUSES = (MessageStatus.PENDING, MessageStatus.SCHEDULED)
RETRYABLE_STATUSES = (MessageStatus.FAILED, MessageStatus.CANCELLED)
TERMINAL_STATUSES = (MessageStatus.SENT, MessageStatus.FAILED, MessageStatus.CANCELLED)


class ContentKind(str, Enum):
    """Kind of notification carried by a message."""

    REGISTRATION_CONFIRMATION = "registration_confirmation"
    APPLICATION_APPROVAL = "application_approval"
    CANCELLATION = "cancellation"
    ADMIN_NOTIFICATION = "admin_notification"
    CAMPAIGN = "campaign"


class CampaignStatus(str, Enum):
    DRAFT = "DRAFT"
    SCHEDULED = "SCHEDULED"
    SENDING = "SENDING"
    SENT = "SENT"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


SENDABLE_CAMPAIGN_STATUSES = (CampaignStatus.DRAFT, CampaignStatus.SCHEDULED)


class CampaignType(str, Enum):
    PROMOTIONAL = "promotional"
    INFORMATIONAL = "informational"
    REMINDER = "reminder"
    ANNOUNCEMENT = "announcement"
    NEWSLETTER = "newsletter"
    EVENT_UPDATE = "event_update"
    REGISTRATION_FOLLOWUP = "registration_followup"


class Audience(str, Enum):
    """Audience selectors understood by the campaign orchestrator."""

    ALL = "ALL"
    INDIVIDUAL_REGISTRATIONS = "INDIVIDUAL_REGISTRATIONS"
    TEAM_REGISTRATIONS = "TEAM_REGISTRATIONS"
    RECENT_REGISTRATIONS = "RECENT_REGISTRATIONS"


class Message(BaseModel):
    """An outbound email tracked by the queue store.

    Attributes:
        id: Opaque unique identifier.
        recipient_email: Destination address.
        recipient_name: Display name of the recipient.
        subject: Rendered subject line.
        body: Rendered HTML body.
        kind: Notification kind.
        status: Current delivery state.
        priority: Lower values are sent first within a batch.
        attempt_count: Delivery attempts made so far.
        max_attempts: Attempts allowed before the message is failed.
        scheduled_at: Epoch seconds before which the message is not eligible.
        created_at: Epoch seconds of the enqueue.
        last_attempt_at: Epoch seconds of the last claim.
        sent_at: Epoch seconds of the successful delivery.
        error_message: Last failure reason.
        correlation_id: Business reference (e.g. a registration id), audit only.
        campaign_id: Campaign the message was expanded from.
        campaign_name: Name of that campaign.
    """

    id: str
    recipient_email: str
    recipient_name: str
    subject: str
    body: str
    kind: ContentKind
    status: MessageStatus = MessageStatus.PENDING
    priority: int = DEFAULT_PRIORITY
    attempt_count: int = 0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    scheduled_at: int
    created_at: int
    last_attempt_at: Optional[int] = None
    sent_at: Optional[int] = None
    error_message: Optional[str] = None
    correlation_id: Optional[str] = None
    campaign_id: Optional[str] = None
    campaign_name: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def can_retry(self) -> bool:
        return self.attempt_count < self.max_attempts


class MessagePage(BaseModel):
    """One page of a message query, newest first."""

    items: List[Message] = Field(default_factory=list)
    total: int = 0
    page: int = 0
    page_size: int = 50


class Campaign(BaseModel):
    """Bulk-send descriptor.

    ``subject`` and ``body`` are templates carrying ``{{fullName}}``,
    ``{{email}}``, ``{{teamName}}`` and ``{{registrationDate}}`` tokens.
    """

    id: str
    name: str
    description: Optional[str] = None
    subject: str
    body: str
    campaign_type: CampaignType
    target_audience: Audience = Audience.ALL
    status: CampaignStatus = CampaignStatus.DRAFT
    priority: int = DEFAULT_PRIORITY
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    created_by: str
    created_at: int
    scheduled_at: Optional[int] = None
    sent_at: Optional[int] = None
    total_recipients: int = 0
    emails_queued: int = 0
    emails_failed: int = 0
    emails_sent: int = 0

    @property
    def can_be_sent(self) -> bool:
        return self.status in SENDABLE_CAMPAIGN_STATUSES


class Plan(BaseModel):
    id: Optional[str] = None
    name: str


class TeamMember(BaseModel):
    full_name: str
    email: str
    position: Optional[int] = None
    is_leader: bool = False


class Registration(BaseModel):
    """Registration as seen by the mail subsystem (read-only)."""

    id: str
    registration_number: str
    full_name: str
    email: str
    plan: Plan
    team_name: Optional[str] = None
    team_members: List[TeamMember] = Field(default_factory=list)
    registered_at: datetime

    @property
    def is_team(self) -> bool:
        return bool(self.team_name)

    @property
    def team_leader(self) -> Optional[TeamMember]:
        """Return the designated leader, falling back to the member at position 1."""
        for member in self.team_members:
            if member.is_leader:
                return member
        for member in self.team_members:
            if member.position == 1:
                return member
        return None


class TickResult(BaseModel):
    """Outcome of one processor tick."""

    skipped: bool = False
    batches: int = 0
    processed: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0
    errors: List[Dict[str, Any]] = Field(default_factory=list)


class ProcessorStats(BaseModel):
    is_processing: bool
    total_processed: int
    total_errors: int
    ticks_run: int
    ticks_skipped: int
    pending: int
    failed: int
