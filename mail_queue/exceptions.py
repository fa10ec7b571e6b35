"""Exception hierarchy shared by the mail queue components."""


class MailQueueError(Exception):
    """Base class for every error raised by the mail queue."""

    code = "mail_queue_error"


class ValidationError(MailQueueError, ValueError):
    """Raised synchronously when a message or campaign is rejected at intake."""

    code = "validation_error"

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field


class NotFoundError(MailQueueError, LookupError):
    """Raised when a campaign (or other record) does not exist."""

    code = "not_found"


class CampaignStateError(MailQueueError):
    """Raised when a campaign operation is not allowed in its current status."""

    code = "campaign_state"


class TransportError(MailQueueError):
    """Raised by a mail transport when a message could not be delivered."""

    code = "transport_error"


class TransportUnavailableError(TransportError):
    """Raised by the transport used when no SMTP server is configured."""

    code = "transport_unavailable"

    def __init__(self, message: str = "Mail transport not configured"):
        super().__init__(message)
