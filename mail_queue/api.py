"""
FastAPI application factory and HTTP schemas for the mail queue.

The module exposes a `create_app` function that builds the operator API used
to inspect the queue, retry or cancel messages and trigger the processor.
Authentication is enforced through a configurable API token carried in the
``X-API-Token`` header.
"""

from typing import Any, AsyncContextManager, Callable, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, status
from fastapi.responses import Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from .core import MailQueueCore
from .models import Campaign, CampaignStatus, ContentKind, Message, MessageStatus

app = FastAPI(title="Mail Queue")
service: MailQueueCore | None = None
API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)
app.state.api_token = None

ERROR_STATUS = {
    "not_found": status.HTTP_404_NOT_FOUND,
    "campaign_state": status.HTTP_409_CONFLICT,
    "validation_error": status.HTTP_400_BAD_REQUEST,
}


async def require_token(api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    When no token is configured through :func:`create_app` every request is
    accepted.
    """
    expected = getattr(app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


auth_dependency = Depends(require_token)


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""
    ok: bool
    error: Optional[str] = None


class BasicOkResponse(CommandStatus):
    pass


class StatusResponse(CommandStatus):
    running: bool = False
    processing: bool = False
    started_at: Optional[int] = None


class AddMessagePayload(BaseModel):
    """Message submitted by the registration application."""
    recipient_email: str
    recipient_name: Optional[str] = None
    subject: str
    body: str
    kind: ContentKind
    correlation_id: Optional[str] = None
    priority: Optional[int] = Field(default=None, ge=1, le=10)
    max_attempts: Optional[int] = Field(default=None, ge=1)
    scheduled_at: Optional[int] = None


class MessageResponse(CommandStatus):
    message: Message


class MessagesResponse(CommandStatus):
    items: List[Message] = Field(default_factory=list)
    total: int = 0
    page: int = 0
    page_size: int = 50


class RetrySweepResponse(CommandStatus):
    requeued: int = 0


class StatsResponse(CommandStatus):
    processor: Dict[str, Any]
    messages: Dict[str, Any]
    campaigns: Dict[str, Any]


class CampaignResponse(CommandStatus):
    campaign: Campaign


class CampaignsResponse(CommandStatus):
    campaigns: List[Campaign]


def _require_service() -> MailQueueCore:
    if not service:
        raise HTTPException(500, "Service not initialized")
    return service


def _raise_for_error(result: Dict[str, Any]) -> None:
    if result.get("ok") is True:
        return
    code = ERROR_STATUS.get(result.get("error_code"), status.HTTP_400_BAD_REQUEST)
    raise HTTPException(code, result.get("error") or "Command failed")


def create_app(
    svc: MailQueueCore,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        :class:`mail_queue.core.MailQueueCore` instance serving the commands.
    api_token:
        Optional secret; when set the ``X-API-Token`` header must match it.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.
    """
    global service
    service = svc

    if lifespan is not None:
        api = FastAPI(title="Mail Queue", lifespan=lifespan)
    else:
        api = app

    api.state.api_token = api_token
    app.state.api_token = api_token
    router = APIRouter(prefix="/commands", tags=["commands"], dependencies=[auth_dependency])

    @api.get("/status", response_model=StatusResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def get_status():
        """Return scheduler and processor state."""
        return StatusResponse.model_validate(_require_service().status())

    @router.post("/run-now", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def run_now():
        """Wake the processor loop immediately."""
        result = await _require_service().handle_command("run now", {})
        return BasicOkResponse.model_validate(result)

    @router.post("/retry-sweep", response_model=RetrySweepResponse, response_model_exclude_none=True)
    async def retry_sweep():
        """Re-queue failed messages that still have attempts left."""
        result = await _require_service().handle_command("retrySweep", {})
        return RetrySweepResponse.model_validate(result)

    @api.post("/messages", response_model=MessageResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def add_message(payload: AddMessagePayload):
        """Queue one message, scheduled when ``scheduled_at`` is given."""
        result = await _require_service().handle_command("addMessage", payload.model_dump(mode="json"))
        _raise_for_error(result)
        return MessageResponse.model_validate(result)

    @api.get("/messages", response_model=MessagesResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def list_messages(
        status: Optional[MessageStatus] = None,
        campaign_id: Optional[str] = None,
        kind: Optional[ContentKind] = None,
        correlation_id: Optional[str] = None,
        page: int = Query(0, ge=0),
        page_size: int = Query(50, ge=1, le=500),
    ):
        """Query the queue, newest messages first."""
        payload = {
            "status": status,
            "campaign_id": campaign_id,
            "kind": kind,
            "correlation_id": correlation_id,
            "page": page,
            "page_size": page_size,
        }
        result = await _require_service().handle_command("listMessages", payload)
        return MessagesResponse.model_validate(result)

    @api.get("/messages/{message_id}", response_model=MessageResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def get_message(message_id: str):
        result = await _require_service().handle_command("getMessage", {"id": message_id})
        _raise_for_error(result)
        return MessageResponse.model_validate(result)

    @api.post("/messages/{message_id}/retry", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def retry_message(message_id: str):
        """Give a FAILED or CANCELLED message a new round of attempts."""
        result = await _require_service().handle_command("retryMessage", {"id": message_id})
        if result.get("error_code"):
            _raise_for_error(result)
        if not result.get("ok"):
            raise HTTPException(status.HTTP_409_CONFLICT, "Message is not failed or cancelled")
        return BasicOkResponse.model_validate(result)

    @api.post("/messages/{message_id}/cancel", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def cancel_message(message_id: str):
        """Cancel a message that has not been picked up yet."""
        result = await _require_service().handle_command("cancelMessage", {"id": message_id})
        if result.get("error_code"):
            _raise_for_error(result)
        if not result.get("ok"):
            raise HTTPException(status.HTTP_409_CONFLICT, "Message is no longer pending")
        return BasicOkResponse.model_validate(result)

    @api.get("/stats", response_model=StatsResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def stats():
        result = await _require_service().handle_command("stats", {})
        return StatsResponse.model_validate(result)

    @api.get("/campaigns", response_model=CampaignsResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def list_campaigns(status: Optional[CampaignStatus] = None):
        result = await _require_service().handle_command("listCampaigns", {"status": status})
        return CampaignsResponse.model_validate(result)

    @api.post("/campaigns/{campaign_id}/send", response_model=CampaignResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def send_campaign(campaign_id: str):
        """Expand a campaign into queued messages now."""
        result = await _require_service().handle_command("sendCampaign", {"id": campaign_id})
        _raise_for_error(result)
        return CampaignResponse.model_validate(result)

    @api.post("/campaigns/{campaign_id}/cancel", response_model=CampaignResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def cancel_campaign(campaign_id: str):
        result = await _require_service().handle_command("cancelCampaign", {"id": campaign_id})
        _raise_for_error(result)
        return CampaignResponse.model_validate(result)

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the queue."""
        return Response(content=_require_service().metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    api.include_router(router)
    return api
