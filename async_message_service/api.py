"""
FastAPI application factory and HTTP schemas for the async message service.

The module exposes a `create_app` function that builds the REST API used to
submit messages and control the dispatcher, and defines the pydantic
payloads that document each command. Authentication is enforced through a
configurable API token carried in the ``X-API-Token`` header.
"""

from typing import Optional, Dict, Any, List, Literal, Callable, AsyncContextManager

from fastapi import FastAPI, HTTPException, APIRouter, Depends, Request, status
from fastapi.responses import Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from .core import AsyncMessageCore

service: AsyncMessageCore | None = None
API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    If a token has been configured through :func:`create_app` and a request
    provides either a missing or different value, a ``401`` error is raised.
    When no token is configured the dependency is effectively bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")

auth_dependency = Depends(require_token)

Priority = Literal["HIGH", "NORMAL", "LOW", "high", "normal", "low"]


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""
    ok: bool
    error: Optional[str] = None


class BasicOkResponse(CommandStatus):
    pass


class SendMessagePayload(BaseModel):
    """Payload accepted by the ``sendMessage`` command."""
    number: str
    message: str = Field(min_length=1)
    priority: Optional[Priority] = None
    delay: Optional[int] = Field(default=None, ge=0, description="Scheduling offset in milliseconds")
    message_id: Optional[str] = None


class SendMessagesPayload(BaseModel):
    messages: List[SendMessagePayload]


class QueuedMessage(BaseModel):
    job_id: str
    message_id: str
    status: str
    priority: str
    to: Optional[str] = None
    chat_id: Optional[str] = None


class SendMessageResponse(CommandStatus, QueuedMessage):
    pass


class RejectedMessage(BaseModel):
    index: int
    message_id: Optional[str] = None
    reason: str


class SendMessagesResponse(CommandStatus):
    queued: List[QueuedMessage] = Field(default_factory=list)
    rejected: List[RejectedMessage] = Field(default_factory=list)


class JobRecord(BaseModel):
    """Full representation of a job tracked by the store."""
    id: str
    message_id: str
    chat_id: str
    message: str
    formatted_number: str
    original_number: str
    priority: str
    status: str
    attempts: int
    max_attempts: int
    next_retry: Optional[int] = None
    delay: Optional[int] = None
    progress: int = 0
    result: Optional[Dict[str, Any]] = None
    failed_reason: Optional[str] = None
    last_error: Optional[str] = None
    created_at: Optional[int] = None
    updated_at: Optional[int] = None
    processed_at: Optional[int] = None
    completed_at: Optional[int] = None
    failed_at: Optional[int] = None
    stalled_at: Optional[int] = None


class JobResponse(CommandStatus):
    job: JobRecord


class JobsResponse(CommandStatus):
    jobs: List[JobRecord]


class StatsResponse(CommandStatus):
    stats: Dict[str, int]


class ChannelStatus(BaseModel):
    state: str
    ready: bool
    has_qr: bool
    qr: Optional[str] = None
    has_session: bool
    last_error: Optional[str] = None
    last_disconnect_reason: Optional[str] = None


class ChannelResponse(CommandStatus):
    channel: ChannelStatus


class QueueStatusResponse(CommandStatus):
    processor: Dict[str, Any]
    channel: ChannelStatus
    recovery: Dict[str, Any]


class CountResponse(CommandStatus):
    paused: Optional[int] = None
    resumed: Optional[int] = None
    removed: Optional[int] = None


class CleanPayload(BaseModel):
    retention_hours: float = Field(default=24, ge=0)


class ConfigPayload(BaseModel):
    """Partial processor configuration; omitted fields are left unchanged."""
    max_concurrent: Optional[int] = None
    process_interval_ms: Optional[int] = None
    stalled_timeout_ms: Optional[int] = None


class ConfigResponse(CommandStatus):
    applied: Dict[str, int] = Field(default_factory=dict)
    config: Dict[str, int] = Field(default_factory=dict)


def _unwrap(result: Dict[str, Any]) -> Dict[str, Any]:
    """Map a failed command result to an HTTP error."""
    if isinstance(result, dict) and result.get("ok") is True:
        return result
    error = result.get("error") if isinstance(result, dict) else None
    if error and "not found" in str(error):
        raise HTTPException(status_code=404, detail=error)
    detail: Dict[str, Any] = {"error": error}
    for key in ("code", "field", "rejected"):
        if isinstance(result, dict) and result.get(key) is not None:
            detail[key] = result[key]
    raise HTTPException(status_code=400, detail=detail)


def create_app(
    svc: AsyncMessageCore,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Instance of :class:`async_message_service.core.AsyncMessageCore` that
        implements the business logic for each command.
    api_token:
        Optional secret used to protect every endpoint. When provided, the
        ``X-API-Token`` header must match this value on every request.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.

    Returns
    -------
    FastAPI
        A configured application ready to be served by Uvicorn or any ASGI
        server.
    """
    global service
    service = svc

    api = FastAPI(title="Async Message Service", lifespan=lifespan)
    api.state.api_token = api_token
    router = APIRouter(prefix="/commands", tags=["commands"], dependencies=[auth_dependency])

    def _service() -> AsyncMessageCore:
        if not service:
            raise HTTPException(500, "Service not initialized")
        return service

    @api.get("/status", response_model=QueueStatusResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def queue_status():
        """Return processor, channel and recovery state."""
        result = await _service().handle_command("getQueueStatus", {})
        return QueueStatusResponse.model_validate(_unwrap(result))

    @api.get("/channel", response_model=ChannelResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def channel_status():
        result = await _service().handle_command("channelStatus", {})
        return ChannelResponse.model_validate(_unwrap(result))

    @api.post("/channel/connect", response_model=ChannelResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def channel_connect():
        """Start the channel session (no-op when already initializing or ready)."""
        result = await _service().handle_command("connect", {})
        return ChannelResponse.model_validate(_unwrap(result))

    @api.post("/channel/reset", response_model=ChannelResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def channel_reset():
        """Drop the session and its credentials, then pair again."""
        result = await _service().handle_command("resetSession", {})
        return ChannelResponse.model_validate(_unwrap(result))

    @api.post("/messages", response_model=SendMessageResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def send_message(payload: SendMessagePayload):
        """Queue a single message for delivery."""
        result = await _service().handle_command("sendMessage", payload.model_dump(exclude_none=True))
        return SendMessageResponse.model_validate(_unwrap(result))

    @api.post("/messages/batch", response_model=SendMessagesResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def send_messages(payload: SendMessagesPayload):
        """Queue a batch of messages; invalid entries are reported individually."""
        data = {"messages": [msg.model_dump(exclude_none=True) for msg in payload.messages]}
        result = await _service().handle_command("sendMessages", data)
        return SendMessagesResponse.model_validate(_unwrap(result))

    @api.get("/jobs", response_model=JobsResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def list_jobs(status: Optional[str] = "waiting", start: int = 0, end: int = 10):
        result = await _service().handle_command("getJobs", {"status": status, "start": start, "end": end})
        return JobsResponse.model_validate(_unwrap(result))

    @api.get("/jobs/{job_id}", response_model=JobResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def get_job(job_id: str):
        result = await _service().handle_command("getJob", {"job_id": job_id})
        return JobResponse.model_validate(_unwrap(result))

    @api.post("/jobs/{job_id}/retry", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def retry_job(job_id: str):
        """Re-open a failed or paused job."""
        result = await _service().handle_command("retryJob", {"job_id": job_id})
        return BasicOkResponse.model_validate(_unwrap(result))

    @api.delete("/jobs/{job_id}", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def remove_job(job_id: str):
        result = await _service().handle_command("removeJob", {"job_id": job_id})
        return BasicOkResponse.model_validate(_unwrap(result))

    @api.get("/stats", response_model=StatsResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def stats():
        result = await _service().handle_command("getStats", {})
        return StatsResponse.model_validate(_unwrap(result))

    @router.post("/pause", response_model=CountResponse, response_model_exclude_none=True)
    async def pause():
        """Stop dispatching and park every waiting or delayed job."""
        result = await _service().handle_command("pauseQueue", {})
        return CountResponse.model_validate(_unwrap(result))

    @router.post("/resume", response_model=CountResponse, response_model_exclude_none=True)
    async def resume():
        result = await _service().handle_command("resumeQueue", {})
        return CountResponse.model_validate(_unwrap(result))

    @router.post("/clear", response_model=CountResponse, response_model_exclude_none=True)
    async def clear():
        """Delete every job that is not being dispatched."""
        result = await _service().handle_command("clearQueue", {})
        return CountResponse.model_validate(_unwrap(result))

    @router.post("/clean", response_model=CountResponse, response_model_exclude_none=True)
    async def clean(payload: CleanPayload | None = None):
        """Delete completed and failed jobs older than the retention window."""
        data = payload.model_dump() if payload is not None else {}
        result = await _service().handle_command("cleanQueue", data)
        return CountResponse.model_validate(_unwrap(result))

    @router.post("/run-now", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def run_now():
        result = await _service().handle_command("runNow", {})
        return BasicOkResponse.model_validate(_unwrap(result))

    @api.post("/config", response_model=ConfigResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def update_config(payload: ConfigPayload):
        """Update processor tunables; all fields are validated before any is applied."""
        result = await _service().handle_command("updateConfig", payload.model_dump(exclude_none=True))
        return ConfigResponse.model_validate(_unwrap(result))

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the dispatcher."""
        return Response(content=_service().metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    api.include_router(router)
    return api
