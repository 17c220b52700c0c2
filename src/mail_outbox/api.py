# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""FastAPI application factory and HTTP schemas for the mail outbox.

Endpoints:
- ``GET /health``: liveness probe, no authentication
- ``GET /status``: delivery loop state and queue depth
- ``POST /messages``: submit a message for delivery
- ``GET /messages``: list delivery records, optionally by status
- ``GET /messages/{id}``: one delivery record
- ``GET /stats``: record counts per status
- ``GET /metrics``: Prometheus exposition

Every endpoint but ``/health`` requires the ``X-API-Token`` header when a
token is configured.

Example:
    Creating and running the API application::

        from mail_outbox.core import MailOutbox
        from mail_outbox.api import create_app

        outbox = MailOutbox(db_path="/data/outbox.db")
        app = create_app(outbox, api_token="secret-token")

        uvicorn.run(app, host="0.0.0.0", port=8000)
"""

from typing import AsyncContextManager, Callable, Dict, List, Optional
import logging

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field, field_validator

from .core import MailOutbox
from .models import DeliveryRecord, MailStatus, validate_mailbox
from .persistence import PersistenceError

logger = logging.getLogger(__name__)

service: MailOutbox | None = None
API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    When no token has been configured through :func:`create_app` the check
    is bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


auth_dependency = Depends(require_token)


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""
    ok: bool
    error: Optional[str] = None


class SubmitPayload(BaseModel):
    """Message accepted by ``POST /messages``."""
    recipient: str = Field(min_length=3)
    subject: str
    body: str

    @field_validator("recipient")
    @classmethod
    def check_recipient(cls, v: str) -> str:
        return validate_mailbox(v)


class SubmitResponse(CommandStatus):
    id: str


class StatusResponse(CommandStatus):
    state: str
    running: bool
    queue_size: int


class MessagesResponse(CommandStatus):
    messages: List[DeliveryRecord]


class StatsResponse(CommandStatus):
    counts: Dict[str, int]


def _require_service() -> MailOutbox:
    if not service:
        raise HTTPException(500, "Service not initialized")
    return service


def create_app(
    svc: MailOutbox,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        svc: The :class:`MailOutbox` serving the requests.
        api_token: Optional secret required in ``X-API-Token`` on every
            protected endpoint.
        lifespan: Optional lifespan context manager for startup/shutdown.

    Returns:
        A configured application ready to be served by uvicorn.
    """
    global service
    service = svc

    api = FastAPI(title="Mail Outbox", lifespan=lifespan)
    api.state.api_token = api_token

    @api.get("/health")
    async def health():
        """Health check endpoint for container monitoring (no authentication required)."""
        return {"status": "ok"}

    @api.get("/status", response_model=StatusResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def delivery_status():
        """Report the delivery loop state."""
        outbox = _require_service()
        return StatusResponse(ok=True, **outbox.status())

    @api.post("/messages", response_model=SubmitResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def submit_message(payload: SubmitPayload):
        """Record a message and queue it for delivery."""
        outbox = _require_service()
        try:
            msg_id = await outbox.submit(payload.recipient, payload.subject, payload.body)
        except PersistenceError as exc:
            logger.error("Submission to %s failed: %s", payload.recipient, exc)
            raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, str(exc)) from exc
        return SubmitResponse(ok=True, id=msg_id)

    @api.get("/messages", response_model=MessagesResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def list_messages(status: Optional[MailStatus] = None, limit: Optional[int] = None):
        """List delivery records, newest first."""
        outbox = _require_service()
        records = await outbox.list_messages(status=status, limit=limit)
        return MessagesResponse(ok=True, messages=records)

    @api.get("/messages/{msg_id}", response_model=DeliveryRecord, dependencies=[auth_dependency])
    async def get_message(msg_id: str):
        """Return one delivery record."""
        outbox = _require_service()
        record = await outbox.get_message(msg_id)
        if record is None:
            raise HTTPException(404, f"Message '{msg_id}' not found")
        return record

    @api.get("/stats", response_model=StatsResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def stats():
        """Count delivery records per status."""
        outbox = _require_service()
        return StatsResponse(ok=True, counts=await outbox.stats())

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the outbox."""
        outbox = _require_service()
        return Response(content=outbox.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    return api
