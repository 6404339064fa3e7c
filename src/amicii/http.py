"""HTTP boundary: FastAPI routes over the coordination engines."""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import structlog
from fastapi import FastAPI, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import __version__
from .agents import agent_to_dict
from .app import Coordinator, build_coordinator
from .config import Settings, get_settings
from .errors import DATABASE_BUSY, INVALID_INPUT, CoordinationError
from .projects import project_to_dict

__all__ = ["build_http_app"]

_LOGGING_CONFIGURED = False


def _configure_logging(settings: Settings) -> None:
    """Initialize structlog and stdlib logging formatting."""
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
    ]
    if settings.log_json_enabled:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.processors.KeyValueRenderer(key_order=["event", "path", "status"]))
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(level=level)
    # aiosqlite logs every cursor operation at DEBUG.
    logging.getLogger("aiosqlite").setLevel(logging.INFO)
    _LOGGING_CONFIGURED = True


def status_for_error(exc: CoordinationError) -> int:
    """Missing resources are 404, other caller-fixable errors 400, store failures 500."""
    if exc.is_not_found:
        return status.HTTP_404_NOT_FOUND
    if exc.recoverable:
        return status.HTTP_400_BAD_REQUEST
    return status.HTTP_500_INTERNAL_SERVER_ERROR


class EnsureProjectRequest(BaseModel):
    human_key: str


class RegisterAgentRequest(BaseModel):
    project: str
    program: str
    model: str
    name: Optional[str] = None
    task_description: Optional[str] = None


class SendMessageRequest(BaseModel):
    project: str
    sender: str
    to: list[str]
    cc: list[str] = Field(default_factory=list)
    subject: str
    body_md: str = ""
    thread_id: Optional[str] = None
    importance: str = "normal"
    ack_required: bool = False


class MessageActionRequest(BaseModel):
    project: str
    agent: str


class CreateReservationRequest(BaseModel):
    project: str
    agent: str
    path_pattern: str
    ttl_seconds: Optional[int] = None
    exclusive: bool = True
    reason: Optional[str] = None


class ReleaseReservationRequest(BaseModel):
    project: str
    agent: str
    pattern: Optional[str] = None
    release_all: bool = Field(default=False, alias="all")


def build_http_app(settings: Optional[Settings] = None, coordinator: Optional[Coordinator] = None) -> FastAPI:
    """Build the FastAPI app.

    The lifespan creates the schema, runs the startup sweep and, when enabled,
    the periodic sweeper. A coordinator passed in by the caller is not
    disposed on shutdown.
    """
    settings = settings or get_settings()
    _configure_logging(settings)
    owns_coordinator = coordinator is None
    coord = coordinator or build_coordinator(settings)
    started_at = time.monotonic()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        swept = await coord.startup()
        structlog.get_logger("maintenance").info("retention_sweep", phase="startup", **swept)
        if settings.retention.sweep_enabled:
            coord.retention.start(settings.retention.days, settings.retention.interval_seconds)
        try:
            yield
        finally:
            await coord.retention.stop()
            if owns_coordinator:
                await coord.store.dispose()

    fastapi_app = FastAPI(title="amicii", version=__version__, lifespan=lifespan)
    fastapi_app.state.coordinator = coord

    @fastapi_app.exception_handler(CoordinationError)
    async def _coordination_error(request: Request, exc: CoordinationError) -> JSONResponse:
        code = status_for_error(exc)
        if code >= 500:
            structlog.get_logger("http").error(
                "request_failed", path=request.url.path, status=code, error_type=exc.kind, error=str(exc)
            )
        headers = {"Retry-After": "1"} if exc.kind == DATABASE_BUSY else None
        return JSONResponse(exc.to_payload(), status_code=code, headers=headers)

    @fastapi_app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        error = CoordinationError(
            INVALID_INPUT,
            "Request validation failed.",
            recoverable=True,
            data={"errors": jsonable_encoder(exc.errors())},
        )
        return JSONResponse(error.to_payload(), status_code=status.HTTP_400_BAD_REQUEST)

    @fastapi_app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok", "version": __version__}

    @fastapi_app.get("/api/status")
    async def api_status() -> dict[str, Any]:
        stats = await coord.stats()
        return {
            **stats,
            "uptime_seconds": round(time.monotonic() - started_at, 3),
            "retention_days": settings.retention.days,
            "sweeper_running": coord.retention.running,
            "database": str(coord.store.database_path or settings.database.url),
        }

    @fastapi_app.post("/api/prune")
    async def api_prune(days: Optional[int] = Query(None, ge=0)) -> dict[str, Any]:
        retention_days = settings.retention.days if days is None else days
        result = await coord.retention.sweep(retention_days)
        return {"retention_days": retention_days, **result}

    @fastapi_app.post("/api/project/ensure")
    async def ensure_project(body: EnsureProjectRequest) -> dict[str, Any]:
        return project_to_dict(await coord.projects.ensure(body.human_key))

    @fastapi_app.get("/api/projects")
    async def list_projects() -> list[dict[str, Any]]:
        return [project_to_dict(p) for p in await coord.projects.list()]

    @fastapi_app.get("/api/project/{identifier:path}")
    async def get_project(identifier: str) -> dict[str, Any]:
        return project_to_dict(await coord.projects.get(identifier))

    @fastapi_app.delete("/api/project/{identifier:path}")
    async def delete_project(identifier: str) -> dict[str, Any]:
        return await coord.projects.delete(identifier)

    @fastapi_app.post("/api/agent/register")
    async def register_agent(body: RegisterAgentRequest) -> dict[str, Any]:
        project = await coord.projects.get(body.project)
        agent = await coord.agents.register(
            project,
            program=body.program,
            model=body.model,
            name_hint=body.name,
            task_description=body.task_description,
        )
        return agent_to_dict(agent, project)

    @fastapi_app.get("/api/agents")
    async def list_agents(project: str) -> list[dict[str, Any]]:
        proj = await coord.projects.get(project)
        return [agent_to_dict(a, proj) for a in await coord.agents.list(proj)]

    @fastapi_app.get("/api/agent/{project}/{name}")
    async def get_agent(project: str, name: str) -> dict[str, Any]:
        proj = await coord.projects.get(project)
        return agent_to_dict(await coord.agents.get(proj, name), proj)

    @fastapi_app.post("/api/message/send")
    async def send_message(body: SendMessageRequest) -> dict[str, Any]:
        return await coord.messages.send(
            body.project,
            body.sender,
            body.to,
            cc=body.cc,
            subject=body.subject,
            body_md=body.body_md,
            thread_id=body.thread_id,
            importance=body.importance,
            ack_required=body.ack_required,
        )

    @fastapi_app.get("/api/inbox")
    async def inbox(
        project: str,
        agent: str,
        limit: int = 20,
        urgent: bool = False,
        unread: bool = False,
        since: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        return await coord.messages.fetch_inbox(
            project, agent, limit=limit, urgent_only=urgent, unread_only=unread, since=since
        )

    @fastapi_app.get("/api/outbox")
    async def outbox(project: str, agent: str, limit: int = 20) -> list[dict[str, Any]]:
        return await coord.messages.fetch_outbox(project, agent, limit=limit)

    @fastapi_app.get("/api/message/{message_id}")
    async def get_message(message_id: int, project: str) -> dict[str, Any]:
        return await coord.messages.get(project, message_id)

    @fastapi_app.post("/api/message/{message_id}/read")
    async def mark_read(message_id: int, body: MessageActionRequest) -> dict[str, Any]:
        return await coord.messages.mark_read(body.project, body.agent, message_id)

    @fastapi_app.post("/api/message/{message_id}/ack")
    async def acknowledge(message_id: int, body: MessageActionRequest) -> dict[str, Any]:
        return await coord.messages.acknowledge(body.project, body.agent, message_id)

    @fastapi_app.post("/api/reservation/create")
    async def create_reservation(body: CreateReservationRequest) -> dict[str, Any]:
        return await coord.reservations.create(
            body.project,
            body.agent,
            body.path_pattern,
            ttl_seconds=body.ttl_seconds,
            exclusive=body.exclusive,
            reason=body.reason,
        )

    @fastapi_app.post("/api/reservation/release")
    async def release_reservation(body: ReleaseReservationRequest) -> dict[str, Any]:
        return await coord.reservations.release(body.project, body.agent, pattern=body.pattern, release_all=body.release_all)

    @fastapi_app.get("/api/reservations")
    async def list_reservations(project: str, active: bool = False, agent: Optional[str] = None) -> list[dict[str, Any]]:
        if agent:
            return await coord.reservations.list_for_agent(project, agent)
        return await coord.reservations.list(project, active=active)

    @fastapi_app.get("/api/search")
    async def search(project: str, q: str = "", limit: int = 20) -> list[dict[str, Any]]:
        return await coord.search.search(project, q, limit=limit)

    return fastapi_app
