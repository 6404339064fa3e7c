"""Coordinator: one store plus the engines that share it."""

from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy import func, select

from .agents import AgentDirectory
from .config import Settings, get_settings
from .db import Clock, Store, store_operation
from .errors import STORE_FAILED
from .messages import AckPolicy, MessageEngine
from .models import Agent, FileReservation, Message, Project
from .projects import ProjectRegistry
from .reservations import ReservationEngine
from .retention import RetentionSweeper
from .search import SearchEngine

logger = logging.getLogger(__name__)


class Coordinator:
    """Composition root handed to the HTTP boundary and the CLI."""

    def __init__(self, store: Store, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()
        self.store = store
        self.projects = ProjectRegistry(store)
        self.agents = AgentDirectory(store, self.projects)
        self.reservations = ReservationEngine(
            store,
            self.projects,
            self.agents,
            default_ttl_seconds=self.settings.reservation_default_ttl_seconds,
        )
        self.messages = MessageEngine(
            store,
            self.projects,
            self.agents,
            ack_policy=AckPolicy(self.settings.ack_timestamp_policy),
        )
        self.search = SearchEngine(store, self.projects)
        self.retention = RetentionSweeper(store)

    async def startup(self) -> dict[str, int]:
        """Create the schema and run the startup retention sweep."""
        await self.store.ensure_schema()
        swept = await self.retention.sweep(self.settings.retention.days)
        logger.info("coordinator.started", extra={"database": str(self.store.database_path), **swept})
        return swept

    @store_operation(STORE_FAILED)
    async def stats(self) -> dict[str, Any]:
        await self.store.ensure_schema()
        now = self.store.now()
        async with self.store.session() as session:
            projects = (await session.execute(select(func.count(Project.id)))).scalar_one()
            agents = (await session.execute(select(func.count(Agent.id)))).scalar_one()
            messages = (await session.execute(select(func.count(Message.id)))).scalar_one()
            active = (
                await session.execute(
                    select(func.count(FileReservation.id)).where(
                        FileReservation.released_ts.is_(None), FileReservation.expires_ts > now
                    )
                )
            ).scalar_one()
        return {
            "projects": int(projects),
            "agents": int(agents),
            "messages": int(messages),
            "active_reservations": int(active),
        }

    async def close(self) -> None:
        await self.retention.stop()
        await self.store.dispose()


def build_coordinator(settings: Optional[Settings] = None, *, clock: Clock | None = None) -> Coordinator:
    resolved = settings or get_settings()
    return Coordinator(Store.from_settings(resolved, clock=clock), resolved)
