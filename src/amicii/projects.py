"""Project registry: maps an absolute workspace path to a stable slug."""

from __future__ import annotations

import logging
from pathlib import PurePosixPath, PureWindowsPath
from typing import Any

from sqlalchemy import delete, or_, select
from sqlalchemy.exc import IntegrityError

from .db import Store, store_operation
from .errors import (
    PROJECT_CREATE_FAILED,
    PROJECT_DELETE_FAILED,
    PROJECT_NOT_FOUND,
    STORE_FAILED,
    CoordinationError,
    invalid_input,
)
from .models import Agent, FileReservation, Message, MessageRecipient, Project
from .utils import iso_utc, project_slug, suggest_matches

logger = logging.getLogger(__name__)


def project_to_dict(project: Project) -> dict[str, Any]:
    return {
        "id": project.id,
        "slug": project.slug,
        "human_key": project.human_key,
        "created_at": iso_utc(project.created_at),
    }


def _is_absolute(path: str) -> bool:
    return PurePosixPath(path).is_absolute() or PureWindowsPath(path).is_absolute()


class ProjectRegistry:
    """Idempotent creation and lookup of projects."""

    def __init__(self, store: Store) -> None:
        self.store = store

    @store_operation(PROJECT_CREATE_FAILED)
    async def ensure(self, human_key: str) -> Project:
        """Return the project for ``human_key``, creating it on first use.

        Concurrent first calls converge on a single row: the loser of the
        insert race rolls back and reads the winner's project.
        """
        key = (human_key or "").strip()
        if not key:
            raise invalid_input("human_key must be a non-empty absolute path.", argument="human_key")
        if not _is_absolute(key):
            raise invalid_input(
                f"human_key must be an absolute path, got {key!r}.", argument="human_key", value=key
            )
        await self.store.ensure_schema()
        async with self.store.session() as session:
            existing = (await session.execute(select(Project).where(Project.human_key == key))).scalars().first()
            if existing is not None:
                return existing
            project = Project(slug=project_slug(key), human_key=key, created_at=self.store.now())
            session.add(project)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                winner = (await session.execute(select(Project).where(Project.human_key == key))).scalars().first()
                if winner is None:
                    raise
                return winner
            await session.refresh(project)
        logger.info("project.created", extra={"slug": project.slug, "human_key": key})
        return project

    @store_operation(STORE_FAILED)
    async def get(self, identifier: str) -> Project:
        """Look a project up by slug or human_key."""
        ident = (identifier or "").strip()
        if not ident:
            raise invalid_input("project identifier must not be empty.", argument="project")
        await self.store.ensure_schema()
        async with self.store.session() as session:
            project = (
                await session.execute(
                    select(Project).where(or_(Project.slug == ident, Project.human_key == ident))
                )
            ).scalars().first()
            if project is not None:
                return project
            rows = (await session.execute(select(Project.slug, Project.human_key))).all()
        suggestions = suggest_matches(ident, [slug for slug, _ in rows])
        if len(suggestions) < 3:
            for slug, key in rows:
                if slug not in suggestions and ident.lower() in key.lower():
                    suggestions.append(slug)
                if len(suggestions) >= 3:
                    break
        message = f"Project '{ident}' not found."
        if suggestions:
            message += f" Did you mean: {', '.join(suggestions)}?"
        raise CoordinationError(
            PROJECT_NOT_FOUND, message, recoverable=True, data={"identifier": ident, "suggestions": suggestions}
        )

    @store_operation(STORE_FAILED)
    async def list(self) -> list[Project]:
        await self.store.ensure_schema()
        async with self.store.session() as session:
            result = await session.execute(select(Project).order_by(Project.created_at.desc(), Project.id.desc()))
            return list(result.scalars().all())

    @store_operation(PROJECT_DELETE_FAILED)
    async def delete(self, identifier: str) -> dict[str, Any]:
        """Remove a project and everything that belongs to it in one transaction."""
        project = await self.get(identifier)
        async with self.store.session() as session:
            message_ids = select(Message.id).where(Message.project_id == project.id)
            await session.execute(delete(MessageRecipient).where(MessageRecipient.message_id.in_(message_ids)))
            deleted_messages = await session.execute(delete(Message).where(Message.project_id == project.id))
            await session.execute(delete(FileReservation).where(FileReservation.project_id == project.id))
            deleted_agents = await session.execute(delete(Agent).where(Agent.project_id == project.id))
            await session.execute(delete(Project).where(Project.id == project.id))
            await session.commit()
        logger.info(
            "project.deleted",
            extra={
                "slug": project.slug,
                "messages": deleted_messages.rowcount or 0,
                "agents": deleted_agents.rowcount or 0,
            },
        )
        return {"deleted": True, "slug": project.slug}

