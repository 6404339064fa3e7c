"""Advisory file reservations: create, release, list, and overlap detection.

Reservations never block anything. A create call always succeeds and reports
the other agents' active exclusive reservations whose patterns overlap, so
the caller can decide whether to proceed.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from functools import lru_cache
from typing import Any, Optional

from pathspec import PathSpec
from pathspec.patterns.gitignore import GitIgnorePatternError
from sqlalchemy import and_, select, update

from .agents import AgentDirectory
from .db import Store, store_operation
from .errors import (
    RESERVATION_CREATE_FAILED,
    RESERVATION_LIST_FAILED,
    RESERVATION_RELEASE_FAILED,
    invalid_input,
)
from .models import Agent, FileReservation, Project
from .projects import ProjectRegistry
from .utils import iso_utc

logger = logging.getLogger(__name__)


def _normalize(pattern: str) -> str:
    normalized = pattern.replace("\\", "/").strip()
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized.lstrip("/")


def _strip_wildcards(pattern: str) -> str:
    return pattern.replace("**/", "").replace("*", "")


def _parent(path: str) -> str:
    head, _, _ = path.rpartition("/")
    return head


@lru_cache(maxsize=1024)
def _compile_pathspec(pattern: str) -> PathSpec:
    return PathSpec.from_lines("gitignore", [pattern])


def _pathspec_cross_match(a: str, b: str) -> bool:
    if not a or not b:
        return False
    try:
        return _compile_pathspec(a).match_file(b) or _compile_pathspec(b).match_file(a)
    except GitIgnorePatternError:
        # Not a valid gitignore pattern; treat as overlapping so no conflict is missed.
        return True


def patterns_overlap(a: str, b: str) -> bool:
    """Return True when two reservation patterns may cover a common file.

    Textual heuristic: wildcards are stripped, then the patterns overlap when
    either is a prefix of the other or their parent directories are
    prefix-related. Gitignore-style cross-matching only adds positives on top.
    False positives are acceptable; a missed overlap is not.
    """
    if a == b:
        return True
    a_norm = _normalize(a)
    b_norm = _normalize(b)
    a_bare = _strip_wildcards(a_norm)
    b_bare = _strip_wildcards(b_norm)
    if a_bare.startswith(b_bare) or b_bare.startswith(a_bare):
        return True
    a_dir = _parent(a_bare)
    b_dir = _parent(b_bare)
    if a_dir and b_dir and (a_dir.startswith(b_dir) or b_dir.startswith(a_dir)):
        return True
    return _pathspec_cross_match(a_norm, b_norm)


def reservation_to_dict(reservation: FileReservation, agent_name: Optional[str] = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": reservation.id,
        "project_id": reservation.project_id,
        "agent_id": reservation.agent_id,
        "path_pattern": reservation.path_pattern,
        "exclusive": reservation.exclusive,
        "reason": reservation.reason,
        "created_ts": iso_utc(reservation.created_ts),
        "expires_ts": iso_utc(reservation.expires_ts),
        "released_ts": iso_utc(reservation.released_ts),
    }
    if agent_name is not None:
        payload["agent_name"] = agent_name
    return payload


def _active_clause(now: Any) -> Any:
    return and_(FileReservation.released_ts.is_(None), FileReservation.expires_ts > now)


class ReservationEngine:
    def __init__(
        self,
        store: Store,
        projects: ProjectRegistry,
        agents: AgentDirectory,
        *,
        default_ttl_seconds: int = 3600,
    ) -> None:
        self.store = store
        self.projects = projects
        self.agents = agents
        self.default_ttl_seconds = default_ttl_seconds

    async def _resolve(self, project: Project | str, agent: str) -> tuple[Project, Agent]:
        proj = project if isinstance(project, Project) else await self.projects.get(project)
        holder = await self.agents.get(proj, agent)
        return proj, holder

    @store_operation(RESERVATION_CREATE_FAILED)
    async def create(
        self,
        project: Project | str,
        agent: str,
        path_pattern: str,
        *,
        ttl_seconds: Optional[int] = None,
        exclusive: bool = True,
        reason: Optional[str] = None,
    ) -> dict[str, Any]:
        proj, holder = await self._resolve(project, agent)
        pattern = (path_pattern or "").strip()
        if not pattern:
            raise invalid_input("path_pattern must not be empty.", argument="path_pattern")
        ttl = self.default_ttl_seconds if ttl_seconds is None else int(ttl_seconds)
        if ttl <= 0:
            raise invalid_input("ttl_seconds must be positive.", argument="ttl_seconds", value=ttl)

        now = self.store.now()
        async with self.store.session() as session:
            rows = await session.execute(
                select(FileReservation, Agent.name)
                .join(Agent, Agent.id == FileReservation.agent_id)
                .where(
                    FileReservation.project_id == proj.id,
                    FileReservation.agent_id != holder.id,
                    FileReservation.exclusive.is_(True),
                    _active_clause(now),
                )
                .order_by(FileReservation.created_ts.asc(), FileReservation.id.asc())
            )
            conflicts = [
                {
                    "id": existing.id,
                    "agent_name": holder_name,
                    "path_pattern": existing.path_pattern,
                    "exclusive": existing.exclusive,
                    "expires_ts": iso_utc(existing.expires_ts),
                    "reason": existing.reason,
                }
                for existing, holder_name in rows.all()
                if patterns_overlap(pattern, existing.path_pattern)
            ]

            reservation = FileReservation(
                project_id=proj.id,
                agent_id=holder.id,
                path_pattern=pattern,
                exclusive=bool(exclusive),
                reason=reason or "",
                created_ts=now,
                expires_ts=now + timedelta(seconds=ttl),
            )
            session.add(reservation)
            await session.commit()
            await session.refresh(reservation)

        if conflicts:
            logger.info(
                "file_reservation.conflicts",
                extra={
                    "project": proj.slug,
                    "agent": holder.name,
                    "path_pattern": pattern,
                    "conflicts": len(conflicts),
                },
            )
        return {
            "granted": [reservation_to_dict(reservation, holder.name)],
            "conflicts": conflicts,
        }

    @store_operation(RESERVATION_RELEASE_FAILED)
    async def release(
        self,
        project: Project | str,
        agent: str,
        *,
        pattern: Optional[str] = None,
        release_all: bool = False,
    ) -> dict[str, Any]:
        """Release the agent's active reservations, by exact pattern or all of them."""
        has_pattern = bool(pattern and pattern.strip())
        if has_pattern == bool(release_all):
            raise invalid_input("Specify exactly one of pattern or all=true.", argument="pattern")
        proj, holder = await self._resolve(project, agent)
        now = self.store.now()
        stmt = update(FileReservation).where(
            FileReservation.project_id == proj.id,
            FileReservation.agent_id == holder.id,
            _active_clause(now),
        )
        if has_pattern:
            stmt = stmt.where(FileReservation.path_pattern == (pattern or "").strip())
        async with self.store.session() as session:
            result = await session.execute(stmt.values(released_ts=now))
            await session.commit()
        released = int(result.rowcount or 0)
        logger.info(
            "file_reservation.released",
            extra={"project": proj.slug, "agent": holder.name, "released": released},
        )
        return {"released": released, "released_at": iso_utc(now)}

    @store_operation(RESERVATION_LIST_FAILED)
    async def list(self, project: Project | str, *, active: bool = False) -> list[dict[str, Any]]:
        proj = project if isinstance(project, Project) else await self.projects.get(project)
        stmt = (
            select(FileReservation, Agent.name)
            .join(Agent, Agent.id == FileReservation.agent_id)
            .where(FileReservation.project_id == proj.id)
        )
        if active:
            stmt = stmt.where(_active_clause(self.store.now()))
        stmt = stmt.order_by(FileReservation.created_ts.desc(), FileReservation.id.desc())
        async with self.store.session() as session:
            rows = (await session.execute(stmt)).all()
        return [reservation_to_dict(reservation, name) for reservation, name in rows]

    @store_operation(RESERVATION_LIST_FAILED)
    async def list_for_agent(self, project: Project | str, agent: str) -> list[dict[str, Any]]:
        """The agent's own active reservations, newest first."""
        proj, holder = await self._resolve(project, agent)
        async with self.store.session() as session:
            result = await session.execute(
                select(FileReservation)
                .where(
                    FileReservation.project_id == proj.id,
                    FileReservation.agent_id == holder.id,
                    _active_clause(self.store.now()),
                )
                .order_by(FileReservation.created_ts.desc(), FileReservation.id.desc())
            )
            return [reservation_to_dict(reservation, holder.name) for reservation in result.scalars().all()]
