"""Agent directory: per-project identities with memorable unique names."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from .db import Store, store_operation
from .errors import AGENT_CREATE_FAILED, AGENT_LOOKUP_FAILED, AGENT_NOT_FOUND, STORE_FAILED, CoordinationError, invalid_input
from .models import Agent, Project
from .projects import ProjectRegistry
from .utils import canonical_agent_name, generate_unique_agent_name, iso_utc, sanitize_agent_name, suggest_matches

logger = logging.getLogger(__name__)


def agent_to_dict(agent: Agent, project: Optional[Project] = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": agent.id,
        "name": agent.name,
        "program": agent.program,
        "model": agent.model,
        "task_description": agent.task_description,
        "inception_ts": iso_utc(agent.inception_ts),
        "last_active_ts": iso_utc(agent.last_active_ts),
        "project_id": agent.project_id,
    }
    if project is not None:
        payload["project"] = project.slug
    return payload


def agent_not_found(wanted: str, project: Project, known_names: Iterable[str]) -> CoordinationError:
    suggestions = suggest_matches(wanted, known_names)
    message = f"Agent '{wanted}' not found in project '{project.slug}'."
    if suggestions:
        message += f" Did you mean: {', '.join(suggestions)}?"
    return CoordinationError(
        AGENT_NOT_FOUND,
        message,
        recoverable=True,
        data={"agent": wanted, "project": project.slug, "suggestions": suggestions},
    )


def agent_lookup_keys(name: str) -> set[str]:
    """Lowercased keys a name may be stored under: "Amber Fox" and "amberfox" both address AmberFox."""
    keys = {name.strip().lower()}
    cleaned = sanitize_agent_name(name)
    if cleaned:
        keys.add(cleaned.lower())
    return keys


class AgentDirectory:
    def __init__(self, store: Store, projects: ProjectRegistry) -> None:
        self.store = store
        self.projects = projects

    def _resolve_name(self, name_hint: Optional[str], existing: list[str]) -> str:
        canonical = canonical_agent_name(name_hint)
        if canonical is not None:
            return canonical
        seed = sanitize_agent_name(name_hint) if name_hint else None
        return generate_unique_agent_name(existing, seed=seed)

    @store_operation(AGENT_CREATE_FAILED)
    async def register(
        self,
        project: Project | str,
        *,
        program: str,
        model: str,
        name_hint: Optional[str] = None,
        task_description: Optional[str] = None,
    ) -> Agent:
        """Create or refresh an agent identity.

        A valid adjective+noun hint is used as-is even when that name is
        already registered, in which case the existing row is updated.
        """
        program = (program or "").strip()
        model = (model or "").strip()
        if not program:
            raise invalid_input("program must not be empty.", argument="program")
        if not model:
            raise invalid_input("model must not be empty.", argument="model")
        proj = project if isinstance(project, Project) else await self.projects.get(project)
        task = task_description or ""

        async with self.store.session() as session:
            existing_names = list(
                (await session.execute(select(Agent.name).where(Agent.project_id == proj.id))).scalars().all()
            )
            name = self._resolve_name(name_hint, existing_names)
            now = self.store.now()
            agent = await self._find(session, proj.id, name)
            if agent is not None:
                agent.program = program
                agent.model = model
                agent.task_description = task
                agent.last_active_ts = now
                await session.commit()
                await session.refresh(agent)
                logger.info("agent.updated", extra={"project": proj.slug, "agent": agent.name})
                return agent

            agent = Agent(
                project_id=proj.id,
                name=name,
                program=program,
                model=model,
                task_description=task,
                inception_ts=now,
                last_active_ts=now,
            )
            session.add(agent)
            try:
                await session.commit()
            except IntegrityError:
                # Another registration inserted the same name first: update theirs instead.
                await session.rollback()
                agent = await self._find(session, proj.id, name)
                if agent is None:
                    raise
                agent.program = program
                agent.model = model
                agent.task_description = task
                agent.last_active_ts = now
                await session.commit()
            await session.refresh(agent)
        logger.info("agent.registered", extra={"project": proj.slug, "agent": agent.name})
        return agent

    @staticmethod
    async def _find(session: Any, project_id: Optional[int], name: str) -> Optional[Agent]:
        result = await session.execute(
            select(Agent)
            .where(Agent.project_id == project_id, func.lower(Agent.name).in_(sorted(agent_lookup_keys(name))))
            .order_by(Agent.id.asc())
        )
        return result.scalars().first()

    @store_operation(AGENT_LOOKUP_FAILED)
    async def get(self, project: Project | str, name: str) -> Agent:
        """Resolve an agent by name (case-insensitive) and mark it active."""
        proj = project if isinstance(project, Project) else await self.projects.get(project)
        wanted = (name or "").strip()
        if not wanted:
            raise invalid_input("agent name must not be empty.", argument="agent")
        async with self.store.session() as session:
            agent = await self._find(session, proj.id, wanted)
            if agent is not None:
                agent.last_active_ts = self.store.now()
                await session.commit()
                return agent
            names = (await session.execute(select(Agent.name).where(Agent.project_id == proj.id))).scalars().all()
        raise agent_not_found(wanted, proj, names)

    @store_operation(STORE_FAILED)
    async def list(self, project: Project | str) -> list[Agent]:
        proj = project if isinstance(project, Project) else await self.projects.get(project)
        async with self.store.session() as session:
            result = await session.execute(
                select(Agent)
                .where(Agent.project_id == proj.id)
                .order_by(Agent.last_active_ts.desc(), Agent.id.desc())
            )
            return list(result.scalars().all())
