"""Full-text message search with a substring fallback."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import or_, select, text
from sqlalchemy.exc import OperationalError

from .db import Store, _is_lock_error, store_operation
from .errors import SEARCH_FAILED, invalid_input
from .messages import DEFAULT_FETCH_LIMIT, message_to_dict, recipients_by_message
from .models import Agent, Message, Project
from .projects import ProjectRegistry

logger = logging.getLogger(__name__)

_QUOTE_CHARS = "\"'"


def normalize_query(query: str) -> str:
    """Strip quote characters and surrounding whitespace."""
    cleaned = (query or "").translate({ord(ch): None for ch in _QUOTE_CHARS})
    return cleaned.strip()


def _like_escape(term: str) -> str:
    """Escape LIKE wildcards for literal substring matching."""
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class SearchEngine:
    def __init__(self, store: Store, projects: ProjectRegistry) -> None:
        self.store = store
        self.projects = projects

    @store_operation(SEARCH_FAILED)
    async def search(self, project: Project | str, query: str, *, limit: int = DEFAULT_FETCH_LIMIT) -> list[dict[str, Any]]:
        """Rank messages by bm25 over subject and body; an empty query matches nothing."""
        if limit < 1:
            raise invalid_input("limit must be at least 1.", argument="limit", value=limit)
        proj = project if isinstance(project, Project) else await self.projects.get(project)
        term = normalize_query(query)
        if not term:
            return []
        try:
            ids = await self._ranked_ids(proj, term, limit)
        except OperationalError as exc:
            if _is_lock_error(str(exc)):
                raise
            logger.warning(
                "search.fts_fallback",
                extra={"project": proj.slug, "query": term, "error": str(exc)[:200]},
            )
            ids = await self._substring_ids(proj, term, limit)
        return await self._load(ids)

    async def _ranked_ids(self, proj: Project, term: str, limit: int) -> list[int]:
        async with self.store.session() as session:
            result = await session.execute(
                text(
                    """
                    SELECT m.id
                    FROM fts_messages
                    JOIN messages m ON m.id = fts_messages.rowid
                    WHERE m.project_id = :project_id AND fts_messages MATCH :query
                    ORDER BY bm25(fts_messages) ASC, m.id DESC
                    LIMIT :limit
                    """
                ),
                {"project_id": proj.id, "query": term, "limit": limit},
            )
            return [int(row[0]) for row in result.all()]

    async def _substring_ids(self, proj: Project, term: str, limit: int) -> list[int]:
        pattern = f"%{_like_escape(term)}%"
        async with self.store.session() as session:
            result = await session.execute(
                select(Message.id)
                .where(
                    Message.project_id == proj.id,
                    or_(
                        Message.subject.ilike(pattern, escape="\\"),
                        Message.body_md.ilike(pattern, escape="\\"),
                    ),
                )
                .order_by(Message.created_ts.desc(), Message.id.desc())
                .limit(limit)
            )
            return [int(row[0]) for row in result.all()]

    async def _load(self, ids: list[int]) -> list[dict[str, Any]]:
        if not ids:
            return []
        async with self.store.session() as session:
            rows = (
                await session.execute(
                    select(Message, Agent.name)
                    .join(Agent, Agent.id == Message.sender_id)
                    .where(Message.id.in_(ids))
                )
            ).all()
            recipients = await recipients_by_message(session, ids)
        by_id = {message.id: (message, sender_name) for message, sender_name in rows}
        return [
            message_to_dict(by_id[mid][0], by_id[mid][1], recipients[mid])
            for mid in ids
            if mid in by_id
        ]
