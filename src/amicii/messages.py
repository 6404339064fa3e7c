"""Message delivery with per-recipient read and acknowledgement tracking."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Optional, Sequence, Union

from sqlalchemy import func, literal_column, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .agents import AgentDirectory, agent_lookup_keys, agent_not_found
from .db import Store, store_operation
from .errors import (
    MESSAGE_FETCH_FAILED,
    MESSAGE_NOT_FOUND,
    MESSAGE_SEND_FAILED,
    MESSAGE_UPDATE_FAILED,
    NO_RECIPIENTS,
    NOT_RECIPIENT,
    CoordinationError,
    invalid_input,
)
from .models import Agent, Message, MessageRecipient, Project
from .projects import ProjectRegistry
from .utils import iso_utc, parse_iso_naive

logger = logging.getLogger(__name__)

BROADCAST_ALIAS = "all"
IMPORTANCE_LEVELS: tuple[str, ...] = ("low", "normal", "high", "urgent")
URGENT_LEVELS: tuple[str, ...] = ("high", "urgent")
DEFAULT_FETCH_LIMIT = 20


class AckPolicy(str, Enum):
    """What a repeated acknowledge does to ``ack_ts``."""

    OVERWRITE = "overwrite"
    FIRST = "first"


@dataclass(frozen=True, slots=True)
class Direct:
    """Deliver to exactly these agent names."""

    names: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class Broadcast:
    """Deliver to every other agent in the project, plus any names in ``also``."""

    also: tuple[str, ...] = ()


Recipients = Union[Direct, Broadcast]


def recipients_from_names(names: Iterable[str]) -> Recipients:
    """Build the recipient variant from a plain list, honouring the ``all`` alias."""
    cleaned = [name.strip() for name in names if name and name.strip()]
    explicit = tuple(name for name in cleaned if name.lower() != BROADCAST_ALIAS)
    if len(explicit) != len(cleaned):
        return Broadcast(also=explicit)
    return Direct(names=explicit)


def _coerce_recipients(value: Recipients | Sequence[str] | str) -> Recipients:
    if isinstance(value, (Direct, Broadcast)):
        return value
    if isinstance(value, str):
        return recipients_from_names([value])
    return recipients_from_names(value)


def message_to_dict(message: Message, sender_name: str, recipients: dict[str, list[str]]) -> dict[str, Any]:
    return {
        "id": message.id,
        "project_id": message.project_id,
        "thread_id": message.thread_id,
        "subject": message.subject,
        "body_md": message.body_md,
        "importance": message.importance,
        "ack_required": message.ack_required,
        "created_ts": iso_utc(message.created_ts),
        "from": sender_name,
        "to": list(recipients.get("to", [])),
        "cc": list(recipients.get("cc", [])),
    }


async def recipients_by_message(session: AsyncSession, message_ids: Sequence[int]) -> dict[int, dict[str, list[str]]]:
    """Derive to/cc display lists from recipient rows, in delivery order."""
    grouped: dict[int, dict[str, list[str]]] = defaultdict(lambda: {"to": [], "cc": [], "bcc": []})
    if not message_ids:
        return grouped
    rows = await session.execute(
        select(MessageRecipient.message_id, MessageRecipient.kind, Agent.name)
        .join(Agent, Agent.id == MessageRecipient.agent_id)
        .where(MessageRecipient.message_id.in_(list(message_ids)))
        .order_by(MessageRecipient.message_id, literal_column("message_recipients.rowid"))
    )
    for message_id, kind, name in rows.all():
        grouped[message_id].setdefault(kind, []).append(name)
    return grouped


class MessageEngine:
    def __init__(
        self,
        store: Store,
        projects: ProjectRegistry,
        agents: AgentDirectory,
        *,
        ack_policy: AckPolicy | str = AckPolicy.OVERWRITE,
    ) -> None:
        self.store = store
        self.projects = projects
        self.agents = agents
        self.ack_policy = AckPolicy(ack_policy)

    async def _project(self, project: Project | str) -> Project:
        return project if isinstance(project, Project) else await self.projects.get(project)

    @store_operation(MESSAGE_SEND_FAILED)
    async def send(
        self,
        project: Project | str,
        sender: str,
        to: Recipients | Sequence[str] | str,
        *,
        subject: str,
        body_md: str = "",
        cc: Sequence[str] = (),
        thread_id: Optional[str] = None,
        importance: str = "normal",
        ack_required: bool = False,
    ) -> dict[str, Any]:
        """Deliver one message to every resolved recipient, atomically.

        An unknown recipient name aborts the whole send; nothing is written.
        A name listed more than once receives a single row, keeping the kind
        of its first occurrence (``to`` before ``cc``).
        """
        proj = await self._project(project)
        author = await self.agents.get(proj, sender)
        subject = (subject or "").strip()
        if not subject:
            raise invalid_input("subject must not be empty.", argument="subject")
        importance = (importance or "normal").strip().lower()
        if importance not in IMPORTANCE_LEVELS:
            raise invalid_input(
                f"importance must be one of {', '.join(IMPORTANCE_LEVELS)}.",
                argument="importance",
                value=importance,
            )
        target = _coerce_recipients(to)

        async with self.store.session() as session:
            roster = list(
                (await session.execute(select(Agent).where(Agent.project_id == proj.id).order_by(Agent.id))).scalars().all()
            )
            by_key = {agent.name.lower(): agent for agent in roster}

            def resolve(name: str) -> Agent:
                for key in agent_lookup_keys(name):
                    if key in by_key:
                        return by_key[key]
                raise agent_not_found(name, proj, [agent.name for agent in roster])

            planned: list[tuple[Agent, str]] = []
            if isinstance(target, Broadcast):
                planned.extend((agent, "to") for agent in roster if agent.id != author.id)
                explicit_to: tuple[str, ...] = target.also
            else:
                explicit_to = target.names
            planned.extend((resolve(name), "to") for name in explicit_to)
            planned.extend((resolve(name), "cc") for name in cc if name and name.strip())

            seen: set[int] = set()
            deliveries: list[tuple[Agent, str]] = []
            for agent, kind in planned:
                if agent.id in seen:
                    continue
                seen.add(agent.id)
                deliveries.append((agent, kind))
            if not deliveries:
                raise CoordinationError(
                    NO_RECIPIENTS,
                    "No recipients specified or found.",
                    recoverable=True,
                    data={"project": proj.slug, "broadcast": isinstance(target, Broadcast)},
                )

            message = Message(
                project_id=proj.id,
                sender_id=author.id,
                thread_id=thread_id or None,
                subject=subject,
                body_md=body_md or "",
                importance=importance,
                ack_required=bool(ack_required),
                created_ts=self.store.now(),
            )
            session.add(message)
            await session.flush()
            for agent, kind in deliveries:
                session.add(MessageRecipient(message_id=message.id, agent_id=agent.id, kind=kind))
            await session.commit()
            await session.refresh(message)

        recipients = {
            "to": [agent.name for agent, kind in deliveries if kind == "to"],
            "cc": [agent.name for agent, kind in deliveries if kind == "cc"],
        }
        logger.info(
            "message.sent",
            extra={
                "project": proj.slug,
                "message_id": message.id,
                "sender": author.name,
                "recipients": len(deliveries),
                "broadcast": isinstance(target, Broadcast),
            },
        )
        return message_to_dict(message, author.name, recipients)

    @store_operation(MESSAGE_FETCH_FAILED)
    async def fetch_inbox(
        self,
        project: Project | str,
        agent: str,
        *,
        limit: int = DEFAULT_FETCH_LIMIT,
        urgent_only: bool = False,
        unread_only: bool = False,
        since: Optional[str | datetime] = None,
    ) -> list[dict[str, Any]]:
        if limit < 1:
            raise invalid_input("limit must be at least 1.", argument="limit", value=limit)
        since_ts = self._parse_since(since)
        proj = await self._project(project)
        reader = await self.agents.get(proj, agent)
        stmt = (
            select(Message, MessageRecipient.kind, MessageRecipient.read_ts, MessageRecipient.ack_ts, Agent.name)
            .join(MessageRecipient, MessageRecipient.message_id == Message.id)
            .join(Agent, Agent.id == Message.sender_id)
            .where(MessageRecipient.agent_id == reader.id, Message.project_id == proj.id)
        )
        if urgent_only:
            stmt = stmt.where(Message.importance.in_(URGENT_LEVELS))
        if unread_only:
            stmt = stmt.where(MessageRecipient.read_ts.is_(None))
        if since_ts is not None:
            stmt = stmt.where(Message.created_ts > since_ts)
        stmt = stmt.order_by(Message.created_ts.desc(), Message.id.desc()).limit(limit)
        async with self.store.session() as session:
            rows = (await session.execute(stmt)).all()
            recipients = await recipients_by_message(session, [row[0].id for row in rows])
        items: list[dict[str, Any]] = []
        for message, kind, read_ts, ack_ts, sender_name in rows:
            payload = message_to_dict(message, sender_name, recipients[message.id])
            payload.update(kind=kind, read_ts=iso_utc(read_ts), ack_ts=iso_utc(ack_ts))
            items.append(payload)
        return items

    @staticmethod
    def _parse_since(since: Optional[str | datetime]) -> Optional[datetime]:
        if since is None or since == "":
            return None
        if isinstance(since, datetime):
            return parse_iso_naive(since.isoformat())
        try:
            return parse_iso_naive(since)
        except ValueError:
            raise invalid_input(
                f"since must be an ISO-8601 timestamp, got {since!r}.", argument="since", value=since
            ) from None

    @store_operation(MESSAGE_FETCH_FAILED)
    async def fetch_outbox(
        self, project: Project | str, agent: str, *, limit: int = DEFAULT_FETCH_LIMIT
    ) -> list[dict[str, Any]]:
        if limit < 1:
            raise invalid_input("limit must be at least 1.", argument="limit", value=limit)
        proj = await self._project(project)
        author = await self.agents.get(proj, agent)
        async with self.store.session() as session:
            result = await session.execute(
                select(Message)
                .where(Message.sender_id == author.id, Message.project_id == proj.id)
                .order_by(Message.created_ts.desc(), Message.id.desc())
                .limit(limit)
            )
            messages = list(result.scalars().all())
            recipients = await recipients_by_message(session, [m.id for m in messages if m.id is not None])
        return [message_to_dict(m, author.name, recipients[m.id]) for m in messages]

    @store_operation(MESSAGE_FETCH_FAILED)
    async def get(self, project: Project | str, message_id: int) -> dict[str, Any]:
        proj = await self._project(project)
        async with self.store.session() as session:
            row = (
                await session.execute(
                    select(Message, Agent.name)
                    .join(Agent, Agent.id == Message.sender_id)
                    .where(Message.id == message_id, Message.project_id == proj.id)
                )
            ).first()
            if row is None:
                raise self._message_not_found(message_id, proj)
            message, sender_name = row
            recipients = await recipients_by_message(session, [message_id])
        return message_to_dict(message, sender_name, recipients[message_id])

    @staticmethod
    def _message_not_found(message_id: int, project: Project) -> CoordinationError:
        return CoordinationError(
            MESSAGE_NOT_FOUND,
            f"Message {message_id} not found in project '{project.slug}'.",
            recoverable=True,
            data={"message_id": message_id, "project": project.slug},
        )

    async def _recipient_row(
        self, session: AsyncSession, proj: Project, reader: Agent, message_id: int
    ) -> MessageRecipient:
        exists = (
            await session.execute(select(Message.id).where(Message.id == message_id, Message.project_id == proj.id))
        ).first()
        if exists is None:
            raise self._message_not_found(message_id, proj)
        row = await session.get(MessageRecipient, (message_id, reader.id))
        if row is None:
            raise CoordinationError(
                NOT_RECIPIENT,
                f"Agent '{reader.name}' is not a recipient of message {message_id}.",
                recoverable=True,
                data={"message_id": message_id, "agent": reader.name},
            )
        return row

    @store_operation(MESSAGE_UPDATE_FAILED)
    async def mark_read(self, project: Project | str, agent: str, message_id: int) -> dict[str, Any]:
        """Stamp ``read_ts`` once; later calls return the first stamp unchanged."""
        proj = await self._project(project)
        reader = await self.agents.get(proj, agent)
        async with self.store.session() as session:
            await self._recipient_row(session, proj, reader, message_id)
            await session.execute(
                update(MessageRecipient)
                .where(
                    MessageRecipient.message_id == message_id,
                    MessageRecipient.agent_id == reader.id,
                    MessageRecipient.read_ts.is_(None),
                )
                .values(read_ts=self.store.now())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            read_ts = (
                await session.execute(
                    select(MessageRecipient.read_ts).where(
                        MessageRecipient.message_id == message_id, MessageRecipient.agent_id == reader.id
                    )
                )
            ).scalar_one()
        return {"message_id": message_id, "read": True, "read_at": iso_utc(read_ts)}

    @store_operation(MESSAGE_UPDATE_FAILED)
    async def acknowledge(self, project: Project | str, agent: str, message_id: int) -> dict[str, Any]:
        """Acknowledge a message; an unread message is marked read at the same instant.

        Under ``AckPolicy.OVERWRITE`` every call stamps a fresh ``ack_ts``;
        under ``AckPolicy.FIRST`` the first stamp is kept.
        """
        proj = await self._project(project)
        reader = await self.agents.get(proj, agent)
        now = self.store.now()
        if self.ack_policy is AckPolicy.FIRST:
            ack_value: Any = func.coalesce(MessageRecipient.ack_ts, now)
        else:
            ack_value = now
        async with self.store.session() as session:
            await self._recipient_row(session, proj, reader, message_id)
            await session.execute(
                update(MessageRecipient)
                .where(MessageRecipient.message_id == message_id, MessageRecipient.agent_id == reader.id)
                .values(ack_ts=ack_value, read_ts=func.coalesce(MessageRecipient.read_ts, now))
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            ack_ts, read_ts = (
                await session.execute(
                    select(MessageRecipient.ack_ts, MessageRecipient.read_ts).where(
                        MessageRecipient.message_id == message_id, MessageRecipient.agent_id == reader.id
                    )
                )
            ).one()
        logger.info(
            "message.acknowledged",
            extra={"project": proj.slug, "message_id": message_id, "agent": reader.name},
        )
        return {
            "message_id": message_id,
            "acknowledged": True,
            "acknowledged_at": iso_utc(ack_ts),
            "read_at": iso_utc(read_ts),
        }
