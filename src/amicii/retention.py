"""Retention sweeper: stamps expired reservations and purges old data."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

import structlog
from sqlalchemy import and_, delete, or_, select, update

from .db import Store, store_operation
from .errors import RETENTION_FAILED, CoordinationError, invalid_input
from .models import FileReservation, Message, MessageRecipient

logger = logging.getLogger(__name__)


class RetentionSweeper:
    def __init__(self, store: Store) -> None:
        self.store = store
        self._task: asyncio.Task[None] | None = None

    @store_operation(RETENTION_FAILED)
    async def sweep(self, retention_days: int) -> dict[str, int]:
        """Run one retention pass in a single transaction.

        1. Unreleased reservations past ``expires_ts`` get ``released_ts = expires_ts``.
        2. Messages created before the horizon are deleted with their recipient
           rows; the delete trigger drops them from the FTS index.
        3. Reservations that are released or expired and were created before
           the horizon are deleted.
        """
        if retention_days < 0:
            raise invalid_input("retention_days must not be negative.", argument="retention_days", value=retention_days)
        await self.store.ensure_schema()
        now = self.store.now()
        cutoff = now - timedelta(days=retention_days)
        async with self.store.session() as session:
            expired = await session.execute(
                update(FileReservation)
                .where(FileReservation.released_ts.is_(None), FileReservation.expires_ts <= now)
                .values(released_ts=FileReservation.expires_ts)
                .execution_options(synchronize_session=False)
            )
            old_messages = select(Message.id).where(Message.created_ts < cutoff)
            await session.execute(
                delete(MessageRecipient)
                .where(MessageRecipient.message_id.in_(old_messages))
                .execution_options(synchronize_session=False)
            )
            messages = await session.execute(
                delete(Message).where(Message.created_ts < cutoff).execution_options(synchronize_session=False)
            )
            reservations = await session.execute(
                delete(FileReservation)
                .where(
                    FileReservation.created_ts < cutoff,
                    or_(
                        FileReservation.released_ts.is_not(None),
                        and_(FileReservation.released_ts.is_(None), FileReservation.expires_ts <= now),
                    ),
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        stats = {
            "reservations_expired": int(expired.rowcount or 0),
            "messages_deleted": int(messages.rowcount or 0),
            "reservations_deleted": int(reservations.rowcount or 0),
        }
        logger.info("retention.sweep", extra={"retention_days": retention_days, **stats})
        return stats

    async def run_periodic(self, retention_days: int, interval_seconds: float) -> None:
        """Sweep forever, ``interval_seconds`` apart; failures are logged and the loop continues."""
        log = structlog.get_logger("maintenance")
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                stats = await self.sweep(retention_days)
            except CoordinationError as exc:
                log.warning("retention_sweep_failed", error_type=exc.kind, error=str(exc))
            else:
                log.info("retention_sweep", retention_days=retention_days, **stats)

    def start(self, retention_days: int, interval_seconds: float) -> asyncio.Task[None]:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_periodic(retention_days, interval_seconds))
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
