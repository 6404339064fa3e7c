"""Retention sweeps: expiry stamping, horizon deletes and the periodic task."""

from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import func, select

from amicii.errors import INVALID_INPUT, RETENTION_FAILED, CoordinationError
from amicii.models import MessageRecipient


@pytest.mark.asyncio
async def test_sweep_horizon_boundaries(coordinator, project, make_agent, clock):
    await make_agent(project, "AmberFox")
    await make_agent(project, "JadeWolf")
    old = await coordinator.messages.send(project, "AmberFox", ["JadeWolf"], subject="old news")
    clock.advance(days=2)
    recent = await coordinator.messages.send(project, "AmberFox", ["JadeWolf"], subject="recent news")
    clock.advance(days=29)

    # old is now 31 days old, recent is 29 days old
    stats = await coordinator.retention.sweep(30)

    assert stats["messages_deleted"] == 1
    inbox = await coordinator.messages.fetch_inbox(project, "JadeWolf")
    assert [m["id"] for m in inbox] == [recent["id"]]
    assert old["id"] not in {m["id"] for m in inbox}


@pytest.mark.asyncio
async def test_sweep_removes_recipients_and_search_entries(coordinator, store, project, make_agent, clock):
    await make_agent(project, "AmberFox")
    await make_agent(project, "JadeWolf")
    sent = await coordinator.messages.send(project, "AmberFox", ["JadeWolf"], subject="ephemeral", body_md="zebra")
    assert await coordinator.search.search(project, "zebra")
    clock.advance(days=10)

    await coordinator.retention.sweep(5)

    assert await coordinator.search.search(project, "zebra") == []
    async with store.session() as session:
        remaining = (
            await session.execute(
                select(func.count()).select_from(MessageRecipient).where(MessageRecipient.message_id == sent["id"])
            )
        ).scalar_one()
    assert remaining == 0


@pytest.mark.asyncio
async def test_sweep_stamps_expired_reservations(coordinator, project, make_agent, clock):
    await make_agent(project, "AmberFox")
    created = await coordinator.reservations.create(project, "AmberFox", "src/**", ttl_seconds=60)
    clock.advance(seconds=120)

    stats = await coordinator.retention.sweep(30)

    assert stats["reservations_expired"] == 1
    assert stats["reservations_deleted"] == 0
    (row,) = await coordinator.reservations.list(project)
    assert row["id"] == created["granted"][0]["id"]
    assert row["released_ts"] == row["expires_ts"] == "2025-01-15T12:01:00+00:00"


@pytest.mark.asyncio
async def test_sweep_deletes_only_old_inactive_reservations(coordinator, project, make_agent, clock):
    await make_agent(project, "AmberFox")
    await coordinator.reservations.create(project, "AmberFox", "old/released/**")
    await coordinator.reservations.release(project, "AmberFox", pattern="old/released/**")
    await coordinator.reservations.create(project, "AmberFox", "old/expired/**", ttl_seconds=60)
    await coordinator.reservations.create(project, "AmberFox", "old/long-lived/**", ttl_seconds=90 * 86400)
    clock.advance(days=40)
    await coordinator.reservations.create(project, "AmberFox", "new/released/**")
    await coordinator.reservations.release(project, "AmberFox", pattern="new/released/**")

    stats = await coordinator.retention.sweep(30)

    assert stats["reservations_deleted"] == 2
    remaining = sorted(r["path_pattern"] for r in await coordinator.reservations.list(project))
    assert remaining == ["new/released/**", "old/long-lived/**"]


@pytest.mark.asyncio
async def test_sweep_on_empty_store(coordinator):
    stats = await coordinator.retention.sweep(30)
    assert stats == {"reservations_expired": 0, "messages_deleted": 0, "reservations_deleted": 0}


@pytest.mark.asyncio
async def test_sweep_rejects_negative_horizon(coordinator):
    with pytest.raises(CoordinationError) as excinfo:
        await coordinator.retention.sweep(-1)
    assert excinfo.value.kind == INVALID_INPUT


@pytest.mark.asyncio
async def test_zero_day_horizon_purges_everything_older_than_now(coordinator, project, make_agent, clock):
    await make_agent(project, "AmberFox")
    await make_agent(project, "JadeWolf")
    await coordinator.messages.send(project, "AmberFox", ["JadeWolf"], subject="a")
    clock.advance(seconds=1)
    stats = await coordinator.retention.sweep(0)
    assert stats["messages_deleted"] == 1


@pytest.mark.asyncio
async def test_periodic_sweeper_runs_and_stops(coordinator):
    calls: list[int] = []

    async def fake_sweep(days):
        calls.append(days)
        return {"reservations_expired": 0, "messages_deleted": 0, "reservations_deleted": 0}

    coordinator.retention.sweep = fake_sweep
    coordinator.retention.start(7, 0.01)
    assert coordinator.retention.running
    for _ in range(100):
        if len(calls) >= 2:
            break
        await asyncio.sleep(0.01)
    await coordinator.retention.stop()

    assert not coordinator.retention.running
    assert calls[:2] == [7, 7]


@pytest.mark.asyncio
async def test_periodic_sweeper_survives_failures(coordinator):
    calls: list[int] = []

    async def flaky_sweep(days):
        calls.append(days)
        if len(calls) == 1:
            raise CoordinationError(RETENTION_FAILED, "boom", recoverable=False)
        return {"reservations_expired": 0, "messages_deleted": 0, "reservations_deleted": 0}

    coordinator.retention.sweep = flaky_sweep
    coordinator.retention.start(3, 0.01)
    for _ in range(100):
        if len(calls) >= 2:
            break
        await asyncio.sleep(0.01)
    await coordinator.retention.stop()

    assert len(calls) >= 2


@pytest.mark.asyncio
async def test_start_is_idempotent_while_running(coordinator):
    first = coordinator.retention.start(30, 3600)
    second = coordinator.retention.start(30, 3600)
    assert first is second
    await coordinator.retention.stop()
    assert first.cancelled()
