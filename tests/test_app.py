from __future__ import annotations

import pytest

from amicii.app import build_coordinator
from amicii.config import clear_settings_cache, get_settings
from amicii.messages import AckPolicy


@pytest.mark.asyncio
async def test_startup_creates_schema_and_sweeps(isolated_env, clock):
    coordinator = build_coordinator(get_settings(), clock=clock)
    try:
        swept = await coordinator.startup()
        assert swept == {"reservations_expired": 0, "messages_deleted": 0, "reservations_deleted": 0}
        assert isolated_env.exists()
    finally:
        await coordinator.close()


@pytest.mark.asyncio
async def test_startup_stamps_reservations_that_expired_while_down(coordinator, project, make_agent, clock):
    await make_agent(project, "AmberFox")
    await coordinator.reservations.create(project, "AmberFox", "src/**", ttl_seconds=10)
    clock.advance(minutes=5)
    swept = await coordinator.startup()
    assert swept["reservations_expired"] == 1


@pytest.mark.asyncio
async def test_stats_counts_active_reservations_only(coordinator, project, make_agent, clock):
    await make_agent(project, "AmberFox")
    await make_agent(project, "JadeWolf")
    await coordinator.reservations.create(project, "AmberFox", "src/**", ttl_seconds=10)
    await coordinator.reservations.create(project, "JadeWolf", "docs/**")
    await coordinator.messages.send(project, "AmberFox", ["all"], subject="hi")
    clock.advance(seconds=11)
    assert await coordinator.stats() == {
        "projects": 1,
        "agents": 2,
        "messages": 1,
        "active_reservations": 1,
    }


def test_coordinator_wires_settings(isolated_env, monkeypatch):
    monkeypatch.setenv("ACK_TIMESTAMP_POLICY", "first")
    monkeypatch.setenv("RESERVATION_DEFAULT_TTL_SECONDS", "120")
    clear_settings_cache()
    coordinator = build_coordinator()
    assert coordinator.messages.ack_policy is AckPolicy.FIRST
    assert coordinator.reservations.default_ttl_seconds == 120
    assert coordinator.store is coordinator.projects.store is coordinator.search.store
