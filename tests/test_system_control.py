"""
Tests for the start / pause / stop switch.
"""
import pytest

from evotrader.controls.system_control import SystemControls
from evotrader.core.types import SystemStatus

pytestmark = pytest.mark.asyncio


async def test_start_from_stopped_opens_a_generation(store):
    result = await SystemControls(store, clock=store.clock).start("deploy")

    assert result.ok
    assert (result.previous_status, result.new_status) == ("stopped", "running")
    generation = await store.get_active_generation()
    assert result.generation_id == generation.id
    [event] = await store.list_events("system_start")
    assert event["previous_status"] == "stopped"
    assert event["new_status"] == "running"
    assert event["metadata"]["reason"] == "deploy"


async def test_restart_keeps_the_active_generation(store):
    controls = SystemControls(store, clock=store.clock)
    first = await controls.start()
    await controls.pause()

    resumed = await controls.start()

    assert resumed.previous_status == "paused"
    assert resumed.generation_id == first.generation_id
    assert len(await store.list_events("generation_started")) == 1


async def test_pause_only_from_running(store):
    controls = SystemControls(store, clock=store.clock)

    rejected = await controls.pause()
    assert not rejected.ok
    assert rejected.reason == "invalid_transition_from_stopped"
    assert (await store.get_system_state()).status is SystemStatus.STOPPED
    assert await store.list_events("system_pause") == []

    await controls.start()
    assert (await controls.pause()).ok
    assert (await store.get_system_state()).status is SystemStatus.PAUSED


async def test_stop_from_error(store):
    await store.update_system_state({"status": SystemStatus.ERROR.value})

    result = await SystemControls(store, clock=store.clock).stop("recovered")

    assert result.ok
    assert result.previous_status == "error"
    assert result.generation_id is None


async def test_unknown_action(store):
    result = await SystemControls(store, clock=store.clock).apply("restart")
    assert not result.ok
    assert result.reason == "unknown_action"
    assert store.events == []
