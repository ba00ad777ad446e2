"""Unit tests for SessionManager."""

import asyncio
from types import SimpleNamespace
from typing import Optional
from unittest.mock import patch

import pytest

from paneherd.config.schema import TmuxConfig
from paneherd.core.controller_client import AmbiguousResponseError, ControllerUnavailableError
from paneherd.core.layout import render_layout
from paneherd.core.session_manager import SessionManager, SessionState

SERVER = "http://127.0.0.1:4096"


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeBridge:
    def __init__(self, in_tmux: bool = True) -> None:
        self.in_tmux = in_tmux
        self.spawned: list[SimpleNamespace] = []
        self.killed: list[str] = []
        self.layouts: list[tuple[str, Optional[int], Optional[str]]] = []
        self.session_killed = False
        self.fail_spawn = False
        self.window = (200, 50)
        self._next_pane = 1

    async def current_pane_id(self):
        return "%0"

    async def window_size(self, target=None):
        return self.window

    async def spawn_pane(self, command, title, *, tags=None, env=None, target=None):
        if self.fail_spawn:
            return None
        pane_id = f"%{self._next_pane}"
        self._next_pane += 1
        self.spawned.append(
            SimpleNamespace(command=command, title=title, tags=tags, env=env, target=target, pane_id=pane_id)
        )
        return pane_id

    async def kill_pane(self, pane_id):
        self.killed.append(pane_id)
        return True

    async def apply_layout(self, layout, main_pane_size=None, *, target=None):
        self.layouts.append((layout, main_pane_size, target))
        return True

    async def kill_session(self):
        self.session_killed = True
        return True


class FakeClient:
    def __init__(self) -> None:
        self.base_url = SERVER
        self.statuses: object = {}
        self.healthy = True

    async def session_statuses(self):
        if isinstance(self.statuses, Exception):
            raise self.statuses
        return self.statuses

    async def is_healthy(self, timeout_s: float = 1.5):
        return self.healthy


class AlwaysReachable:
    def __init__(self) -> None:
        self.resets = 0

    async def check(self, client):
        return True

    def reset(self) -> None:
        self.resets += 1


def created(session_id: str, parent: Optional[str] = "ses_root", title: Optional[str] = "Explore") -> dict:
    info = {"id": session_id, "parentID": parent, "title": title}
    return {"type": "session.created", "properties": {"info": {k: v for k, v in info.items() if v is not None}}}


def make_manager(bridge=None, client=None, clock=None, **overrides):
    settings = {
        "spawn_delay_ms": 50,
        "max_retry_attempts": 0,
        "layout_debounce_ms": 50,
        "poll_interval_ms": 60_000,
        "session_missing_grace_ms": 60_000,
        "session_timeout_ms": 600_000,
        **overrides,
    }
    return SessionManager(
        TmuxConfig(**settings),
        server_url=SERVER,
        bridge=bridge or FakeBridge(),
        client=client or FakeClient(),
        reachability=AlwaysReachable(),
        clock=clock or FakeClock(),
    )


async def started(manager: SessionManager) -> SessionManager:
    await manager.start()
    return manager


@pytest.mark.asyncio
async def test_session_created_spawns_tagged_pane():
    """Test that a child session gets an attach pane split from the main pane."""
    bridge = FakeBridge()
    manager = await started(make_manager(bridge))

    await manager.on_session_created(created("ses_child", title="Research the codebase"))

    assert len(bridge.spawned) == 1
    spawn = bridge.spawned[0]
    assert spawn.command == f"opencode attach {SERVER} --session ses_child"
    assert spawn.tags == {"paneherd_session": "ses_child"}
    assert spawn.env == {"OPENCODE_HIDE_SUBAGENT_HEADER": "1"}
    assert spawn.target == "%0"
    assert manager.session_state("ses_child") is SessionState.ACTIVE
    assert manager.sessions["ses_child"].pane_id == "%1"
    assert manager.is_polling
    await manager.cleanup()


@pytest.mark.asyncio
async def test_irrelevant_events_are_ignored():
    """Test other event types, root sessions, and already tracked sessions."""
    bridge = FakeBridge()
    manager = await started(make_manager(bridge))

    await manager.on_session_created({"type": "session.updated", "properties": {"info": {"id": "a", "parentID": "p"}}})
    await manager.on_session_created(created("ses_root_only", parent=None))
    await manager.on_session_created({"type": "session.created"})
    assert bridge.spawned == []

    await manager.on_session_created(created("ses_1"))
    await manager.on_session_created(created("ses_1"))
    assert len(bridge.spawned) == 1
    assert manager.session_state("ses_root_only") is SessionState.ABSENT
    await manager.cleanup()


@pytest.mark.asyncio
async def test_default_title_when_missing():
    """Test that untitled sessions get the default pane title."""
    bridge = FakeBridge()
    manager = await started(make_manager(bridge))

    await manager.on_session_created(created("ses_1", title=None))

    assert bridge.spawned[0].title == "Subagent"
    await manager.cleanup()


@pytest.mark.asyncio
async def test_disabled_outside_tmux():
    """Test that nothing is spawned when not running inside tmux."""
    bridge = FakeBridge(in_tmux=False)
    manager = await started(make_manager(bridge))

    await manager.on_session_created(created("ses_1"))

    assert not manager.enabled
    assert bridge.spawned == []
    assert manager.main_pane_id is None


@pytest.mark.asyncio
async def test_failed_spawn_is_not_tracked():
    """Test that a failed pane spawn leaves the session absent."""
    bridge = FakeBridge()
    bridge.fail_spawn = True
    manager = await started(make_manager(bridge))

    await manager.on_session_created(created("ses_1"))

    assert manager.session_state("ses_1") is SessionState.ABSENT
    assert not manager.is_polling


@pytest.mark.asyncio
async def test_missing_session_closes_after_grace():
    """Test active -> missing -> closed once the grace period has elapsed."""
    bridge = FakeBridge()
    client = FakeClient()
    clock = FakeClock()
    manager = await started(make_manager(bridge, client, clock))
    await manager.on_session_created(created("ses_1"))

    client.statuses = {}
    await manager.poll_once()
    assert manager.session_state("ses_1") is SessionState.MISSING
    missing_since = manager.sessions["ses_1"].missing_since

    clock.now += 30
    await manager.poll_once()
    assert manager.sessions["ses_1"].missing_since == missing_since

    clock.now += 30
    await manager.poll_once()
    assert manager.session_state("ses_1") is SessionState.CLOSED
    assert bridge.killed == ["%1"]
    assert not manager.is_polling


@pytest.mark.asyncio
async def test_missing_session_seen_again_is_active():
    """Test missing -> active when the session reappears."""
    client = FakeClient()
    clock = FakeClock()
    manager = await started(make_manager(client=client, clock=clock))
    await manager.on_session_created(created("ses_1"))

    client.statuses = {}
    await manager.poll_once()
    clock.now += 5
    client.statuses = {"ses_1": "busy"}
    await manager.poll_once()

    tracked = manager.sessions["ses_1"]
    assert tracked.state is SessionState.ACTIVE
    assert tracked.missing_since is None
    assert tracked.last_seen_at == clock.now
    await manager.cleanup()


@pytest.mark.asyncio
async def test_idle_session_closes_when_auto_close():
    """Test that an idle status closes the pane."""
    bridge = FakeBridge()
    client = FakeClient()
    manager = await started(make_manager(bridge, client))
    await manager.on_session_created(created("ses_1"))

    client.statuses = {"ses_1": "idle"}
    await manager.poll_once()

    assert manager.session_state("ses_1") is SessionState.CLOSED
    assert bridge.killed == ["%1"]


@pytest.mark.asyncio
async def test_idle_session_kept_without_auto_close():
    """Test that `auto_close: false` keeps idle panes open."""
    bridge = FakeBridge()
    client = FakeClient()
    manager = await started(make_manager(bridge, client, auto_close=False))
    await manager.on_session_created(created("ses_1"))

    client.statuses = {"ses_1": "idle"}
    await manager.poll_once()

    assert manager.session_state("ses_1") is SessionState.ACTIVE
    assert bridge.killed == []
    await manager.cleanup()


@pytest.mark.asyncio
async def test_session_timeout_closes():
    """Test that a session alive past the timeout is closed."""
    bridge = FakeBridge()
    client = FakeClient()
    clock = FakeClock()
    manager = await started(make_manager(bridge, client, clock, session_timeout_ms=10_000))
    await manager.on_session_created(created("ses_1"))

    client.statuses = {"ses_1": "busy"}
    clock.now += 10
    await manager.poll_once()
    assert manager.session_state("ses_1") is SessionState.ACTIVE

    clock.now += 1
    await manager.poll_once()
    assert manager.session_state("ses_1") is SessionState.CLOSED


@pytest.mark.asyncio
async def test_ambiguous_status_is_a_noop():
    """Test that an unrecognized payload changes nothing."""
    bridge = FakeBridge()
    client = FakeClient()
    clock = FakeClock()
    manager = await started(make_manager(bridge, client, clock, session_missing_grace_ms=0))
    await manager.on_session_created(created("ses_1"))

    client.statuses = AmbiguousResponseError("unrecognized")
    clock.now += 100
    await manager.poll_once()

    assert manager.session_state("ses_1") is SessionState.ACTIVE
    assert bridge.killed == []
    assert not manager.shutdown_event.is_set()
    await manager.cleanup()


@pytest.mark.asyncio
async def test_unreachable_controller_tears_down_panes():
    """Test that a failed poll plus failed health check closes everything."""
    bridge = FakeBridge()
    client = FakeClient()
    manager = await started(make_manager(bridge, client))
    await manager.on_session_created(created("ses_1"))

    client.statuses = ControllerUnavailableError("connection refused")
    client.healthy = False
    await manager.poll_once()

    assert bridge.killed == ["%1"]
    assert not bridge.session_killed
    assert manager.shutdown_event.is_set()
    assert manager.session_state("ses_1") is SessionState.CLOSED


@pytest.mark.asyncio
async def test_poll_failure_with_healthy_controller_keeps_panes():
    """Test that a transient status failure is tolerated while health is fine."""
    bridge = FakeBridge()
    client = FakeClient()
    manager = await started(make_manager(bridge, client))
    await manager.on_session_created(created("ses_1"))

    client.statuses = ControllerUnavailableError("timeout")
    await manager.poll_once()

    assert bridge.killed == []
    assert not manager.shutdown_event.is_set()
    # The next spawn re-checks the controller instead of trusting the cached answer.
    assert manager._reachability.resets == 1
    await manager.cleanup()


@pytest.mark.asyncio
async def test_stale_poll_generation_is_discarded():
    """Test that a poll result from a stopped loop does not mutate state."""
    client = FakeClient()
    manager = await started(make_manager(client=client, session_missing_grace_ms=0))
    await manager.on_session_created(created("ses_1"))

    client.statuses = {}
    await manager.poll_once(generation=-1)

    assert manager.session_state("ses_1") is SessionState.ACTIVE
    await manager.cleanup()


@pytest.mark.asyncio
async def test_dynamic_layout_orders_panes_by_creation():
    """Test the rendered layout for dynamic-vertical."""
    bridge = FakeBridge()
    clock = FakeClock()
    manager = await started(make_manager(bridge, clock=clock, layout="dynamic-vertical", max_agents_per_column=3))
    for index in range(3):
        await manager.on_session_created(created(f"ses_{index}"))
        clock.now += 1

    assert await manager.recalculate_layout() is True

    layout, size, target = bridge.layouts[-1]
    assert layout == render_layout(200, 50, "%0", ["%1", "%2", "%3"], 3)
    assert size is None
    assert target == "%0"
    await manager.cleanup()


@pytest.mark.asyncio
async def test_preset_layout_uses_main_pane_share():
    """Test main-vertical with an automatic main pane size."""
    bridge = FakeBridge()
    manager = await started(make_manager(bridge, layout="main-vertical"))
    await manager.on_session_created(created("ses_1"))

    await manager.recalculate_layout()

    assert bridge.layouts[-1] == ("main-vertical", 60, "%0")
    await manager.cleanup()


@pytest.mark.asyncio
async def test_preset_layout_uses_configured_size():
    """Test that main_pane_size overrides the automatic share."""
    bridge = FakeBridge()
    manager = await started(make_manager(bridge, layout="main-horizontal", main_pane_size=70))

    await manager.recalculate_layout()

    assert bridge.layouts[-1] == ("main-horizontal", 70, "%0")


@pytest.mark.asyncio
async def test_layout_recalculation_is_debounced():
    """Test that triggers inside the debounce window coalesce into one layout."""
    bridge = FakeBridge()
    manager = await started(make_manager(bridge))

    manager.schedule_layout()
    manager.schedule_layout()
    manager.schedule_layout()
    await asyncio.sleep(0.1)

    assert len(bridge.layouts) == 1


@pytest.mark.asyncio
async def test_sigint_kills_tmux_session():
    """Test that SIGINT tears down the whole tmux session."""
    bridge = FakeBridge()
    manager = await started(make_manager(bridge))
    await manager.on_session_created(created("ses_1"))

    await manager.handle_shutdown("SIGINT")
    await manager.handle_shutdown("SIGTERM")

    assert bridge.session_killed is True
    assert bridge.killed == []
    assert manager.shutdown_event.is_set()
    assert manager.sessions == {}


@pytest.mark.asyncio
async def test_sigterm_closes_only_own_panes():
    """Test that other shutdown reasons only close tracked panes."""
    bridge = FakeBridge()
    manager = await started(make_manager(bridge))
    await manager.on_session_created(created("ses_1"))
    await manager.on_session_created(created("ses_2"))

    await manager.handle_shutdown("SIGTERM")

    assert sorted(bridge.killed) == ["%1", "%2"]
    assert not bridge.session_killed
    assert manager.shutdown_event.is_set()
    assert manager.queue.is_shutdown
    assert not manager.is_polling

    await manager.on_session_created(created("ses_3"))
    assert len(bridge.spawned) == 2


@pytest.mark.asyncio
async def test_closed_history_is_bounded():
    """Test that only the most recently closed sessions are remembered as CLOSED."""
    manager = await started(make_manager())
    for session_id in ("ses_1", "ses_2", "ses_3"):
        await manager.on_session_created(created(session_id))

    with patch("paneherd.core.session_manager.CLOSED_HISTORY_LIMIT", 2):
        for session_id in ("ses_1", "ses_2", "ses_3"):
            await manager.close_session(session_id, reason="test")

    assert manager.session_state("ses_1") is SessionState.ABSENT
    assert manager.session_state("ses_2") is SessionState.CLOSED
    assert manager.session_state("ses_3") is SessionState.CLOSED
    await manager.cleanup()
