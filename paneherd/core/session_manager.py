"""Child-session pane lifecycle.

The manager reacts to `session.created` events for child sessions by opening
an attach pane next to the main pane, polls the controller to find sessions
that went idle, disappeared or ran too long, and closes their panes. Every
creation and closure re-arranges the window.

Per-session states: absent -> active -> {missing <-> active} -> closed.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Mapping, Optional

from paneherd.config.schema import DYNAMIC_LAYOUT, TmuxConfig
from paneherd.constants import (
    ATTACH_COMMAND_TEMPLATE,
    DEFAULT_PANE_TITLE,
    IDLE_STATUS,
    PANE_ENV,
    PANE_SESSION_TAG,
    SESSION_CREATED_EVENT,
)
from paneherd.core.controller_client import (
    AmbiguousResponseError,
    ControllerClient,
    ControllerError,
    ServerReachability,
)
from paneherd.core.layout import distribute, main_pane_share, render_layout
from paneherd.core.spawn_queue import FAILED, SpawnQueue, SpawnRequest, SpawnResult
from paneherd.core.task_registry import TaskRegistry
from paneherd.core.tmux_bridge import TmuxBridge
from paneherd.utils import short_id

logger = logging.getLogger(__name__)

# Only a Ctrl+C takes the whole tmux session down with it.
WORKSPACE_SHUTDOWN_REASONS = frozenset({"SIGINT"})

# Most recently closed session ids kept for `session_state`; older ones read as ABSENT.
CLOSED_HISTORY_LIMIT = 256


class SessionState(str, Enum):
    ABSENT = "absent"
    ACTIVE = "active"
    MISSING = "missing"
    CLOSED = "closed"


@dataclass
class TrackedSession:
    session_id: str
    pane_id: str
    parent_id: str
    title: str
    created_at: float
    last_seen_at: float
    missing_since: Optional[float] = None

    @property
    def state(self) -> SessionState:
        return SessionState.MISSING if self.missing_since is not None else SessionState.ACTIVE


class SessionManager:  # pylint: disable=too-many-instance-attributes
    """Owns the panes opened for child sessions of one controller."""

    def __init__(
        self,
        config: TmuxConfig,
        *,
        server_url: str,
        bridge: Optional[TmuxBridge] = None,
        client: Optional[ControllerClient] = None,
        reachability: Optional[ServerReachability] = None,
        registry: Optional[TaskRegistry] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.server_url = server_url
        self._bridge = bridge or TmuxBridge()
        self._client = client or ControllerClient(server_url)
        self._reachability = reachability or ServerReachability()
        self._registry = registry or TaskRegistry()
        self._clock = clock

        self._sessions: dict[str, TrackedSession] = {}
        self._closed: OrderedDict[str, None] = OrderedDict()
        self._main_pane_id: Optional[str] = None
        self._enabled = config.enabled and self._bridge.in_tmux
        self._shutting_down = False
        self.shutdown_event = asyncio.Event()

        self._poll_task: Optional[asyncio.Task[None]] = None
        self._poll_generation = 0
        self._layout_task: Optional[asyncio.Task[None]] = None

        self._queue = SpawnQueue(
            self._spawn,
            spawn_delay_s=config.spawn_delay_ms / 1000,
            max_retries=config.max_retry_attempts,
            on_queue_update=self._on_queue_update,
            clock=clock,
        )

        logger.info(
            "Session manager initialized (enabled=%s, layout=%s, server=%s)",
            self._enabled,
            config.layout,
            server_url,
        )

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def main_pane_id(self) -> Optional[str]:
        return self._main_pane_id

    @property
    def sessions(self) -> dict[str, TrackedSession]:
        return dict(self._sessions)

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    @property
    def queue(self) -> SpawnQueue:
        return self._queue

    def session_state(self, session_id: str) -> SessionState:
        tracked = self._sessions.get(session_id)
        if tracked is not None:
            return tracked.state
        if session_id in self._closed:
            return SessionState.CLOSED
        return SessionState.ABSENT

    def _remember_closed(self, session_id: str) -> None:
        self._closed[session_id] = None
        self._closed.move_to_end(session_id)
        while len(self._closed) > CLOSED_HISTORY_LIMIT:
            self._closed.popitem(last=False)

    async def start(self) -> None:
        """Remember the pane the daemon runs in; new panes are split from it."""
        if not self._enabled:
            logger.info(
                "Pane management disabled (tmux.enabled=%s, in_tmux=%s)", self.config.enabled, self._bridge.in_tmux
            )
            return
        self._main_pane_id = await self._bridge.current_pane_id()
        if self._main_pane_id:
            logger.info("Main pane: %s", self._main_pane_id)
        else:
            logger.warning("Could not identify the main pane")

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def on_session_created(self, event: Mapping[str, object]) -> None:
        """Open a pane for a newly created child session."""
        if not self._enabled or self._shutting_down:
            return
        if event.get("type") != SESSION_CREATED_EVENT:
            return

        properties = event.get("properties")
        info = properties.get("info") if isinstance(properties, Mapping) else None
        if not isinstance(info, Mapping):
            return
        session_id = info.get("id")
        parent_id = info.get("parentID")
        if not isinstance(session_id, str) or not session_id:
            return
        if not isinstance(parent_id, str) or not parent_id:
            # Root sessions live in the main pane already.
            return
        title = info.get("title")
        if not isinstance(title, str) or not title:
            title = DEFAULT_PANE_TITLE

        if session_id in self._sessions:
            logger.debug("Session %s already tracked", short_id(session_id))
            return

        logger.info("Child session %s created (parent %s), spawning pane", short_id(session_id), short_id(parent_id))
        result = await self._queue.enqueue(session_id, title)
        if not result.success or not result.pane_id:
            return

        if self._shutting_down:
            logger.info("Shutdown raced spawn of %s, closing pane %s", short_id(session_id), result.pane_id)
            await self._bridge.kill_pane(result.pane_id)
            return

        now = self._clock()
        self._sessions[session_id] = TrackedSession(
            session_id=session_id,
            pane_id=result.pane_id,
            parent_id=parent_id,
            title=title,
            created_at=now,
            last_seen_at=now,
        )
        self._closed.pop(session_id, None)
        logger.info("Tracking session %s in pane %s", short_id(session_id), result.pane_id)

        self._ensure_polling()
        self.schedule_layout()

    async def _spawn(self, request: SpawnRequest) -> SpawnResult:
        if not await self._reachability.check(self._client):
            logger.info(
                "Controller %s not running, skipping spawn for %s", self.server_url, short_id(request.session_id)
            )
            return FAILED

        command = ATTACH_COMMAND_TEMPLATE.format(server_url=self.server_url, session_id=request.session_id)
        pane_id = await self._bridge.spawn_pane(
            command,
            request.title,
            tags={PANE_SESSION_TAG: request.session_id},
            env=PANE_ENV,
            target=self._main_pane_id,
        )
        if not pane_id:
            return FAILED
        return SpawnResult(success=True, pane_id=pane_id)

    def _on_queue_update(self, pending: int) -> None:
        logger.debug("Spawn queue pending: %d", pending)

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def _ensure_polling(self) -> None:
        if self.is_polling:
            return
        self._poll_generation += 1
        self._poll_task = asyncio.create_task(self._poll_loop(self._poll_generation), name="session-poll")
        logger.debug("Polling started (generation %d)", self._poll_generation)

    def _stop_polling(self) -> None:
        self._poll_generation += 1
        task, self._poll_task = self._poll_task, None
        if task is None:
            return
        if not task.done() and task is not asyncio.current_task():
            task.cancel()
        logger.debug("Polling stopped")

    async def _poll_loop(self, generation: int) -> None:
        interval_s = self.config.poll_interval_ms / 1000
        while generation == self._poll_generation:
            await asyncio.sleep(interval_s)
            if generation != self._poll_generation:
                return
            try:
                await self.poll_once(generation)
            except asyncio.CancelledError:
                raise
            except Exception:  # pylint: disable=broad-exception-caught
                logger.error("Session poll failed", exc_info=True)

    async def poll_once(self, generation: Optional[int] = None) -> None:
        """Reconcile tracked sessions against the controller's status list.

        A result that arrives after polling was stopped (generation changed)
        is discarded.
        """
        if not self._sessions:
            self._stop_polling()
            return

        try:
            statuses = await self._client.session_statuses()
        except AmbiguousResponseError as exc:
            logger.warning("Ambiguous session status payload, skipping poll: %s", exc)
            return
        except ControllerError as exc:
            logger.warning("Session status poll failed: %s", exc)
            self._reachability.reset()
            if self._is_stale(generation):
                return
            if not await self._client.is_healthy():
                await self.handle_shutdown("server-unreachable")
            return

        if self._is_stale(generation):
            logger.debug("Discarding poll result from stopped generation %s", generation)
            return

        now = self._clock()
        to_close: list[tuple[str, str]] = []
        for session_id, tracked in self._sessions.items():
            status = statuses.get(session_id)
            if status is not None:
                tracked.last_seen_at = now
                tracked.missing_since = None
            elif tracked.missing_since is None:
                tracked.missing_since = now

            reason = self._close_reason(tracked, status, now)
            if reason:
                to_close.append((session_id, reason))

        for session_id, reason in to_close:
            await self.close_session(session_id, reason=reason)

    def _is_stale(self, generation: Optional[int]) -> bool:
        return generation is not None and generation != self._poll_generation

    def _close_reason(self, tracked: TrackedSession, status: Optional[str], now: float) -> Optional[str]:
        if status == IDLE_STATUS and self.config.auto_close:
            return "idle"
        if tracked.missing_since is not None:
            if (now - tracked.missing_since) * 1000 >= self.config.session_missing_grace_ms:
                return "missing"
        if (now - tracked.created_at) * 1000 > self.config.session_timeout_ms:
            return "timeout"
        return None

    # ------------------------------------------------------------------
    # Closure
    # ------------------------------------------------------------------

    async def close_session(self, session_id: str, *, reason: str = "closed") -> bool:
        tracked = self._sessions.pop(session_id, None)
        if tracked is None:
            return False

        logger.info("Closing session %s pane %s (%s)", short_id(session_id), tracked.pane_id, reason)
        if not await self._bridge.kill_pane(tracked.pane_id):
            logger.warning("Pane %s for %s may still be open", tracked.pane_id, short_id(session_id))
        self._remember_closed(session_id)

        self.schedule_layout()
        if not self._sessions:
            self._stop_polling()
        return True

    # ------------------------------------------------------------------
    # Layout
    # ------------------------------------------------------------------

    def schedule_layout(self) -> None:
        """Request a layout recalculation; triggers within the debounce window coalesce."""
        if not self._enabled or self._shutting_down:
            return
        if self._layout_task is not None and not self._layout_task.done():
            return
        self._layout_task = self._registry.spawn(self._debounced_layout(), name="layout-debounce")

    async def _debounced_layout(self) -> None:
        await asyncio.sleep(self.config.layout_debounce_ms / 1000)
        self._layout_task = None
        await self.recalculate_layout()

    async def recalculate_layout(self) -> bool:
        """Arrange the window for the current set of panes."""
        if self.config.layout != DYNAMIC_LAYOUT:
            size = self.config.main_pane_size
            if size is None:
                columns = distribute(len(self._sessions), self.config.max_agents_per_column).num_columns
                size = main_pane_share(columns)
            return await self._bridge.apply_layout(self.config.layout, size, target=self._main_pane_id)

        if not self._main_pane_id:
            logger.debug("No main pane, skipping dynamic layout")
            return False
        window = await self._bridge.window_size(self._main_pane_id)
        if window is None:
            return False

        width, height = window
        pane_ids = [tracked.pane_id for tracked in sorted(self._sessions.values(), key=lambda t: t.created_at)]
        try:
            layout = render_layout(
                width,
                height,
                self._main_pane_id,
                pane_ids,
                self.config.max_agents_per_column,
                main_pane_percent=self.config.main_pane_size,
            )
        except ValueError as exc:
            logger.warning("Cannot lay out %d pane(s) in %dx%d: %s", len(pane_ids), width, height, exc)
            return False
        return await self._bridge.apply_layout(layout, target=self._main_pane_id)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def handle_shutdown(self, reason: str) -> None:
        """Tear down panes (or the whole tmux session on SIGINT). Idempotent."""
        if self._shutting_down:
            return
        self._shutting_down = True
        logger.info("Shutdown requested (%s)", reason)
        try:
            if reason in WORKSPACE_SHUTDOWN_REASONS and self._enabled:
                self._stop_polling()
                self._queue.shutdown()
                logger.warning("Killing tmux session (%s)", reason)
                await self._bridge.kill_session()
                self._sessions.clear()
            else:
                await self.cleanup()
        finally:
            self.shutdown_event.set()

    async def cleanup(self) -> None:
        """Stop polling and spawning, then close every pane this manager opened."""
        self._stop_polling()
        self._queue.shutdown()
        if self._layout_task is not None and self._layout_task is not asyncio.current_task():
            self._layout_task.cancel()
        self._layout_task = None

        if self._sessions:
            tracked = list(self._sessions.values())
            logger.info("Closing %d pane(s)", len(tracked))
            self._sessions.clear()
            results = await asyncio.gather(
                *(self._bridge.kill_pane(session.pane_id) for session in tracked),
                return_exceptions=True,
            )
            for session, result in zip(tracked, results):
                self._remember_closed(session.session_id)
                if isinstance(result, BaseException):
                    logger.error("Error closing pane %s: %s", session.pane_id, result)
        logger.info("Cleanup complete")
