"""Serialized, coalescing spawn queue for tmux panes.

Pane creation talks to tmux, which misbehaves when hammered with concurrent
split-window calls. Requests are therefore run one at a time, FIFO, with a
short pause between them. Duplicate requests for a session that is already
queued or in flight share the same pending result.

Callers always receive a `SpawnResult`; errors raised by the spawn function
count as a failed attempt and are retried with exponential backoff.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from paneherd.constants import SPAWN_BASE_BACKOFF_S, SPAWN_STALE_THRESHOLD_S
from paneherd.utils import short_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SpawnRequest:
    """One attempt at spawning a pane. `attempt` counts from 1."""

    session_id: str
    title: str
    enqueued_at: float
    attempt: int


@dataclass(frozen=True)
class SpawnResult:
    success: bool
    pane_id: Optional[str] = None


FAILED = SpawnResult(success=False)

SpawnFn = Callable[[SpawnRequest], Awaitable[SpawnResult]]
QueueUpdateCallback = Callable[[int], None]
QueueDrainedCallback = Callable[[], None]


@dataclass
class _QueueItem:
    session_id: str
    title: str
    enqueued_at: float
    future: asyncio.Future[SpawnResult]


def backoff_for_attempt(attempt: int, base_backoff_s: float = SPAWN_BASE_BACKOFF_S) -> float:
    """Delay after failed attempt N (1-based): base, 2*base, 4*base, ..."""
    return base_backoff_s * (2 ** (attempt - 1))


class SpawnQueue:
    """FIFO queue that runs spawn requests one at a time."""

    def __init__(
        self,
        spawn_fn: SpawnFn,
        *,
        spawn_delay_s: float = 0.3,
        max_retries: int = 2,
        base_backoff_s: float = SPAWN_BASE_BACKOFF_S,
        stale_threshold_s: float = SPAWN_STALE_THRESHOLD_S,
        on_queue_update: Optional[QueueUpdateCallback] = None,
        on_queue_drained: Optional[QueueDrainedCallback] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._spawn_fn = spawn_fn
        self._spawn_delay_s = spawn_delay_s
        self._max_retries = max_retries
        self._base_backoff_s = base_backoff_s
        self._stale_threshold_s = stale_threshold_s
        self._on_queue_update = on_queue_update
        self._on_queue_drained = on_queue_drained
        self._clock = clock

        self._queue: deque[_QueueItem] = deque()
        # session_id -> future, for queued and in-flight items alike
        self._pending: dict[str, asyncio.Future[SpawnResult]] = {}
        self._worker: Optional[asyncio.Task[None]] = None
        self._processing = False
        self._in_flight = False
        self._shutdown = False

        logger.debug(
            "Spawn queue initialized (delay=%.2fs, max_retries=%d, stale=%.1fs)",
            spawn_delay_s,
            max_retries,
            stale_threshold_s,
        )

    @property
    def pending_count(self) -> int:
        return len(self._queue) + (1 if self._in_flight else 0)

    @property
    def is_shutdown(self) -> bool:
        return self._shutdown

    def is_pending(self, session_id: str) -> bool:
        return session_id in self._pending

    def submit(self, session_id: str, title: str) -> asyncio.Future[SpawnResult]:
        """Queue a spawn and return its pending result.

        A session already queued or in flight gets the existing future back.
        """
        loop = asyncio.get_running_loop()
        if self._shutdown:
            logger.debug("Spawn rejected after shutdown: %s", short_id(session_id))
            rejected: asyncio.Future[SpawnResult] = loop.create_future()
            rejected.set_result(FAILED)
            return rejected

        existing = self._pending.get(session_id)
        if existing is not None:
            logger.debug(
                "Coalesced duplicate spawn for %s (pending=%d)",
                short_id(session_id),
                self.pending_count,
            )
            return existing

        future: asyncio.Future[SpawnResult] = loop.create_future()
        self._pending[session_id] = future
        self._queue.append(_QueueItem(session_id, title, self._clock(), future))
        logger.debug("Enqueued spawn for %s (pending=%d)", short_id(session_id), self.pending_count)

        self._notify_update()
        self._ensure_worker()
        return future

    async def enqueue(self, session_id: str, title: str) -> SpawnResult:
        """Submit and wait. Cancelling the caller does not cancel the shared result."""
        return await asyncio.shield(self.submit(session_id, title))

    def shutdown(self) -> None:
        """Fail all queued items and refuse new ones. The in-flight attempt finishes."""
        if self._shutdown:
            return
        self._shutdown = True
        logger.info(
            "Spawn queue shutting down (queued=%d, in_flight=%s)",
            len(self._queue),
            self._in_flight,
        )
        while self._queue:
            item = self._queue.popleft()
            self._resolve(item, FAILED)
        self._notify_update()

    def _ensure_worker(self) -> None:
        if self._processing:
            return
        self._processing = True
        self._worker = asyncio.create_task(self._process_queue(), name="spawn-queue")

    async def _process_queue(self) -> None:
        try:
            while self._queue and not self._shutdown:
                item = self._queue.popleft()
                self._in_flight = True
                self._notify_update()

                waited = self._clock() - item.enqueued_at
                if waited > self._stale_threshold_s:
                    logger.warning(
                        "Skipping stale spawn for %s (waited %.1fs > %.1fs)",
                        short_id(item.session_id),
                        waited,
                        self._stale_threshold_s,
                    )
                    self._resolve(item, FAILED)
                    self._in_flight = False
                    continue

                result = await self._run_item(item)
                self._resolve(item, result)
                self._in_flight = False

                if self._queue and not self._shutdown:
                    await self._delay(self._spawn_delay_s)
        finally:
            self._in_flight = False
            self._processing = False
            self._notify_update()
            if not self._queue:
                logger.debug("Spawn queue drained")
                self._notify_drained()

    async def _run_item(self, item: _QueueItem) -> SpawnResult:
        max_attempts = self._max_retries + 1
        result = FAILED
        attempt = 1
        while True:
            request = SpawnRequest(item.session_id, item.title, item.enqueued_at, attempt)
            logger.debug("Spawn attempt %d/%d for %s", attempt, max_attempts, short_id(item.session_id))
            try:
                result = await self._spawn_fn(request)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pylint: disable=broad-exception-caught
                logger.warning("Spawn attempt %d for %s raised: %s", attempt, short_id(item.session_id), exc)
                result = FAILED

            if result.success:
                logger.info(
                    "Spawned pane %s for %s after %d attempt(s)",
                    result.pane_id,
                    short_id(item.session_id),
                    attempt,
                )
                return result

            if attempt >= max_attempts or self._shutdown:
                break
            backoff = backoff_for_attempt(attempt, self._base_backoff_s)
            logger.debug("Retrying spawn for %s in %.2fs", short_id(item.session_id), backoff)
            await self._delay(backoff)
            if self._shutdown:
                break
            attempt += 1

        logger.warning("Spawn failed for %s after %d attempt(s)", short_id(item.session_id), attempt)
        return result

    def _resolve(self, item: _QueueItem, result: SpawnResult) -> None:
        if self._pending.get(item.session_id) is item.future:
            del self._pending[item.session_id]
        if not item.future.done():
            item.future.set_result(result)

    async def _delay(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    def _notify_update(self) -> None:
        if self._on_queue_update is None:
            return
        try:
            self._on_queue_update(self.pending_count)
        except Exception:  # pylint: disable=broad-exception-caught
            logger.debug("Queue update callback failed", exc_info=True)

    def _notify_drained(self) -> None:
        if self._on_queue_drained is None:
            return
        try:
            self._on_queue_drained()
        except Exception:  # pylint: disable=broad-exception-caught
            logger.debug("Queue drained callback failed", exc_info=True)
