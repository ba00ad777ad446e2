"""Zombie reaper for orphaned attach processes.

An attach process names the controller it belongs to and the session it shows.
When that controller no longer lists the session as active, the process is a
zombie. Zombies are only killed after repeated confirmation across scans
spanning a grace period, and never while the controller's answer is ambiguous.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Awaitable, Callable, Literal, Optional

from paneherd.config.schema import ReaperConfig
from paneherd.constants import (
    ATTACH_SIGNATURE,
    REAP_KILL_WAIT_S,
    REAP_PORT_START,
    REAP_QUERY_ATTEMPTS,
    REAP_QUERY_RETRY_DELAY_S,
    REAP_TERM_WAIT_S,
    SERVER_PROCESS_MARKERS,
)
from paneherd.core.attach_process import AttachProcess, normalize_server_url, parse_attach_command, same_server
from paneherd.core.controller_client import AmbiguousResponseError, ControllerClient, ControllerError
from paneherd.core.process_inspector import ProcessInspector

logger = logging.getLogger(__name__)

Classification = Literal["active", "zombie", "unknown"]
ClientFactory = Callable[[str], ControllerClient]
SelfDestructHook = Callable[[], Awaitable[None]]


@dataclass
class ZombieCandidate:
    count: int
    first_detected_at: float


@dataclass
class ReapReport:
    servers_killed: int = 0
    zombies_killed: int = 0
    skipped_servers: int = 0
    skipped_processes: int = 0


def find_attach_processes(inspector: ProcessInspector) -> list[AttachProcess]:
    """Every attach process on the machine that names a session."""
    processes: list[AttachProcess] = []
    for pid in inspector.find_pids(ATTACH_SIGNATURE):
        command = inspector.command_line(pid)
        if not command:
            continue
        parsed = parse_attach_command(pid, command)
        if parsed is not None:
            processes.append(parsed)
    return processes


async def fetch_active_sessions(client: ControllerClient) -> Optional[frozenset[str]]:
    """Active session ids, or None when the controller gave no definite answer."""
    try:
        return await client.active_session_ids()
    except ControllerError as exc:
        logger.debug("Active session lookup on %s failed: %s", client.base_url, exc)
        return None


async def terminate_process(
    inspector: ProcessInspector,
    pid: int,
    *,
    term_wait_s: float = REAP_TERM_WAIT_S,
    kill_wait_s: float = REAP_KILL_WAIT_S,
) -> bool:
    """SIGTERM, then SIGKILL if needed. Returns False when the process survives both."""
    inspector.send_signal(pid, signal.SIGTERM)
    if await inspector.wait_for_exit(pid, term_wait_s):
        return True

    logger.warning("Pid %d ignored SIGTERM, sending SIGKILL", pid)
    inspector.send_signal(pid, signal.SIGKILL)
    if await inspector.wait_for_exit(pid, kill_wait_s):
        return True

    logger.error("CRITICAL: failed to kill pid %d", pid)
    return False


class ZombieReaper:
    """Periodic scanner for attach processes bound to one controller."""

    def __init__(
        self,
        server_url: str,
        config: Optional[ReaperConfig] = None,
        *,
        inspector: Optional[ProcessInspector] = None,
        client_factory: ClientFactory = ControllerClient,
        clock: Callable[[], float] = time.monotonic,
        on_self_destruct: Optional[SelfDestructHook] = None,
    ) -> None:
        self.server_url = server_url
        self.config = config or ReaperConfig()
        self._inspector = inspector or ProcessInspector()
        self._client = client_factory(server_url)
        self._clock = clock
        self._on_self_destruct = on_self_destruct

        self._candidates: dict[int, ZombieCandidate] = {}
        self._scanning = False
        self._loop_task: Optional[asyncio.Task[None]] = None
        self._last_activity_at = clock()
        self._self_destructed = False

    @property
    def candidates(self) -> dict[int, ZombieCandidate]:
        return self._candidates

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def start(self) -> None:
        if not self.config.enabled or self.is_running:
            return
        logger.info(
            "Zombie reaper started for %s (interval=%dms, checks=%d, grace=%dms)",
            self.server_url,
            self.config.interval_ms,
            self.config.min_zombie_checks,
            self.config.grace_period_ms,
        )
        self._loop_task = asyncio.create_task(self._run_loop(), name="zombie-reaper")

    def stop(self) -> None:
        if self._loop_task is None:
            return
        self._loop_task.cancel()
        self._loop_task = None
        logger.info("Zombie reaper stopped")

    async def shutdown(self) -> None:
        """Stop the timer, run one last scan, and release the HTTP client."""
        self.stop()
        logger.info("Zombie reaper shutting down, running final scan")
        try:
            await self.scan_once()
        finally:
            await self._client.aclose()

    async def _run_loop(self) -> None:
        interval_s = self.config.interval_ms / 1000
        while True:
            await asyncio.sleep(interval_s)
            await self.scan_once()

    async def scan_once(self) -> None:
        """One scan of this controller's attach processes. Concurrent calls are no-ops."""
        if self._scanning:
            logger.debug("Zombie scan already in progress, skipping")
            return
        self._scanning = True
        try:
            await self._scan()
        except asyncio.CancelledError:
            raise
        except Exception:  # pylint: disable=broad-exception-caught
            logger.error("Zombie scan failed", exc_info=True)
        finally:
            self._scanning = False

    async def _scan(self) -> None:
        # psutil walks the whole process table; keep it off the event loop.
        processes = await asyncio.to_thread(self.find_attach_processes)
        mine = [proc for proc in processes if same_server(proc.target_url, self.server_url)]
        now = self._clock()

        if not mine:
            self._prune_candidates(set())
            await self._check_self_destruct(now)
            return
        self._last_activity_at = now

        active = await fetch_active_sessions(self._client)
        if active is None:
            logger.info("Controller %s gave no definite session list, skipping scan", self.server_url)
            return

        current: set[int] = set()
        for proc in mine:
            current.add(proc.pid)
            if proc.session_id in active:
                self._candidates.pop(proc.pid, None)
                continue
            self.mark_as_zombie(proc.pid)
            if self.should_kill(proc.pid):
                await self._reap_process(proc)
        self._prune_candidates(current)

    def find_attach_processes(self) -> list[AttachProcess]:
        return find_attach_processes(self._inspector)

    async def classify_process(self, session_id: str) -> Classification:
        active = await fetch_active_sessions(self._client)
        if active is None:
            return "unknown"
        return "active" if session_id in active else "zombie"

    def mark_as_zombie(self, pid: int) -> None:
        candidate = self._candidates.get(pid)
        if candidate is None:
            self._candidates[pid] = ZombieCandidate(count=1, first_detected_at=self._clock())
        else:
            candidate.count += 1

    def should_kill(self, pid: int) -> bool:
        candidate = self._candidates.get(pid)
        if candidate is None:
            return False
        elapsed_ms = (self._clock() - candidate.first_detected_at) * 1000
        return candidate.count >= self.config.min_zombie_checks and elapsed_ms >= self.config.grace_period_ms

    def _prune_candidates(self, current_pids: set[int]) -> None:
        for pid in list(self._candidates):
            if pid not in current_pids:
                del self._candidates[pid]

    async def _reap_process(self, proc: AttachProcess) -> None:
        logger.warning("Reaping zombie pid %d (session %s)", proc.pid, proc.session_id)
        await terminate_process(self._inspector, proc.pid)
        self._candidates.pop(proc.pid, None)

    async def _check_self_destruct(self, now: float) -> None:
        if not self.config.auto_self_destruct or self._self_destructed:
            return
        idle_ms = (now - self._last_activity_at) * 1000
        if idle_ms <= self.config.self_destruct_timeout_ms:
            return

        self._self_destructed = True
        logger.warning(
            "No clients attached to %s for %.0fs, self-destructing",
            self.server_url,
            idle_ms / 1000,
        )
        if self._on_self_destruct is not None:
            await self._on_self_destruct()

    @classmethod
    async def reap_servers(
        cls,
        start_port: int,
        end_port: int,
        *,
        inspector: Optional[ProcessInspector] = None,
        client_factory: ClientFactory = ControllerClient,
        retry_delay_s: float = REAP_QUERY_RETRY_DELAY_S,
    ) -> ReapReport:
        """Kill controllers on `start_port..end_port` (inclusive) that have no active session."""
        inspector = inspector or ProcessInspector()
        report = ReapReport()
        logger.info("Scanning ports %d-%d for inactive servers", start_port, end_port)

        for port in range(start_port, end_port + 1):
            for pid in inspector.listening_pids(port):
                command = inspector.command_line(pid) or ""
                if not any(marker in command for marker in SERVER_PROCESS_MARKERS):
                    continue

                client = client_factory(f"http://127.0.0.1:{port}")
                try:
                    sessions = await cls._sessions_with_retry(client, retry_delay_s)
                except AmbiguousResponseError as exc:
                    logger.warning(
                        "Server on port %d (pid %d) gave no definite session list, skipping: %s", port, pid, exc
                    )
                    report.skipped_servers += 1
                    continue
                finally:
                    await client.aclose()

                if sessions:
                    logger.info("Skipping port %d (%d active session(s))", port, len(sessions))
                    report.skipped_servers += 1
                    continue

                if sessions is None:
                    logger.warning("Server on port %d (pid %d) unreachable, killing", port, pid)
                else:
                    logger.info("Server on port %d (pid %d) has no sessions, killing", port, pid)
                await terminate_process(inspector, pid)
                report.servers_killed += 1
        return report

    @staticmethod
    async def _query_sessions(client: ControllerClient) -> Optional[frozenset[str]]:
        """Active session ids, or None when the server did not answer.

        Raises:
            AmbiguousResponseError: The server answered, but not with a definite session list.
        """
        try:
            return await client.active_session_ids()
        except AmbiguousResponseError:
            raise
        except ControllerError as exc:
            logger.debug("Active session lookup on %s failed: %s", client.base_url, exc)
            return None

    @classmethod
    async def _sessions_with_retry(cls, client: ControllerClient, retry_delay_s: float) -> Optional[frozenset[str]]:
        for attempt in range(1, REAP_QUERY_ATTEMPTS + 1):
            sessions = await cls._query_sessions(client)
            if sessions is not None:
                return sessions
            if attempt < REAP_QUERY_ATTEMPTS:
                await asyncio.sleep(retry_delay_s)
        return None

    @classmethod
    async def reap_all(
        cls,
        config: Optional[ReaperConfig] = None,
        *,
        inspector: Optional[ProcessInspector] = None,
        client_factory: ClientFactory = ControllerClient,
        retry_delay_s: float = REAP_QUERY_RETRY_DELAY_S,
    ) -> ReapReport:
        """One-shot global reap: idle servers first, then every zombie attach process.

        No confirmation scans or grace period apply. Attach processes whose
        server cannot be reached are treated as zombies of a stuck server;
        those of a server with an ambiguous answer are left alone.
        """
        config = config or ReaperConfig()
        inspector = inspector or ProcessInspector()
        report = await cls.reap_servers(
            REAP_PORT_START,
            REAP_PORT_START + config.max_ports,
            inspector=inspector,
            client_factory=client_factory,
            retry_delay_s=retry_delay_s,
        )

        by_server: dict[Optional[str], list[AttachProcess]] = defaultdict(list)
        for proc in find_attach_processes(inspector):
            key = normalize_server_url(proc.target_url) if proc.target_url else None
            by_server[key].append(proc)

        for url, processes in by_server.items():
            if url is None:
                logger.warning("Skipping %d attach process(es) with unknown server", len(processes))
                report.skipped_processes += len(processes)
                continue

            client = client_factory(url)
            try:
                active = await cls._query_sessions(client)
            except AmbiguousResponseError as exc:
                logger.warning(
                    "Server %s gave no definite session list, skipping %d attach process(es): %s",
                    url,
                    len(processes),
                    exc,
                )
                report.skipped_processes += len(processes)
                continue
            finally:
                await client.aclose()

            if active is None:
                logger.warning("Server %s unreachable, reaping its %d attach process(es)", url, len(processes))
                zombies = processes
            else:
                zombies = [proc for proc in processes if proc.session_id not in active]

            for proc in zombies:
                logger.warning("Reaping zombie pid %d (session %s on %s)", proc.pid, proc.session_id, url)
                await terminate_process(inspector, proc.pid)
                report.zombies_killed += 1

        logger.info(
            "Reap complete: servers_killed=%d zombies_killed=%d skipped_servers=%d skipped_processes=%d",
            report.servers_killed,
            report.zombies_killed,
            report.skipped_servers,
            report.skipped_processes,
        )
        return report
