"""paneherd daemon - wires the event stream, pane manager and zombie reaper."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from typing import Mapping, Optional

from paneherd.config.schema import PaneherdConfig
from paneherd.constants import (
    EVENT_STREAM_INITIAL_BACKOFF_S,
    EVENT_STREAM_MAX_BACKOFF_S,
    SESSION_CREATED_EVENT,
)
from paneherd.core.controller_client import ControllerClient, ControllerError
from paneherd.core.process_inspector import ProcessInspector
from paneherd.core.session_manager import SessionManager
from paneherd.core.task_registry import TaskRegistry
from paneherd.core.tmux_bridge import TmuxBridge
from paneherd.core.zombie_reaper import ZombieReaper, terminate_process

logger = logging.getLogger(__name__)

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP, signal.SIGQUIT)
TASK_SHUTDOWN_TIMEOUT_S = 5.0


def resolve_server_url(config: PaneherdConfig, override: Optional[str] = None) -> str:
    """`--server-url` wins, then `OPENCODE_PORT`, then the configured port."""
    if override:
        return override.rstrip("/")
    port = os.getenv("OPENCODE_PORT") or str(config.port)
    return f"http://localhost:{port}"


def server_port(server_url: str) -> Optional[int]:
    _, _, tail = server_url.rpartition(":")
    port = tail.split("/", 1)[0]
    return int(port) if port.isdigit() else None


class PaneherdDaemon:  # pylint: disable=too-many-instance-attributes
    """Runs until a signal, controller loss, or self-destruct."""

    def __init__(
        self,
        config: PaneherdConfig,
        *,
        server_url: str,
        bridge: Optional[TmuxBridge] = None,
        client: Optional[ControllerClient] = None,
        inspector: Optional[ProcessInspector] = None,
    ) -> None:
        self.config = config
        self.server_url = server_url
        self.registry = TaskRegistry()
        self.client = client or ControllerClient(server_url)
        self.inspector = inspector or ProcessInspector()
        self.manager = SessionManager(
            config.tmux,
            server_url=server_url,
            bridge=bridge,
            client=self.client,
            registry=self.registry,
        )
        self.reaper = ZombieReaper(
            server_url,
            config.reaper,
            inspector=self.inspector,
            on_self_destruct=self._self_destruct,
        )
        self.shutdown_event = asyncio.Event()
        self.shutdown_reason = "exit"
        self._stopped = False

    def request_shutdown(self, reason: str) -> None:
        if self.shutdown_event.is_set():
            return
        logger.info("Received %s...", reason)
        self.shutdown_reason = reason
        self.shutdown_event.set()

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in SHUTDOWN_SIGNALS:
            loop.add_signal_handler(sig, self.request_shutdown, sig.name)

    async def start(self) -> None:
        await self.manager.start()
        self.reaper.start()
        self.registry.spawn(self._consume_events(), name="event-stream")
        self.registry.spawn(self._watch_manager(), name="manager-watch")
        logger.info("paneherd started for %s", self.server_url)

    async def stop(self) -> None:
        """Tear everything down. Safe to call more than once."""
        if self._stopped:
            return
        self._stopped = True
        logger.info("Stopping (%s)", self.shutdown_reason)
        try:
            await self.manager.handle_shutdown(self.shutdown_reason)
            await self.reaper.shutdown()
        finally:
            await self.registry.shutdown(timeout=TASK_SHUTDOWN_TIMEOUT_S)
            await self.client.aclose()
        logger.info("paneherd stopped")

    async def _watch_manager(self) -> None:
        # The manager shuts itself down when the controller becomes unreachable.
        await self.manager.shutdown_event.wait()
        self.request_shutdown("server-unreachable")

    def handle_event(self, event: Mapping[str, object]) -> None:
        if event.get("type") == SESSION_CREATED_EVENT:
            self.registry.spawn(self.manager.on_session_created(event), name="session-created")

    async def _consume_events(self) -> None:
        backoff = EVENT_STREAM_INITIAL_BACKOFF_S
        while True:
            try:
                async for event in self.client.events():
                    backoff = EVENT_STREAM_INITIAL_BACKOFF_S
                    self.handle_event(event)
                logger.info("Event stream closed by controller")
            except ControllerError as exc:
                logger.warning("Event stream unavailable: %s", exc)

            logger.debug("Reconnecting to event stream in %.1fs", backoff)
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, EVENT_STREAM_MAX_BACKOFF_S)

    async def _self_destruct(self) -> None:
        port = server_port(self.server_url)
        if port is not None:
            pids = await asyncio.to_thread(self.inspector.listening_pids, port)
            for pid in pids:
                logger.warning("Terminating abandoned controller pid %d on port %d", pid, port)
                await terminate_process(self.inspector, pid)
        self.request_shutdown("exit")


async def run_daemon(config: PaneherdConfig, *, server_url: Optional[str] = None) -> int:
    """Run the daemon until shutdown. Returns the process exit code."""
    daemon = PaneherdDaemon(config, server_url=resolve_server_url(config, server_url))
    daemon.install_signal_handlers()

    exit_code = 0
    try:
        await daemon.start()
        await daemon.shutdown_event.wait()
    except Exception as e:  # pylint: disable=broad-exception-caught
        logger.error("Unexpected error: %s", e, exc_info=True)
        exit_code = 1
    finally:
        try:
            await daemon.stop()
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.error("Error during daemon stop: %s", e)
            exit_code = 1
    return exit_code
