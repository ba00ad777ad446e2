"""Process inspection primitives (psutil-backed).

All helpers treat a process that vanished mid-call as gone rather than as an
error: the caller was usually about to kill it anyway.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import time
from typing import Optional

import psutil

logger = logging.getLogger(__name__)

_EXIT_POLL_INTERVAL_S = 0.1
_LSOF_TIMEOUT_S = 5.0


class ProcessInspector:
    """Thin wrapper over psutil so the reaper can be tested without real processes."""

    def __init__(self, *, own_pid: Optional[int] = None) -> None:
        self._own_pid = own_pid if own_pid is not None else os.getpid()

    def find_pids(self, needle: str) -> list[int]:
        """Pids whose full command line contains `needle` (this process excluded)."""
        pids: list[int] = []
        for proc in psutil.process_iter(["pid", "cmdline"]):
            try:
                cmdline = proc.info.get("cmdline") or []
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
            pid = proc.info.get("pid")
            if pid is None or pid == self._own_pid:
                continue
            if needle in " ".join(cmdline):
                pids.append(pid)
        return sorted(pids)

    def command_line(self, pid: int) -> Optional[str]:
        try:
            cmdline = psutil.Process(pid).cmdline()
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            return None
        return " ".join(cmdline) or None

    def send_signal(self, pid: int, sig: signal.Signals) -> bool:
        """Send `sig`; True when delivered or when the process is already gone."""
        try:
            psutil.Process(pid).send_signal(sig)
        except psutil.NoSuchProcess:
            return True
        except psutil.AccessDenied as exc:
            logger.warning("Not allowed to send %s to pid %d: %s", sig.name, pid, exc)
            return False
        return True

    def is_alive(self, pid: int) -> bool:
        try:
            return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            return True

    async def wait_for_exit(self, pid: int, timeout_s: float) -> bool:
        """Poll until the process is gone; False when still alive after `timeout_s`."""
        deadline = time.monotonic() + timeout_s
        while self.is_alive(pid):
            if time.monotonic() >= deadline:
                return False
            await asyncio.sleep(_EXIT_POLL_INTERVAL_S)
        return True

    def listening_pids(self, port: int) -> list[int]:
        """Pids with a TCP socket listening on `port`."""
        try:
            connections = psutil.net_connections(kind="tcp")
        except psutil.AccessDenied:
            # macOS requires root for system-wide socket listing.
            return self._listening_pids_lsof(port)

        pids = {
            conn.pid
            for conn in connections
            if conn.pid and conn.status == psutil.CONN_LISTEN and conn.laddr and conn.laddr.port == port
        }
        return sorted(pids)

    @staticmethod
    def _listening_pids_lsof(port: int) -> list[int]:
        try:
            result = subprocess.run(
                ["lsof", "-nP", f"-iTCP:{port}", "-sTCP:LISTEN", "-t"],
                capture_output=True,
                text=True,
                timeout=_LSOF_TIMEOUT_S,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.warning("lsof lookup for port %d failed: %s", port, exc)
            return []
        return sorted({int(line) for line in result.stdout.split() if line.strip().isdigit()})
