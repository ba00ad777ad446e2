"""Runtime binary resolution policy.

The tmux path is resolved lazily and at most once per `TmuxBinary` instance.
Each bridge owns its own instance, so tests and parallel daemons never share a
cached answer.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import sys
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

_MACOS_FALLBACK_TMUX = (Path("/opt/homebrew/bin/tmux"), Path("/usr/local/bin/tmux"))
_UNIX_TMUX_BINARY = "tmux"


def _is_macos() -> bool:
    return sys.platform == "darwin"


def _candidate_paths() -> list[str]:
    found = shutil.which(_UNIX_TMUX_BINARY)
    candidates = [found] if found else []
    if _is_macos():
        candidates.extend(str(path) for path in _MACOS_FALLBACK_TMUX if path.exists())
    return candidates


async def _verify(path: str) -> bool:
    """Run `tmux -V` to make sure the binary actually works."""
    try:
        proc = await asyncio.create_subprocess_exec(
            path,
            "-V",
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        await proc.wait()
    except OSError as exc:
        logger.debug("tmux candidate %s failed to run: %s", path, exc)
        return False
    return proc.returncode == 0


class TmuxBinary:
    """Resolve-once accessor for the tmux executable."""

    def __init__(self, path: Optional[str] = None) -> None:
        self._path = path
        self._resolved = path is not None
        self._lock = asyncio.Lock()

    @property
    def cached(self) -> Optional[str]:
        return self._path

    async def resolve(self) -> Optional[str]:
        """Return the tmux path, probing the system on first use only."""
        if self._resolved:
            return self._path
        async with self._lock:
            if self._resolved:
                return self._path
            for candidate in _candidate_paths():
                if await _verify(candidate):
                    self._path = candidate
                    break
            self._resolved = True
            if self._path:
                logger.debug("Resolved tmux binary: %s", self._path)
            else:
                logger.warning("tmux binary not found")
            return self._path
