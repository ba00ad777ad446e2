"""tmux bridge for paneherd - creates, tags, arranges and kills panes.

Every helper reports failure through its return value (False / None) and
logs the tmux stderr; nothing here raises for a failed tmux call.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from paneherd.constants import PANE_TITLE_MAX_CHARS
from paneherd.runtime.binaries import TmuxBinary

logger = logging.getLogger(__name__)

PRESET_LAYOUTS = frozenset({"main-vertical", "main-horizontal", "tiled", "even-horizontal", "even-vertical"})
_MAIN_PANE_SIZE_OPTIONS = {"main-vertical": "main-pane-width", "main-horizontal": "main-pane-height"}
_PANE_GONE_MARKERS = ("can't find pane", "no such pane")


@dataclass(frozen=True)
class TmuxResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class TmuxBridge:
    """Async wrapper around the tmux command line."""

    def __init__(self, binary: Optional[TmuxBinary] = None, *, env: Optional[Mapping[str, str]] = None) -> None:
        self._binary = binary or TmuxBinary()
        self._env = dict(os.environ if env is None else env)

    @property
    def in_tmux(self) -> bool:
        return bool(self._env.get("TMUX"))

    async def _run(self, *args: str) -> Optional[TmuxResult]:
        """Run one tmux command. None when tmux is missing or cannot be started."""
        tmux = await self._binary.resolve()
        if not tmux:
            logger.debug("tmux unavailable, skipping: %s", args[0] if args else "")
            return None
        try:
            proc = await asyncio.create_subprocess_exec(
                tmux,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._env,
            )
            stdout, stderr = await proc.communicate()
        except OSError as e:
            logger.error("Failed to run tmux %s: %s", args[0] if args else "", e)
            return None
        return TmuxResult(
            returncode=proc.returncode if proc.returncode is not None else 1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace").strip(),
        )

    async def current_pane_id(self) -> Optional[str]:
        """Pane id of the pane this process runs in.

        Returns:
            `%N` pane id, or None outside tmux
        """
        pane_id = self._env.get("TMUX_PANE")
        if pane_id:
            return pane_id
        result = await self._run("display-message", "-p", "#{pane_id}")
        if result is None or not result.ok:
            return None
        pane_id = result.stdout.strip()
        return pane_id if pane_id.startswith("%") else None

    async def window_size(self, target: Optional[str] = None) -> Optional[tuple[int, int]]:
        """Width and height of the window holding `target` (default: current window)."""
        args = ["display-message", "-p"]
        if target:
            args.extend(["-t", target])
        result = await self._run(*args, "#{window_width} #{window_height}")
        if result is None or not result.ok:
            return None
        try:
            width, height = (int(part) for part in result.stdout.split())
        except ValueError:
            logger.warning("Unexpected window size output: %r", result.stdout)
            return None
        return width, height

    async def spawn_pane(
        self,
        command: str,
        title: str,
        *,
        tags: Optional[Mapping[str, str]] = None,
        env: Optional[Mapping[str, str]] = None,
        target: Optional[str] = None,
    ) -> Optional[str]:
        """Split a new detached pane running `command`.

        Args:
            command: Shell command for the new pane
            title: Pane title (truncated)
            tags: User options to set on the new pane (`@key value`)
            env: Extra environment for the pane's command
            target: Pane to split (default: current pane)

        Returns:
            New pane id, or None if the split failed
        """
        args = ["split-window", "-h", "-d", "-P", "-F", "#{pane_id}"]
        if target:
            args.extend(["-t", target])
        for key, value in (env or {}).items():
            args.extend(["-e", f"{key}={value}"])
        args.append(command)

        result = await self._run(*args)
        if result is None:
            return None
        pane_id = result.stdout.strip()
        if not result.ok or not pane_id:
            logger.warning("split-window failed: returncode=%d, stderr=%s", result.returncode, result.stderr)
            return None

        await self._run("select-pane", "-t", pane_id, "-T", title[:PANE_TITLE_MAX_CHARS])
        for key, value in (tags or {}).items():
            await self.tag_pane(pane_id, key, value)
        logger.debug("Spawned pane %s: %s", pane_id, command)
        return pane_id

    async def tag_pane(self, pane_id: str, key: str, value: str) -> bool:
        result = await self._run("set-option", "-p", "-t", pane_id, f"@{key}", value)
        if result is None:
            return False
        if not result.ok:
            logger.warning("Failed to tag pane %s with @%s: %s", pane_id, key, result.stderr)
        return result.ok

    async def list_tagged_panes(self, key: str) -> dict[str, str]:
        """All panes on the server carrying user option `@key`.

        Returns:
            Mapping of pane id to tag value
        """
        result = await self._run("list-panes", "-a", "-F", f"#{{pane_id}}\t#{{@{key}}}")
        if result is None or not result.ok:
            return {}
        panes: dict[str, str] = {}
        for line in result.stdout.splitlines():
            pane_id, _, value = line.partition("\t")
            if pane_id and value:
                panes[pane_id] = value
        return panes

    async def kill_pane(self, pane_id: str) -> bool:
        """Kill a pane. A pane that no longer exists counts as killed."""
        result = await self._run("kill-pane", "-t", pane_id)
        if result is None:
            return False
        if result.ok:
            return True
        if any(marker in result.stderr for marker in _PANE_GONE_MARKERS):
            logger.debug("Pane %s already gone", pane_id)
            return True
        logger.warning("Failed to kill pane %s: %s", pane_id, result.stderr)
        return False

    async def apply_layout(
        self,
        layout: str,
        main_pane_size: Optional[int] = None,
        *,
        target: Optional[str] = None,
    ) -> bool:
        """Apply a preset layout name or a rendered layout string.

        Args:
            layout: Preset (`main-vertical`, `tiled`, ...) or checksummed layout string
            main_pane_size: Main pane percentage for the `main-*` presets
            target: Pane whose window is arranged (default: current window)

        Returns:
            True if tmux accepted the layout
        """
        window_args = ["-t", target] if target else []
        size_option = _MAIN_PANE_SIZE_OPTIONS.get(layout)
        if size_option and main_pane_size is not None:
            await self._run("set-window-option", *window_args, size_option, f"{main_pane_size}%")

        result = await self._run("select-layout", *window_args, layout)
        if result is None:
            return False
        if not result.ok:
            logger.warning("select-layout %s failed: %s", layout, result.stderr)
            return False
        logger.debug("Applied layout %s", layout)
        return True

    async def kill_session(self) -> bool:
        """Kill the tmux session this process runs in."""
        name_result = await self._run("display-message", "-p", "#S")
        session_name = name_result.stdout.strip() if name_result and name_result.ok else ""

        args = ["kill-session"]
        if session_name:
            args.extend(["-t", session_name])
        result = await self._run(*args)
        if result is None:
            return False
        if not result.ok:
            logger.error("Failed to kill tmux session %s: %s", session_name or "(current)", result.stderr)
        return result.ok
