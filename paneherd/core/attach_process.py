"""Attach-process command line parsing and server URL comparison.

Child panes run `opencode attach <server-url> --session <session-id>`. The
command line is the only record of which server and session a pane process
belongs to, so it is parsed here into an `AttachProcess`:

    <anything> attach [flags] <server-url> [flags] --session <id>
    <anything> attach [flags] <server-url> [flags] --session=<id>

- server-url: first token after `attach` that does not start with `-`
  (scheme optional, e.g. `127.0.0.1:4096`)
- id: `[A-Za-z0-9_-]+`

Lines without a session id do not describe a child pane and yield None.
"""

from __future__ import annotations

import re
import shlex
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit

_SESSION_PATTERN = re.compile(r"--session(?:\s+|=)([A-Za-z0-9_-]+)")
_SCHEME_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")
_LOOPBACK_HOSTS = frozenset({"localhost", "127.0.0.1", "0.0.0.0", "::1", "::"})
_DEFAULT_PORTS = {"http": 80, "https": 443}
# Flags of `attach` that consume the following token.
_VALUE_FLAGS = frozenset({"--session", "-s", "--dir", "--password"})


@dataclass(frozen=True)
class AttachProcess:
    pid: int
    session_id: str
    target_url: Optional[str]
    command: str


def _split(command: str) -> list[str]:
    try:
        return shlex.split(command)
    except ValueError:
        return command.split()


def _target_url(tokens: list[str]) -> Optional[str]:
    try:
        start = tokens.index("attach") + 1
    except ValueError:
        return None

    skip_next = False
    for token in tokens[start:]:
        if skip_next:
            skip_next = False
            continue
        if token.startswith("-"):
            skip_next = token in _VALUE_FLAGS
            continue
        return token
    return None


def parse_attach_command(pid: int, command: str) -> Optional[AttachProcess]:
    """Parse an attach command line; None when it carries no session id."""
    match = _SESSION_PATTERN.search(command)
    if not match:
        return None
    return AttachProcess(
        pid=pid,
        session_id=match.group(1),
        target_url=_target_url(_split(command)),
        command=command,
    )


def normalize_server_url(url: str) -> Optional[str]:
    """Canonical `scheme://host:port` with loopback aliases folded to 127.0.0.1."""
    candidate = url.strip()
    if not candidate:
        return None
    if not _SCHEME_PATTERN.match(candidate):
        candidate = f"http://{candidate}"
    try:
        parts = urlsplit(candidate)
        port = parts.port
    except ValueError:
        return None

    host = (parts.hostname or "").lower()
    if not host:
        return None
    if host in _LOOPBACK_HOSTS:
        host = "127.0.0.1"
    scheme = parts.scheme.lower()
    if port is None:
        port = _DEFAULT_PORTS.get(scheme)
    if ":" in host:
        host = f"[{host}]"
    return f"{scheme}://{host}:{port}" if port is not None else f"{scheme}://{host}"


def same_server(url_a: Optional[str], url_b: Optional[str]) -> bool:
    if not url_a or not url_b:
        return False
    normalized_a = normalize_server_url(url_a)
    normalized_b = normalize_server_url(url_b)
    if normalized_a is None or normalized_b is None:
        return url_a == url_b
    return normalized_a == normalized_b
