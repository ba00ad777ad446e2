"""Parsing contract for the controller's session status payload.

The status endpoint has shipped in several shapes. Each shape has a named
strategy that either returns a definite `{session_id: status}` mapping or
declines by returning None. Strategies are tried in order; when all decline
the payload is ambiguous and `AmbiguousResponseError` is raised. An ambiguous
payload is never read as "no sessions": doing so would make every attached
pane look orphaned.

Accepted shapes, in order:

  wrapped_mapping   {"data": {"ses_1": {"type": "busy"}, ...}}
  wrapped_list      {"data": [{"id": "ses_1", "status": "busy"}, ...]}
  status_mapping    {"ses_1": {"type": "busy"}, ...}   (every value is a status object)
"""

from __future__ import annotations

from typing import Callable, Mapping, Optional

UNKNOWN_STATUS = "unknown"

StatusMap = dict[str, str]
ParseStrategy = Callable[[object], Optional[StatusMap]]


class ControllerError(Exception):
    """Controller request failed or returned something unusable."""


class ControllerUnavailableError(ControllerError):
    """Controller could not be reached or answered with an error status."""


class AmbiguousResponseError(ControllerError):
    """Controller answered, but the payload has no recognizable shape."""


def _status_tag(value: object) -> Optional[str]:
    """Status tag from a status object, or None when the value is not one."""
    if isinstance(value, Mapping):
        tag = value.get("type", value.get("status"))
        if isinstance(tag, str):
            return tag
        return UNKNOWN_STATUS
    if isinstance(value, str):
        return value
    return None


def _mapping_statuses(data: Mapping[object, object]) -> Optional[StatusMap]:
    statuses: StatusMap = {}
    for key, value in data.items():
        if not isinstance(key, str):
            return None
        tag = _status_tag(value)
        if tag is None:
            return None
        statuses[key] = tag
    return statuses


def wrapped_mapping(payload: object) -> Optional[StatusMap]:
    if not isinstance(payload, Mapping):
        return None
    data = payload.get("data")
    if not isinstance(data, Mapping):
        return None
    return _mapping_statuses(data)


def wrapped_list(payload: object) -> Optional[StatusMap]:
    if not isinstance(payload, Mapping):
        return None
    data = payload.get("data")
    if not isinstance(data, list):
        return None

    statuses: StatusMap = {}
    for item in data:
        if not isinstance(item, Mapping):
            return None
        session_id = item.get("id") or item.get("sessionId") or item.get("sessionID")
        if not isinstance(session_id, str) or not session_id:
            # An item we cannot identify could be a live session.
            return None
        statuses[session_id] = _status_tag(item) or UNKNOWN_STATUS
    return statuses


def status_mapping(payload: object) -> Optional[StatusMap]:
    if not isinstance(payload, Mapping) or "data" in payload:
        return None
    for value in payload.values():
        if not isinstance(value, Mapping) or not isinstance(value.get("type"), str):
            return None
    return _mapping_statuses(payload)


STRATEGIES: tuple[tuple[str, ParseStrategy], ...] = (
    ("wrapped_mapping", wrapped_mapping),
    ("wrapped_list", wrapped_list),
    ("status_mapping", status_mapping),
)


def parse_session_statuses(payload: object) -> StatusMap:
    """Parse a status payload into `{session_id: status}`.

    Raises:
        AmbiguousResponseError: No strategy recognized the payload.
    """
    for _name, strategy in STRATEGIES:
        statuses = strategy(payload)
        if statuses is not None:
            return statuses
    raise AmbiguousResponseError(f"Unrecognized session status payload: {type(payload).__name__}")
