"""integration_status.py

Status-code helpers shared by the dispatcher and the status summary, plus the
duplicate-conflict classifier.

The integration worker wraps the third-party answer, so a single reply can
carry up to three status codes:

  - the HTTP status of the worker call itself
  - dispatch.response.status (what the third party answered)
  - dispatch.status (worker's own verdict; sometimes a word like "error")
"""

from __future__ import annotations

import json
import math
import re
from typing import Any, Iterable, List, Mapping, Optional, Pattern, Tuple


# -----------------------------
# Status codes
# -----------------------------

def to_status_code(value: Any) -> Optional[int]:
    """Coerce 404 / 404.0 / " 404 " to 404; anything else to None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str):
        m = re.match(r"^\s*([+-]?\d+)", value)
        return int(m.group(1)) if m else None
    return None


def is_error_status_code(status: Any) -> bool:
    return isinstance(status, int) and not isinstance(status, bool) and status >= 400


def parse_maybe_json(value: Any) -> Any:
    """Return dict/list values as is, decode JSON strings, else None."""
    if not value:
        return None
    if isinstance(value, (dict, list)):
        return value
    if not isinstance(value, str):
        return None
    s = value.strip()
    if not s:
        return None
    try:
        return json.loads(s)
    except ValueError:
        return None


def _sub(obj: Any, key: str) -> Optional[Mapping[str, Any]]:
    if not isinstance(obj, Mapping):
        return None
    v = obj.get(key)
    return v if isinstance(v, Mapping) else None


def _status_of(obj: Optional[Mapping[str, Any]]) -> Optional[int]:
    if obj is None:
        return None
    code = to_status_code(obj.get("status"))
    if code is None:
        code = to_status_code(obj.get("statusCode"))
    return code


def extract_business_status(parsed: Any, http_status: Optional[int]) -> Optional[int]:
    """dispatch.response.status, else dispatch.status, else the HTTP status."""
    dispatch = _sub(parsed, "dispatch")
    code = _status_of(_sub(dispatch, "response"))
    if code is None:
        code = _status_of(dispatch)
    if code is None:
        code = http_status
    return code


def extract_status_from_payload(payload: Any) -> Optional[int]:
    """First status code found in a stored response payload."""
    parsed = parse_maybe_json(payload)
    if not isinstance(parsed, Mapping):
        return None

    dispatch = _sub(parsed, "dispatch")
    for candidate in (
        _status_of(_sub(dispatch, "response")),
        _status_of(dispatch),
        _status_of(_sub(parsed, "response")),
        _status_of(parsed),
    ):
        if candidate is not None:
            return candidate
    return None


def resolve_integration_response_status(entry: Any) -> Optional[int]:
    """Effective response status of a stored status entry.

    An error code wins over a success code, the payload code wins over the
    stored responseStatus.
    """
    if not isinstance(entry, Mapping):
        return None
    payload_status = extract_status_from_payload(entry.get("responsePayload"))
    direct_status = to_status_code(entry.get("responseStatus"))

    if is_error_status_code(payload_status):
        return payload_status
    if is_error_status_code(direct_status):
        return direct_status
    if payload_status is not None:
        return payload_status
    return direct_status


# -----------------------------
# Duplicate conflict classifier
# -----------------------------

# All patterns must match the same message.
DUPLICATE_CONFLICT_PATTERNS: Tuple[Pattern[str], ...] = (
    re.compile(r"duplicate", re.IGNORECASE),
    re.compile(
        r"already\s+(?:exists?|existed|submitted|been\s+(?:submitted|received|created))",
        re.IGNORECASE,
    ),
)

CONFLICT_STATUS_CODE = 409

_MESSAGE_KEYS = ("errorMessage", "message", "error")


def _collect_messages(obj: Any, out: List[str], depth: int = 0) -> None:
    if depth > 4 or obj is None:
        return
    if isinstance(obj, str):
        s = obj.strip()
        if not s:
            return
        out.append(s)
        decoded = parse_maybe_json(s)
        if isinstance(decoded, Mapping):
            _collect_messages(decoded, out, depth + 1)
        return
    if not isinstance(obj, Mapping):
        return

    for k in _MESSAGE_KEYS:
        v = obj.get(k)
        if isinstance(v, str):
            if v.strip():
                out.append(v.strip())
        elif isinstance(v, Mapping):
            # {"error": {"message": "...", "code": ...}}
            _collect_messages(v, out, depth + 1)

    body = obj.get("body")
    if body is not None:
        _collect_messages(body, out, depth + 1)
    response = _sub(obj, "response")
    if response is not None and response.get("body") is not None:
        _collect_messages(response.get("body"), out, depth + 1)


def conflict_messages(dispatch_entry: Any, parsed_response: Any) -> List[str]:
    out: List[str] = []
    _collect_messages(dispatch_entry, out)
    if isinstance(parsed_response, (Mapping, str)):
        _collect_messages(parsed_response, out)
    return out


def matches_all(message: str, patterns: Iterable[Pattern[str]] = DUPLICATE_CONFLICT_PATTERNS) -> bool:
    return all(p.search(message) for p in patterns)


def is_duplicate_conflict(
    status_code: Any,
    dispatch_entry: Any,
    parsed_response: Any,
    *,
    patterns: Tuple[Pattern[str], ...] = DUPLICATE_CONFLICT_PATTERNS,
) -> bool:
    """True for a 409 whose message reads like "duplicate ... already exists".

    The third party answers 409 both for real conflicts and for resubmitting
    content it already has; only the latter counts as delivered.
    """
    if to_status_code(status_code) != CONFLICT_STATUS_CODE:
        return False
    return any(matches_all(m, patterns) for m in conflict_messages(dispatch_entry, parsed_response))
