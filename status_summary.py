"""status_summary.py

Reduce the per-asset integration status entries of an ad group to one
integration-level outcome (for dashboards and audit).

Latest signal wins: a later successful retry overrides an earlier failure and
vice versa. Ties go to success.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Sequence

from integration_status import is_error_status_code, resolve_integration_response_status


SUCCESS_STATES = frozenset({"received", "succeeded", "completed", "delivered"})
ERROR_STATES = frozenset({"error", "failed", "rejected"})
DUPLICATE_STATE = "duplicate"


@dataclass(frozen=True)
class IntegrationStatusSummary:
    integration_id: str
    integration_name: str
    was_triggered: bool
    outcome: Optional[str] = None  # "success" | "error" | None
    latest_state: str = ""
    updated_at: Optional[float] = None  # epoch millis
    error_message: str = ""
    response_status: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        return {
            "integrationId": d["integration_id"],
            "integrationName": d["integration_name"],
            "wasTriggered": d["was_triggered"],
            "outcome": d["outcome"],
            "latestState": d["latest_state"],
            "updatedAt": d["updated_at"],
            "errorMessage": d["error_message"],
            "responseStatus": d["response_status"],
        }


@dataclass(frozen=True)
class _Signal:
    state: str
    updated_at: float
    error_message: str
    response_status: Optional[int]


def to_millis(value: Any) -> float:
    """Epoch millis from datetime / ISO string / epoch number / {seconds, nanoseconds}; 0 if unknown."""
    if not value or isinstance(value, bool):
        return 0
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return dt.timestamp() * 1000
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return 0
        # Seconds vs millis.
        return float(value) if value > 1e12 else float(value) * 1000
    if isinstance(value, str):
        try:
            s = value.strip().replace("Z", "+00:00")
            return to_millis(datetime.fromisoformat(s))
        except ValueError:
            return 0
    if isinstance(value, Mapping):
        seconds = value.get("seconds", value.get("_seconds"))
        if isinstance(seconds, (int, float)) and not isinstance(seconds, bool):
            nanos = value.get("nanoseconds", value.get("_nanoseconds")) or 0
            if not isinstance(nanos, (int, float)):
                nanos = 0
            return seconds * 1000 + nanos / 1e6
    return 0


def _statuses_of(asset: Any) -> Optional[Mapping[str, Any]]:
    if not isinstance(asset, Mapping):
        return None
    for k in ("integrationStatuses", "integrationStatus"):
        v = asset.get(k)
        if isinstance(v, Mapping):
            return v
    return None


def summarize_integration_status(
    integration_id: Any,
    integration_name: Any = "",
    assets: Optional[Sequence[Any]] = None,
) -> Optional[IntegrationStatusSummary]:
    integration_id = integration_id.strip() if isinstance(integration_id, str) else ""
    if not integration_id:
        return None
    integration_name = integration_name if isinstance(integration_name, str) else ""

    latest_ok: Optional[_Signal] = None
    latest_err: Optional[_Signal] = None
    has_entries = False

    for asset in assets or []:
        statuses = _statuses_of(asset)
        if not statuses:
            continue
        entry = statuses.get(integration_id)
        if not isinstance(entry, Mapping):
            continue
        has_entries = True

        state_raw = entry.get("state")
        state = state_raw.strip().lower() if isinstance(state_raw, str) else ""
        response_status = resolve_integration_response_status(entry)
        status_is_error = is_error_status_code(response_status)
        error_message = entry.get("errorMessage")
        signal = _Signal(
            state=state or ("error" if status_is_error else ""),
            updated_at=to_millis(entry.get("updatedAt")),
            error_message=error_message.strip() if isinstance(error_message, str) else "",
            response_status=response_status,
        )

        # A recorded duplicate conflict keeps its 409 but counts as delivered.
        duplicate = state == DUPLICATE_STATE or (state in SUCCESS_STATES and entry.get("duplicateConflict") is True)
        if duplicate or (state in SUCCESS_STATES and not status_is_error):
            if latest_ok is None or signal.updated_at > latest_ok.updated_at:
                latest_ok = signal
        elif state in ERROR_STATES or status_is_error:
            if latest_err is None or signal.updated_at > latest_err.updated_at:
                latest_err = signal

    if latest_ok is None and latest_err is None:
        # No entries at all: never triggered. Entries but only "sending" etc.: triggered, pending.
        return IntegrationStatusSummary(
            integration_id=integration_id,
            integration_name=integration_name,
            was_triggered=has_entries,
        )

    if latest_ok is not None and (latest_err is None or latest_ok.updated_at >= latest_err.updated_at):
        return IntegrationStatusSummary(
            integration_id=integration_id,
            integration_name=integration_name,
            was_triggered=True,
            outcome="success",
            latest_state=latest_ok.state,
            updated_at=latest_ok.updated_at,
            response_status=latest_ok.response_status,
        )

    return IntegrationStatusSummary(
        integration_id=integration_id,
        integration_name=integration_name,
        was_triggered=True,
        outcome="error",
        latest_state=latest_err.state,
        updated_at=latest_err.updated_at,
        error_message=latest_err.error_message,
        response_status=latest_err.response_status,
    )
