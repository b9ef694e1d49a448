"""
Integration Dispatch
====================

Sends approved creative of an ad group to the brand's configured integration
(via the integration worker endpoint) and records a per-asset delivery status.

Flow per invocation:
- Approved assets are grouped by recipe (one logical ad, several aspect ratios).
- Groups are dispatched one after another, never in parallel:
    mark "sending" -> POST /api/integration-worker -> mark "received" or "error"
- A failing group never stops the next one. If any group failed, a single
  IntegrationDispatchError is raised at the end listing every failure.
- A 409 that reads like "duplicate ... already exists" counts as delivered.

No retries, no queue: re-running dispatch is the retry.

Status writes go through the asset store (SQLite locally, Postgres on
Railway) as one atomic batch per recipe group. A failed status write is
logged and dropped; the delivery attempt already happened and its outcome
stands.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import textwrap
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

import requests
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from integration_status import (
    extract_business_status,
    is_duplicate_conflict,
    is_error_status_code,
)
from recipe_groups import (
    RecipeGroup,
    filter_approved_assets,
    get_asset_document_id,
    group_assets_by_recipe,
    pick_primary_asset,
)
from recipe_ids import get_version, normalize_recipe_identifier, resolve_aspect_ratio
from status_summary import IntegrationStatusSummary, summarize_integration_status

logger = logging.getLogger(__name__)

DEFAULT_WORKER_PATH = "/api/integration-worker"
NO_ASSETS_MESSAGE = "No assets available for integration dispatch."

STATE_SENDING = "sending"
STATE_RECEIVED = "received"
STATE_ERROR = "error"

_DISPATCH_FAILURE_STATES = {"error", "failed"}


# -----------------------------
# Exceptions
# -----------------------------

class IntegrationDispatchError(RuntimeError):
    """One or more recipe groups failed. The message lists every failure:
    "<groupKey>: <message>; <groupKey>: <message>".
    """


class WorkerRequestError(IntegrationDispatchError):
    def __init__(self, message: str, *, http_status: int | None = None):
        super().__init__(message)
        self.http_status = http_status


# -----------------------------
# Config
# -----------------------------

@dataclass(frozen=True)
class DispatchConfig:
    worker_url: str
    worker_path: str = DEFAULT_WORKER_PATH
    api_key: str | None = None
    timeout_s: int = 30

    @property
    def endpoint(self) -> str:
        return self.worker_url.rstrip("/") + "/" + self.worker_path.lstrip("/")

    @staticmethod
    def from_env() -> "DispatchConfig":
        """Loads config from environment variables (optionally via .env)."""
        load_dotenv(override=False)

        worker_url = os.getenv("INTEGRATION_WORKER_URL", "").strip()
        worker_path = os.getenv("INTEGRATION_WORKER_PATH", "").strip() or DEFAULT_WORKER_PATH
        api_key = os.getenv("INTEGRATION_WORKER_API_KEY", "").strip() or None
        timeout_raw = os.getenv("INTEGRATION_WORKER_TIMEOUT_S", "").strip()

        if not worker_url:
            raise ValueError("Missing INTEGRATION_WORKER_URL in environment (.env).")
        try:
            timeout_s = int(timeout_raw) if timeout_raw else 30
        except ValueError as e:
            raise ValueError(f"INTEGRATION_WORKER_TIMEOUT_S must be an integer, got {timeout_raw!r}") from e

        return DispatchConfig(
            worker_url=worker_url,
            worker_path=worker_path,
            api_key=api_key,
            timeout_s=timeout_s,
        )


def build_asset_store(store_path: str):
    """Factory: SQLite (default) or Postgres (Railway).

    Enable Postgres store by setting:
      ASSET_STORE_SOURCE=db
      DATABASE_URL=...
    """
    source = (os.getenv("ASSET_STORE_SOURCE") or "").strip().lower()
    database_url = (os.getenv("DATABASE_URL") or "").strip()
    if source == "db" and database_url:
        from asset_store_pg import AssetStorePG

        return AssetStorePG(database_url)

    from asset_store import AssetStore

    return AssetStore(store_path)


def default_store_path() -> str:
    return (os.getenv("ASSET_DB_PATH") or ".asset_state.db").strip() or ".asset_state.db"


# -----------------------------
# Wire models (worker request body)
# -----------------------------

class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ApprovedAsset(_WireModel):
    id: str
    filename: str = ""
    status: str = ""
    delivery_url: str = ""
    firebase_url: str = ""
    cdn_url: str = ""
    thumbnail_url: str = ""
    aspect_ratio: str = ""
    recipe_code: str = ""
    version: int = 1


class DispatchPayload(_WireModel):
    ad_group_id: str
    integration_id: str
    integration_name: str = ""
    recipe_identifier: str = ""
    recipe_code: str = ""
    approved_asset_id: str
    approved_ad_id: str
    approved_asset_ids: List[str] = Field(default_factory=list)
    approved_assets: List[ApprovedAsset] = Field(default_factory=list)
    approved_asset: Optional[ApprovedAsset] = None


class WorkerRequest(_WireModel):
    integration_id: str
    review_id: str
    attempt: int = Field(ge=1)
    payload: DispatchPayload


def _text(value: Any) -> str:
    if value is None or isinstance(value, bool):
        return ""
    return value.strip() if isinstance(value, str) else str(value)


def _approved_asset(asset: Mapping[str, Any], identifier: str) -> ApprovedAsset:
    firebase_url = _text(asset.get("firebaseUrl"))
    cdn_url = _text(asset.get("cdnUrl"))
    return ApprovedAsset(
        id=get_asset_document_id(asset),
        filename=_text(asset.get("filename")),
        status=_text(asset.get("status")),
        delivery_url=_text(asset.get("deliveryUrl")) or cdn_url or firebase_url or _text(asset.get("url")),
        firebase_url=firebase_url,
        cdn_url=cdn_url,
        thumbnail_url=_text(asset.get("thumbnailUrl")),
        aspect_ratio=resolve_aspect_ratio(asset),
        # One recipe code per group, whatever each rendition carried.
        recipe_code=identifier or normalize_recipe_identifier(asset.get("recipeCode")),
        version=get_version(asset),
    )


def build_group_payload(
    group_id: str,
    integration_id: str,
    integration_name: str,
    group: RecipeGroup,
) -> Optional[DispatchPayload]:
    """Canonical worker payload for one recipe group; None if nothing is dispatchable."""
    approved = [
        a for a in group.assets
        if isinstance(a, Mapping) and a.get("status") == "approved" and get_asset_document_id(a)
    ]
    if not approved:
        return None

    primary = pick_primary_asset(approved)
    primary_id = get_asset_document_id(primary)
    details = [_approved_asset(a, group.identifier) for a in approved]
    primary_detail = next((d for d in details if d.id == primary_id), details[0])

    return DispatchPayload(
        ad_group_id=group_id,
        integration_id=integration_id,
        integration_name=integration_name or "",
        recipe_identifier=group.identifier,
        recipe_code=group.identifier or primary_detail.recipe_code,
        approved_asset_id=primary_id,
        approved_ad_id=primary_id,
        approved_asset_ids=[d.id for d in details],
        approved_assets=details,
        approved_asset=primary_detail,
    )


# -----------------------------
# Worker client (REST via requests)
# -----------------------------

@dataclass(frozen=True)
class WorkerResponse:
    status_code: int
    reason: str = ""
    text: str = ""
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status_code < 400


class IntegrationWorkerClient:
    """One POST per recipe group. No retries: the caller re-runs dispatch instead."""

    def __init__(self, cfg: DispatchConfig):
        self.cfg = cfg
        self.session = requests.Session()

    def post_dispatch(self, body: Dict[str, Any]) -> WorkerResponse:
        headers = {"Content-Type": "application/json"}
        if self.cfg.api_key:
            headers["X-API-Key"] = self.cfg.api_key
        try:
            resp = self.session.post(
                self.cfg.endpoint,
                data=json.dumps(body, ensure_ascii=False, default=str).encode("utf-8"),
                headers=headers,
                timeout=self.cfg.timeout_s,
            )
        except requests.RequestException as e:
            raise WorkerRequestError(f"Network error calling integration worker: {e}") from e

        return WorkerResponse(
            status_code=int(resp.status_code),
            reason=resp.reason or "",
            text=resp.text or "",
            headers=dict(resp.headers),
        )


# -----------------------------
# Response classification
# -----------------------------

@dataclass(frozen=True)
class ResponseVerdict:
    state: str
    error_message: str = ""
    duplicate: bool = False
    response_status: Optional[int] = None
    request_payload: Any = None
    response_payload: Any = None
    response_headers: Optional[Dict[str, Any]] = None


def _first_str(*values: Any) -> str:
    for v in values:
        if isinstance(v, str) and v.strip():
            return v.strip()
    return ""


def classify_worker_response(response: WorkerResponse, request_payload: Any) -> ResponseVerdict:
    """Decide received/error for one worker reply.

    Order: HTTP >= 400, business status >= 400, dispatch.status error/failed.
    A duplicate conflict (see integration_status.is_duplicate_conflict)
    overrides all three.
    """
    parsed: Any = None
    if response.text:
        try:
            parsed = json.loads(response.text)
        except ValueError:
            parsed = None

    body = parsed if isinstance(parsed, dict) else {}
    dispatch = body.get("dispatch") if isinstance(body.get("dispatch"), dict) else {}
    dispatch_response = dispatch.get("response") if isinstance(dispatch.get("response"), dict) else {}

    # What actually went to the third party, when the worker echoes it back.
    request_snapshot = request_payload
    if isinstance(body.get("request"), dict) and "body" in body["request"]:
        request_snapshot = body["request"]["body"]
    elif isinstance(body.get("mapping"), dict) and "payload" in body["mapping"]:
        request_snapshot = body["mapping"]["payload"]

    headers = dispatch_response.get("headers")
    if not isinstance(headers, dict):
        headers = dispatch.get("headers") if isinstance(dispatch.get("headers"), dict) else None

    http_status = response.status_code
    business_status = extract_business_status(parsed, http_status)
    duplicate = is_duplicate_conflict(http_status, dispatch, parsed) or is_duplicate_conflict(
        business_status, dispatch, parsed
    )

    common = dict(
        response_status=business_status,
        request_payload=request_snapshot,
        response_payload=parsed if parsed is not None else (response.text or None),
        response_headers=headers,
    )

    dispatch_message = _first_str(dispatch.get("errorMessage"))
    dispatch_state = _first_str(dispatch.get("status")).lower()

    if not duplicate:
        if not response.ok:
            message = (
                dispatch_message
                or _first_str(body.get("error"), body.get("message"), response.reason)
                or "Integration request failed."
            )
            return ResponseVerdict(state=STATE_ERROR, error_message=message, **common)

        if is_error_status_code(business_status):
            message = (
                dispatch_message
                or _first_str(dispatch.get("message"), body.get("error"), body.get("message"))
                or f"Integration responded with status {business_status}."
            )
            return ResponseVerdict(state=STATE_ERROR, error_message=message, **common)

        if dispatch_state in _DISPATCH_FAILURE_STATES:
            message = dispatch_message or _first_str(dispatch.get("message")) or "Integration reported failure."
            return ResponseVerdict(state=STATE_ERROR, error_message=message, **common)

    return ResponseVerdict(state=STATE_RECEIVED, duplicate=duplicate, **common)


# -----------------------------
# Status updates
# -----------------------------

_ENTRY_FIELDS = {
    "request_payload": "requestPayload",
    "response_payload": "responsePayload",
    "response_status": "responseStatus",
    "response_headers": "responseHeaders",
    "duplicate_conflict": "duplicateConflict",
}


def update_integration_status_for_assets(
    store: Any,
    group_id: str,
    integration_id: str,
    integration_name: str,
    assets: Sequence[Mapping[str, Any]],
    state: str,
    *,
    error_message: str = "",
    **fields: Any,
) -> Optional[str]:
    """Replace integrationStatuses[integration_id] on every asset, in one batch.

    Optional fields (request_payload, response_payload, response_status,
    response_headers, duplicate_conflict) are written only when passed; passing
    None writes an explicit null.

    Returns the stored updatedAt, or None when nothing was written. Store
    errors are logged and swallowed.
    """
    unknown = set(fields) - set(_ENTRY_FIELDS)
    if unknown:
        raise TypeError(f"Unknown status fields: {', '.join(sorted(unknown))}")
    if not group_id or not integration_id or not assets:
        return None

    entries: Dict[str, Dict[str, Any]] = {}
    for asset in assets:
        asset_id = get_asset_document_id(asset)
        if not asset_id:
            continue
        entry: Dict[str, Any] = {
            "state": state,
            "integrationId": integration_id,
            "integrationName": integration_name or "",
            "errorMessage": (error_message or "") if state == STATE_ERROR else "",
        }
        for k, wire_key in _ENTRY_FIELDS.items():
            if k in fields:
                entry[wire_key] = fields[k]
        entries[asset_id] = entry

    if not entries:
        return None

    try:
        return store.set_integration_statuses(group_id, integration_id, entries)
    except Exception:
        logger.exception(
            "Failed to update integration statuses (group=%s integration=%s state=%s assets=%d)",
            group_id,
            integration_id,
            state,
            len(entries),
        )
        return None


# -----------------------------
# Orchestration
# -----------------------------

@dataclass(frozen=True)
class DispatchOutcome:
    group_key: str
    identifier: str
    asset_ids: List[str]
    attempt: int
    state: str
    error_message: str = ""
    response_status: Optional[int] = None
    duplicate: bool = False

    @property
    def ok(self) -> bool:
        return self.state == STATE_RECEIVED

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def dispatch_group(
    store: Any,
    client: Any,
    *,
    group_id: str,
    integration_id: str,
    integration_name: str,
    group: RecipeGroup,
    attempt: int,
) -> DispatchOutcome:
    """Dispatch one recipe group and persist its terminal status. Never raises for I/O failures."""
    payload = build_group_payload(group_id, integration_id, integration_name, group)
    if payload is None:
        # Nothing approved in this group, so there is no asset to mark.
        logger.warning("Recipe group %r has no dispatchable assets (group=%s)", group.key, group_id)
        return DispatchOutcome(
            group_key=group.key,
            identifier=group.identifier,
            asset_ids=[],
            attempt=attempt,
            state=STATE_ERROR,
            error_message=NO_ASSETS_MESSAGE,
        )

    approved_ids = set(payload.approved_asset_ids)
    targets = [a for a in group.assets if get_asset_document_id(a) in approved_ids]
    payload_dict = payload.model_dump(by_alias=True)

    update_integration_status_for_assets(
        store,
        group_id,
        integration_id,
        integration_name,
        targets,
        STATE_SENDING,
        request_payload=None,
        response_payload=None,
        response_status=None,
        response_headers=None,
    )

    body = WorkerRequest(
        integration_id=integration_id,
        review_id=group_id,
        attempt=attempt,
        payload=payload,
    ).model_dump(by_alias=True)

    try:
        response = client.post_dispatch(body)
    except Exception as e:
        message = str(e) or "Integration dispatch failed."
        update_integration_status_for_assets(
            store,
            group_id,
            integration_id,
            integration_name,
            targets,
            STATE_ERROR,
            error_message=message,
            request_payload=payload_dict,
            response_payload=None,
            response_status=getattr(e, "http_status", None),
            response_headers=None,
        )
        return DispatchOutcome(
            group_key=group.key,
            identifier=group.identifier,
            asset_ids=list(payload.approved_asset_ids),
            attempt=attempt,
            state=STATE_ERROR,
            error_message=message,
        )

    verdict = classify_worker_response(response, payload_dict)
    extra: Dict[str, Any] = {"duplicate_conflict": True} if verdict.duplicate else {}
    if verdict.duplicate:
        logger.info(
            "Duplicate conflict from integration %s for recipe group %r treated as received",
            integration_id,
            group.key,
        )

    update_integration_status_for_assets(
        store,
        group_id,
        integration_id,
        integration_name,
        targets,
        verdict.state,
        error_message=verdict.error_message,
        request_payload=verdict.request_payload,
        response_payload=verdict.response_payload,
        response_status=verdict.response_status,
        response_headers=verdict.response_headers,
        **extra,
    )
    return DispatchOutcome(
        group_key=group.key,
        identifier=group.identifier,
        asset_ids=list(payload.approved_asset_ids),
        attempt=attempt,
        state=verdict.state,
        error_message=verdict.error_message,
        response_status=verdict.response_status,
        duplicate=verdict.duplicate,
    )


def dispatch_integration_for_assets(
    store: Any,
    client: Any,
    *,
    group_id: str,
    integration_id: str,
    integration_name: str = "",
    assets: Optional[Sequence[Mapping[str, Any]]] = None,
) -> List[DispatchOutcome]:
    """Dispatch approved assets, one worker call per recipe group, sequentially.

    Returns the outcomes when every group was delivered; otherwise raises
    IntegrationDispatchError after all groups have been attempted.
    """
    if not group_id or not integration_id:
        return []

    groups = group_assets_by_recipe(assets or [])
    succeeded: List[DispatchOutcome] = []
    failed: List[DispatchOutcome] = []

    for attempt, group in enumerate(groups, start=1):
        outcome = dispatch_group(
            store,
            client,
            group_id=group_id,
            integration_id=integration_id,
            integration_name=integration_name,
            group=group,
            attempt=attempt,
        )
        if outcome.ok:
            succeeded.append(outcome)
        else:
            logger.warning(
                "Integration dispatch failed for recipe group %r (group=%s attempt=%d): %s",
                outcome.group_key,
                group_id,
                attempt,
                outcome.error_message,
            )
            failed.append(outcome)

    if failed:
        raise IntegrationDispatchError(
            "; ".join(f"{o.group_key or 'ad'}: {o.error_message}" for o in failed)
        )
    return succeeded


def resolve_integration_details(store: Any, group_id: str) -> tuple[str, str]:
    group = store.get_ad_group(group_id)
    if not group:
        return "", ""
    integration_id = group.get("assignedIntegrationId")
    integration_name = group.get("assignedIntegrationName")
    return (
        integration_id if isinstance(integration_id, str) else "",
        integration_name if isinstance(integration_name, str) else "",
    )


def run_integration_for_ad_group(
    store: Any,
    client: Any,
    group_id: str,
    *,
    assets: Optional[Sequence[Any]] = None,
    integration_id: Optional[str] = None,
    integration_name: Optional[str] = None,
) -> List[DispatchOutcome]:
    """Dispatch an ad group's approved assets to its assigned integration.

    Integration and assets default to what the store has for the ad group.
    Returns [] when no integration is assigned or nothing is approved.
    """
    if not group_id:
        return []

    integration_id = integration_id if isinstance(integration_id, str) else ""
    integration_name = integration_name if isinstance(integration_name, str) else ""
    if not integration_id:
        resolved_id, resolved_name = resolve_integration_details(store, group_id)
        integration_id = resolved_id
        integration_name = integration_name or resolved_name
    if not integration_id:
        logger.info("Ad group %s has no assigned integration; nothing to dispatch", group_id)
        return []

    if assets is None:
        assets = store.list_assets(group_id, status="approved")
    approved = filter_approved_assets(assets)
    if not approved:
        return []

    return dispatch_integration_for_assets(
        store,
        client,
        group_id=group_id,
        integration_id=integration_id,
        integration_name=integration_name,
        assets=approved,
    )


def summarize_ad_group(
    store: Any,
    group_id: str,
    *,
    integration_id: Optional[str] = None,
    integration_name: Optional[str] = None,
) -> Optional[IntegrationStatusSummary]:
    """Integration-level status of an ad group (defaults to its assigned integration)."""
    if not integration_id:
        integration_id, resolved_name = resolve_integration_details(store, group_id)
        integration_name = integration_name or resolved_name
    return summarize_integration_status(integration_id, integration_name or "", store.list_assets(group_id))


def seed_ad_group(
    store: Any,
    group_id: str,
    assets: Sequence[Mapping[str, Any]],
    *,
    integration_id: str = "",
    integration_name: str = "",
) -> List[str]:
    """Load an ad group and its assets into the store (operators/tests)."""
    store.upsert_ad_group(group_id, integration_id=integration_id, integration_name=integration_name)
    return [store.upsert_asset(group_id, a) for a in assets]


# -----------------------------
# CLI
# -----------------------------

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="integration_dispatch.py",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description=textwrap.dedent(
            """
            Integration dispatch tool

            Examples:
              # 1) Load an ad group + assets from JSON into the local store
              python integration_dispatch.py seed --group-id grp1 --file assets.json --integration-id compass

              # 2) Dispatch the ad group's approved assets to its assigned integration
              python integration_dispatch.py dispatch --group-id grp1

              # 3) Show the consolidated integration status
              python integration_dispatch.py summary --group-id grp1
            """
        ),
    )

    p.add_argument("--env", default=".env", help="Path to .env file (default: .env).")
    p.add_argument("--store", default=None, help="SQLite store path (default: ASSET_DB_PATH or .asset_state.db).")
    p.add_argument("--log-level", default="INFO")

    sub = p.add_subparsers(dest="cmd", required=True)

    sp = sub.add_parser("dispatch", help="Dispatch approved assets of an ad group.")
    sp.add_argument("--group-id", required=True)
    sp.add_argument("--integration-id")
    sp.add_argument("--integration-name")

    sp = sub.add_parser("summary", help="Print the integration status summary of an ad group.")
    sp.add_argument("--group-id", required=True)
    sp.add_argument("--integration-id")

    sp = sub.add_parser("seed", help="Load an ad group and its assets from a JSON file (list of assets).")
    sp.add_argument("--group-id", required=True)
    sp.add_argument("--file", required=True)
    sp.add_argument("--integration-id", default="")
    sp.add_argument("--integration-name", default="")

    return p


def main(argv: Optional[List[str]] = None) -> int:
    argv = argv if argv is not None else sys.argv[1:]
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=str(args.log_level).upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    env_path = Path(args.env)
    if env_path.exists():
        load_dotenv(env_path, override=False)

    try:
        store = build_asset_store(args.store or default_store_path())

        if args.cmd == "seed":
            data = json.loads(Path(args.file).read_text())
            assets = data.get("assets", []) if isinstance(data, dict) else data
            ids = seed_ad_group(
                store,
                args.group_id,
                assets,
                integration_id=args.integration_id,
                integration_name=args.integration_name,
            )
            print(json.dumps({"group_id": args.group_id, "asset_ids": ids}, indent=2))
            return 0

        if args.cmd == "summary":
            summary = summarize_ad_group(store, args.group_id, integration_id=args.integration_id)
            print(json.dumps(summary.to_dict() if summary else None, indent=2))
            return 0

        if args.cmd == "dispatch":
            try:
                cfg = DispatchConfig.from_env()
            except ValueError as e:
                print(f"[CONFIG ERROR] {e}", file=sys.stderr)
                return 2
            outcomes = run_integration_for_ad_group(
                store,
                IntegrationWorkerClient(cfg),
                args.group_id,
                integration_id=args.integration_id,
                integration_name=args.integration_name,
            )
            print(json.dumps([o.to_dict() for o in outcomes], indent=2, ensure_ascii=False))
            return 0

        print(f"Unknown command: {args.cmd}", file=sys.stderr)
        return 2

    except IntegrationDispatchError as e:
        print("\n[DISPATCH ERROR]", e, file=sys.stderr)
        return 1
    except Exception as e:
        print("\n[ERROR]", e, file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
