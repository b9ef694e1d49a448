from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from recipe_groups import get_asset_document_id


def _loads(raw: Any) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return {"_raw": raw}


class AssetStore:
    """SQLite-backed store for ad groups, their assets and integration statuses.

    Tables:
      - ad_groups:             one row per ad group (assigned integration)
      - ad_group_assets:       one row per asset (JSON document)
      - integration_statuses:  one row per (ad group, asset, integration)

    An asset's `integrationStatuses` map is assembled from integration_statuses
    on read; each entry is replaced as a whole on write, never merged.

    Note on concurrency:
      - One connection per call; set_integration_statuses runs in a single
        transaction so readers never see half a recipe group updated.
      - For Railway/production, prefer AssetStorePG (Postgres) with ASSET_STORE_SOURCE=db.
    """

    def __init__(self, db_path: str = ".asset_state.db"):
        self.db_path = db_path
        self._init()

    def _init(self) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS ad_groups (
                    group_id TEXT PRIMARY KEY,
                    assigned_integration_id TEXT NOT NULL DEFAULT '',
                    assigned_integration_name TEXT NOT NULL DEFAULT '',
                    payload_json TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS ad_group_assets (
                    group_id TEXT NOT NULL,
                    asset_id TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT '',
                    payload_json TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (group_id, asset_id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS integration_statuses (
                    group_id TEXT NOT NULL,
                    asset_id TEXT NOT NULL,
                    integration_id TEXT NOT NULL,
                    entry_json TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (group_id, asset_id, integration_id)
                )
                """
            )
            conn.commit()

    # -----------------------------
    # Ad groups
    # -----------------------------

    def upsert_ad_group(
        self,
        group_id: str,
        *,
        integration_id: str = "",
        integration_name: str = "",
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        now = datetime.now(timezone.utc).isoformat()
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO ad_groups
                (group_id, assigned_integration_id, assigned_integration_name, payload_json, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (group_id, integration_id or "", integration_name or "", json.dumps(data or {}, ensure_ascii=False), now),
            )
            conn.commit()

    def get_ad_group(self, group_id: str) -> Optional[dict]:
        with sqlite3.connect(self.db_path) as conn:
            cur = conn.execute(
                """
                SELECT group_id, assigned_integration_id, assigned_integration_name, payload_json, updated_at
                FROM ad_groups WHERE group_id=?
                """,
                (group_id,),
            )
            row = cur.fetchone()
        if not row:
            return None
        data = _loads(row[3]) or {}
        return {
            **data,
            "id": row[0],
            "assignedIntegrationId": row[1] or "",
            "assignedIntegrationName": row[2] or "",
            "updatedAt": row[4],
        }

    # -----------------------------
    # Assets
    # -----------------------------

    def upsert_asset(self, group_id: str, asset: Mapping[str, Any]) -> str:
        asset_id = get_asset_document_id(asset)
        if not asset_id:
            raise ValueError("asset needs an id (assetId/id/documentId/...)")
        doc = {k: v for k, v in asset.items() if k not in ("integrationStatuses", "integrationStatus")}
        now = datetime.now(timezone.utc).isoformat()
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO ad_group_assets (group_id, asset_id, status, payload_json, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (group_id, asset_id) DO UPDATE SET
                  status=excluded.status,
                  payload_json=excluded.payload_json,
                  updated_at=excluded.updated_at
                """,
                (group_id, asset_id, str(doc.get("status") or ""), json.dumps(doc, ensure_ascii=False), now),
            )
            conn.commit()
        return asset_id

    def list_assets(self, group_id: str, *, status: Optional[str] = None) -> List[dict]:
        """Assets of an ad group, each with its `integrationStatuses` map."""
        with sqlite3.connect(self.db_path) as conn:
            if status is None:
                cur = conn.execute(
                    "SELECT asset_id, payload_json FROM ad_group_assets WHERE group_id=? ORDER BY rowid ASC",
                    (group_id,),
                )
            else:
                cur = conn.execute(
                    """
                    SELECT asset_id, payload_json FROM ad_group_assets
                    WHERE group_id=? AND status=? ORDER BY rowid ASC
                    """,
                    (group_id, status),
                )
            asset_rows = cur.fetchall()
            cur = conn.execute(
                "SELECT asset_id, integration_id, entry_json, updated_at FROM integration_statuses WHERE group_id=?",
                (group_id,),
            )
            status_rows = cur.fetchall()

        statuses: Dict[str, Dict[str, Any]] = {}
        for asset_id, integration_id, entry_json, updated_at in status_rows:
            entry = _loads(entry_json) or {}
            entry["updatedAt"] = updated_at
            statuses.setdefault(asset_id, {})[integration_id] = entry

        out: List[dict] = []
        for asset_id, payload_json in asset_rows:
            doc = _loads(payload_json) or {}
            doc["id"] = asset_id
            doc["integrationStatuses"] = statuses.get(asset_id, {})
            out.append(doc)
        return out

    # -----------------------------
    # Integration statuses
    # -----------------------------

    def get_integration_status(self, group_id: str, asset_id: str, integration_id: str) -> Optional[dict]:
        with sqlite3.connect(self.db_path) as conn:
            cur = conn.execute(
                """
                SELECT entry_json, updated_at FROM integration_statuses
                WHERE group_id=? AND asset_id=? AND integration_id=?
                """,
                (group_id, asset_id, integration_id),
            )
            row = cur.fetchone()
        if not row:
            return None
        entry = _loads(row[0]) or {}
        entry["updatedAt"] = row[1]
        return entry

    def set_integration_statuses(
        self,
        group_id: str,
        integration_id: str,
        entries: Mapping[str, Mapping[str, Any]],
    ) -> str:
        """Replace integrationStatuses[integration_id] for every asset in `entries`.

        All-or-nothing: a missing asset rolls back the whole batch.
        Returns the timestamp written as updatedAt.
        """
        now = datetime.now(timezone.utc).isoformat()
        if not entries:
            return now
        conn = sqlite3.connect(self.db_path)
        try:
            # `with conn` commits on success and rolls back on any exception.
            with conn:
                for asset_id, entry in entries.items():
                    cur = conn.execute(
                        "SELECT 1 FROM ad_group_assets WHERE group_id=? AND asset_id=?",
                        (group_id, asset_id),
                    )
                    if cur.fetchone() is None:
                        raise LookupError(f"Asset not found: adGroups/{group_id}/assets/{asset_id}")
                    body = {k: v for k, v in entry.items() if k != "updatedAt"}
                    conn.execute(
                        """
                        INSERT OR REPLACE INTO integration_statuses
                        (group_id, asset_id, integration_id, entry_json, updated_at)
                        VALUES (?, ?, ?, ?, ?)
                        """,
                        (group_id, asset_id, integration_id, json.dumps(body, ensure_ascii=False, default=str), now),
                    )
        finally:
            conn.close()
        return now
