import json
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

import psycopg

from recipe_groups import get_asset_document_id


def _json_value(raw: Any) -> Any:
    if raw is None:
        return None
    if isinstance(raw, (dict, list)):
        return raw
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return {"_raw": raw}


def _iso(value: Any) -> Any:
    return value.isoformat() if isinstance(value, datetime) else value


class AssetStorePG:
    """Postgres-backed ad group / asset / integration status store.

    Production backend for Railway: same contract as AssetStore (SQLite).

    set_integration_statuses writes every entry of a recipe group inside one
    transaction; updated_at is the transaction's now(), so all entries of a
    batch share the same server timestamp.
    """

    def __init__(self, database_url: str, *, prefix: str = ""):
        self.database_url = database_url
        self.prefix = prefix.strip()
        self._init_db()

    def _conn(self):
        return psycopg.connect(self.database_url)

    def _t(self, name: str) -> str:
        return f"{self.prefix}{name}" if self.prefix else name

    def _init_db(self) -> None:
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {self._t('ad_groups')} (
                      group_id TEXT PRIMARY KEY,
                      assigned_integration_id TEXT NOT NULL DEFAULT '',
                      assigned_integration_name TEXT NOT NULL DEFAULT '',
                      payload_json JSONB NOT NULL DEFAULT '{{}}'::jsonb,
                      updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                    )
                    """
                )
                cur.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {self._t('ad_group_assets')} (
                      group_id TEXT NOT NULL,
                      asset_id TEXT NOT NULL,
                      status TEXT NOT NULL DEFAULT '',
                      payload_json JSONB NOT NULL,
                      created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                      updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                      PRIMARY KEY (group_id, asset_id)
                    )
                    """
                )
                cur.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {self._t('integration_statuses')} (
                      group_id TEXT NOT NULL,
                      asset_id TEXT NOT NULL,
                      integration_id TEXT NOT NULL,
                      entry_json JSONB NOT NULL,
                      updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
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
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    INSERT INTO {self._t('ad_groups')}
                      (group_id, assigned_integration_id, assigned_integration_name, payload_json, updated_at)
                    VALUES (%s, %s, %s, %s, now())
                    ON CONFLICT (group_id) DO UPDATE SET
                      assigned_integration_id=EXCLUDED.assigned_integration_id,
                      assigned_integration_name=EXCLUDED.assigned_integration_name,
                      payload_json=EXCLUDED.payload_json,
                      updated_at=now()
                    """,
                    (group_id, integration_id or "", integration_name or "", json.dumps(data or {}, ensure_ascii=False)),
                )
            conn.commit()

    def get_ad_group(self, group_id: str) -> Optional[dict]:
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT group_id, assigned_integration_id, assigned_integration_name, payload_json, updated_at
                    FROM {self._t('ad_groups')} WHERE group_id=%s
                    """,
                    (group_id,),
                )
                row = cur.fetchone()
        if not row:
            return None
        data = _json_value(row[3]) or {}
        return {
            **data,
            "id": row[0],
            "assignedIntegrationId": row[1] or "",
            "assignedIntegrationName": row[2] or "",
            "updatedAt": _iso(row[4]),
        }

    # -----------------------------
    # Assets
    # -----------------------------

    def upsert_asset(self, group_id: str, asset: Mapping[str, Any]) -> str:
        asset_id = get_asset_document_id(asset)
        if not asset_id:
            raise ValueError("asset needs an id (assetId/id/documentId/...)")
        doc = {k: v for k, v in asset.items() if k not in ("integrationStatuses", "integrationStatus")}
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    INSERT INTO {self._t('ad_group_assets')} (group_id, asset_id, status, payload_json)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (group_id, asset_id) DO UPDATE SET
                      status=EXCLUDED.status,
                      payload_json=EXCLUDED.payload_json,
                      updated_at=now()
                    """,
                    (group_id, asset_id, str(doc.get("status") or ""), json.dumps(doc, ensure_ascii=False)),
                )
            conn.commit()
        return asset_id

    def list_assets(self, group_id: str, *, status: Optional[str] = None) -> List[dict]:
        with self._conn() as conn:
            with conn.cursor() as cur:
                if status is None:
                    cur.execute(
                        f"""
                        SELECT asset_id, payload_json FROM {self._t('ad_group_assets')}
                        WHERE group_id=%s ORDER BY created_at ASC, asset_id ASC
                        """,
                        (group_id,),
                    )
                else:
                    cur.execute(
                        f"""
                        SELECT asset_id, payload_json FROM {self._t('ad_group_assets')}
                        WHERE group_id=%s AND status=%s ORDER BY created_at ASC, asset_id ASC
                        """,
                        (group_id, status),
                    )
                asset_rows = cur.fetchall()
                cur.execute(
                    f"""
                    SELECT asset_id, integration_id, entry_json, updated_at
                    FROM {self._t('integration_statuses')} WHERE group_id=%s
                    """,
                    (group_id,),
                )
                status_rows = cur.fetchall()

        statuses: Dict[str, Dict[str, Any]] = {}
        for asset_id, integration_id, entry_json, updated_at in status_rows:
            entry = _json_value(entry_json) or {}
            entry["updatedAt"] = _iso(updated_at)
            statuses.setdefault(asset_id, {})[integration_id] = entry

        out: List[dict] = []
        for asset_id, payload_json in asset_rows:
            doc = _json_value(payload_json) or {}
            doc["id"] = asset_id
            doc["integrationStatuses"] = statuses.get(asset_id, {})
            out.append(doc)
        return out

    # -----------------------------
    # Integration statuses
    # -----------------------------

    def get_integration_status(self, group_id: str, asset_id: str, integration_id: str) -> Optional[dict]:
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT entry_json, updated_at FROM {self._t('integration_statuses')}
                    WHERE group_id=%s AND asset_id=%s AND integration_id=%s
                    """,
                    (group_id, asset_id, integration_id),
                )
                row = cur.fetchone()
        if not row:
            return None
        entry = _json_value(row[0]) or {}
        entry["updatedAt"] = _iso(row[1])
        return entry

    def set_integration_statuses(
        self,
        group_id: str,
        integration_id: str,
        entries: Mapping[str, Mapping[str, Any]],
    ) -> str:
        """Replace integrationStatuses[integration_id] for every asset in `entries` (one transaction)."""
        asset_ids = list(entries.keys())
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT now()")
                now = cur.fetchone()[0]
                if not asset_ids:
                    return _iso(now)

                cur.execute(
                    f"""
                    SELECT asset_id FROM {self._t('ad_group_assets')}
                    WHERE group_id=%s AND asset_id = ANY(%s)
                    """,
                    (group_id, asset_ids),
                )
                found = {str(r[0]) for r in cur.fetchall()}
                missing = [a for a in asset_ids if a not in found]
                if missing:
                    # Leaving the connection block with an exception rolls back.
                    raise LookupError(f"Assets not found in adGroups/{group_id}: {', '.join(missing)}")

                for asset_id, entry in entries.items():
                    body = {k: v for k, v in entry.items() if k != "updatedAt"}
                    cur.execute(
                        f"""
                        INSERT INTO {self._t('integration_statuses')}
                          (group_id, asset_id, integration_id, entry_json, updated_at)
                        VALUES (%s, %s, %s, %s, now())
                        ON CONFLICT (group_id, asset_id, integration_id) DO UPDATE SET
                          entry_json=EXCLUDED.entry_json,
                          updated_at=now()
                        """,
                        (group_id, asset_id, integration_id, json.dumps(body, ensure_ascii=False, default=str)),
                    )
            conn.commit()
        return _iso(now)
