"""integration_dispatch.api

Minimal FastAPI wrapper around `integration_dispatch.py` so the review app
(or any HTTP client) can dispatch an ad group's approved creative to its
integration and read back the consolidated delivery status.

Endpoints
---------
- GET  /health                                  -> basic health check
- GET  /                                        -> basic root info
- PUT  /ad-groups/{group_id}                    -> store ad group + assigned integration
- PUT  /ad-groups/{group_id}/assets/{asset_id}  -> store one asset document
- POST /ad-groups/{group_id}/dispatch           -> one worker call per recipe group
- GET  /ad-groups/{group_id}/integration-status -> integration-level summary

Optional API Key
----------------
If you set SERVICE_API_KEY in the environment, requests must include:
  X-API-Key: <SERVICE_API_KEY>

Environment variables
---------------------
Required for dispatch:
- INTEGRATION_WORKER_URL

Optional:
- INTEGRATION_WORKER_PATH (default: /api/integration-worker)
- INTEGRATION_WORKER_API_KEY
- INTEGRATION_WORKER_TIMEOUT_S (default: 30)
- ASSET_DB_PATH (default: .asset_state.db; ignored if ASSET_STORE_SOURCE=db)
- ASSET_STORE_SOURCE ("db" to store ad groups/assets/statuses in Postgres)
- DATABASE_URL (required if ASSET_STORE_SOURCE=db)
- SERVICE_API_KEY (if set, enforces X-API-Key)
"""

from __future__ import annotations

import os
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Header, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from integration_dispatch import (
    DispatchConfig,
    IntegrationDispatchError,
    IntegrationWorkerClient,
    build_asset_store,
    default_store_path,
    run_integration_for_ad_group,
    summarize_ad_group,
)

app = FastAPI(title="Integration Dispatch API", version="1.0.0")


class AdGroupRequest(BaseModel):
    integration_id: str = ""
    integration_name: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)


class DispatchRequest(BaseModel):
    """Request body for /ad-groups/{group_id}/dispatch.

    Everything is optional; omitted values come from the stored ad group:
    {
      "integration_id": "compass",
      "integration_name": "Compass",
      "assets": [ ... asset documents ... ]
    }
    """

    integration_id: Optional[str] = None
    integration_name: Optional[str] = None
    assets: Optional[List[Dict[str, Any]]] = Field(
        default=None,
        description="Asset documents to dispatch instead of the stored approved assets.",
    )


def _require_api_key(x_api_key: Optional[str]) -> None:
    expected = (os.getenv("SERVICE_API_KEY") or "").strip()
    if not expected:
        return
    if not x_api_key or x_api_key.strip() != expected:
        raise HTTPException(status_code=401, detail="Unauthorized")


def _get_store() -> Any:
    return build_asset_store(default_store_path())


def _get_client() -> Any:
    try:
        cfg = DispatchConfig.from_env()
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Server misconfigured: {e}")
    return IntegrationWorkerClient(cfg)


@app.get("/")
def root() -> JSONResponse:
    return JSONResponse({"ok": True, "docs": "/docs", "health": "/health"})


@app.get("/health")
def health() -> Dict[str, Any]:
    return {"ok": True}


@app.put("/ad-groups/{group_id}")
def put_ad_group(
    group_id: str,
    req: AdGroupRequest,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
) -> Dict[str, Any]:
    _require_api_key(x_api_key)
    store = _get_store()
    store.upsert_ad_group(
        group_id,
        integration_id=req.integration_id,
        integration_name=req.integration_name,
        data=req.data,
    )
    return {"ok": True, "ad_group": store.get_ad_group(group_id)}


@app.put("/ad-groups/{group_id}/assets/{asset_id}")
def put_asset(
    group_id: str,
    asset_id: str,
    asset: Dict[str, Any],
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
) -> Dict[str, Any]:
    _require_api_key(x_api_key)
    store = _get_store()
    stored_id = store.upsert_asset(group_id, {**asset, "id": asset_id})
    return {"ok": True, "asset_id": stored_id}


@app.post("/ad-groups/{group_id}/dispatch")
def dispatch(
    group_id: str,
    req: Optional[DispatchRequest] = None,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
) -> Dict[str, Any]:
    _require_api_key(x_api_key)
    req = req or DispatchRequest()

    client = _get_client()
    store = _get_store()

    try:
        outcomes = run_integration_for_ad_group(
            store,
            client,
            group_id,
            assets=req.assets,
            integration_id=req.integration_id,
            integration_name=req.integration_name,
        )
        return {"ok": True, "group_id": group_id, "dispatched": [o.to_dict() for o in outcomes]}

    except IntegrationDispatchError as e:
        raise HTTPException(status_code=502, detail={"message": str(e)})
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/ad-groups/{group_id}/integration-status")
def integration_status(
    group_id: str,
    integration_id: Optional[str] = None,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
) -> Dict[str, Any]:
    _require_api_key(x_api_key)
    summary = summarize_ad_group(_get_store(), group_id, integration_id=integration_id)
    return {"ok": True, "group_id": group_id, "summary": summary.to_dict() if summary else None}
