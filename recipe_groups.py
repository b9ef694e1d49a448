"""recipe_groups.py

Collapse approved asset renditions (1x1, 4x5, 9x16, versions) into one
dispatch unit per recipe.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from recipe_ids import extract_recipe_identifier, resolve_aspect_ratio


ASSET_ID_FIELDS: Tuple[str, ...] = (
    "assetId",
    "id",
    "documentId",
    "docId",
    "originalAssetId",
    "originalId",
)

# Primary (hero) asset preference for a recipe group.
PRIMARY_ASPECT_PRIORITY: Tuple[str, ...] = ("1x1", "4x5", "9x16")


@dataclass(frozen=True)
class RecipeGroup:
    key: str
    identifier: str
    assets: List[Dict[str, Any]] = field(default_factory=list)
    asset_ids: List[str] = field(default_factory=list)


def _key_part(value: Any) -> str:
    if value is None or isinstance(value, bool):
        return ""
    if isinstance(value, str):
        return value.strip()
    return str(value)


def get_asset_document_id(asset: Any) -> str:
    if not isinstance(asset, Mapping):
        return ""
    for k in ASSET_ID_FIELDS:
        v = _key_part(asset.get(k))
        if v:
            return v
    return ""


def filter_approved_assets(assets: Optional[Sequence[Any]]) -> List[Dict[str, Any]]:
    """Approved dict assets with a document id; `id` is filled in when missing."""
    out: List[Dict[str, Any]] = []
    for a in assets or []:
        if not isinstance(a, Mapping) or a.get("status") != "approved":
            continue
        doc_id = get_asset_document_id(a)
        if not doc_id:
            continue
        item = dict(a)
        if not _key_part(item.get("id")):
            item["id"] = doc_id
        out.append(item)
    return out


def group_assets_by_recipe(assets: Optional[Sequence[Any]]) -> List[RecipeGroup]:
    """Partition assets by normalized recipe identifier.

    Assets without an identifier become singleton groups keyed by their own id.
    Assets without an id are dropped.
    """
    order: List[Tuple[str, str]] = []
    buckets: Dict[Tuple[str, str], Dict[str, Any]] = {}

    for asset in assets or []:
        doc_id = get_asset_document_id(asset)
        if not doc_id:
            continue
        identifier = extract_recipe_identifier(asset)
        # Separate key spaces: asset id "7" must not join recipe "7".
        bucket_key = ("recipe", identifier) if identifier else ("asset", doc_id)

        bucket = buckets.get(bucket_key)
        if bucket is None:
            bucket = {"identifier": "", "assets": [], "asset_ids": []}
            buckets[bucket_key] = bucket
            order.append(bucket_key)
        if identifier and not bucket["identifier"]:
            bucket["identifier"] = identifier
        bucket["assets"].append(asset)
        bucket["asset_ids"].append(doc_id)

    return [
        RecipeGroup(
            key=k[1],
            identifier=buckets[k]["identifier"],
            assets=buckets[k]["assets"],
            asset_ids=buckets[k]["asset_ids"],
        )
        for k in order
    ]


def pick_primary_asset(assets: Sequence[Mapping[str, Any]]) -> Optional[Mapping[str, Any]]:
    """1x1 beats 4x5 beats 9x16; otherwise the first asset."""
    if not assets:
        return None
    ratios = [resolve_aspect_ratio(a) for a in assets]
    for wanted in PRIMARY_ASPECT_PRIORITY:
        for a, ratio in zip(assets, ratios):
            if ratio == wanted:
                return a
    return assets[0]
