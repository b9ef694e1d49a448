"""recipe_ids.py

Best-effort extraction of a recipe identifier and an aspect-ratio label from
asset records.

Asset records come from several generations of the review tooling, so the
recipe number can live in a few places:

  1) a "recipe fields" collection (form answers, list or dict, sometimes nested)
  2) direct fields on the asset (recipeCode, recipeNumber, ...)
  3) a nested `recipe` object
  4) a `metadata` object
  5) the filename: BRAND_GROUP_RECIPE_ASPECT_VERSION (e.g. BR_GR_007_9x16_V2.png)

Everything in here is pure and never raises: unknown shapes just yield "".
"""

from __future__ import annotations

import re
from typing import Any, Dict, Mapping, Optional, Tuple


# -----------------------------
# Lookup tables
# -----------------------------

# Labels of the recipe field, compared after _norm_label().
RECIPE_FIELD_NAMES: Tuple[str, ...] = (
    "recipe number",
    "recipe #",
    "recipe code",
    "recipe no",
    "recipe no.",
    "recipe num",
    "recipe id",
    "recipe",
    "recipenumber",
    "recipecode",
    "recipeno",
)

# Keys holding the answer inside a field entry.
RECIPE_VALUE_KEYS: Tuple[str, ...] = (
    "value",
    "answer",
    "code",
    "id",
    "number",
    "text",
    "recipeCode",
    "recipeNumber",
)

# Keys holding the label inside a field entry ({"name": "Recipe #", "value": "004"}).
RECIPE_LABEL_KEYS: Tuple[str, ...] = ("name", "label", "key", "title", "field", "fieldName", "question")

# Keys naming the field entry itself, never its answer.
RECIPE_ENTRY_IDENTITY_KEYS: Tuple[str, ...] = ("id", "fieldId", "_id")

RECIPE_FIELD_CONTAINERS: Tuple[str, ...] = ("recipeFields", "recipe_fields", "fields", "answers")

RECIPE_DIRECT_FIELDS: Tuple[str, ...] = (
    "recipeCode",
    "recipeNumber",
    "recipeNo",
    "recipeId",
    "recipe_code",
    "recipe_number",
    "recipe_no",
    "recipe_id",
)

ASPECT_RATIO_SYNONYMS: Mapping[str, str] = {
    "1x1": "1x1",
    "square": "1x1",
    "1080x1080": "1x1",
    "11": "1x1",
    "4x5": "4x5",
    "portrait": "4x5",
    "1080x1350": "4x5",
    "45": "4x5",
    "9x16": "9x16",
    "vertical": "9x16",
    "story": "9x16",
    "stories": "9x16",
    "reel": "9x16",
    "reels": "9x16",
    "1080x1920": "9x16",
    "916": "9x16",
}

_MAX_DEPTH = 6
_VERSION_PART_RE = re.compile(r"^V(\d+)", re.IGNORECASE)
_VERSION_SUFFIX_RE = re.compile(r"(?:^|[_-])v(\d+)", re.IGNORECASE)


# -----------------------------
# Normalization
# -----------------------------

def _norm_label(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return re.sub(r"[\s_\-]+", " ", value.strip().lower())


_FIELD_NAME_SET = frozenset(_norm_label(n) for n in RECIPE_FIELD_NAMES)


def _scalar_text(value: Any) -> str:
    if value is None or isinstance(value, bool):
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            return ""
        return str(int(value)) if value.is_integer() else str(value)
    return ""


def normalize_recipe_identifier(value: Any) -> str:
    """Trim and strip leading zeros ("001" -> "1"), keeping "000" as is."""
    s = _scalar_text(value)
    if not s:
        return ""
    stripped = s.lstrip("0")
    return stripped or s


def normalize_aspect_ratio(value: Any) -> str:
    """Map aspect-ratio synonyms to 1x1 / 4x5 / 9x16. Unknown values pass through."""
    s = _scalar_text(value)
    if not s:
        return ""
    key = re.sub(r"\s+", "", s.lower()).replace(":", "x").replace("/", "x")
    return ASPECT_RATIO_SYNONYMS.get(key, s)


# -----------------------------
# Filename convention
# -----------------------------

def parse_ad_filename(filename: Any) -> Dict[str, Any]:
    """Split BRAND_GROUP_RECIPE_ASPECT_VERSION into its parts.

    Four-part names are ambiguous: the last part is a version when it looks
    like V<n>, otherwise an aspect ratio.
    """
    if not isinstance(filename, str) or not filename.strip():
        return {}
    name = re.sub(r"\.[^/.]+$", "", filename.strip())
    parts = name.split("_")

    aspect_ratio = ""
    version: Optional[int] = None
    if len(parts) >= 5:
        aspect_ratio = parts[3]
        m = _VERSION_PART_RE.match(parts[4])
        if m:
            version = int(m.group(1))
    elif len(parts) == 4:
        m = _VERSION_PART_RE.match(parts[3])
        if m:
            version = int(m.group(1))
        else:
            aspect_ratio = parts[3]

    return {
        "brandCode": parts[0] if len(parts) > 0 else "",
        "adGroupCode": parts[1] if len(parts) > 1 else "",
        "recipeCode": parts[2] if len(parts) > 2 else "",
        "aspectRatio": aspect_ratio,
        "version": version,
    }


def get_version(asset_or_name: Any) -> int:
    """Explicit version, else the filename version, else a _v<n> suffix, else 1."""
    if not asset_or_name:
        return 1
    if isinstance(asset_or_name, str):
        return _version_from_string(asset_or_name)
    if not isinstance(asset_or_name, Mapping):
        return 1
    explicit = asset_or_name.get("version")
    if explicit and not isinstance(explicit, bool):
        try:
            return int(explicit)
        except (TypeError, ValueError):
            pass
    filename = asset_or_name.get("filename")
    return _version_from_string(filename if isinstance(filename, str) else "")


def _version_from_string(value: str) -> int:
    if not value:
        return 1
    parsed = parse_ad_filename(value).get("version")
    if parsed:
        return int(parsed)
    m = _VERSION_SUFFIX_RE.search(value)
    if m:
        return int(m.group(1))
    return 1


def resolve_aspect_ratio(asset: Any) -> str:
    """Canonical aspect ratio of an asset, falling back to the filename."""
    if not isinstance(asset, Mapping):
        return ""
    ratio = normalize_aspect_ratio(asset.get("aspectRatio"))
    if ratio:
        return ratio
    return normalize_aspect_ratio(parse_ad_filename(asset.get("filename")).get("aspectRatio"))


# -----------------------------
# Recipe identifier lookup
# -----------------------------

def _value_from_entry(entry: Any, value_keys: Tuple[str, ...], depth: int) -> str:
    """Read the answer out of a field value: scalar, {value: ...} or a list of those."""
    if depth > _MAX_DEPTH:
        return ""
    text = _scalar_text(entry)
    if text:
        return text
    if isinstance(entry, Mapping):
        for k in value_keys:
            if k in entry:
                found = _value_from_entry(entry[k], value_keys, depth + 1)
                if found:
                    return found
    elif isinstance(entry, (list, tuple)):
        for item in entry:
            found = _value_from_entry(item, value_keys, depth + 1)
            if found:
                return found
    return ""


def find_recipe_field_value(
    fields: Any,
    *,
    field_names: frozenset = _FIELD_NAME_SET,
    value_keys: Tuple[str, ...] = RECIPE_VALUE_KEYS,
    label_keys: Tuple[str, ...] = RECIPE_LABEL_KEYS,
    _depth: int = 0,
) -> str:
    """Search a recipe-fields structure for the first recipe-number answer.

    Handles:
      - {"Recipe #": "004"} / {"Recipe Number": {"value": "004"}}
      - [{"name": "Recipe Code", "answer": "004"}, ...]
      - the above nested inside other dicts/lists
    """
    if _depth > _MAX_DEPTH:
        return ""

    if isinstance(fields, (list, tuple)):
        for item in fields:
            found = find_recipe_field_value(
                item, field_names=field_names, value_keys=value_keys, label_keys=label_keys, _depth=_depth + 1
            )
            if found:
                return found
        return ""

    if not isinstance(fields, Mapping):
        return ""

    # Labelled entry: {"name": "Recipe #", "value": ...}
    for lk in label_keys:
        if _norm_label(fields.get(lk)) in field_names:
            found = _value_from_entry(
                {k: v for k, v in fields.items() if k not in label_keys and k not in RECIPE_ENTRY_IDENTITY_KEYS},
                value_keys,
                _depth + 1,
            )
            if found:
                return found

    # Keyed entries: {"Recipe #": ...}
    for key, value in fields.items():
        if _norm_label(key) in field_names:
            found = _value_from_entry(value, value_keys, _depth + 1)
            if found:
                return found

    for value in fields.values():
        if isinstance(value, (Mapping, list, tuple)):
            found = find_recipe_field_value(
                value, field_names=field_names, value_keys=value_keys, label_keys=label_keys, _depth=_depth + 1
            )
            if found:
                return found
    return ""


def _direct_fields_value(obj: Mapping, direct_fields: Tuple[str, ...]) -> str:
    for k in direct_fields:
        text = _scalar_text(obj.get(k))
        if text:
            return text
    return ""


def _raw_recipe_identifier(asset: Mapping) -> str:
    for container in RECIPE_FIELD_CONTAINERS:
        found = find_recipe_field_value(asset.get(container))
        if found:
            return found

    found = _direct_fields_value(asset, RECIPE_DIRECT_FIELDS)
    if found:
        return found

    recipe = asset.get("recipe")
    found = _value_from_entry(recipe, RECIPE_VALUE_KEYS + RECIPE_DIRECT_FIELDS, 0)
    if found:
        return found

    metadata = asset.get("metadata")
    if isinstance(metadata, Mapping):
        found = _direct_fields_value(metadata, RECIPE_DIRECT_FIELDS)
        if found:
            return found
        for container in RECIPE_FIELD_CONTAINERS:
            found = find_recipe_field_value(metadata.get(container))
            if found:
                return found
        found = find_recipe_field_value(metadata)
        if found:
            return found

    return _scalar_text(parse_ad_filename(asset.get("filename")).get("recipeCode"))


def extract_recipe_identifier(asset: Any) -> str:
    """Normalized recipe identifier of an asset, or "" when none can be derived."""
    if not isinstance(asset, Mapping):
        return ""
    return normalize_recipe_identifier(_raw_recipe_identifier(asset))
