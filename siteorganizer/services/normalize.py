from __future__ import annotations

import re
from dataclasses import dataclass, field


PRICING_FULLY_FREE = "fully_free"
PRICING_FREEMIUM = "freemium"
PRICING_FREE_TRIAL = "free_trial"
PRICING_PAID = "paid"

VALID_PRICING = (PRICING_FULLY_FREE, PRICING_FREEMIUM, PRICING_FREE_TRIAL, PRICING_PAID)
DEFAULT_PRICING = PRICING_FREEMIUM

PRICING_ALIASES = {
    "fully_free": PRICING_FULLY_FREE,
    "fullyfree": PRICING_FULLY_FREE,
    "free": PRICING_FULLY_FREE,
    "besplatno": PRICING_FULLY_FREE,
    "freemium": PRICING_FREEMIUM,
    "free_trial": PRICING_FREE_TRIAL,
    "freetrial": PRICING_FREE_TRIAL,
    "trial": PRICING_FREE_TRIAL,
    "paid": PRICING_PAID,
    "nesto_se_placa": PRICING_PAID,
    "nestoseplaca": PRICING_PAID,
    "placeno": PRICING_PAID,
    "premium": PRICING_PAID,
}

# Order matters: "free trial" must not fall through to fully_free.
_PRICING_FALLBACKS = (
    (re.compile(r"trial", re.IGNORECASE), PRICING_FREE_TRIAL),
    (re.compile(r"freemium", re.IGNORECASE), PRICING_FREEMIUM),
    (re.compile(r"paid|premium|plac|money|cost", re.IGNORECASE), PRICING_PAID),
    (re.compile(r"free|besplatn|gratis", re.IGNORECASE), PRICING_FULLY_FREE),
)

_DELIMITERS = re.compile(r"[,;|\n]+")


@dataclass
class EntityRef:
    name: str
    color: str | None = None


@dataclass
class NormalizedRow:
    index: int
    name: str
    url: str
    pricing: str
    categories: list[EntityRef] = field(default_factory=list)
    tags: list[EntityRef] = field(default_factory=list)
    is_favorite: bool = False
    is_pinned: bool = False
    created_at: str | None = None


def normalize_pricing(value) -> str | None:
    if value is None or value is False or value == "":
        return None
    raw = str(value).strip().lower()
    if not raw:
        return None
    if raw in VALID_PRICING:
        return raw
    underscored = re.sub(r"[\s-]+", "_", raw)
    if underscored in PRICING_ALIASES:
        return PRICING_ALIASES[underscored]
    flat = re.sub(r"[\s_-]+", "", raw)
    if flat in PRICING_ALIASES:
        return PRICING_ALIASES[flat]
    for pattern, pricing in _PRICING_FALLBACKS:
        if pattern.search(raw):
            return pricing
    return None


def split_delimited(value) -> list[str]:
    if value is None or value == "":
        return []
    return [part.strip() for part in _DELIMITERS.split(str(value)) if part.strip()]


def _entity_refs(value) -> list[EntityRef]:
    if isinstance(value, str):
        return [EntityRef(name) for name in split_delimited(value)]
    if not isinstance(value, list):
        return []
    refs: list[EntityRef] = []
    for item in value:
        if isinstance(item, str):
            name, color = item.strip(), None
        elif isinstance(item, dict):
            name = str(item.get("name") or "").strip()
            color = item.get("color") or None
        else:
            continue
        if name:
            refs.append(EntityRef(name, color))
    return refs


def _collect_refs(row: dict, array_key: str, plural_key: str, singular_keys) -> list[EntityRef]:
    if isinstance(row.get(array_key), list):
        return _entity_refs(row[array_key])
    plural = row.get(plural_key)
    if isinstance(plural, (str, list)):
        return _entity_refs(plural)
    for key in singular_keys:
        if row.get(key):
            return _entity_refs(str(row[key]))
    return []


def _first(row: dict, *keys):
    for key in keys:
        value = row.get(key)
        if value:
            return value
    return None


def _flag(value) -> bool:
    if isinstance(value, bool):
        return value
    return value == "true" or (isinstance(value, int) and value == 1)


def _clean(value) -> str:
    if value is None:
        return ""
    return str(value).strip()


def normalize_import_row(row: dict, index: int) -> NormalizedRow:
    return NormalizedRow(
        index=index,
        name=_clean(_first(row, "name", "title", "Name")),
        url=_clean(_first(row, "url", "URL", "link")),
        pricing=normalize_pricing(_first(row, "pricing", "pricing_model", "pricingModel"))
        or DEFAULT_PRICING,
        categories=_collect_refs(row, "categories_array", "categories", ("category", "Category")),
        tags=_collect_refs(row, "tags_array", "tags", ("tag", "Tag")),
        is_favorite=_flag(row.get("is_favorite")),
        is_pinned=_flag(row.get("is_pinned")),
        created_at=_first(row, "created_at", "createdAt"),
    )
