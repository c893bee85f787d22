from __future__ import annotations

import math


TIER_FREE = "free"
TIER_PRO = "pro"
TIER_PROMAX = "promax"

TIERS = (TIER_FREE, TIER_PRO, TIER_PROMAX)

TIER_LABELS = {
    TIER_FREE: "Free",
    TIER_PRO: "Pro",
    TIER_PROMAX: "Pro Max",
}

UNLIMITED = math.inf

TIER_LIMITS = {
    TIER_FREE: {"sites": 500, "categories": 50, "tags": 200, "aiSuggestsPerMonth": 1},
    TIER_PRO: {
        "sites": 2000,
        "categories": 200,
        "tags": 500,
        "aiSuggestsPerMonth": 200,
    },
    TIER_PROMAX: {
        "sites": UNLIMITED,
        "categories": UNLIMITED,
        "tags": UNLIMITED,
        "aiSuggestsPerMonth": 2000,
    },
}

# Minimum tier for each gated feature.
FEATURE_GATES = {
    "aiSuggest": TIER_PRO,
    "linkHealthCheck": TIER_PRO,
    "autoOrganize": TIER_PRO,
}

FEATURE_LABELS = {
    "aiSuggest": "AI suggestions",
    "linkHealthCheck": "link health check",
    "autoOrganize": "auto-organize",
}

_TIER_ORDER = {TIER_FREE: 0, TIER_PRO: 1, TIER_PROMAX: 2}


def resolve_tier(user_metadata: dict | None, is_admin: bool = False) -> str:
    if is_admin:
        return TIER_PROMAX
    meta = user_metadata or {}
    tier = meta.get("tier")
    if tier == TIER_PROMAX:
        return TIER_PROMAX
    if tier == TIER_PRO:
        return TIER_PRO
    # Accounts created before tiers only carry is_pro.
    if meta.get("is_pro") is True and not tier:
        return TIER_PRO
    return TIER_FREE


def get_tier_limits(tier: str) -> dict:
    return TIER_LIMITS.get(tier, TIER_LIMITS[TIER_FREE])


def has_feature(tier: str, feature: str) -> bool:
    required = FEATURE_GATES.get(feature)
    if not required:
        return True
    return _TIER_ORDER.get(tier, 0) >= _TIER_ORDER[required]


def remaining(limit: float, used: int) -> float:
    if math.isinf(limit):
        return UNLIMITED
    return max(0, limit - used)


def can_add(tier: str, kind: str, current_count: int) -> dict:
    limit = get_tier_limits(tier)[kind]
    if math.isinf(limit):
        return {"allowed": True, "remaining": UNLIMITED, "limit": limit}
    return {
        "allowed": current_count < limit,
        "remaining": remaining(limit, current_count),
        "limit": limit,
    }


def limit_text(limit: float) -> str:
    return "Unlimited" if math.isinf(limit) else f"{int(limit):,}"


def tier_label(tier: str) -> str:
    return TIER_LABELS.get(tier, TIER_LABELS[TIER_FREE])


def upgrade_target(tier: str) -> str:
    return "Pro or Pro Max" if tier == TIER_FREE else "Pro Max"
