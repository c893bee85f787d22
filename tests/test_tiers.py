import math

from siteorganizer.services.security import decode_token, user_from_token
from siteorganizer.services.tiers import (
    can_add,
    get_tier_limits,
    has_feature,
    limit_text,
    resolve_tier,
    upgrade_target,
)
from siteorganizer.config import TestConfig

from conftest import JWT_SECRET, USER_ID, make_token


def test_resolve_tier():
    assert resolve_tier(None) == "free"
    assert resolve_tier({"tier": "pro"}) == "pro"
    assert resolve_tier({"tier": "promax"}) == "promax"
    assert resolve_tier({"is_pro": True}) == "pro"
    assert resolve_tier({"tier": "free", "is_pro": True}) == "free"
    assert resolve_tier({"tier": "bogus"}) == "free"
    assert resolve_tier({}, is_admin=True) == "promax"


def test_limits_and_features():
    assert get_tier_limits("free")["sites"] == 500
    assert get_tier_limits("unknown") == get_tier_limits("free")
    assert math.isinf(get_tier_limits("promax")["sites"])

    assert not has_feature("free", "linkHealthCheck")
    assert has_feature("pro", "autoOrganize")
    assert has_feature("free", "somethingUngated")


def test_can_add():
    assert can_add("free", "sites", 499) == {"allowed": True, "remaining": 1, "limit": 500}
    assert can_add("free", "sites", 500)["allowed"] is False
    assert can_add("free", "sites", 700)["remaining"] == 0
    assert can_add("promax", "tags", 10**6)["allowed"] is True


def test_limit_text_and_upgrade_target():
    assert limit_text(2000) == "2,000"
    assert limit_text(math.inf) == "Unlimited"
    assert upgrade_target("free") == "Pro or Pro Max"
    assert upgrade_target("pro") == "Pro Max"


def test_decode_token_verifies_signature_when_secret_set():
    token = make_token(USER_ID)
    assert decode_token(token, JWT_SECRET, "authenticated")["sub"] == USER_ID
    assert decode_token(token, "wrong-secret", "authenticated") is None
    assert decode_token("not-a-jwt") is None


def test_user_from_token_resolves_admin_and_tier():
    config = {
        "SUPABASE_JWT_SECRET": TestConfig.SUPABASE_JWT_SECRET,
        "SUPABASE_JWT_AUDIENCE": "authenticated",
        "ADMIN_EMAILS": ["admin@example.com"],
    }

    user = user_from_token(make_token(USER_ID, "User@Example.com", tier="pro"), config)
    assert user.id == USER_ID
    assert user.email == "user@example.com"
    assert user.tier == "pro"
    assert user.is_admin is False

    admin = user_from_token(make_token("admin-id", "admin@example.com"), config)
    assert admin.is_admin is True
    assert admin.tier == "promax"
