from __future__ import annotations

from dataclasses import dataclass, field
from functools import wraps

from flask import current_app, g, request
from jose import JWTError, jwt

from siteorganizer.services.common import error_response
from siteorganizer.services.postgrest import UpstreamError, get_supabase
from siteorganizer.services.tiers import (
    FEATURE_GATES,
    FEATURE_LABELS,
    TIER_FREE,
    has_feature,
    resolve_tier,
    tier_label,
)


@dataclass
class ApiUser:
    id: str
    token: str
    email: str = ""
    tier: str = TIER_FREE
    is_admin: bool = False
    claims: dict = field(default_factory=dict)


def bearer_token() -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    token = auth_header.removeprefix("Bearer ").strip()
    return token or None


def decode_token(token: str, secret: str = "", audience: str | None = None) -> dict | None:
    """Verify the Supabase access token when a JWT secret is configured.

    Without a secret the claims are only decoded. They are then good for routing
    (user id, tier) but not for authorization; PostgREST still checks the token
    on every user-scoped call.
    """
    try:
        if secret:
            return jwt.decode(
                token,
                secret,
                algorithms=["HS256"],
                audience=audience or None,
                options={"verify_aud": bool(audience)},
            )
        return jwt.get_unverified_claims(token)
    except JWTError:
        return None


def user_from_token(token: str, config) -> ApiUser | None:
    claims = decode_token(
        token,
        secret=config.get("SUPABASE_JWT_SECRET", ""),
        audience=config.get("SUPABASE_JWT_AUDIENCE"),
    )
    if not claims or not claims.get("sub"):
        return None
    email = (claims.get("email") or "").strip().lower()
    is_admin = bool(email) and email in config.get("ADMIN_EMAILS", [])
    return ApiUser(
        id=str(claims["sub"]),
        token=token,
        email=email,
        tier=resolve_tier(claims.get("user_metadata"), is_admin=is_admin),
        is_admin=is_admin,
        claims=claims,
    )


def _admin_denial(user: ApiUser) -> tuple[str, int] | None:
    try:
        record = get_supabase().get_user(user.id)
    except UpstreamError as exc:
        current_app.logger.warning("Admin lookup failed for %s: %s", user.id, exc)
        return "User not found", 401
    email = (record.get("email") or "").strip().lower()
    if not email:
        return "User not found", 401
    if email not in current_app.config.get("ADMIN_EMAILS", []):
        return "Access denied", 403
    return None


def api_auth_required(admin=False, feature=None, message="Authentication required"):
    def decorator(func):
        @wraps(func)
        def wrapped(*args, **kwargs):
            token = bearer_token()
            if not token:
                return error_response(message, 401)
            user = user_from_token(token, current_app.config)
            if user is None:
                return error_response("Invalid token", 401)
            if admin:
                denial = _admin_denial(user)
                if denial:
                    return error_response(*denial)
            if feature and not has_feature(user.tier, feature):
                required = tier_label(FEATURE_GATES[feature])
                return error_response(
                    f"{required} plan required for {FEATURE_LABELS[feature]}", 403
                )
            g.api_user = user
            return func(*args, **kwargs)

        return wrapped

    return decorator
