from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta, timezone

from dateutil import parser as date_parser
from flask import current_app, g, request

from siteorganizer.admin import admin_bp
from siteorganizer.services.common import error_response, ok_response, to_bool
from siteorganizer.services.links import sweep_links
from siteorganizer.services.normalize import VALID_PRICING
from siteorganizer.services.postgrest import eq, get_supabase
from siteorganizer.services.security import api_auth_required
from siteorganizer.services.sites import delete_site_relations
from siteorganizer.services.tiers import TIER_FREE, TIER_PRO, TIERS, resolve_tier


BAN_FOREVER = "876000h"
BAN_LIFTED = "none"


def _target_user_id(action: str):
    payload = request.get_json(silent=True) or {}
    user_id = payload.get("userId")
    if not user_id:
        return payload, None, error_response("userId is required", 400)
    if str(user_id) == g.api_user.id:
        return payload, None, error_response(f"Cannot {action} your own account from admin", 400)
    return payload, str(user_id), None


@admin_bp.route("/ban-user", methods=["POST"])
@api_auth_required(admin=True, message="Missing authorization")
def ban_user():
    payload, user_id, denial = _target_user_id("ban")
    if denial:
        return denial
    ban = to_bool(payload.get("ban"))
    get_supabase().update_user(user_id, {"ban_duration": BAN_FOREVER if ban else BAN_LIFTED})
    current_app.logger.info("Admin %s set ban=%s for %s", g.api_user.email, ban, user_id)
    return ok_response(banned=ban, user_id=user_id)


@admin_bp.route("/toggle-pro", methods=["POST"])
@api_auth_required(admin=True, message="Missing authorization")
def toggle_pro():
    payload = request.get_json(silent=True) or {}
    user_id = payload.get("userId")
    if not user_id:
        return error_response("userId is required", 400)

    tier = payload.get("tier")
    if tier is None:
        tier = TIER_PRO if to_bool(payload.get("isPro")) else TIER_FREE
    if tier not in TIERS:
        return error_response(f"Invalid tier. Must be: {', '.join(TIERS)}", 400)

    client = get_supabase()
    record = client.get_user(str(user_id))
    metadata = {**(record.get("user_metadata") or {}), "tier": tier, "is_pro": tier != TIER_FREE}
    client.update_user(str(user_id), {"user_metadata": metadata})
    current_app.logger.info("Admin %s set tier=%s for %s", g.api_user.email, tier, user_id)
    return ok_response(tier=tier, is_pro=tier != TIER_FREE, user_id=user_id)


@admin_bp.route("/delete-user", methods=["DELETE"])
@api_auth_required(admin=True, message="Missing authorization")
def delete_user():
    _, user_id, denial = _target_user_id("delete")
    if denial:
        return denial

    client = get_supabase()
    owned = {"user_id": eq(user_id)}
    site_ids = [
        row["id"] for row in client.select_all("sites", {"select": "id", **owned}, service=True)
    ]
    delete_site_relations(client, site_ids)
    for table in ("sites", "categories", "tags"):
        client.delete(table, owned, service=True)
    client.delete("profiles", {"id": eq(user_id)}, service=True)
    client.delete_user(user_id)

    current_app.logger.warning("Admin %s deleted user %s", g.api_user.email, user_id)
    return ok_response()


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        moment = date_parser.isoparse(value)
    except ValueError:
        return None
    return moment if moment.tzinfo else moment.replace(tzinfo=timezone.utc)


@admin_bp.route("/stats", methods=["GET"])
@api_auth_required(admin=True, message="Missing authorization")
def stats():
    client = get_supabase()
    users = client.list_users()
    now = datetime.now(timezone.utc)
    week_ago = now - timedelta(days=7)
    month_ago = now - timedelta(days=30)

    def _since(user: dict, key: str, cutoff: datetime) -> bool:
        moment = _parse_time(user.get(key))
        return moment is not None and moment >= cutoff

    pricing = client.select_all("sites", {"select": "pricing"}, service=True)
    pricing_counts = Counter(row.get("pricing") for row in pricing)
    tier_counts = Counter(resolve_tier(user.get("user_metadata")) for user in users)

    return ok_response(
        overview={
            "totalUsers": len(users),
            "totalSites": client.count("sites", service=True),
            "totalCategories": client.count("categories", service=True),
            "totalTags": client.count("tags", service=True),
            "activeUsers": sum(1 for user in users if _since(user, "last_sign_in_at", week_ago)),
            "newUsersLast30Days": sum(1 for user in users if _since(user, "created_at", month_ago)),
            "bannedUsers": sum(1 for user in users if _since(user, "banned_until", now)),
        },
        pricingBreakdown={value: pricing_counts.get(value, 0) for value in VALID_PRICING},
        tierBreakdown={tier: tier_counts.get(tier, 0) for tier in TIERS},
    )


@admin_bp.route("/check-links", methods=["POST"])
@api_auth_required(admin=True, message="Missing authorization")
def check_links():
    config = current_app.config
    summary = sweep_links(
        get_supabase(),
        workers=config["ADMIN_LINK_CHECK_WORKERS"],
        timeout=config["ADMIN_LINK_CHECK_TIMEOUT"],
    )
    current_app.logger.info(
        "Admin link sweep: %s checked, %s broken", summary["checked"], summary["brokenCount"]
    )
    return ok_response(**summary)
