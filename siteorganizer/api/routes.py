from __future__ import annotations

import random
import re
import time
from datetime import datetime, timedelta, timezone

from dateutil import parser as date_parser
from flask import current_app, g, request

from siteorganizer.api import api_bp
from siteorganizer.services.common import (
    ensure_scheme,
    error_response,
    ok_response,
    parse_int,
    to_bool,
)
from siteorganizer.services.duplicates import find_duplicates
from siteorganizer.services.links import check_links
from siteorganizer.services.normalize import DEFAULT_PRICING, normalize_pricing
from siteorganizer.services.postgrest import (
    DEFAULT_BATCH_SIZE,
    IGNORE_DUPLICATES,
    SITE_EMBED_SELECT,
    UpstreamError,
    chunked,
    eq,
    flatten_site,
    get_supabase,
    in_filter,
)
from siteorganizer.services.security import api_auth_required
from siteorganizer.services.sites import (
    attach_site_relations,
    delete_site_relations,
    fetch_site,
    is_site_owner,
    replace_site_relations,
)
from siteorganizer.services.suggestions import (
    category_name_suggestions,
    local_match,
    suggest_categories,
    suggest_tags,
)
from siteorganizer.services.tiers import can_add, limit_text, tier_label, upgrade_target


STARTED_AT = time.monotonic()

ENTITY_FIELDS = {
    "categories": ("name", "color", "display_order", "user_id"),
    "tags": ("name", "color", "user_id"),
}
ENTITY_JUNCTIONS = {
    "categories": ("site_categories", "category_id"),
    "tags": ("site_tags", "tag_id"),
}
ENTITY_SINGULAR = {"sites": "Site", "categories": "Category", "tags": "Tag"}

_SEARCH_UNSAFE = re.compile(r"[(),*]")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _owned(extra: dict | None = None) -> dict:
    return {"user_id": eq(g.api_user.id), **(extra or {})}


def _limit_denial(kind: str):
    user = g.api_user
    current = get_supabase().count(kind, _owned(), token=user.token)
    verdict = can_add(user.tier, kind, current)
    if verdict["allowed"]:
        return None
    label = tier_label(user.tier)
    return error_response(
        f"{ENTITY_SINGULAR[kind]} limit reached ({current}/{limit_text(verdict['limit'])}). "
        f"You are on the {label} plan. Upgrade to {upgrade_target(user.tier)} for more.",
        403,
        tierLimited=True,
    )


@api_bp.route("/health")
def health():
    return ok_response(
        status="ok",
        timestamp=_now().isoformat(),
        uptime=round(time.monotonic() - STARTED_AT, 3),
    )


@api_bp.route("/stats", methods=["GET"])
@api_auth_required()
def stats():
    user = g.api_user
    client = get_supabase()
    counts = {
        table: client.count(table, _owned(), token=user.token)
        for table in ("sites", "categories", "tags")
    }
    return ok_response(tier=user.tier, **counts)


@api_bp.route("/sites", methods=["GET"])
@api_auth_required()
def sites_list():
    user = g.api_user
    limit = min(parse_int(request.args.get("limit"), 100), 500)
    page = parse_int(request.args.get("page"), 1)
    params = _owned(
        {
            "select": SITE_EMBED_SELECT,
            "order": "created_at.desc",
            "limit": limit,
            "offset": (page - 1) * limit,
        }
    )
    query = _SEARCH_UNSAFE.sub(" ", request.args.get("q") or "").strip()
    if query:
        params["or"] = f"(name.ilike.*{query}*,url.ilike.*{query}*)"

    rows = get_supabase().select("sites", params, token=user.token)
    return ok_response(data=[flatten_site(row) for row in rows], page=page, limit=limit)


@api_bp.route("/sites", methods=["POST"])
@api_auth_required(message="Authentication required to create sites")
def sites_create():
    user = g.api_user
    client = get_supabase()
    payload = request.get_json(silent=True) or {}

    missing = [key for key in ("name", "url", "pricing") if not payload.get(key)]
    if missing:
        return error_response(f"Missing required fields: {', '.join(missing)}", 400)

    denial = _limit_denial("sites")
    if denial:
        return denial

    record = {
        "name": str(payload["name"]).strip(),
        "url": ensure_scheme(str(payload["url"])),
        "pricing": normalize_pricing(payload["pricing"]) or DEFAULT_PRICING,
        "user_id": payload.get("user_id") or user.id,
        "is_favorite": to_bool(payload.get("is_favorite")),
    }
    try:
        created = client.insert("sites", record, token=user.token)
    except UpstreamError as exc:
        if not exc.is_duplicate:
            raise
        existing = client.select(
            "sites",
            {"select": "*", "url": eq(record["url"]), "user_id": eq(record["user_id"])},
            token=user.token,
        )
        return error_response("Site already exists", 409, data=existing[0] if existing else None)

    site = created[0]
    try:
        attach_site_relations(
            client, site["id"], payload.get("category_ids"), payload.get("tag_ids")
        )
    except UpstreamError as exc:
        current_app.logger.warning("Relation attach failed for site %s, rolling back", site["id"])
        delete_site_relations(client, [site["id"]])
        client.delete("sites", {"id": eq(site["id"])}, token=user.token)
        return error_response("Failed to attach relations", 502, details=exc.body)

    return ok_response(201, data=fetch_site(client, site["id"], token=user.token) or site)


@api_bp.route("/sites/<site_id>", methods=["GET"])
@api_auth_required()
def sites_detail(site_id: str):
    return ok_response(data=fetch_site(get_supabase(), site_id, token=g.api_user.token))


@api_bp.route("/sites/<site_id>", methods=["PATCH", "PUT"])
@api_auth_required()
def sites_update(site_id: str):
    user = g.api_user
    client = get_supabase()
    payload = request.get_json(silent=True) or {}

    values = {key: payload[key] for key in ("name", "url", "pricing") if key in payload}
    if "pricing" in values:
        values["pricing"] = normalize_pricing(values["pricing"]) or DEFAULT_PRICING
    if "url" in values:
        values["url"] = ensure_scheme(str(values["url"] or ""))
    values["updated_at"] = _now().isoformat()

    rows = client.update("sites", values, {"id": eq(site_id)}, token=user.token)
    if not rows:
        return error_response("Site not found", 404)

    warnings: list[str] = []
    category_ids = payload.get("category_ids")
    tag_ids = payload.get("tag_ids")
    if isinstance(category_ids, list) or isinstance(tag_ids, list):
        if is_site_owner(client, site_id, user.id, user.token):
            warnings = replace_site_relations(
                client,
                site_id,
                category_ids if isinstance(category_ids, list) else None,
                tag_ids if isinstance(tag_ids, list) else None,
            )
        else:
            warnings.append("Relations not updated: only the owner can change them")
    for warning in warnings:
        current_app.logger.warning("Site %s: %s", site_id, warning)

    data = fetch_site(client, site_id, token=user.token) or rows[0]
    if warnings:
        return ok_response(data=data, warnings=warnings)
    return ok_response(data=data)


@api_bp.route("/sites/<site_id>", methods=["DELETE"])
@api_auth_required()
def sites_delete(site_id: str):
    user = g.api_user
    client = get_supabase()
    if not is_site_owner(client, site_id, user.id, user.token):
        return error_response("Site not found", 404)
    delete_site_relations(client, [site_id])
    client.delete("sites", {"id": eq(site_id)}, token=user.token)
    return ok_response(deleted=site_id)


@api_bp.route("/sites/<site_id>/relations/retry", methods=["POST"])
@api_auth_required()
def sites_relations_retry(site_id: str):
    user = g.api_user
    client = get_supabase()
    payload = request.get_json(silent=True) or {}
    if not is_site_owner(client, site_id, user.id, user.token):
        return error_response("Only the site owner can update relations", 403)

    category_ids = payload.get("category_ids")
    tag_ids = payload.get("tag_ids")
    warnings = replace_site_relations(
        client,
        site_id,
        category_ids if isinstance(category_ids, list) else None,
        tag_ids if isinstance(tag_ids, list) else None,
    )
    if warnings:
        return error_response("Failed to update relations", 502, warnings=warnings)
    return ok_response(data=fetch_site(client, site_id, token=user.token))


@api_bp.route("/<any(categories, tags):table>", methods=["GET"])
@api_auth_required()
def entities_list(table: str):
    rows = get_supabase().select_all(
        table, _owned({"select": "*", "order": "name.asc"}), token=g.api_user.token
    )
    return ok_response(data=rows)


def _entity_create(table: str):
    user = g.api_user
    client = get_supabase()
    payload = request.get_json(silent=True) or {}
    record = {key: payload[key] for key in ENTITY_FIELDS[table] if payload.get(key) is not None}
    record["name"] = str(record.get("name") or "").strip()
    if not record["name"]:
        return error_response("name is required", 400)
    record.setdefault("user_id", user.id)

    denial = _limit_denial(table)
    if denial:
        return denial

    try:
        created = client.insert(table, record, token=user.token)
    except UpstreamError as exc:
        if not exc.is_duplicate:
            raise
        existing = client.select(
            table,
            {"select": "*", "name": eq(record["name"]), "user_id": eq(record["user_id"])},
            token=user.token,
        )
        if not existing:
            raise
        return ok_response(data=existing[0])
    return ok_response(201, data=created[0] if created else None)


@api_bp.route("/categories", methods=["POST"])
@api_auth_required(message="Authentication required to create categories")
def categories_create():
    return _entity_create("categories")


@api_bp.route("/tags", methods=["POST"])
@api_auth_required(message="Authentication required to create tags")
def tags_create():
    return _entity_create("tags")


@api_bp.route("/<any(categories, tags):table>/<entity_id>", methods=["GET"])
@api_auth_required()
def entities_detail(table: str, entity_id: str):
    rows = get_supabase().select(
        table, {"select": "*", "id": eq(entity_id)}, token=g.api_user.token
    )
    if not rows:
        return error_response(f"{ENTITY_SINGULAR[table]} not found", 404)
    return ok_response(data=rows[0])


@api_bp.route("/<any(categories, tags):table>/<entity_id>", methods=["PATCH", "PUT"])
@api_auth_required()
def entities_update(table: str, entity_id: str):
    user = g.api_user
    payload = request.get_json(silent=True) or {}
    values = {
        key: payload[key]
        for key in ENTITY_FIELDS[table]
        if key != "user_id" and key in payload
    }
    if "name" in values:
        values["name"] = str(values["name"] or "").strip()
        if not values["name"]:
            return error_response("name cannot be empty", 400)
    values["user_id"] = user.id

    rows = get_supabase().update(
        table, values, {"id": eq(entity_id), "user_id": eq(user.id)}, token=user.token
    )
    if not rows:
        return error_response(f"{ENTITY_SINGULAR[table]} not found", 404)
    return ok_response(data=rows[0])


@api_bp.route("/<any(categories, tags):table>/<entity_id>", methods=["DELETE"])
@api_auth_required()
def entities_delete(table: str, entity_id: str):
    user = g.api_user
    client = get_supabase()
    owned = client.select(
        table, {"select": "id", "id": eq(entity_id), "user_id": eq(user.id)}, token=user.token
    )
    if not owned:
        return error_response(f"{ENTITY_SINGULAR[table]} not found", 404)

    junction, column = ENTITY_JUNCTIONS[table]
    client.delete(junction, {column: eq(entity_id)}, service=True)
    client.delete(table, {"id": eq(entity_id), "user_id": eq(user.id)}, token=user.token)
    return ok_response(deleted=entity_id)


def _flag_ids(flag: str, order: str | None = None) -> list:
    params = _owned({"select": "id", flag: "eq.true"})
    if order:
        params["order"] = order
    rows = get_supabase().select_all("sites", params, token=g.api_user.token)
    return [row["id"] for row in rows]


def _owned_site(site_id, columns: str) -> dict | None:
    rows = get_supabase().select(
        "sites", _owned({"select": columns, "id": eq(site_id)}), token=g.api_user.token
    )
    return rows[0] if rows else None


@api_bp.route("/favorites", methods=["GET"])
@api_auth_required()
def favorites_list():
    return ok_response(data=_flag_ids("is_favorite"))


@api_bp.route("/favorites", methods=["POST"])
@api_auth_required()
def favorites_toggle():
    payload = request.get_json(silent=True) or {}
    site_id = payload.get("site_id")
    if not site_id:
        return error_response("site_id is required", 400)
    site = _owned_site(site_id, "id,is_favorite")
    if not site:
        return error_response("Site not found", 404)

    favorite = not site.get("is_favorite")
    get_supabase().update(
        "sites", {"is_favorite": favorite}, _owned({"id": eq(site_id)}), token=g.api_user.token
    )
    return ok_response(favorite=favorite)


@api_bp.route("/pinned", methods=["GET"])
@api_auth_required()
def pinned_list():
    return ok_response(data=_flag_ids("is_pinned", order="pin_position.asc"))


@api_bp.route("/pinned", methods=["POST"])
@api_auth_required()
def pinned_toggle():
    user = g.api_user
    client = get_supabase()
    payload = request.get_json(silent=True) or {}
    site_id = payload.get("site_id")
    if not site_id:
        return error_response("site_id is required", 400)
    site = _owned_site(site_id, "id,is_pinned,pin_position")
    if not site:
        return error_response("Site not found", 404)

    if site.get("is_pinned"):
        values = {"is_pinned": False, "pin_position": 0}
    else:
        top = client.select(
            "sites",
            _owned(
                {
                    "select": "pin_position",
                    "is_pinned": "eq.true",
                    "order": "pin_position.desc",
                    "limit": 1,
                }
            ),
            token=user.token,
        )
        highest = top[0].get("pin_position") if top else None
        values = {"is_pinned": True, "pin_position": (-1 if highest is None else highest) + 1}

    client.update("sites", values, _owned({"id": eq(site_id)}), token=user.token)
    return ok_response(pinned=values["is_pinned"])


def _days_since(value: str | None, now: datetime) -> int | None:
    if not value:
        return None
    try:
        moment = date_parser.isoparse(value)
    except ValueError:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return max(0, (now - moment).days)


@api_bp.route("/rediscover", methods=["GET"])
@api_auth_required()
def rediscover_list():
    limit = min(parse_int(request.args.get("limit"), 5), 20)
    days = parse_int(request.args.get("days"), 30)
    now = _now()
    cutoff = (now - timedelta(days=days)).isoformat()

    sites = get_supabase().select(
        "sites",
        _owned(
            {
                "select": "id,name,url,pricing,is_favorite,created_at,last_clicked_at",
                "created_at": f"lt.{cutoff}",
                "or": f"(last_clicked_at.is.null,last_clicked_at.lt.{cutoff})",
                "order": "created_at.asc",
            }
        ),
        token=g.api_user.token,
    )
    picked = random.sample(sites, k=min(limit, len(sites)))
    result = [
        {
            **site,
            "days_since_saved": _days_since(site.get("created_at"), now),
            "days_since_clicked": _days_since(site.get("last_clicked_at"), now),
        }
        for site in picked
    ]
    return ok_response(sites=result, total=len(sites))


@api_bp.route("/rediscover", methods=["POST"])
@api_auth_required()
def rediscover_track():
    payload = request.get_json(silent=True) or {}
    site_id = payload.get("siteId")
    if not site_id:
        return error_response("siteId is required", 400)
    get_supabase().update(
        "sites",
        {"last_clicked_at": _now().isoformat()},
        _owned({"id": eq(site_id)}),
        token=g.api_user.token,
    )
    return ok_response(tracked=True)


def _user_entities(table: str, limit: int) -> list[dict]:
    return get_supabase().select(
        table,
        _owned({"select": "id,name,color", "order": "name.asc", "limit": limit}),
        token=g.api_user.token,
    )


@api_bp.route("/suggest", methods=["POST"])
@api_auth_required()
def suggest():
    payload = request.get_json(silent=True) or {}
    url = ensure_scheme(str(payload.get("url") or ""))
    if not url:
        return error_response("url is required", 400)
    name = str(payload.get("name") or "")
    return ok_response(
        categories=suggest_categories(url, name, _user_entities("categories", 500)),
        tags=suggest_tags(url, name, _user_entities("tags", 1000)),
        categoryNames=category_name_suggestions(url, name),
    )


def _unrelated_sites(sites: list[dict], junction: str) -> list[dict]:
    linked: set = set()
    ids = [site["id"] for site in sites]
    for batch in chunked(ids, DEFAULT_BATCH_SIZE):
        rows = get_supabase().select(
            junction, {"select": "site_id", "site_id": in_filter(batch)}, service=True
        )
        linked.update(row["site_id"] for row in rows)
    return [site for site in sites if site["id"] not in linked]


def _organize_context() -> dict:
    sites = get_supabase().select_all(
        "sites",
        _owned({"select": "id,name,url", "order": "created_at.desc"}),
        token=g.api_user.token,
    )
    categories = _user_entities("categories", 500)
    tags = _user_entities("tags", 1000)
    uncategorized = _unrelated_sites(sites, "site_categories")
    return {
        "sites": sites,
        "categories": categories,
        "tags": tags,
        "uncategorized": uncategorized,
        "untagged": _unrelated_sites(sites, "site_tags"),
        "matches": local_match(uncategorized, categories, tags),
    }


@api_bp.route("/auto-organize", methods=["GET"])
@api_auth_required(feature="autoOrganize", message="Not authenticated")
def auto_organize_preview():
    preview_limit = min(parse_int(request.args.get("preview_limit"), 200), 500)
    context = _organize_context()
    return ok_response(
        uncategorizedCount=len(context["uncategorized"]),
        untaggedCount=len(context["untagged"]),
        matchCount=len(context["matches"]),
        categoriesCount=len(context["categories"]),
        tagsCount=len(context["tags"]),
        preview=context["matches"][:preview_limit],
    )


@api_bp.route("/auto-organize", methods=["POST"])
@api_auth_required(feature="autoOrganize", message="Not authenticated")
def auto_organize_apply():
    client = get_supabase()
    payload = request.get_json(silent=True) or {}
    context = _organize_context()

    assignments = payload.get("assignments")
    if not isinstance(assignments, list):
        assignments = [
            {"siteId": m["siteId"], "categoryIds": m["categoryIds"], "tagIds": m["tagIds"]}
            for m in context["matches"]
        ]
    if not assignments:
        return ok_response(applied=0, total=0)

    site_ids = {site["id"] for site in context["sites"]}
    category_ids = {row["id"] for row in context["categories"]}
    tag_ids = {row["id"] for row in context["tags"]}
    category_rows = []
    tag_rows = []
    for assignment in assignments:
        if not isinstance(assignment, dict) or assignment.get("siteId") not in site_ids:
            continue
        site_id = assignment["siteId"]
        category_rows.extend(
            {"site_id": site_id, "category_id": cid}
            for cid in assignment.get("categoryIds") or []
            if cid in category_ids
        )
        tag_rows.extend(
            {"site_id": site_id, "tag_id": tid}
            for tid in assignment.get("tagIds") or []
            if tid in tag_ids
        )

    applied = 0
    errors: list[dict] = []
    for table, rows in (("site_categories", category_rows), ("site_tags", tag_rows)):
        inserted, failed = client.insert_batches(
            table, rows, service=True, prefer=IGNORE_DUPLICATES
        )
        applied += inserted
        errors.extend(failed)

    if errors:
        return error_response(
            "Failed to apply some assignments", 502, applied=applied, errors=errors
        )
    return ok_response(applied=applied, total=len(assignments))


@api_bp.route("/duplicates", methods=["GET"])
@api_auth_required()
def duplicates():
    sites = get_supabase().select_all(
        "sites",
        _owned({"select": "id,name,url,created_at", "order": "created_at.asc"}),
        token=g.api_user.token,
    )
    return ok_response(total=len(sites), **find_duplicates(sites))


@api_bp.route("/links/check", methods=["POST"])
@api_auth_required(feature="linkHealthCheck", message="Not authenticated")
def links_check():
    payload = request.get_json(silent=True) or {}
    sites = payload.get("sites")
    if not isinstance(sites, list):
        rows = get_supabase().select_all(
            "sites",
            _owned({"select": "id,name,url", "order": "created_at.desc"}),
            token=g.api_user.token,
        )
        sites = rows
    sites = [site for site in sites if isinstance(site, dict)]

    results = check_links(
        sites,
        workers=current_app.config["LINK_CHECK_WORKERS"],
        timeout=current_app.config["LINK_CHECK_TIMEOUT"],
    )
    broken = [result for result in results if not result["ok"]]
    return ok_response(
        total=len(results), brokenCount=len(broken), broken=broken, results=results
    )
