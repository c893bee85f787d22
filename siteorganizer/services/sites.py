from __future__ import annotations

from siteorganizer.services.postgrest import (
    SITE_EMBED_SELECT,
    SupabaseClient,
    UpstreamError,
    eq,
    flatten_site,
)


JUNCTIONS = (
    ("site_categories", "category_id"),
    ("site_tags", "tag_id"),
)


def fetch_site(client: SupabaseClient, site_id, token: str | None = None) -> dict | None:
    rows = client.select(
        "sites", {"select": SITE_EMBED_SELECT, "id": eq(site_id)}, token=token
    )
    return flatten_site(rows[0]) if rows else None


def is_site_owner(client: SupabaseClient, site_id, user_id: str, token: str) -> bool:
    rows = client.select(
        "sites", {"select": "user_id", "id": eq(site_id)}, token=token
    )
    return bool(rows) and str(rows[0].get("user_id")) == str(user_id)


def delete_site_relations(client: SupabaseClient, site_ids: list) -> int:
    removed = 0
    for table, _ in JUNCTIONS:
        removed += len(client.delete_in(table, "site_id", site_ids, service=True))
    return removed


def _ids(values) -> list:
    return list(dict.fromkeys(value for value in values if value not in (None, "")))


def attach_site_relations(
    client: SupabaseClient,
    site_id,
    category_ids: list | None = None,
    tag_ids: list | None = None,
) -> None:
    """Insert junction rows; raises UpstreamError on the first failed table."""
    for (table, column), ids in zip(JUNCTIONS, (category_ids, tag_ids)):
        rows = [{"site_id": site_id, column: value} for value in _ids(ids or [])]
        if rows:
            client.insert(table, rows, service=True)


def replace_site_relations(
    client: SupabaseClient,
    site_id,
    category_ids: list | None = None,
    tag_ids: list | None = None,
) -> list[str]:
    """Replace the given relation sets. A None list leaves that relation untouched."""
    warnings: list[str] = []
    for (table, column), ids in zip(JUNCTIONS, (category_ids, tag_ids)):
        if ids is None:
            continue
        try:
            client.delete(table, {"site_id": eq(site_id)}, service=True)
        except UpstreamError as exc:
            warnings.append(f"Failed to clear {table}: {exc.body}")
            continue
        rows = [{"site_id": site_id, column: value} for value in _ids(ids)]
        if not rows:
            continue
        try:
            client.insert(table, rows, service=True)
        except UpstreamError as exc:
            warnings.append(f"Failed to attach {table}: {exc.body}")
    return warnings
