from __future__ import annotations

import html
from datetime import datetime, timezone

from siteorganizer.services.postgrest import (
    DEFAULT_BATCH_SIZE,
    SupabaseClient,
    chunked,
    eq,
    in_filter,
)


EXPORT_VERSION = "1.0"
EXPORT_FORMATS = ("json", "csv", "html")
EXPORT_COLLECTIONS = ("sites", "categories", "tags")

CONTENT_TYPES = {
    "json": "application/json",
    "csv": "text/csv; charset=utf-8",
    "html": "text/html; charset=utf-8",
}

COLUMNS = ("Name", "URL", "Category", "Tags", "Description", "Favorite", "Pinned")
CSV_HEADER = ",".join(COLUMNS)

_HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <title>Sites Export</title>
    <style>
        body {{ font-family: Arial, sans-serif; margin: 20px; }}
        table {{ border-collapse: collapse; width: 100%; }}
        th, td {{ border: 1px solid #ddd; padding: 8px; text-align: left; }}
        th {{ background-color: #4CAF50; color: white; }}
        tr:nth-child(even) {{ background-color: #f2f2f2; }}
        a {{ color: #0066cc; }}
    </style>
</head>
<body>
    <h1>Sites Export</h1>
    <p>Exported on: {timestamp}</p>
    <table>
        <thead>
            <tr>{headers}</tr>
        </thead>
        <tbody>
            {rows}
        </tbody>
    </table>
</body>
</html>"""


class ExportError(ValueError):
    pass


def parse_include(value: str | None) -> tuple[str, ...]:
    if not value:
        return EXPORT_COLLECTIONS
    parts = tuple(dict.fromkeys(p.strip().lower() for p in value.split(",") if p.strip()))
    unknown = [part for part in parts if part not in EXPORT_COLLECTIONS]
    if unknown or not parts:
        raise ExportError(
            f"Unknown include value(s): {', '.join(unknown) or value}. "
            f"Use any of: {', '.join(EXPORT_COLLECTIONS)}"
        )
    return parts


def export_filename(fmt: str, now: datetime | None = None) -> str:
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%d")
    return f"sites-export-{stamp}.{fmt}"


def _join_names(items) -> str:
    if not isinstance(items, list):
        return ""
    return "; ".join((item or {}).get("name") or "" for item in items)


def _csv_field(value) -> str:
    return '"' + str(value or "").replace('"', '""') + '"'


def render_csv(sites: list[dict]) -> str:
    if not sites:
        return CSV_HEADER + "\n"
    lines = [CSV_HEADER]
    for site in sites:
        fields = (
            site.get("name"),
            site.get("url"),
            _join_names(site.get("categories_array")),
            _join_names(site.get("tags_array")),
            site.get("description"),
            "Yes" if site.get("is_favorite") else "No",
            "Yes" if site.get("is_pinned") else "No",
        )
        lines.append(",".join(_csv_field(value) for value in fields))
    return "\n".join(lines)


def _html_row(site: dict) -> str:
    url = html.escape(site.get("url") or "")
    cells = (
        html.escape(site.get("name") or ""),
        f'<a href="{url}">{url}</a>',
        html.escape(_join_names(site.get("categories_array"))),
        html.escape(_join_names(site.get("tags_array"))),
        html.escape(site.get("description") or ""),
        "⭐" if site.get("is_favorite") else "",
        "📌" if site.get("is_pinned") else "",
    )
    return "<tr>" + "".join(f"<td>{cell}</td>" for cell in cells) + "</tr>"


def render_html(sites: list[dict], now: datetime | None = None) -> str:
    rows = "".join(_html_row(site) for site in sites) if sites else (
        '<tr><td colspan="7">No sites</td></tr>'
    )
    timestamp = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%d %H:%M:%S UTC")
    return _HTML_TEMPLATE.format(
        timestamp=timestamp,
        headers="".join(f"<th>{column}</th>" for column in COLUMNS),
        rows=rows,
    )


def _relations(client: SupabaseClient, table: str, site_ids: list, token: str) -> list[dict]:
    rows: list[dict] = []
    for batch in chunked(site_ids, DEFAULT_BATCH_SIZE):
        rows.extend(
            client.select(table, {"select": "*", "site_id": in_filter(batch)}, token=token)
        )
    return rows


def enrich_sites(
    sites: list[dict],
    categories: list[dict],
    tags: list[dict],
    site_categories: list[dict],
    site_tags: list[dict],
) -> list[dict]:
    categories_by_id = {row["id"]: row for row in categories}
    tags_by_id = {row["id"]: row for row in tags}
    enriched = []
    for site in sites:
        category_ids = [
            rel["category_id"] for rel in site_categories if rel.get("site_id") == site["id"]
        ]
        tag_ids = [rel["tag_id"] for rel in site_tags if rel.get("site_id") == site["id"]]
        enriched.append(
            {
                **site,
                "categories_array": [
                    categories_by_id[cid] for cid in category_ids if cid in categories_by_id
                ],
                "tags_array": [tags_by_id[tid] for tid in tag_ids if tid in tags_by_id],
            }
        )
    return enriched


def collect_export(
    client: SupabaseClient,
    user_id: str,
    token: str,
    include: tuple[str, ...] = EXPORT_COLLECTIONS,
) -> dict:
    owned = {"user_id": eq(user_id)}
    sites = client.select_all("sites", {"select": "*", **owned, "order": "created_at.desc"}, token=token)
    categories = client.select_all("categories", {"select": "*", **owned, "order": "name.asc"}, token=token)
    tags = client.select_all("tags", {"select": "*", **owned, "order": "name.asc"}, token=token)

    site_ids = [site["id"] for site in sites]
    enriched = enrich_sites(
        sites,
        categories,
        tags,
        _relations(client, "site_categories", site_ids, token),
        _relations(client, "site_tags", site_ids, token),
    )

    data: dict = {
        "version": EXPORT_VERSION,
        "exportedAt": datetime.now(timezone.utc).isoformat(),
    }
    if "sites" in include:
        data["sites"] = enriched
    if "categories" in include:
        data["categories"] = categories
    if "tags" in include:
        data["tags"] = tags
    return data
