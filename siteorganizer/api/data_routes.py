from __future__ import annotations

import json

from flask import Response, current_app, g, request

from siteorganizer.api import api_bp
from siteorganizer.services.bookmark_import import (
    ImportFormatError,
    build_import_rows,
    parse_import_file,
)
from siteorganizer.services.common import error_response, ok_response, to_bool
from siteorganizer.services.export import (
    CONTENT_TYPES,
    EXPORT_COLLECTIONS,
    EXPORT_FORMATS,
    ExportError,
    collect_export,
    export_filename,
    parse_include,
    render_csv,
    render_html,
)
from siteorganizer.services.import_pipeline import (
    ImportOptions,
    SiteImporter,
    resolve_chunk_size,
)
from siteorganizer.services.postgrest import (
    DEFAULT_BATCH_SIZE,
    IGNORE_DUPLICATES,
    chunked,
    eq,
    get_supabase,
    in_filter,
)
from siteorganizer.services.security import api_auth_required
from siteorganizer.services.sites import JUNCTIONS, delete_site_relations


BULK_TYPES = ("sites", "categories", "tags")
RESET_TYPES = ("sites", "categories", "tags", "all")
EMBEDDED_KEYS = ("categories_array", "tags_array")
ENTITY_JUNCTIONS = {
    "categories": ("site_categories", "category_id"),
    "tags": ("site_tags", "tag_id"),
}


@api_bp.route("/import", methods=["POST"])
@api_auth_required(message="Authentication required for import")
def import_sites():
    user = g.api_user
    payload = request.get_json(silent=True) or {}

    rows = payload.get("rows")
    if not isinstance(rows, list) or not rows:
        return error_response("No rows provided", 400)
    user_id = payload.get("userId")
    if not user_id:
        return error_response("userId is required", 400)
    if str(user_id) != user.id:
        return error_response("userId does not match the authenticated user", 403)

    raw_options = payload.get("options") or {}
    config = current_app.config
    options = ImportOptions(
        create_missing=to_bool(raw_options.get("createMissing"), default=True),
        chunk_size=resolve_chunk_size(
            payload.get("chunkSize", raw_options.get("chunkSize")),
            default=config["IMPORT_CHUNK_SIZE"],
            minimum=config["IMPORT_MIN_CHUNK_SIZE"],
        ),
        import_source=str(raw_options.get("importSource") or "manual"),
    )
    importer = SiteImporter(
        get_supabase(),
        token=user.token,
        user_id=user.id,
        tier=user.tier,
        options=options,
        logger=current_app.logger,
        workers=config["IMPORT_WORKERS"],
        lookup_batch=config["IMPORT_LOOKUP_BATCH"],
    )
    return ok_response(report=importer.run(rows))


@api_bp.route("/import/parse", methods=["POST"])
@api_auth_required()
def import_parse():
    upload = request.files.get("file")
    if upload is not None:
        content = upload.read().decode("utf-8-sig", errors="replace")
        filename = upload.filename
        fmt = request.form.get("format")
        source = request.form.get("source") or "auto"
    else:
        payload = request.get_json(silent=True) or {}
        content = payload.get("content")
        filename = payload.get("filename")
        fmt = payload.get("format")
        source = payload.get("source") or "auto"

    if not isinstance(content, str) or not content.strip():
        return error_response("No file content provided", 400)

    try:
        sites = parse_import_file(content, filename=filename, fmt=fmt, source=source)
    except ImportFormatError as exc:
        return error_response(str(exc), 400)

    rows = build_import_rows(sites)
    current_app.logger.info(
        "Parsed import file %s: %s sites, %s rows", filename or "(inline)", len(sites), len(rows)
    )
    return ok_response(sites=sites, rows=rows, count=len(rows))


@api_bp.route("/export", methods=["GET"])
@api_auth_required(message="Authentication required for export")
def export_data():
    user = g.api_user
    fmt = (request.args.get("format") or "json").strip().lower()
    if fmt not in EXPORT_FORMATS:
        return error_response(
            f"Invalid format. Must be: {', '.join(EXPORT_FORMATS)}", 400
        )
    try:
        include = parse_include(request.args.get("include"))
    except ExportError as exc:
        return error_response(str(exc), 400)

    if fmt != "json":
        include = EXPORT_COLLECTIONS
    data = collect_export(get_supabase(), user.id, user.token, include)
    disposition = {"Content-Disposition": f'attachment; filename="{export_filename(fmt)}"'}

    if fmt == "csv":
        body = render_csv(data["sites"])
    elif fmt == "html":
        body = render_html(data["sites"])
    else:
        body = json.dumps(data, indent=2, ensure_ascii=False)
    return Response(body, mimetype=CONTENT_TYPES[fmt], headers=disposition)


def _select_in(
    client, table: str, column: str, ids: list, extra: dict | None = None, **kwargs
) -> list[dict]:
    rows: list[dict] = []
    for batch in chunked(list(ids), DEFAULT_BATCH_SIZE):
        params = {"select": column, column: in_filter(batch), **(extra or {})}
        rows.extend(client.select(table, params, **kwargs))
    return rows


@api_bp.route("/bulk-delete", methods=["POST"])
@api_auth_required()
def bulk_delete():
    user = g.api_user
    client = get_supabase()
    payload = request.get_json(silent=True) or {}

    kind = payload.get("type")
    ids = payload.get("ids")
    if kind not in BULK_TYPES:
        return error_response("type must be sites, categories, or tags", 400)
    if not isinstance(ids, list) or not ids:
        return error_response("ids must be a non-empty array", 400)

    owned = {"user_id": eq(user.id)}
    if kind == "sites":
        site_ids = [
            row["id"]
            for row in _select_in(client, "sites", "id", ids, token=user.token, extra=owned)
        ]
        delete_site_relations(client, site_ids)
        deleted = client.delete_in("sites", "id", site_ids, token=user.token, extra=owned)
    else:
        junction, column = ENTITY_JUNCTIONS[kind]
        if _select_in(client, junction, column, ids, service=True):
            return error_response(f"Cannot delete: one or more {kind} are used on sites", 403)
        deleted = client.delete_in(kind, "id", ids, token=user.token, extra=owned)

    current_app.logger.info("Bulk delete for %s: %s %s", user.id, len(deleted), kind)
    return ok_response(deleted=len(deleted))


def _owned_rows(client, table: str, user) -> list[dict]:
    return client.select_all(
        table, {"select": "*", "user_id": eq(user.id)}, token=user.token
    )


def _delete_owned(client, table: str, user) -> list[dict]:
    return client.delete(table, {"user_id": eq(user.id)}, token=user.token)


@api_bp.route("/reset", methods=["POST"])
@api_auth_required()
def reset():
    """Delete everything of one type and return the removed rows so the client can undo."""
    user = g.api_user
    client = get_supabase()
    payload = request.get_json(silent=True) or {}

    kind = payload.get("type")
    if kind not in RESET_TYPES:
        return error_response(f"Invalid type. Must be: {', '.join(RESET_TYPES)}", 400)

    deleted: dict[str, list] = {
        "sites": [],
        "categories": [],
        "tags": [],
        "site_categories": [],
        "site_tags": [],
    }
    if kind in ("sites", "all"):
        site_ids = [row["id"] for row in _owned_rows(client, "sites", user)]
        for table, _ in JUNCTIONS:
            deleted[table] = client.delete_in(table, "site_id", site_ids, service=True)
        deleted["sites"] = _delete_owned(client, "sites", user)
    for entity in ("categories", "tags"):
        if kind not in (entity, "all"):
            continue
        if kind == entity:
            junction, column = ENTITY_JUNCTIONS[entity]
            entity_ids = [row["id"] for row in _owned_rows(client, entity, user)]
            deleted[junction] = client.delete_in(junction, column, entity_ids, service=True)
        deleted[entity] = _delete_owned(client, entity, user)

    counts = {table: len(deleted[table]) for table in BULK_TYPES}
    current_app.logger.info("Reset %s for %s: %s", kind, user.id, counts)
    return ok_response(deleted=deleted, counts=counts)


def _restorable(rows, user_id: str) -> list[dict]:
    if not isinstance(rows, list):
        return []
    return [
        {key: value for key, value in row.items() if key not in EMBEDDED_KEYS}
        for row in rows
        if isinstance(row, dict) and str(row.get("user_id")) == user_id
    ]


@api_bp.route("/restore", methods=["POST"])
@api_auth_required()
def restore():
    user = g.api_user
    client = get_supabase()
    payload = request.get_json(silent=True) or {}

    categories = _restorable(payload.get("categories"), user.id)
    tags = _restorable(payload.get("tags"), user.id)
    sites = _restorable(payload.get("sites"), user.id)
    site_ids = {site.get("id") for site in sites}

    restored: dict[str, int] = {}
    errors: list[dict] = []
    for table, rows in (("categories", categories), ("tags", tags), ("sites", sites)):
        if not rows:
            continue
        restored[table], failed = client.insert_batches(
            table, rows, token=user.token, prefer=IGNORE_DUPLICATES
        )
        errors.extend(failed)

    for table, _ in JUNCTIONS:
        rows = payload.get(table)
        rows = [
            row
            for row in (rows if isinstance(rows, list) else [])
            if isinstance(row, dict) and row.get("site_id") in site_ids
        ]
        if not rows:
            continue
        restored[table], failed = client.insert_batches(
            table, rows, service=True, prefer=IGNORE_DUPLICATES
        )
        errors.extend(failed)

    if errors:
        current_app.logger.warning("Restore for %s had %s failed batches", user.id, len(errors))
        return ok_response(restored=restored, errors=errors)
    return ok_response(restored=restored)
