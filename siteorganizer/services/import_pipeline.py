from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from siteorganizer.services.normalize import EntityRef, NormalizedRow, normalize_import_row
from siteorganizer.services.postgrest import (
    SupabaseClient,
    UpstreamError,
    chunked,
    eq,
    in_filter,
)
from siteorganizer.services.tiers import (
    get_tier_limits,
    limit_text,
    remaining,
    tier_label,
    upgrade_target,
)


DEFAULT_CATEGORY_COLOR = "#6CBBFB"
DEFAULT_TAG_COLOR = "#D98BAC"
DEFAULT_CHUNK_SIZE = 200
MIN_CHUNK_SIZE = 50
CREATE_BATCH_SIZE = 15
LOOKUP_BATCH_SIZE = 50

SKIP_REASON_TIER_LIMIT = "tier_limit"


@dataclass
class ImportOptions:
    create_missing: bool = True
    chunk_size: int = DEFAULT_CHUNK_SIZE
    import_source: str = "manual"


def resolve_chunk_size(value, default: int = DEFAULT_CHUNK_SIZE, minimum: int = MIN_CHUNK_SIZE) -> int:
    if isinstance(value, bool):
        return default
    try:
        requested = int(value)
    except (TypeError, ValueError):
        return default
    return max(minimum, requested)


@dataclass
class _Planned:
    row: NormalizedRow
    category_ids: list = field(default_factory=list)
    tag_ids: list = field(default_factory=list)
    site: dict | None = None


def _cap(limit: float) -> int | None:
    return None if math.isinf(limit) else int(limit)


class SiteImporter:
    """Reconciles normalized import rows against a user's sites, categories and tags.

    User-owned tables are written with the caller's token so RLS applies.
    Junction tables are written with the service key.
    """

    def __init__(
        self,
        client: SupabaseClient,
        token: str,
        user_id: str,
        tier: str,
        options: ImportOptions | None = None,
        logger: logging.Logger | None = None,
        workers: int = CREATE_BATCH_SIZE,
        lookup_batch: int = LOOKUP_BATCH_SIZE,
    ):
        self.client = client
        self.token = token
        self.user_id = user_id
        self.tier = tier
        self.options = options or ImportOptions()
        self.logger = logger or logging.getLogger(__name__)
        self.workers = max(1, workers)
        self.lookup_batch = max(1, lookup_batch)
        self.limits = get_tier_limits(tier)
        self.categories: dict[str, dict] = {}
        self.tags: dict[str, dict] = {}
        self.known_sites: dict[str, dict] = {}
        self.report: dict = {
            "created": [],
            "updated": [],
            "skipped": [],
            "errors": [],
            "attached": 0,
            "categoriesCreated": 0,
            "tagsCreated": 0,
        }

    def run(self, rows: list[dict]) -> dict:
        normalized = []
        for index, row in enumerate(rows):
            if isinstance(row, dict):
                normalized.append(normalize_import_row(row, index))
            else:
                self.report["errors"].append({"row": index, "error": "Row must be an object"})

        self.categories = self._preload("categories")
        self.tags = self._preload("tags")
        current_sites = self._count_sites()
        sites_limit = self.limits["sites"]
        sites_remaining = remaining(sites_limit, current_sites)

        if sites_remaining == 0:
            label = tier_label(self.tier)
            self.report.update(
                {
                    "tierLimited": True,
                    "siteLimitReached": True,
                    "tierLabel": label,
                    "tierMessage": (
                        f"Site limit reached ({current_sites}/{limit_text(sites_limit)}). "
                        f"You are on the {label} plan. "
                        f"Upgrade to {upgrade_target(self.tier)} for more."
                    ),
                }
            )
            return self.report

        current_categories = len(self.categories)
        current_tags = len(self.tags)
        trimmed_categories = self._create_missing(
            "categories", normalized, lambda row: row.categories, DEFAULT_CATEGORY_COLOR
        )
        trimmed_tags = self._create_missing(
            "tags", normalized, lambda row: row.tags, DEFAULT_TAG_COLOR
        )

        created_count = 0
        skipped_due_to_limit = 0
        for chunk in chunked(normalized, self.options.chunk_size):
            slots = None if math.isinf(sites_remaining) else int(sites_remaining) - created_count
            created, skipped = self._process_chunk(chunk, slots)
            created_count += created
            skipped_due_to_limit += skipped

        if skipped_due_to_limit or trimmed_categories or trimmed_tags:
            self._add_tier_summary(
                skipped_due_to_limit=skipped_due_to_limit,
                created_count=created_count,
                total_rows=len(rows),
                current_sites=current_sites,
                trimmed_categories=trimmed_categories,
                current_categories=current_categories,
                trimmed_tags=trimmed_tags,
                current_tags=current_tags,
            )

        self.logger.info(
            "Import for %s: %s created, %s updated, %s skipped, %s errors",
            self.user_id,
            len(self.report["created"]),
            len(self.report["updated"]),
            len(self.report["skipped"]),
            len(self.report["errors"]),
        )
        return self.report

    def _preload(self, table: str) -> dict[str, dict]:
        rows = self.client.select_all(
            table,
            {"select": "id,name", "user_id": eq(self.user_id)},
            token=self.token,
        )
        return {
            (row.get("name") or "").lower(): row for row in rows if row.get("name")
        }

    def _count_sites(self) -> int:
        try:
            return self.client.count(
                "sites", {"user_id": eq(self.user_id)}, token=self.token
            )
        except UpstreamError as exc:
            self.logger.warning("Site count failed for %s: %s", self.user_id, exc)
            return 0

    def _create_missing(self, table: str, rows: list[NormalizedRow], refs_of, default_color: str) -> int:
        cache = self.categories if table == "categories" else self.tags
        wanted: dict[str, EntityRef] = {}
        for row in rows:
            for ref in refs_of(row):
                key = ref.name.lower()
                if key and key not in wanted:
                    wanted[key] = ref

        missing = [ref for key, ref in wanted.items() if key not in cache]
        if not self.options.create_missing or not missing:
            return 0

        cap = _cap(remaining(self.limits[table], len(cache)))
        to_create = missing if cap is None else missing[:cap]
        trimmed = len(missing) - len(to_create)

        created = 0
        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            for batch in chunked(to_create, CREATE_BATCH_SIZE):
                results = executor.map(
                    lambda ref: self._ensure_entity(table, ref, default_color), batch
                )
                for ref, (row, was_created) in zip(batch, results):
                    if row:
                        cache[ref.name.lower()] = row
                    if was_created:
                        created += 1

        report_key = "categoriesCreated" if table == "categories" else "tagsCreated"
        self.report[report_key] = created
        return trimmed

    def _ensure_entity(self, table: str, ref: EntityRef, default_color: str) -> tuple[dict | None, bool]:
        payload = {
            "name": ref.name,
            "color": ref.color or default_color,
            "user_id": self.user_id,
        }
        try:
            rows = self.client.insert(table, payload, token=self.token)
            if rows:
                return rows[0], True
        except UpstreamError as exc:
            self.logger.debug("Create %s %r failed, looking it up: %s", table, ref.name, exc)

        try:
            rows = self.client.select(
                table,
                {"select": "id,name", "name": eq(ref.name), "user_id": eq(self.user_id)},
                token=self.token,
            )
        except UpstreamError as exc:
            self.logger.warning("Lookup of %s %r failed: %s", table, ref.name, exc)
            return None, False
        return (rows[0] if rows else None), False

    def _ids_for(self, refs: list[EntityRef], cache: dict[str, dict]) -> list:
        ids = []
        for ref in refs:
            entity = cache.get(ref.name.lower())
            if entity and entity.get("id") not in ids:
                ids.append(entity["id"])
        return ids

    def _lookup_sites(self, urls: list[str]) -> None:
        for batch in chunked(urls, self.lookup_batch):
            try:
                rows = self.client.select(
                    "sites",
                    {"select": "*", "url": in_filter(batch), "user_id": eq(self.user_id)},
                    token=self.token,
                )
            except UpstreamError as exc:
                self.logger.warning("Site lookup failed: %s", exc)
                continue
            for site in rows:
                if site.get("url"):
                    self.known_sites[site["url"]] = site

    def _site_payload(self, row: NormalizedRow) -> dict:
        payload = {
            "name": row.name or row.url,
            "url": row.url,
            "pricing": row.pricing,
            "is_favorite": row.is_favorite,
            "is_pinned": row.is_pinned,
            "user_id": self.user_id,
            "import_source": self.options.import_source,
        }
        if row.created_at:
            payload["created_at"] = row.created_at
        return payload

    def _process_chunk(self, chunk: list[NormalizedRow], slots: int | None) -> tuple[int, int]:
        unseen = list(
            dict.fromkeys(row.url for row in chunk if row.url and row.url not in self.known_sites)
        )
        self._lookup_sites(unseen)

        to_create: list[_Planned] = []
        to_update: list[_Planned] = []
        deferred: list[_Planned] = []
        pending_urls: set[str] = set()

        for row in chunk:
            if not row.url:
                self.report["errors"].append({"row": row.index, "error": "Missing URL"})
                continue
            planned = _Planned(
                row=row,
                category_ids=self._ids_for(row.categories, self.categories),
                tag_ids=self._ids_for(row.tags, self.tags),
            )
            if row.url in self.known_sites:
                planned.site = self.known_sites[row.url]
                to_update.append(planned)
            elif row.url in pending_urls:
                deferred.append(planned)
            else:
                pending_urls.add(row.url)
                to_create.append(planned)

        skipped = 0
        truncated_urls: set[str] = set()
        if slots is not None and len(to_create) > slots:
            overflow = to_create[max(slots, 0):]
            to_create = to_create[: max(slots, 0)]
            for planned in overflow:
                truncated_urls.add(planned.row.url)
                self._skip_for_limit(planned.row)
                skipped += 1

        created = self._insert_sites(to_create)

        for planned in deferred:
            url = planned.row.url
            if url in self.known_sites:
                planned.site = self.known_sites[url]
                to_update.append(planned)
            elif url in truncated_urls:
                self._skip_for_limit(planned.row)
                skipped += 1
            else:
                self.report["errors"].append(
                    {"row": planned.row.index, "error": "Site creation failed"}
                )

        updated = self._update_sites(to_update)
        self._attach_relations(created + updated, replace=updated)
        return len(created), skipped

    def _skip_for_limit(self, row: NormalizedRow) -> None:
        self.report["skipped"].append(
            {"row": row.index, "url": row.url, "reason": SKIP_REASON_TIER_LIMIT}
        )

    def _record_created(self, planned: _Planned, site: dict, created: list[_Planned]) -> None:
        planned.site = site
        self.known_sites[planned.row.url] = site
        self.report["created"].append({"row": planned.row.index, "site": site})
        created.append(planned)

    def _insert_sites(self, to_create: list[_Planned]) -> list[_Planned]:
        created: list[_Planned] = []
        if not to_create:
            return created
        try:
            sites = self.client.insert(
                "sites", [self._site_payload(p.row) for p in to_create], token=self.token
            )
        except UpstreamError as exc:
            self.logger.warning("Batch site insert failed, retrying row by row: %s", exc)
        else:
            for planned, site in zip(to_create, sites):
                if site and site.get("id"):
                    self._record_created(planned, site, created)
            return created

        for planned in to_create:
            try:
                rows = self.client.insert(
                    "sites", self._site_payload(planned.row), token=self.token
                )
            except UpstreamError as exc:
                self.report["errors"].append({"row": planned.row.index, "error": exc.body})
                continue
            if rows and rows[0].get("id"):
                self._record_created(planned, rows[0], created)
        return created

    def _update_sites(self, to_update: list[_Planned]) -> list[_Planned]:
        updated: list[_Planned] = []
        for planned in to_update:
            site = planned.site or {}
            values = {
                "name": planned.row.name or site.get("name") or planned.row.url,
                "pricing": planned.row.pricing,
                "is_favorite": planned.row.is_favorite,
                "is_pinned": planned.row.is_pinned,
            }
            try:
                rows = self.client.update(
                    "sites",
                    values,
                    {"id": eq(site.get("id")), "user_id": eq(self.user_id)},
                    token=self.token,
                )
            except UpstreamError as exc:
                self.report["errors"].append(
                    {"row": planned.row.index, "error": f"Update failed: {exc.body}"}
                )
                continue
            fresh = rows[0] if rows else {**site, **values}
            planned.site = fresh
            self.known_sites[planned.row.url] = fresh
            self.report["updated"].append({"row": planned.row.index, "site": fresh})
            updated.append(planned)
        return updated

    def _attach_relations(self, planned_rows: list[_Planned], replace: list[_Planned]) -> None:
        replace_ids = list(dict.fromkeys(p.site["id"] for p in replace if p.site))
        if replace_ids:
            for table in ("site_categories", "site_tags"):
                try:
                    self.client.delete_in(table, "site_id", replace_ids, service=True)
                except UpstreamError as exc:
                    self.logger.warning("Clearing %s before re-attach failed: %s", table, exc)

        # A URL repeated in one chunk maps to one site; its last row wins.
        latest = {planned.site["id"]: planned for planned in planned_rows}

        category_rows: list[dict] = []
        tag_rows: list[dict] = []
        for site_id, planned in latest.items():
            category_rows.extend(
                {"site_id": site_id, "category_id": cid} for cid in planned.category_ids
            )
            tag_rows.extend({"site_id": site_id, "tag_id": tid} for tid in planned.tag_ids)

        for table, rows in (("site_categories", category_rows), ("site_tags", tag_rows)):
            if not rows:
                continue
            inserted, errors = self.client.insert_batches(table, rows, service=True)
            self.report["attached"] += inserted
            for error in errors:
                self.logger.warning(
                    "Attaching %s failed (%s): %s", table, error["status"], error["details"]
                )

    def _add_tier_summary(
        self,
        *,
        skipped_due_to_limit: int,
        created_count: int,
        total_rows: int,
        current_sites: int,
        trimmed_categories: int,
        current_categories: int,
        trimmed_tags: int,
        current_tags: int,
    ) -> None:
        label = tier_label(self.tier)
        parts = []
        self.report["tierLimited"] = True
        self.report["tierLabel"] = label
        if skipped_due_to_limit:
            self.report.update(
                {
                    "siteLimitReached": True,
                    "skippedDueToLimit": skipped_due_to_limit,
                    "sitesImported": created_count,
                    "sitesTotal": total_rows,
                }
            )
            parts.append(
                f"{skipped_due_to_limit} new site(s) skipped "
                f"({current_sites + created_count}/{limit_text(self.limits['sites'])})"
            )
        if trimmed_categories:
            self.report["trimmedCategories"] = trimmed_categories
            noun = "category" if trimmed_categories == 1 else "categories"
            parts.append(
                f"{trimmed_categories} {noun} skipped "
                f"({current_categories}/{limit_text(self.limits['categories'])})"
            )
        if trimmed_tags:
            self.report["trimmedTags"] = trimmed_tags
            parts.append(
                f"{trimmed_tags} tag(s) skipped "
                f"({current_tags}/{limit_text(self.limits['tags'])})"
            )
        self.report["tierMessage"] = (
            f"{label} plan limits reached: {', '.join(parts)}. "
            f"Upgrade to {upgrade_target(self.tier)} for more."
        )
