from __future__ import annotations

import csv
import io
import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import cast
from urllib.parse import urlparse

from bs4 import BeautifulSoup, Tag
from dateutil import parser as date_parser

from siteorganizer.services.common import dedupe_key, ensure_scheme, is_http_url
from siteorganizer.services.normalize import DEFAULT_PRICING, normalize_pricing


SUPPORTED_FORMATS = ("json", "csv", "html")
MULTI_VALUE_DELIMITER = ";"

SKIP_FOLDERS = {
    "bookmarks bar",
    "bookmarks toolbar",
    "other bookmarks",
    "mobile bookmarks",
    "bookmarks menu",
    "toolbar",
    "menu",
    "unfiled bookmarks",
}

_CELL_SPLIT = re.compile(r"[;,]")
_URLISH = re.compile(r"^(https?://|www\.)", re.IGNORECASE)

_CSV_COLUMNS = {
    "name": {"name", "title", "resource", "naziv"},
    "url": {"url", "link", "website", "href", "sajt"},
    "categories": {"category", "categories", "kategorija", "kategorije"},
    "tags": {"tags", "tag", "oznake"},
    "description": {"description", "desc", "opis"},
    "pricing": {"pricing", "price", "select", "cena"},
    "favorite": {"favorite", "isfavorite", "isfavorited", "omiljeno"},
    "created": {"createdtime", "createdat", "created"},
}
_CSV_TRUTHY = {"true", "1", "yes", "Yes", "⭐", "da"}
_CELL_TRUTHY = {"true", "1", "yes", "✓", "da"}


class ImportFormatError(ValueError):
    pass


@dataclass
class ImportedBookmark:
    title: str
    url: str
    folder_path: list[str]
    add_date: int | None = None


def _iter_dt_entries(dl: Tag) -> list[Tag]:
    entries: list[Tag] = []
    for dt in dl.find_all("dt"):
        if not isinstance(dt, Tag):
            continue
        if dt.find_parent("dl") is dl:
            entries.append(cast(Tag, dt))
    return entries


def _find_nested_dl(dt: Tag) -> Tag | None:
    nested = dt.find("dl")
    if isinstance(nested, Tag):
        return nested

    sibling = dt.next_sibling
    while sibling is not None:
        if isinstance(sibling, Tag):
            name = (sibling.name or "").lower()
            if name == "dl":
                return sibling
            if name == "dt":
                return None
        sibling = sibling.next_sibling
    return None


def _own_child(dt: Tag, names) -> Tag | None:
    for node in dt.find_all(names):
        if isinstance(node, Tag) and node.find_parent("dt") is dt:
            return node
    return None


def _epoch(value) -> int | None:
    try:
        seconds = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return seconds if seconds > 0 else None


def _parse_dl(
    dl: Tag, folder_path: list[str], out: list[ImportedBookmark], seen: set[int]
) -> None:
    # lxml can nest an unclosed folder <DT> inside the previous link's <DT>, so the
    # same <DL> is reachable from two entries; walk each one once.
    if id(dl) in seen:
        return
    seen.add(id(dl))

    for dt in _iter_dt_entries(dl):
        anchor = _own_child(dt, ["a"])
        if anchor is not None:
            href_value = anchor.get("href")
            href = href_value.strip() if isinstance(href_value, str) else ""
            if is_http_url(href):
                out.append(
                    ImportedBookmark(
                        title=anchor.get_text(strip=True),
                        url=href,
                        folder_path=folder_path.copy(),
                        add_date=_epoch(anchor.get("add_date")),
                    )
                )

        nested_dl = _find_nested_dl(dt)
        if nested_dl is None or id(nested_dl) in seen:
            continue
        folder = _own_child(dt, ["h3", "h2", "h1"])
        if folder is None:
            folder = dt.find(["h3", "h2", "h1"])
        if not isinstance(folder, Tag):
            continue

        name = folder.get_text(strip=True)
        if name and name.lower() not in SKIP_FOLDERS:
            _parse_dl(nested_dl, folder_path + [name], out, seen)
        else:
            _parse_dl(nested_dl, folder_path, out, seen)


def parse_bookmark_html(html: str) -> list[ImportedBookmark]:
    soup = BeautifulSoup(html, "lxml")
    root = soup.find("dl")
    if not isinstance(root, Tag):
        return []

    bookmarks: list[ImportedBookmark] = []
    _parse_dl(root, [], bookmarks, set())
    return bookmarks


def _iso_from_epoch(seconds: int) -> str:
    return datetime.fromtimestamp(seconds, tz=timezone.utc).isoformat()


def _collect_http_links(soup: BeautifulSoup, exclude: str | None = None) -> list[dict]:
    sites: list[dict] = []
    seen: set[str] = set()
    for link in soup.find_all("a", href=True):
        href = str(link.get("href") or "").strip()
        if not is_http_url(href) or href in seen:
            continue
        if exclude and exclude in href:
            continue
        seen.add(href)
        sites.append({"name": link.get_text().strip() or href, "url": href})
    return sites


def parse_browser_bookmarks(html: str) -> list[dict]:
    """Chrome/Firefox/Edge/Safari bookmark exports, folders become categories."""
    sites: list[dict] = []
    for bookmark in parse_bookmark_html(html):
        site = {"name": bookmark.title or bookmark.url, "url": bookmark.url}
        if bookmark.folder_path:
            site["categories"] = [{"name": folder} for folder in bookmark.folder_path]
        if bookmark.add_date:
            site["created_at"] = _iso_from_epoch(bookmark.add_date)
        sites.append(site)

    if sites:
        return sites
    return _collect_http_links(BeautifulSoup(html, "lxml"))


def _names(values: list[str]) -> list[dict]:
    return [{"name": value} for value in values]


def _split_cell(text: str) -> list[str]:
    return [part.strip() for part in _CELL_SPLIT.split(text or "") if part.strip()]


def _looks_like_url(text: str | None) -> bool:
    return bool(text) and bool(_URLISH.match(text.strip()))


def _hostname_name(url: str) -> str:
    host = urlparse(ensure_scheme(url)).hostname
    if not host:
        return url
    return re.sub(r"^www\.", "", host)


def _site_from_cells(cells: list[Tag], headers: list[str]) -> dict:
    site: dict = {}
    has_headers = any(headers)

    for idx, cell in enumerate(cells):
        header = headers[idx].lower() if idx < len(headers) else ""
        text = cell.get_text().strip()
        link = cell.find("a")
        link_text = link.get_text().strip() if isinstance(link, Tag) else ""
        href = str(link.get("href") or "").strip() if isinstance(link, Tag) else ""
        chips = [
            chip.get_text().strip()
            for chip in cell.select(".selected-value")
            if chip.get_text().strip()
        ]

        if has_headers:
            if any(key in header for key in ("name", "title", "ime", "naziv")):
                site["name"] = text or link_text
                if href and not site.get("url"):
                    site["url"] = href
            elif any(
                key in header
                for key in ("url", "link", "adres", "website", "sajt", "href")
            ):
                site["url"] = href or text
            elif "categor" in header or "kategorij" in header:
                site["categories"] = _names(chips or _split_cell(text))
            elif "tag" in header or "oznaka" in header:
                site["tags"] = _names(chips or _split_cell(text))
            elif any(key in header for key in ("pricing", "price", "cena", "cijena")):
                site["pricing"] = re.sub(r"\s+", "_", text.lower())
            elif "favorite" in header or "omilj" in header:
                site["is_favorite"] = text in _CELL_TRUTHY
            elif "desc" in header or "opis" in header:
                site["description"] = text
            elif not site.get("url") and _looks_like_url(text):
                site["url"] = text
            elif not site.get("url") and href:
                site["url"] = href
        elif idx == 0:
            site["name"] = text or link_text
            if href and not site.get("url"):
                site["url"] = href
        elif _looks_like_url(text):
            site["url"] = text
        elif href and not site.get("url"):
            site["url"] = href
            if not site.get("name") and link_text:
                site["name"] = link_text
        elif idx == 1 and not site.get("url"):
            site["url"] = text

    if not site.get("url") and _looks_like_url(site.get("name")):
        site["url"] = site["name"]
    if site.get("url") and not site.get("name"):
        site["name"] = _hostname_name(site["url"])
    return site


def _table_headers(table: Tag) -> list[str]:
    thead = table.find("thead")
    if isinstance(thead, Tag):
        cells = thead.find_all(["th", "td"])
        if cells:
            return [cell.get_text().strip().lower() for cell in cells]
    first_row = table.find("tr")
    if isinstance(first_row, Tag):
        ths = first_row.find_all("th")
        if ths:
            return [cell.get_text().strip().lower() for cell in ths]
    return []


def _sites_from_rows(rows: list[Tag], headers: list[str]) -> list[dict]:
    sites = []
    for row in rows:
        cells = row.find_all("td")
        if not cells:
            continue
        site = _site_from_cells(cells, headers)
        if site.get("url"):
            sites.append(site)
    return sites


def parse_html(html: str) -> list[dict]:
    """Generic HTML tables and Notion page exports."""
    soup = BeautifulSoup(html, "lxml")

    table = soup.find("table")
    if isinstance(table, Tag):
        headers = _table_headers(table)
        rows = table.find_all("tr")
        if headers:
            rows = [
                row
                for row in rows
                if not row.find("th") and row.find_parent("thead") is None
            ]
        sites = _sites_from_rows(rows, headers)
        if sites:
            return sites

    notion_rows = soup.select(".collection-content table tr")
    if notion_rows:
        headers = [
            cell.get_text().strip().lower()
            for cell in notion_rows[0].find_all(["th", "td"])
        ]
        sites = _sites_from_rows(notion_rows[1:], headers)
        if sites:
            return sites

    sites = []
    for link in soup.select(".link-to-page a, a.link-to-page"):
        name = link.get_text().strip()
        url = str(link.get("href") or "").strip()
        if name and url:
            sites.append({"name": name, "url": url})
    if sites:
        return sites

    for bookmark in soup.select(".bookmark"):
        title_node = bookmark.select_one(".bookmark-title")
        title = title_node.get_text().strip() if title_node else ""
        url = str(bookmark.get("href") or "").strip()
        if not url:
            anchor = bookmark.find("a")
            url = str(anchor.get("href") or "").strip() if isinstance(anchor, Tag) else ""
        description_node = bookmark.select_one(".bookmark-description")
        if title or url:
            site = {"name": title or url, "url": url}
            if description_node:
                site["description"] = description_node.get_text().strip()
            sites.append(site)
    if sites:
        return sites

    return _collect_http_links(soup, exclude="notion.so")


def _normalize_header(header: str) -> str:
    return re.sub(r"[^a-z0-9]", "", header.strip().lower())


def _parse_created(value: str) -> str | None:
    try:
        parsed = date_parser.parse(value)
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.isoformat()


def parse_csv(text: str) -> list[dict]:
    """Standard and Notion CSV exports. A header-only file yields no sites."""
    rows = [
        [cell.strip() for cell in row]
        for row in csv.reader(io.StringIO(text))
        if any(cell.strip() for cell in row)
    ]
    if len(rows) < 2:
        return []

    columns = []
    for raw in rows[0]:
        header = _normalize_header(raw)
        columns.append(
            next((field for field, keys in _CSV_COLUMNS.items() if header in keys), None)
        )

    sites = []
    for values in rows[1:]:
        site: dict = {}
        for field_name, value in zip(columns, values):
            if not field_name or not value:
                continue
            if field_name in ("name", "url", "description"):
                site[field_name] = value
            elif field_name in ("categories", "tags"):
                site[field_name] = _names(_split_cell(value))
            elif field_name == "pricing":
                site["pricing"] = normalize_pricing(value)
            elif field_name == "favorite":
                site["is_favorite"] = value in _CSV_TRUTHY
            elif field_name == "created":
                created = _parse_created(value)
                if created:
                    site["created_at"] = created
        if site.get("name") or site.get("url"):
            sites.append(site)
    return sites


def parse_json(text: str) -> list[dict]:
    data = json.loads(text)
    if isinstance(data, dict):
        if "sites" in data:
            data = data["sites"]
        elif "data" in data:
            data = data["data"]
    if isinstance(data, list):
        return [item for item in data if isinstance(item, dict)]
    return [data] if isinstance(data, dict) else []


def detect_format(filename: str | None = None, fmt: str | None = None) -> str:
    if fmt:
        value = fmt.strip().lower()
        if value == "htm":
            value = "html"
        if value in SUPPORTED_FORMATS:
            return value
    name = (filename or "").lower()
    if name.endswith(".json"):
        return "json"
    if name.endswith(".csv"):
        return "csv"
    if name.endswith((".html", ".htm")):
        return "html"
    raise ImportFormatError("Unsupported file format. Please use JSON, CSV, or HTML.")


def looks_like_browser_bookmarks(html: str) -> bool:
    return "NETSCAPE-Bookmark-file" in html or "<DL>" in html or "<dl>" in html


def parse_import_file(
    content: str,
    filename: str | None = None,
    fmt: str | None = None,
    source: str = "auto",
) -> list[dict]:
    kind = detect_format(filename, fmt)
    try:
        if kind == "json":
            return parse_json(content)
        if kind == "csv":
            return parse_csv(content)
        if source == "bookmarks":
            return parse_browser_bookmarks(content)
        if source != "notion" and looks_like_browser_bookmarks(content):
            return parse_browser_bookmarks(content)
        return parse_html(content)
    except (ValueError, csv.Error) as exc:
        raise ImportFormatError(f"Failed to parse file: {exc}") from exc


def _join_names(value) -> str:
    if isinstance(value, list):
        names = [
            item if isinstance(item, str) else str(item.get("name") or "")
            for item in value
            if isinstance(item, (str, dict))
        ]
        return MULTI_VALUE_DELIMITER.join(name for name in names if name)
    if isinstance(value, str):
        return value
    return ""


def site_to_row(site: dict) -> dict:
    row = {
        "name": site.get("name") or "",
        "url": ensure_scheme(site.get("url") or ""),
        "pricing": site.get("pricing") or DEFAULT_PRICING,
        "is_favorite": bool(site.get("is_favorite")),
        "is_pinned": bool(site.get("is_pinned")),
        "category": _join_names(site.get("categories")),
        "tag": _join_names(site.get("tags")),
        "categories_array": site.get("categories_array") or None,
        "tags_array": site.get("tags_array") or None,
    }
    if site.get("created_at"):
        row["created_at"] = site["created_at"]
    return row


def _merge_names(left: str, right: str) -> str:
    merged: dict[str, None] = {}
    for part in (left or "").split(MULTI_VALUE_DELIMITER) + right.split(
        MULTI_VALUE_DELIMITER
    ):
        if part.strip():
            merged[part.strip()] = None
    return MULTI_VALUE_DELIMITER.join(merged)


def deduplicate_rows(rows: list[dict]) -> list[dict]:
    """Collapse rows sharing a URL; bookmarks often repeat a link across folders."""
    by_url: dict[str, dict] = {}
    for row in rows:
        key = dedupe_key(row["url"])
        existing = by_url.get(key)
        if existing is None:
            by_url[key] = dict(row)
            continue
        if row.get("category"):
            existing["category"] = _merge_names(existing.get("category"), row["category"])
        if row.get("tag"):
            existing["tag"] = _merge_names(existing.get("tag"), row["tag"])
        if not existing.get("name") and row.get("name"):
            existing["name"] = row["name"]
        if row.get("is_favorite"):
            existing["is_favorite"] = True
        if row.get("is_pinned"):
            existing["is_pinned"] = True
    return list(by_url.values())


def build_import_rows(sites: list[dict]) -> list[dict]:
    rows = [site_to_row(site) for site in sites]
    rows = [row for row in rows if row["url"].lower().startswith("http")]
    return deduplicate_rows(rows)
