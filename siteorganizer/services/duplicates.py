from __future__ import annotations

from collections.abc import Callable

from rapidfuzz import fuzz

from siteorganizer.services.common import extract_domain, normalize_url


NAME_SIMILARITY_THRESHOLD = 92


def _safe(value: str | None) -> str:
    return (value or "").strip()


def build_groups(sites: list[dict], key_of: Callable[[dict], str]) -> list[dict]:
    grouped: dict[str, list[dict]] = {}
    for site in sites:
        key = key_of(site)
        if key:
            grouped.setdefault(key, []).append(site)
    groups = [
        {"key": key, "sites": members}
        for key, members in grouped.items()
        if len(members) > 1
    ]
    groups.sort(key=lambda group: (-len(group["sites"]), group["key"]))
    return groups


def similar_name_groups(
    sites: list[dict], threshold: float = NAME_SIMILARITY_THRESHOLD
) -> list[dict]:
    clusters: list[tuple[str, list[dict]]] = []
    for site in sites:
        name = _safe(site.get("name")).lower()
        if len(name) < 3:
            continue
        for anchor, members in clusters:
            if fuzz.token_sort_ratio(name, anchor) >= threshold:
                members.append(site)
                break
        else:
            clusters.append((name, [site]))

    groups = [
        {
            "key": anchor,
            "score": min(
                fuzz.token_sort_ratio(anchor, _safe(m.get("name")).lower()) for m in members
            ),
            "sites": members,
        }
        for anchor, members in clusters
        if len(members) > 1
    ]
    groups.sort(key=lambda group: (-len(group["sites"]), group["key"]))
    return groups


def find_duplicates(sites: list[dict]) -> dict:
    return {
        "urlGroups": build_groups(sites, lambda site: normalize_url(site.get("url") or "")),
        "domainGroups": build_groups(
            sites, lambda site: extract_domain(site.get("url") or "").lower()
        ),
        "nameGroups": similar_name_groups(sites),
    }
