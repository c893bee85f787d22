from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass

import httpx

from siteorganizer.services.common import is_http_url
from siteorganizer.services.postgrest import SupabaseClient, UpstreamError


DEFAULT_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/115.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}
NO_CACHE_HEADERS = {"Cache-Control": "no-cache", "Pragma": "no-cache"}
SWEEP_HEADERS = {"User-Agent": "Mozilla/5.0 (compatible; SiteOrganizer-LinkChecker/1.0)"}

RETRY_TIMEOUT_FLOOR = 15.0

_CERTIFICATE_ERROR_MARKERS = (
    "certificate verify failed",
    "certificateverifyfailed",
    "self signed certificate",
    "unable to get local issuer certificate",
)

LINK_STATUS_ALIVE = "alive"
LINK_STATUS_TIMEOUT = "timeout"
LINK_STATUS_NOT_FOUND = "not_found"
LINK_STATUS_SERVER_ERROR = "server_error"
LINK_STATUS_DNS_ERROR = "dns_error"
LINK_STATUS_UNREACHABLE = "unreachable"
LINK_STATUS_INVALID = "invalid"


@dataclass
class LinkCheckResult:
    ok: bool
    status: int | str
    kind: str
    final_url: str | None = None
    latency_ms: int | None = None
    error: str | None = None


def _normalize_error(exc: Exception) -> str:
    message = str(exc).strip()
    if message:
        return message
    return exc.__class__.__name__


def _is_untrusted_certificate_error(error: str | None) -> bool:
    if not error:
        return False
    lowered = error.lower()
    return any(marker in lowered for marker in _CERTIFICATE_ERROR_MARKERS)


def classify_status(status_code: int | None, error: str | None) -> str:
    if error:
        lower = error.lower()
        if _is_untrusted_certificate_error(lower):
            return LINK_STATUS_ALIVE
        if "timed out" in lower or "timeout" in lower:
            return LINK_STATUS_TIMEOUT
        if "name or service not known" in lower or "nodename" in lower:
            return LINK_STATUS_DNS_ERROR
        if "temporary failure in name resolution" in lower:
            return LINK_STATUS_DNS_ERROR
        return LINK_STATUS_UNREACHABLE

    if status_code is None:
        return LINK_STATUS_UNREACHABLE
    if status_code in {404, 410}:
        return LINK_STATUS_NOT_FOUND
    if status_code == 408:
        return LINK_STATUS_TIMEOUT
    if status_code >= 500:
        return LINK_STATUS_SERVER_ERROR
    if 200 <= status_code < 500:
        return LINK_STATUS_ALIVE
    return LINK_STATUS_UNREACHABLE


def _fetch(client: httpx.Client, url: str) -> httpx.Response:
    response = client.head(url)
    if response.status_code >= 400:
        response = client.get(url)
        if response.status_code == 403:
            response = client.get(url, headers=NO_CACHE_HEADERS)
    return response


def check_link(url: str, timeout: float = 7.0, attempts: int = 2) -> LinkCheckResult:
    """HEAD the url, falling back to GET, with a longer second attempt on network errors."""
    if not url or not isinstance(url, str) or not is_http_url(url):
        return LinkCheckResult(
            ok=False, status=LINK_STATUS_INVALID, kind=LINK_STATUS_INVALID
        )

    started = time.monotonic()
    timed_out = False
    error = None
    for attempt in range(attempts):
        timeout_value = timeout if attempt == 0 else max(timeout * 1.5, RETRY_TIMEOUT_FLOOR)
        try:
            with httpx.Client(
                follow_redirects=True, timeout=timeout_value, headers=DEFAULT_HEADERS
            ) as client:
                response = _fetch(client, url)
        except httpx.TimeoutException as exc:
            timed_out = True
            error = _normalize_error(exc)
            continue
        except httpx.HTTPError as exc:
            timed_out = False
            error = _normalize_error(exc)
            continue

        status_code = response.status_code
        kind = classify_status(status_code, None)
        return LinkCheckResult(
            ok=kind == LINK_STATUS_ALIVE,
            status=status_code,
            kind=kind,
            final_url=str(response.url),
            latency_ms=int((time.monotonic() - started) * 1000),
        )

    kind = LINK_STATUS_TIMEOUT if timed_out else classify_status(None, error)
    return LinkCheckResult(
        ok=kind == LINK_STATUS_ALIVE,
        status=LINK_STATUS_TIMEOUT if timed_out else (error or "failed"),
        kind=kind,
        latency_ms=int((time.monotonic() - started) * 1000),
        error=error,
    )


def check_links(sites: list[dict], workers: int = 8, timeout: float = 7.0) -> list[dict]:
    def run(site: dict) -> dict:
        result = check_link(site.get("url"), timeout=timeout)
        return {
            "id": site.get("id"),
            "name": site.get("name"),
            "url": site.get("url"),
            **asdict(result),
        }

    if not sites:
        return []
    with ThreadPoolExecutor(max_workers=max(1, workers)) as executor:
        return list(executor.map(run, sites))


def quick_check(url: str, timeout: float = 8.0) -> tuple[int, str | None]:
    """Single HEAD request used by the maintenance sweep. Status 0 means no response."""
    try:
        with httpx.Client(
            follow_redirects=True, timeout=timeout, headers=SWEEP_HEADERS
        ) as client:
            response = client.head(url)
    except httpx.TimeoutException:
        return 0, "Timeout"
    except httpx.ConnectError as exc:
        message = _normalize_error(exc)
        if classify_status(None, message) == LINK_STATUS_DNS_ERROR:
            return 0, "DNS not found"
        return 0, message
    except httpx.HTTPError as exc:
        return 0, _normalize_error(exc) or "Connection failed"
    if response.is_success:
        return response.status_code, None
    return response.status_code, f"HTTP {response.status_code}"


def sweep_links(
    client: SupabaseClient, workers: int = 10, timeout: float = 8.0
) -> dict:
    """Check every stored site with the service key and report the broken ones."""
    sites = client.select_all("sites", {"select": "id,name,url,user_id"}, service=True)
    if not sites:
        return {"checked": 0, "brokenCount": 0, "broken": []}

    try:
        emails = {user.get("id"): user.get("email") for user in client.list_users()}
    except UpstreamError:
        emails = {}
    profiles = client.select_all("profiles", {"select": "id,name"}, service=True)
    names = {profile.get("id"): profile.get("name") for profile in profiles}

    with ThreadPoolExecutor(max_workers=max(1, workers)) as executor:
        results = list(
            executor.map(lambda site: quick_check(site.get("url") or "", timeout), sites)
        )

    broken = [
        {
            "siteId": site.get("id"),
            "name": site.get("name"),
            "url": site.get("url"),
            "status": status,
            "error": error,
            "ownerEmail": emails.get(site.get("user_id")) or "Unknown",
            "ownerName": names.get(site.get("user_id")) or "",
        }
        for site, (status, error) in zip(sites, results)
        if error
    ]
    broken.sort(key=lambda entry: entry["status"])
    return {"checked": len(sites), "brokenCount": len(broken), "broken": broken}
