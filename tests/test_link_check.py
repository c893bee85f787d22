import httpx
import pytest

from siteorganizer.jobs.scheduler import run_link_sweep, scheduler, start_scheduler
from siteorganizer.services import links
from siteorganizer.services.links import LinkCheckResult, check_link, classify_status

from conftest import OTHER_ID, USER_ID


@pytest.mark.parametrize(
    "status, error, expected",
    [
        (200, None, "alive"),
        (301, None, "alive"),
        (403, None, "alive"),
        (404, None, "not_found"),
        (410, None, "not_found"),
        (408, None, "timeout"),
        (503, None, "server_error"),
        (None, None, "unreachable"),
        (None, "Read timed out", "timeout"),
        (None, "[Errno -2] Name or service not known", "dns_error"),
        (None, "[SSL: CERTIFICATE_VERIFY_FAILED] certificate verify failed", "alive"),
        (None, "Connection refused", "unreachable"),
    ],
)
def test_classify_status(status, error, expected):
    assert classify_status(status, error) == expected


def test_check_link_rejects_non_http_urls():
    for url in ("", "ftp://example.com", "example.com"):
        result = check_link(url)
        assert result.ok is False
        assert result.kind == "invalid"


def _responding(status_code):
    def fetch(client, url):
        return httpx.Response(status_code, request=httpx.Request("GET", url))

    return fetch


@pytest.mark.parametrize(
    "status_code, ok, kind",
    [(200, True, "alive"), (403, True, "alive"), (404, False, "not_found"), (503, False, "server_error")],
)
def test_check_link_ok_matches_kind(monkeypatch, status_code, ok, kind):
    monkeypatch.setattr(links, "_fetch", _responding(status_code))

    result = check_link("https://example.com/page")

    assert (result.ok, result.status, result.kind) == (ok, status_code, kind)


def test_check_link_counts_untrusted_certificate_as_alive(monkeypatch):
    def fetch(client, url):
        raise httpx.ConnectError("[SSL: CERTIFICATE_VERIFY_FAILED] certificate verify failed")

    monkeypatch.setattr(links, "_fetch", fetch)

    result = check_link("https://self-signed.example.com", attempts=1)

    assert result.ok is True
    assert result.kind == "alive"
    assert "CERTIFICATE_VERIFY_FAILED" in result.error


def test_check_link_reports_refused_connection_as_broken(monkeypatch):
    def fetch(client, url):
        raise httpx.ConnectError("Connection refused")

    monkeypatch.setattr(links, "_fetch", fetch)

    result = check_link("https://down.example.com", attempts=1)

    assert result.ok is False
    assert result.kind == "unreachable"


def _fake_check(url, timeout=7.0, attempts=2):
    if "broken" in url:
        return LinkCheckResult(ok=False, status=404, kind="not_found")
    return LinkCheckResult(ok=True, status=200, kind="alive", final_url=url, latency_ms=5)


def test_check_links_keeps_order(monkeypatch):
    monkeypatch.setattr(links, "check_link", _fake_check)
    sites = [
        {"id": "1", "name": "Up", "url": "https://up.example.com"},
        {"id": "2", "name": "Down", "url": "https://broken.example.com"},
    ]

    results = links.check_links(sites, workers=2)

    assert [(r["id"], r["ok"], r["kind"]) for r in results] == [
        ("1", True, "alive"),
        ("2", False, "not_found"),
    ]
    assert links.check_links([]) == []


def test_links_check_endpoint_is_pro_only(client, auth_headers):
    response = client.post("/api/links/check", headers=auth_headers(), json={})
    assert response.status_code == 403
    assert response.get_json()["error"] == "Pro plan required for link health check"


def test_links_check_endpoint_loads_user_sites(client, fake, auth_headers, monkeypatch):
    monkeypatch.setattr(links, "check_link", _fake_check)
    fake.seed("sites", name="Up", url="https://up.example.com", user_id=USER_ID)
    fake.seed("sites", name="Down", url="https://broken.example.com", user_id=USER_ID)
    fake.seed("sites", name="Theirs", url="https://broken.other.com", user_id=OTHER_ID)

    body = client.post("/api/links/check", headers=auth_headers(tier="pro"), json={}).get_json()

    assert body["total"] == 2
    assert body["brokenCount"] == 1
    assert body["broken"][0]["url"] == "https://broken.example.com"


def test_links_check_endpoint_accepts_explicit_sites(client, auth_headers, monkeypatch):
    monkeypatch.setattr(links, "check_link", _fake_check)

    body = client.post(
        "/api/links/check",
        headers=auth_headers(tier="promax"),
        json={"sites": [{"id": "x", "url": "https://up.example.com"}, "junk"]},
    ).get_json()

    assert body["total"] == 1
    assert body["brokenCount"] == 0


def _fake_quick_check(url, timeout=8.0):
    if "broken" in url:
        return 404, "HTTP 404"
    if "gone" in url:
        return 0, "DNS not found"
    return 200, None


def test_link_sweep_reports_owners(app, fake, monkeypatch):
    monkeypatch.setattr(links, "quick_check", _fake_quick_check)
    fake.seed("profiles", id=USER_ID, name="User One")
    fake.seed("sites", name="Up", url="https://up.example.com", user_id=USER_ID)
    fake.seed("sites", name="Broken", url="https://broken.example.com", user_id=USER_ID)
    fake.seed("sites", name="Gone", url="https://gone.example.com", user_id=OTHER_ID)

    summary = run_link_sweep(app)

    assert summary["checked"] == 3
    assert summary["brokenCount"] == 2
    assert [entry["status"] for entry in summary["broken"]] == [0, 404]
    gone, broken = summary["broken"]
    assert gone["ownerEmail"] == "other@example.com"
    assert gone["ownerName"] == ""
    assert broken["ownerEmail"] == "user@example.com"
    assert broken["ownerName"] == "User One"


def test_link_sweep_with_no_sites(app):
    assert run_link_sweep(app) == {"checked": 0, "brokenCount": 0, "broken": []}


def test_scheduler_stays_off_when_disabled(app):
    start_scheduler(app)
    assert scheduler.get_jobs() == []
