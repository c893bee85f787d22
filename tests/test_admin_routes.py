from siteorganizer.services import links

from conftest import ADMIN_ID, OTHER_ID, USER_ID


def _admin(auth_headers):
    return auth_headers(ADMIN_ID, "admin@example.com")


def test_admin_routes_reject_non_admins(client, auth_headers):
    response = client.get("/api/admin/stats", headers=auth_headers())
    assert response.status_code == 403
    assert response.get_json()["error"] == "Access denied"

    response = client.get("/api/admin/stats")
    assert response.status_code == 401
    assert response.get_json()["error"] == "Missing authorization"


def test_admin_routes_need_service_key(app, client, auth_headers):
    app.extensions["supabase"].service_key = ""
    response = client.get("/api/admin/stats", headers=_admin(auth_headers))
    assert response.status_code == 500
    assert response.get_json()["error"] == "Server config error"


def test_ban_and_unban_user(client, fake, auth_headers):
    headers = _admin(auth_headers)

    response = client.post("/api/admin/ban-user", headers=headers, json={"userId": USER_ID, "ban": True})
    assert response.get_json() == {"success": True, "banned": True, "user_id": USER_ID}
    assert fake.users[USER_ID]["banned_until"] is not None

    client.post("/api/admin/ban-user", headers=headers, json={"userId": USER_ID, "ban": False})
    assert fake.users[USER_ID]["banned_until"] is None


def test_admin_cannot_ban_self(client, auth_headers):
    response = client.post("/api/admin/ban-user", headers=_admin(auth_headers), json={"userId": ADMIN_ID, "ban": True})
    assert response.status_code == 400
    assert response.get_json()["error"] == "Cannot ban your own account from admin"

    response = client.post("/api/admin/ban-user", headers=_admin(auth_headers), json={})
    assert response.get_json()["error"] == "userId is required"


def test_toggle_pro_merges_metadata(client, fake, auth_headers):
    fake.users[USER_ID]["user_metadata"] = {"name": "User One"}
    headers = _admin(auth_headers)

    body = client.post("/api/admin/toggle-pro", headers=headers, json={"userId": USER_ID, "isPro": True}).get_json()
    assert body["tier"] == "pro"
    assert fake.users[USER_ID]["user_metadata"] == {"name": "User One", "tier": "pro", "is_pro": True}

    body = client.post("/api/admin/toggle-pro", headers=headers, json={"userId": USER_ID, "tier": "promax"}).get_json()
    assert body["is_pro"] is True
    assert fake.users[USER_ID]["user_metadata"]["tier"] == "promax"

    response = client.post("/api/admin/toggle-pro", headers=headers, json={"userId": USER_ID, "tier": "gold"})
    assert response.status_code == 400


def test_delete_user_cascades(client, fake, auth_headers):
    site = fake.seed("sites", name="A", url="https://a.com", user_id=USER_ID)
    category = fake.seed("categories", name="Dev", user_id=USER_ID)
    fake.seed("site_categories", site_id=site["id"], category_id=category["id"])
    fake.seed("profiles", id=USER_ID, name="User One")
    kept = fake.seed("sites", name="B", url="https://b.com", user_id=OTHER_ID)

    response = client.delete("/api/admin/delete-user", headers=_admin(auth_headers), json={"userId": USER_ID})

    assert response.get_json() == {"success": True}
    assert USER_ID not in fake.users
    assert fake.rows("sites") == [kept]
    assert fake.rows("categories") == []
    assert fake.rows("site_categories") == []
    assert fake.rows("profiles") == []


def test_delete_user_refuses_self(client, auth_headers):
    response = client.delete("/api/admin/delete-user", headers=_admin(auth_headers), json={"userId": ADMIN_ID})
    assert response.status_code == 400
    assert response.get_json()["error"] == "Cannot delete your own account from admin"


def test_admin_stats(client, fake, auth_headers):
    fake.seed("sites", name="A", url="https://a.com", user_id=USER_ID, pricing="paid")
    fake.seed("sites", name="B", url="https://b.com", user_id=OTHER_ID, pricing="paid")
    fake.seed("sites", name="C", url="https://c.com", user_id=OTHER_ID, pricing="freemium")
    fake.seed("tags", name="t", user_id=USER_ID)
    fake.users[OTHER_ID]["user_metadata"] = {"tier": "pro"}
    fake.users[USER_ID]["banned_until"] = "2999-01-01T00:00:00+00:00"

    body = client.get("/api/admin/stats", headers=_admin(auth_headers)).get_json()

    overview = body["overview"]
    assert overview["totalUsers"] == 3
    assert (overview["totalSites"], overview["totalCategories"], overview["totalTags"]) == (3, 0, 1)
    assert overview["activeUsers"] == 3
    assert overview["newUsersLast30Days"] == 3
    assert overview["bannedUsers"] == 1
    assert body["pricingBreakdown"] == {"fully_free": 0, "freemium": 1, "free_trial": 0, "paid": 2}
    assert body["tierBreakdown"] == {"free": 2, "pro": 1, "promax": 0}


def test_admin_check_links(client, fake, auth_headers, monkeypatch):
    monkeypatch.setattr(links, "quick_check", lambda url, timeout=8.0: (500, "HTTP 500"))
    fake.seed("sites", name="A", url="https://a.com", user_id=USER_ID)

    body = client.post("/api/admin/check-links", headers=_admin(auth_headers)).get_json()

    assert body["checked"] == 1
    assert body["brokenCount"] == 1
    assert body["broken"][0]["ownerEmail"] == "user@example.com"
