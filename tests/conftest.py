import json
import uuid
from datetime import datetime, timezone
from fnmatch import fnmatch

import httpx
import pytest
from dateutil import parser as date_parser
from jose import jwt

from siteorganizer import create_app
from siteorganizer.config import TestConfig
from siteorganizer.services.postgrest import SupabaseClient


JWT_SECRET = TestConfig.SUPABASE_JWT_SECRET
USER_ID = "11111111-1111-4111-8111-111111111111"
OTHER_ID = "22222222-2222-4222-8222-222222222222"
ADMIN_ID = "aaaaaaaa-aaaa-4aaa-8aaa-aaaaaaaaaaaa"

OWNED_TABLES = {"sites", "categories", "tags"}
JUNCTION_TABLES = {"site_categories", "site_tags"}
UNIQUE_KEYS = {
    "sites": ("user_id", "url"),
    "categories": ("user_id", "name"),
    "tags": ("user_id", "name"),
    "site_categories": ("site_id", "category_id"),
    "site_tags": ("site_id", "tag_id"),
    "profiles": ("id",),
}
RESERVED_PARAMS = {"select", "order", "limit", "offset", "or", "on_conflict", "columns"}


def make_token(user_id=USER_ID, email="user@example.com", **metadata):
    claims = {
        "sub": user_id,
        "email": email,
        "aud": "authenticated",
        "user_metadata": metadata,
    }
    return jwt.encode(claims, JWT_SECRET, algorithm="HS256")


def _now():
    return datetime.now(timezone.utc).isoformat()


def _text(value):
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _parse_list(raw):
    items, current = [], ""
    in_quotes = escaped = False
    for ch in raw:
        if escaped:
            current += ch
            escaped = False
        elif in_quotes:
            if ch == "\\":
                escaped = True
            elif ch == '"':
                in_quotes = False
            else:
                current += ch
        elif ch == '"':
            in_quotes = True
        elif ch == ",":
            items.append(current)
            current = ""
        else:
            current += ch
    if raw:
        items.append(current)
    return items


def _split_top_level(raw):
    parts, depth, current = [], 0, ""
    for ch in raw:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        if ch == "," and depth == 0:
            parts.append(current)
            current = ""
        else:
            current += ch
    if current:
        parts.append(current)
    return parts


def _moment(value):
    moment = date_parser.isoparse(str(value))
    return moment if moment.tzinfo else moment.replace(tzinfo=timezone.utc)


def _compare(value, arg):
    try:
        return (_moment(value) > _moment(arg)) - (_moment(value) < _moment(arg))
    except ValueError:
        pass
    try:
        left, right = float(value), float(arg)
    except ValueError:
        left, right = str(value), arg
    return (left > right) - (left < right)


def _matches(row, column, expr):
    op, _, arg = expr.partition(".")
    negate = op == "not"
    if negate:
        op, _, arg = arg.partition(".")
    value = row.get(column)
    if op == "eq":
        result = _text(value) == arg
    elif op == "neq":
        result = _text(value) != arg
    elif op == "in":
        result = _text(value) in _parse_list(arg[1:-1])
    elif op == "is":
        result = _text(value) == arg
    elif op in ("lt", "lte", "gt", "gte"):
        if value is None:
            result = False
        else:
            cmp = _compare(value, arg)
            result = {"lt": cmp < 0, "lte": cmp <= 0, "gt": cmp > 0, "gte": cmp >= 0}[op]
    elif op in ("ilike", "like"):
        result = fnmatch(_text(value).lower(), arg.lower())
    else:
        raise AssertionError(f"unsupported filter {expr}")
    return result != negate


class FakeSupabase:
    """In-memory PostgREST + GoTrue admin API served through httpx.MockTransport."""

    def __init__(self):
        self.tables = {
            name: []
            for name in ("sites", "categories", "tags", "site_categories", "site_tags", "profiles")
        }
        self.users = {}
        self.requests = []
        self.failures = {}

    # seeding

    def add_user(self, user_id, email, **metadata):
        self.users[user_id] = {
            "id": user_id,
            "email": email,
            "user_metadata": metadata,
            "created_at": _now(),
            "last_sign_in_at": _now(),
            "banned_until": None,
        }
        return self.users[user_id]

    def seed(self, table, **row):
        row = self._defaults(table, row)
        self.tables[table].append(row)
        return row

    def fail_next(self, method, table, status=500, message="injected failure"):
        self.failures[(method, table)] = (status, message)

    def rows(self, table, **filters):
        return [
            row
            for row in self.tables[table]
            if all(row.get(key) == value for key, value in filters.items())
        ]

    def calls(self, method, table):
        return [
            request
            for request in self.requests
            if request.method == method and request.url.path == f"/rest/v1/{table}"
        ]

    # transport

    def handle(self, request):
        self.requests.append(request)
        path = request.url.path
        if path.startswith("/auth/v1/admin/"):
            return self._admin(request, path[len("/auth/v1/admin/"):])

        table = path[len("/rest/v1/"):]
        failure = self.failures.pop((request.method, table), None)
        if failure:
            status, message = failure
            return httpx.Response(status, json={"message": message})

        role, uid = self._role(request)
        if role is None:
            return httpx.Response(401, json={"code": "PGRST301", "message": "JWT invalid"})
        prefer = request.headers.get("prefer", "")
        body = json.loads(request.content) if request.content else None
        params = request.url.params

        if request.method == "GET":
            return self._select(request, table, role, uid, params, prefer)
        if request.method == "POST":
            return self._insert(table, role, uid, body, prefer)
        if request.method == "PATCH":
            matched = self._filtered(table, role, uid, params)
            for row in matched:
                row.update(body or {})
            return httpx.Response(200, json=[dict(row) for row in matched])
        if request.method == "DELETE":
            matched = self._filtered(table, role, uid, params)
            ids = {id(row) for row in matched}
            self.tables[table] = [row for row in self.tables[table] if id(row) not in ids]
            return httpx.Response(200, json=[dict(row) for row in matched])
        return httpx.Response(405, json={"message": "method not allowed"})

    def _role(self, request):
        bearer = request.headers.get("authorization", "").removeprefix("Bearer ").strip()
        if bearer == TestConfig.SUPABASE_SERVICE_ROLE_KEY:
            return "service", None
        if not bearer or bearer == TestConfig.SUPABASE_ANON_KEY:
            return "anon", None
        try:
            claims = jwt.decode(bearer, JWT_SECRET, algorithms=["HS256"], audience="authenticated")
        except Exception:
            return None, None
        return "user", claims["sub"]

    def _visible(self, table, role, uid):
        rows = self.tables.setdefault(table, [])
        if role == "service" or table in JUNCTION_TABLES:
            return rows
        if role == "anon":
            return []
        if table == "profiles":
            return [row for row in rows if row.get("id") == uid]
        return [row for row in rows if row.get("user_id") == uid]

    def _filtered(self, table, role, uid, params):
        matched = []
        for row in self._visible(table, role, uid):
            ok = all(
                _matches(row, key, value)
                for key, value in params.multi_items()
                if key not in RESERVED_PARAMS
            )
            if ok and "or" in params:
                conditions = _split_top_level(params["or"][1:-1])
                ok = any(
                    _matches(row, *condition.split(".", 1)) for condition in conditions
                )
            if ok:
                matched.append(row)
        return matched

    def _select(self, request, table, role, uid, params, prefer):
        matched = self._filtered(table, role, uid, params)
        for clause in reversed((params.get("order") or "").split(",")):
            if not clause:
                continue
            column, _, direction = clause.partition(".")
            matched.sort(
                key=lambda row: (row.get(column) is None, row.get(column) if row.get(column) is not None else 0),
                reverse=direction.startswith("desc"),
            )
        total = len(matched)
        offset = int(params.get("offset", 0))
        limit = params.get("limit")
        page = matched[offset: offset + int(limit)] if limit is not None else matched[offset:]
        if request.headers.get("range"):
            start, _, end = request.headers["range"].partition("-")
            offset = int(start)
            page = matched[offset: int(end) + 1]

        headers = {}
        if "count=exact" in prefer:
            span = f"{offset}-{offset + len(page) - 1}" if page else "*"
            headers["content-range"] = f"{span}/{total}"
        return httpx.Response(200, json=self._project(page, params.get("select")), headers=headers)

    def _project(self, rows, select):
        if not select or select == "*":
            return [dict(row) for row in rows]
        if "categories_array:" in select:
            return [self._embed(row) for row in rows]
        columns = [column.strip() for column in select.split(",")]
        return [{column: row.get(column) for column in columns} for row in rows]

    def _embed(self, site):
        categories = {row["id"]: row for row in self.tables["categories"]}
        tags = {row["id"]: row for row in self.tables["tags"]}
        return {
            **site,
            "categories_array": [
                {"category": dict(categories[link["category_id"]])}
                for link in self.tables["site_categories"]
                if link["site_id"] == site["id"] and link["category_id"] in categories
            ],
            "tags_array": [
                {"tag": dict(tags[link["tag_id"]])}
                for link in self.tables["site_tags"]
                if link["site_id"] == site["id"] and link["tag_id"] in tags
            ],
        }

    def _insert(self, table, role, uid, body, prefer):
        incoming = body if isinstance(body, list) else [body]
        ignore = "resolution=ignore-duplicates" in prefer
        existing = self.tables.setdefault(table, [])
        prepared = []
        for raw in incoming:
            row = self._defaults(table, dict(raw or {}))
            if table in OWNED_TABLES and role != "service" and row.get("user_id") != uid:
                return httpx.Response(
                    403,
                    json={"code": "42501", "message": "new row violates row-level security policy"},
                )
            if self._conflicts(table, row, existing + prepared):
                if ignore:
                    continue
                return httpx.Response(
                    409,
                    json={"code": "23505", "message": "duplicate key value violates unique constraint"},
                )
            prepared.append(row)
        existing.extend(prepared)
        if "return=representation" in prefer:
            return httpx.Response(201, json=[dict(row) for row in prepared])
        return httpx.Response(201)

    @staticmethod
    def _conflicts(table, row, rows):
        key = UNIQUE_KEYS.get(table)
        if not key:
            return False
        return any(all(other.get(k) == row.get(k) for k in key) for other in rows)

    @staticmethod
    def _defaults(table, row):
        if table not in JUNCTION_TABLES:
            row.setdefault("id", str(uuid.uuid4()))
        if table in OWNED_TABLES:
            row.setdefault("created_at", _now())
        if table == "sites":
            row.setdefault("is_favorite", False)
            row.setdefault("is_pinned", False)
            row.setdefault("pin_position", 0)
            row.setdefault("last_clicked_at", None)
            row.setdefault("description", None)
        return row

    def _admin(self, request, path):
        bearer = request.headers.get("authorization", "").removeprefix("Bearer ").strip()
        if bearer != TestConfig.SUPABASE_SERVICE_ROLE_KEY:
            return httpx.Response(401, json={"msg": "This endpoint requires a service role key"})
        parts = path.strip("/").split("/")
        if len(parts) == 1:
            return httpx.Response(200, json={"users": list(self.users.values())})

        user = self.users.get(parts[1])
        if user is None:
            return httpx.Response(404, json={"msg": "User not found"})
        if request.method == "GET":
            return httpx.Response(200, json=user)
        if request.method == "PUT":
            attributes = json.loads(request.content or b"{}")
            if "user_metadata" in attributes:
                user["user_metadata"] = attributes["user_metadata"]
            if "ban_duration" in attributes:
                banned = attributes["ban_duration"] != "none"
                user["banned_until"] = "2999-01-01T00:00:00+00:00" if banned else None
            return httpx.Response(200, json=user)
        if request.method == "DELETE":
            del self.users[parts[1]]
            return httpx.Response(200, json={})
        return httpx.Response(405, json={"msg": "method not allowed"})


@pytest.fixture
def fake():
    supabase = FakeSupabase()
    supabase.add_user(USER_ID, "user@example.com")
    supabase.add_user(OTHER_ID, "other@example.com")
    supabase.add_user(ADMIN_ID, "admin@example.com")
    return supabase


@pytest.fixture
def app(fake):
    app = create_app(TestConfig)
    app.extensions["supabase"] = SupabaseClient.from_config(
        app.config, transport=httpx.MockTransport(fake.handle)
    )
    yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_headers():
    def build(user_id=USER_ID, email="user@example.com", **metadata):
        return {"Authorization": f"Bearer {make_token(user_id, email, **metadata)}"}

    return build
