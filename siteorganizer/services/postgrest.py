from __future__ import annotations

from collections.abc import Iterable, Iterator
from typing import Any

import httpx
from flask import current_app


DEFAULT_BATCH_SIZE = 100
PAGE_SIZE = 1000

RETURN_REPRESENTATION = "return=representation"
IGNORE_DUPLICATES = "return=representation,resolution=ignore-duplicates"

SITE_EMBED_SELECT = (
    "*,categories_array:site_categories(category:categories(*)),"
    "tags_array:site_tags(tag:tags(*))"
)

_DUPLICATE_MARKERS = ("duplicate", "unique", "violat", "23505", "already exists")


class UpstreamError(Exception):
    def __init__(
        self,
        status_code: int | None,
        body: str,
        message: str = "Upstream REST error",
    ):
        super().__init__(f"{message} ({status_code}): {body}")
        self.status_code = status_code
        self.body = body
        self.message = message

    @property
    def is_duplicate(self) -> bool:
        return is_duplicate(self.body)


def is_duplicate(text: str | None) -> bool:
    lowered = (text or "").lower()
    return any(marker in lowered for marker in _DUPLICATE_MARKERS)


def quote_value(value) -> str:
    text = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{text}"'


def in_filter(values: Iterable) -> str:
    return "in.(" + ",".join(quote_value(value) for value in values) + ")"


def eq(value) -> str:
    return f"eq.{value}"


def chunked(items: list, size: int) -> Iterator[list]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def parse_content_range(value: str | None) -> int | None:
    if not value or "/" not in value:
        return None
    total = value.rsplit("/", 1)[1].strip()
    return int(total) if total.isdigit() else None


def flatten_site(site: dict) -> dict:
    """Unwrap the junction rows PostgREST embeds under categories_array/tags_array."""
    flattened = dict(site)
    for key, inner in (("categories_array", "category"), ("tags_array", "tag")):
        entries = site.get(key)
        if not isinstance(entries, list):
            continue
        unwrapped = [
            entry.get(inner) if isinstance(entry, dict) and inner in entry else entry
            for entry in entries
        ]
        flattened[key] = [entry for entry in unwrapped if entry]
    return flattened


class SupabaseClient:
    """Thin httpx wrapper around a Supabase project's PostgREST and GoTrue admin APIs.

    Calls made with ``token`` run under the caller's row-level security policies.
    Calls made with ``service=True`` use the service-role key and bypass RLS; they
    are reserved for junction tables and admin maintenance.
    """

    def __init__(
        self,
        url: str,
        anon_key: str,
        service_key: str = "",
        timeout: float = 15.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.url = (url or "").rstrip("/")
        self.anon_key = anon_key or ""
        self.service_key = service_key or self.anon_key
        self._http = httpx.Client(
            base_url=self.url or "http://localhost",
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_config(cls, config, transport: httpx.BaseTransport | None = None):
        return cls(
            url=config.get("SUPABASE_URL", ""),
            anon_key=config.get("SUPABASE_ANON_KEY", ""),
            service_key=config.get("SUPABASE_SERVICE_ROLE_KEY", ""),
            timeout=config.get("UPSTREAM_TIMEOUT", 15.0),
            transport=transport,
        )

    @property
    def configured(self) -> bool:
        return bool(self.url and self.anon_key)

    @property
    def has_service_key(self) -> bool:
        return bool(self.service_key) and self.service_key != self.anon_key

    def close(self) -> None:
        self._http.close()

    def headers(
        self,
        token: str | None = None,
        service: bool = False,
        prefer: str | None = None,
        extra: dict | None = None,
    ) -> dict:
        bearer = self.service_key if service else (token or self.anon_key)
        headers = {
            "apikey": self.anon_key,
            "Authorization": f"Bearer {bearer}",
            "Accept": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        if extra:
            headers.update(extra)
        return headers

    def request(
        self,
        method: str,
        table: str,
        *,
        token: str | None = None,
        service: bool = False,
        params: dict | None = None,
        body: Any = None,
        prefer: str | None = None,
        headers: dict | None = None,
    ) -> httpx.Response:
        return self._http.request(
            method,
            f"/rest/v1/{table}",
            params=params,
            json=body,
            headers=self.headers(token, service, prefer, headers),
        )

    @staticmethod
    def _rows(response: httpx.Response) -> list[dict]:
        if response.is_error:
            raise UpstreamError(response.status_code, response.text)
        if not response.content:
            return []
        data = response.json()
        if isinstance(data, list):
            return data
        return [data] if data else []

    def select(
        self,
        table: str,
        params: dict | None = None,
        *,
        token: str | None = None,
        service: bool = False,
    ) -> list[dict]:
        response = self.request(
            "GET", table, token=token, service=service, params=params
        )
        return self._rows(response)

    def select_all(
        self,
        table: str,
        params: dict | None = None,
        *,
        token: str | None = None,
        service: bool = False,
        page_size: int = PAGE_SIZE,
    ) -> list[dict]:
        rows: list[dict] = []
        offset = 0
        while True:
            page = self.select(
                table,
                {**(params or {}), "limit": page_size, "offset": offset},
                token=token,
                service=service,
            )
            rows.extend(page)
            if len(page) < page_size:
                return rows
            offset += page_size

    def insert(
        self,
        table: str,
        rows: list[dict] | dict,
        *,
        token: str | None = None,
        service: bool = False,
        prefer: str = RETURN_REPRESENTATION,
    ) -> list[dict]:
        response = self.request(
            "POST", table, token=token, service=service, body=rows, prefer=prefer
        )
        return self._rows(response)

    def update(
        self,
        table: str,
        values: dict,
        params: dict,
        *,
        token: str | None = None,
        service: bool = False,
    ) -> list[dict]:
        response = self.request(
            "PATCH",
            table,
            token=token,
            service=service,
            params=params,
            body=values,
            prefer=RETURN_REPRESENTATION,
        )
        return self._rows(response)

    def delete(
        self,
        table: str,
        params: dict,
        *,
        token: str | None = None,
        service: bool = False,
    ) -> list[dict]:
        response = self.request(
            "DELETE",
            table,
            token=token,
            service=service,
            params=params,
            prefer=RETURN_REPRESENTATION,
        )
        return self._rows(response)

    def count(
        self,
        table: str,
        params: dict | None = None,
        *,
        token: str | None = None,
        service: bool = False,
    ) -> int:
        response = self.request(
            "GET",
            table,
            token=token,
            service=service,
            params={"select": "id", **(params or {})},
            prefer="count=exact",
            headers={"Range-Unit": "items", "Range": "0-0"},
        )
        if response.is_error:
            raise UpstreamError(response.status_code, response.text)
        total = parse_content_range(response.headers.get("content-range"))
        if total is not None:
            return total
        return len(self._rows(response))

    def delete_in(
        self,
        table: str,
        column: str,
        ids: list,
        *,
        token: str | None = None,
        service: bool = False,
        extra: dict | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> list[dict]:
        deleted: list[dict] = []
        for batch in chunked(list(ids), batch_size):
            params = {column: in_filter(batch), **(extra or {})}
            deleted.extend(self.delete(table, params, token=token, service=service))
        return deleted

    def insert_batches(
        self,
        table: str,
        rows: list[dict],
        *,
        token: str | None = None,
        service: bool = False,
        prefer: str = IGNORE_DUPLICATES,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> tuple[int, list[dict]]:
        inserted = 0
        errors: list[dict] = []
        for batch in chunked(rows, batch_size):
            response = self.request(
                "POST", table, token=token, service=service, body=batch, prefer=prefer
            )
            if response.is_error:
                errors.append(
                    {
                        "table": table,
                        "status": response.status_code,
                        "details": response.text,
                    }
                )
                continue
            inserted += len(self._rows(response))
        return inserted, errors

    def _admin_request(
        self, method: str, path: str, body: dict | None = None, params=None
    ) -> dict:
        response = self._http.request(
            method,
            f"/auth/v1/admin/{path}",
            json=body,
            params=params,
            headers={
                "apikey": self.service_key,
                "Authorization": f"Bearer {self.service_key}",
            },
        )
        if response.is_error:
            raise UpstreamError(response.status_code, response.text)
        if not response.content:
            return {}
        return response.json()

    def get_user(self, user_id: str) -> dict:
        return self._admin_request("GET", f"users/{user_id}")

    def update_user(self, user_id: str, attributes: dict) -> dict:
        return self._admin_request("PUT", f"users/{user_id}", body=attributes)

    def delete_user(self, user_id: str) -> None:
        self._admin_request("DELETE", f"users/{user_id}")

    def list_users(self, per_page: int = PAGE_SIZE) -> list[dict]:
        data = self._admin_request("GET", "users", params={"per_page": per_page})
        return data.get("users", []) if isinstance(data, dict) else data


def get_supabase() -> SupabaseClient:
    return current_app.extensions["supabase"]
