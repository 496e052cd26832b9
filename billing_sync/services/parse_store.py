"""
Parse data store adapter
---
Thin async wrapper over a Parse-compatible REST server (Back4App et al.).

All reads and writes use the master key; the only call made on behalf of a
caller is `current_user`, which forwards their session token to /users/me.

get_or_create is query-then-construct and NOT atomic: two concurrent calls for
the same key can both miss and later save two records.
"""
from __future__ import annotations

import json
import logging
from typing import Optional, Type, TypeVar

import httpx

from config.settings import settings
from billing_sync.errors import AuthError, NotFoundError, UpstreamError
from billing_sync.models.records import ParseRecord, User

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=ParseRecord)

# Parse error code for "Object not found."
_OBJECT_NOT_FOUND = 101


def _class_path(class_name: str) -> str:
    if class_name == "_User":
        return "/users"
    return f"/classes/{class_name}"


class ParseStore:
    """Data store client. One instance per process, shared across requests."""

    def __init__(
        self,
        base_url: str,
        application_id: str,
        rest_api_key: str,
        master_key: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15,
    ):
        self.base_url = base_url.rstrip("/")
        self._headers = {
            "X-Parse-Application-Id": application_id,
            "X-Parse-REST-API-Key": rest_api_key,
        }
        self._master_key = master_key
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_settings(cls) -> "ParseStore":
        return cls(
            base_url=settings.API_URL,
            application_id=settings.X_PARSE_APPLICATION_ID,
            rest_api_key=settings.X_PARSE_REST_API_KEY,
            master_key=settings.X_PARSE_MASTER_KEY,
            timeout=settings.HTTP_TIMEOUT,
        )

    async def close(self) -> None:
        await self._client.aclose()

    # ── transport ────────────────────────────────────────────────────────────

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict] = None,
        body: Optional[dict] = None,
        session_token: Optional[str] = None,
    ) -> httpx.Response:
        headers = dict(self._headers)
        if session_token is not None:
            headers["X-Parse-Session-Token"] = session_token
        else:
            headers["X-Parse-Master-Key"] = self._master_key

        try:
            return await self._client.request(
                method, f"{self.base_url}{path}", params=params, json=body, headers=headers,
            )
        except httpx.HTTPError as e:
            logger.error(f"Data store {method} {path} failed: {e!r}")
            raise UpstreamError(f"data store unreachable: {e}") from e

    @staticmethod
    def _raise_for_status(resp: httpx.Response, what: str) -> None:
        if resp.is_success:
            return
        try:
            payload = resp.json()
        except ValueError:
            payload = {}
        if resp.status_code == 404 or payload.get("code") == _OBJECT_NOT_FOUND:
            raise NotFoundError(f"{what} not found")
        message = payload.get("error") or resp.text or resp.reason_phrase
        logger.error(f"Data store error on {what}: {resp.status_code} {message}")
        raise UpstreamError(f"data store error on {what}: {message}")

    # ── operations ───────────────────────────────────────────────────────────

    async def get(self, record_cls: Type[R], object_id: str) -> R:
        """Fetch by objectId. Raises NotFoundError if absent."""
        path = f"{_class_path(record_cls.class_name)}/{object_id}"
        resp = await self._request("GET", path)
        self._raise_for_status(resp, f"{record_cls.class_name} {object_id}")
        return record_cls.from_parse(resp.json())

    async def query(self, record_cls: Type[R], where: dict, limit: int = 100) -> list[R]:
        params = {"where": json.dumps(where), "limit": limit}
        resp = await self._request("GET", _class_path(record_cls.class_name), params=params)
        self._raise_for_status(resp, f"{record_cls.class_name} query")
        return [record_cls.from_parse(row) for row in resp.json().get("results", [])]

    async def first(self, record_cls: Type[R], where: dict) -> Optional[R]:
        results = await self.query(record_cls, where, limit=1)
        return results[0] if results else None

    async def find_by_stripe_id(self, record_cls: Type[R], value: str) -> Optional[R]:
        return await self.first(record_cls, {"stripeId": value})

    async def get_or_create(self, record_cls: Type[R], key: str, value: str) -> R:
        """First record whose `key` equals `value`, else a new unsaved one."""
        existing = await self.first(record_cls, {key: value})
        if existing is not None:
            return existing
        return record_cls.model_validate({key: value})

    async def save(self, record: ParseRecord) -> None:
        """Create or update. Sets object_id on newly created records."""
        path = _class_path(record.class_name)
        if record.is_new:
            resp = await self._request("POST", path, body=record.to_parse())
            self._raise_for_status(resp, f"create {record.class_name}")
            record.object_id = resp.json()["objectId"]
        else:
            resp = await self._request("PUT", f"{path}/{record.object_id}", body=record.to_parse())
            self._raise_for_status(resp, f"update {record.class_name} {record.object_id}")

    async def destroy(self, record: ParseRecord) -> None:
        if record.is_new:
            return
        path = f"{_class_path(record.class_name)}/{record.object_id}"
        resp = await self._request("DELETE", path)
        self._raise_for_status(resp, f"delete {record.class_name} {record.object_id}")

    async def save_billing_details(
        self, user_id: str, address: Optional[dict], phone: Optional[str]
    ) -> None:
        """Copy billing address (and phone, when known) onto a user."""
        body: dict = {"billingAddress": address if address else {"__op": "Delete"}}
        if phone:
            body["phone"] = phone
        resp = await self._request("PUT", f"/users/{user_id}", body=body)
        self._raise_for_status(resp, f"update _User {user_id}")

    async def current_user(self, session_token: str) -> User:
        """Resolve the caller behind a session token. Raises AuthError."""
        resp = await self._request("GET", "/users/me", session_token=session_token)
        if resp.status_code >= 500:
            self._raise_for_status(resp, "current user")
        if not resp.is_success:
            raise AuthError("user not logged in")
        return User.from_parse(resp.json())
