from __future__ import annotations

from datetime import datetime
import logging
import asyncio
from typing import Any, Awaitable, Callable

import aiohttp

from storefront.services.log_context import describe_request_context

MAX_ATTEMPTS = 3
RETRYABLE_STATUSES = frozenset({502, 503, 504})
GIB = 1024**3


class _Retry(Exception):
    def __init__(self, backoff: bool = True):
        super().__init__()
        self.backoff = backoff


class MarzbanService:
    """Thin client for the Marzban panel API used to provision VPN users."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        notify_admin: Callable[[str], Awaitable[None]] | None = None,
        timeout_seconds: float = 15,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._token: str | None = None
        self._logger = logging.getLogger(__name__)
        self._session: aiohttp.ClientSession | None = None
        self._notify_admin = notify_admin

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if not self._session or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(total=self.timeout_seconds)

    async def _request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        allow_missing: bool = False,
    ) -> dict[str, Any] | None:
        for attempt in range(MAX_ATTEMPTS):
            last_attempt = attempt == MAX_ATTEMPTS - 1
            session = await self._get_session()
            token = await self._get_token()
            try:
                async with session.request(
                    method,
                    f"{self.base_url}{path}",
                    json=json,
                    headers={"Authorization": f"Bearer {token}"} if token else {},
                    timeout=self._timeout(),
                ) as resp:
                    return await self._read(resp, method, path, attempt, allow_missing)
            except _Retry as retry:
                if retry.backoff:
                    await asyncio.sleep(2**attempt)
            except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as exc:
                if last_attempt:
                    self._logger.error(
                        "Marzban unreachable %s %s: error=%s %s",
                        method,
                        path,
                        exc,
                        describe_request_context(),
                    )
                    raise
                await asyncio.sleep(2**attempt)
        return {}

    async def _read(
        self,
        resp: aiohttp.ClientResponse,
        method: str,
        path: str,
        attempt: int,
        allow_missing: bool,
    ) -> dict[str, Any] | None:
        if resp.status == 401:
            if ":" in self.api_key and attempt == 0:
                self._token = None
                raise _Retry(backoff=False)
            self._logger.error("Marzban rejected credentials %s %s %s", method, path, describe_request_context())
            if self._notify_admin:
                await self._notify_admin(f"⚠️ Marzban отклонил авторизацию ({path}).")
            resp.raise_for_status()
        if resp.status == 404 and allow_missing:
            return None
        if resp.status in RETRYABLE_STATUSES and attempt < MAX_ATTEMPTS - 1:
            raise _Retry()
        if resp.status >= 400:
            self._logger.error(
                "Marzban error %s %s: status=%s body=%s %s",
                method,
                path,
                resp.status,
                (await resp.text())[:500],
                describe_request_context(),
            )
            resp.raise_for_status()
        if resp.status == 204:
            return {}
        try:
            data = await resp.json(content_type=None)
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    async def _get_token(self) -> str:
        # api_key is either a ready bearer token or "admin:password"
        if ":" not in self.api_key:
            return self.api_key
        if self._token is not None:
            return self._token
        username, password = (part.strip() for part in self.api_key.split(":", maxsplit=1))
        session = await self._get_session()
        async with session.post(
            f"{self.base_url}/api/admin/token",
            data={"username": username, "password": password},
            timeout=self._timeout(),
        ) as resp:
            resp.raise_for_status()
            data = await resp.json()
        self._token = data.get("access_token") or data.get("token") or ""
        return self._token

    async def create_user(
        self,
        username: str,
        expire_at: datetime,
        traffic_gb: float | None = None,
        note: str | None = None,
    ) -> dict[str, Any]:
        payload = _user_payload(expire_at, traffic_gb, note)
        payload.update(username=username, proxies={"vless": {}})
        return await self._request("POST", "/api/user", json=payload) or {}

    async def update_user(
        self,
        username: str,
        expire_at: datetime,
        traffic_gb: float | None = None,
        note: str | None = None,
    ) -> dict[str, Any]:
        payload = _user_payload(expire_at, traffic_gb, note)
        payload["status"] = "active"
        return await self._request("PUT", f"/api/user/{username}", json=payload) or {}

    async def get_user(self, username: str) -> dict[str, Any] | None:
        return await self._request("GET", f"/api/user/{username}", allow_missing=True)

    async def get_subscription_link(self, username: str, user: dict[str, Any] | None = None) -> str:
        data = user if user is not None else await self.get_user(username)
        link = str((data or {}).get("subscription_url") or "")
        if link.startswith("/"):
            link = f"{self.base_url}{link}"
        return link


def _user_payload(expire_at: datetime, traffic_gb: float | None, note: str | None) -> dict[str, Any]:
    # data_limit 0 means unlimited in Marzban
    payload: dict[str, Any] = {
        "expire": int(expire_at.timestamp()),
        "data_limit": int(traffic_gb * GIB) if traffic_gb else 0,
    }
    if note:
        payload["note"] = note
    return payload
