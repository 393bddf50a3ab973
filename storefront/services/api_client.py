from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import aiohttp

from storefront.services.log_context import describe_request_context


class ApiResponseError(Exception):
    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = status


class JsonApiClient:
    def __init__(self, base_url: str, timeout_seconds: float = 15):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._session: aiohttp.ClientSession | None = None
        self._logger = logging.getLogger(self.__class__.__module__)

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if not self._session or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def _post_json(self, path: str, payload: dict[str, Any]) -> Any:
        session = await self._get_session()
        context_str = describe_request_context()
        try:
            async with session.post(
                f"{self.base_url}{path}",
                json=payload,
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
            ) as resp:
                body = await resp.text()
                if resp.status >= 400:
                    message = _error_message(body) or f"HTTP {resp.status}: {resp.reason}"
                    self._logger.error(
                        "Payment API error POST %s: status=%s body=%s %s",
                        path,
                        resp.status,
                        body[:500],
                        context_str,
                    )
                    raise ApiResponseError(resp.status, message)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            self._logger.warning(
                "Payment API connection error POST %s: error=%r %s",
                path,
                exc,
                context_str,
            )
            raise
        return _decode(body)


def _decode(body: str) -> Any:
    if not body.strip():
        return {}
    return json.loads(body)


def _error_message(body: str) -> str | None:
    try:
        data = _decode(body)
    except ValueError:
        return body.strip()[:200] or None
    if isinstance(data, dict):
        return data.get("error") or data.get("message")
    return None
