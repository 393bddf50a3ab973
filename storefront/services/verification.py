from __future__ import annotations

import asyncio
from typing import Any, Protocol

import aiohttp

from storefront.errors import VerificationError
from storefront.services.api_client import ApiResponseError, JsonApiClient

VERIFY_PATH = "/api/payment/verify"


class PaymentVerifier(Protocol):
    async def verify(self, order_id: str) -> Any:
        ...


class VerificationClient(JsonApiClient):
    async def verify(self, order_id: str) -> Any:
        if not order_id:
            raise ValueError("order_id is required to verify a payment")
        self._logger.info("Verifying payment: order_id=%s", order_id)
        try:
            result = await self._post_json(VERIFY_PATH, {"orderId": order_id})
        except ApiResponseError as exc:
            raise VerificationError(order_id, str(exc)) from exc
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise VerificationError(order_id, exc.__class__.__name__) from exc
        except ValueError as exc:
            raise VerificationError(order_id, "response is not valid JSON") from exc
        if isinstance(result, dict) and result.get("success") and not result.get("payment") and not result.get("result"):
            self._logger.warning(
                "Verify succeeded without payment or result: order_id=%s keys=%s",
                order_id,
                sorted(result),
            )
        return result
