from __future__ import annotations

import asyncio
import time
from typing import Any
from urllib.parse import parse_qs, urlparse

import aiohttp

from storefront.errors import PurchaseError
from storefront.models.payment import PaymentMode, PurchaseDraft, PurchaseResult
from storefront.models.tariff import Tariff
from storefront.services.api_client import ApiResponseError, JsonApiClient

GENERATE_LINK_PATH = "/api/payment/generate-link"
WORKFLOW_EMPTY_MARKER = "No item to return"
WORKFLOW_EMPTY_HINT = (
    "Ошибка n8n workflow: workflow не вернул данные. "
    "Проверьте, что узел «Respond to Webhook» настроен."
)


class PurchaseClient(JsonApiClient):
    async def create_purchase(
        self,
        user_id: int,
        draft: PurchaseDraft,
        tariff: Tariff,
        user_data: dict[str, Any] | None = None,
    ) -> PurchaseResult:
        amount = draft.total_price(tariff)
        if draft.payment_mode is PaymentMode.PAY_LATER:
            return PurchaseResult(order_id=None, payment_url=None, amount=amount, requires_payment=False)

        payload: dict[str, Any] = {
            "userId": str(user_id),
            "amount": amount,
            "tariffId": tariff.id,
            "paymentSettings": {},
        }
        if user_data:
            payload["userData"] = {**user_data, "userId": str(user_id)}

        self._logger.info(
            "Requesting payment link: user_id=%s tariff=%s amount=%s",
            user_id,
            tariff.id,
            amount,
        )
        try:
            data = await self._post_json(GENERATE_LINK_PATH, payload)
        except ApiResponseError as exc:
            raise PurchaseError(_workflow_hint(str(exc))) from exc
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise PurchaseError(f"Payment service is unavailable: {exc.__class__.__name__}") from exc
        except ValueError as exc:
            raise PurchaseError("Некорректный формат ответа от сервера") from exc
        return parse_purchase_response(data, amount)


def parse_purchase_response(data: Any, requested_amount: float) -> PurchaseResult:
    if isinstance(data, list):
        if not data:
            raise PurchaseError("Неполный ответ от сервера: получен пустой массив")
        data = data[0]
    if not isinstance(data, dict):
        raise PurchaseError("Неполный ответ от сервера: данные имеют неверный формат")

    if data.get("error") or data.get("success") is False:
        message = data.get("error") or data.get("message") or "Неизвестная ошибка от сервера"
        raise PurchaseError(_workflow_hint(str(message)))

    payment_url = str(data.get("paymentUrl") or "").strip()
    if not payment_url:
        raise PurchaseError(
            "Неполный ответ от сервера. Отсутствуют обязательные поля: paymentUrl. "
            f"Полученные поля: {', '.join(sorted(data))}"
        )

    order_id = str(data.get("orderId") or "").strip() or _order_from_url(payment_url)
    if not order_id:
        order_id = f"order_{int(time.time() * 1000)}"

    amount = data.get("amount")
    try:
        amount_value = float(amount) if amount not in (None, "") else requested_amount
    except (TypeError, ValueError):
        amount_value = requested_amount
    return PurchaseResult(
        order_id=order_id,
        payment_url=payment_url,
        amount=amount_value,
        requires_payment=True,
    )


def _order_from_url(payment_url: str) -> str | None:
    labels = parse_qs(urlparse(payment_url).query).get("label") or []
    for label in labels:
        if label.startswith("order_"):
            return label
    return None


def _workflow_hint(message: str) -> str:
    if WORKFLOW_EMPTY_MARKER in message:
        return WORKFLOW_EMPTY_HINT
    return message
