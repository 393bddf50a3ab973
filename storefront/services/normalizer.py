"""Folding of verification responses into canonical payment records.

The automation workflow answers the verify call in three shapes::

    {"success": true, "payment": {"orderId": ..., "status": "paid", ...}}
    {"success": true, "result": [{"orderid": ..., "statuspay": "Оплачено", "sum": "150"}]}
    {"success": true, "result": {"orderid": ..., "statuspay": "Оплачено", "sum": "150"}}

A ``payment`` block is used only when its status is recognized, otherwise
``result`` is read. ``classify`` decides the shape once; ``normalize`` turns it into a
``PaymentRecord`` or ``None`` when the answer is inconclusive.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Mapping, Union

from storefront.models.payment import FallbackContext, PaymentRecord, PaymentStatus

PAID_STATUSES = frozenset({"paid", "completed", "оплачено", "оплачен", "успешно"})
FAILED_STATUSES = frozenset({"failed", "rejected"})
CANCELLED_STATUSES = frozenset({"cancelled", "canceled"})


@dataclass(frozen=True)
class DirectPaymentShape:
    payment: Mapping[str, Any]


@dataclass(frozen=True)
class VendorArrayShape:
    record: Mapping[str, Any]


@dataclass(frozen=True)
class VendorObjectShape:
    record: Mapping[str, Any]


VerificationShape = Union[DirectPaymentShape, VendorArrayShape, VendorObjectShape]


def fold_status(raw_status: Any) -> PaymentStatus:
    value = str(raw_status if raw_status is not None else "").strip().lower()
    if value in PAID_STATUSES:
        return PaymentStatus.PAID
    if value in FAILED_STATUSES:
        return PaymentStatus.FAILED
    if value in CANCELLED_STATUSES:
        return PaymentStatus.CANCELLED
    return PaymentStatus.PENDING


def classify(raw: Any) -> VerificationShape | None:
    if not isinstance(raw, Mapping):
        return None
    if raw.get("success") is False:
        return None

    payment = raw.get("payment")
    if isinstance(payment, Mapping) and _is_recognized(payment.get("status")):
        return DirectPaymentShape(payment)

    result = raw.get("result")
    if isinstance(result, list):
        if result and isinstance(result[0], Mapping):
            return VendorArrayShape(result[0])
        return None
    if isinstance(result, Mapping):
        return VendorObjectShape(result)
    return None


def _is_recognized(raw_status: Any) -> bool:
    # an unknown direct status defers to the vendor result
    text = _text(raw_status)
    if not text:
        return False
    return text.lower() == PaymentStatus.PENDING.value or fold_status(text) is not PaymentStatus.PENDING


def normalize(
    raw: Any,
    *,
    order_id: str | None = None,
    fallback: FallbackContext | None = None,
) -> PaymentRecord | None:
    try:
        shape = classify(raw)
    except (TypeError, ValueError, AttributeError):
        return None
    if shape is None:
        return None

    try:
        if isinstance(shape, DirectPaymentShape):
            record = _from_direct(shape.payment, order_id, fallback)
        else:
            record = _from_vendor(shape.record, order_id, fallback)
    except (TypeError, ValueError, AttributeError):
        return None
    if record is None:
        return None
    if order_id and record.order_id != str(order_id).strip():
        return None
    if record.status is PaymentStatus.PAID:
        return _backfill(record, fallback)
    return record


def _from_direct(
    payment: Mapping[str, Any],
    order_id: str | None,
    fallback: FallbackContext | None,
) -> PaymentRecord | None:
    record_order_id = _text(payment.get("orderId")) or _text(payment.get("orderid")) or _text(order_id)
    if not record_order_id:
        return None
    raw_status = payment.get("status")
    return PaymentRecord(
        order_id=record_order_id,
        status=fold_status(raw_status),
        amount=_amount(payment.get("amount"), fallback),
        tariff_id=_text(payment.get("tariffId")),
        tariff_name=_text(payment.get("tariffName")),
        devices=_positive_int(payment.get("devices")),
        period_months=_positive_int(payment.get("periodMonths")),
        discount=_discount(payment.get("discount")),
        original_status=_text(payment.get("originalStatus")) or _text(raw_status),
        user_ref=_text(payment.get("userId")),
    )


def _from_vendor(
    record: Mapping[str, Any],
    order_id: str | None,
    fallback: FallbackContext | None,
) -> PaymentRecord | None:
    record_order_id = _text(record.get("orderid")) or _text(record.get("orderId")) or _text(order_id)
    if not record_order_id:
        return None
    raw_status = record.get("statuspay")
    if raw_status is None:
        raw_status = record.get("status")
    return PaymentRecord(
        order_id=record_order_id,
        status=fold_status(raw_status),
        amount=_amount(record.get("sum"), fallback),
        tariff_id=_text(record.get("tariffid")) or _text(record.get("tariffId")),
        original_status=_text(raw_status),
        user_ref=_text(record.get("uuid")),
    )


def _backfill(record: PaymentRecord, fallback: FallbackContext | None) -> PaymentRecord:
    fallback = fallback or FallbackContext()
    tariff_id = record.tariff_id or fallback.tariff_id
    tariff_name = record.tariff_name
    if tariff_name is None and tariff_id == fallback.tariff_id:
        tariff_name = fallback.tariff_name
    return PaymentRecord(
        order_id=record.order_id,
        status=record.status,
        amount=record.amount,
        tariff_id=tariff_id,
        tariff_name=tariff_name,
        devices=record.devices or fallback.devices or 1,
        period_months=record.period_months or fallback.period_months or 1,
        discount=record.discount if record.discount is not None else (fallback.discount or 0.0),
        original_status=record.original_status,
        user_ref=record.user_ref,
    )


def _text(value: Any) -> str | None:
    if value is None or isinstance(value, (Mapping, list)):
        return None
    text = str(value).strip()
    return text or None


def _amount(value: Any, fallback: FallbackContext | None) -> float:
    parsed = _number(value)
    if parsed is not None:
        return parsed
    if fallback and fallback.amount is not None:
        return float(fallback.amount)
    return 0.0


def _number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    text = str(value).strip().replace(" ", "").replace(",", ".")
    if not text:
        return None
    try:
        parsed = float(text)
    except ValueError:
        return None
    return parsed if math.isfinite(parsed) else None


def _positive_int(value: Any) -> int | None:
    parsed = _number(value)
    if parsed is None or parsed <= 0:
        return None
    return int(parsed)


def _discount(value: Any) -> float | None:
    parsed = _number(value)
    if parsed is None or parsed < 0:
        return None
    return parsed
