from __future__ import annotations

from enum import Enum


class FailureKind(str, Enum):
    DECLINED = "declined"
    RESOLUTION_FATAL = "resolution_fatal"
    BUDGET_EXHAUSTED = "budget_exhausted"


class StorefrontError(Exception):
    pass


class VerificationError(StorefrontError):
    def __init__(self, order_id: str, message: str):
        super().__init__(f"Payment verification failed for {order_id}: {message}")
        self.order_id = order_id


class PurchaseError(StorefrontError):
    pass


class ReconciliationError(StorefrontError):
    def __init__(self, order_id: str, message: str):
        super().__init__(message)
        self.order_id = order_id


class TariffResolutionError(ReconciliationError):
    pass


class ActivationError(ReconciliationError):
    pass
