from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
import logging
from typing import Awaitable, Callable

from storefront.errors import FailureKind
from storefront.models.payment import PaymentRecord, PaymentStatus, ProcessingState

logger = logging.getLogger(__name__)

_TRANSITIONS: dict[ProcessingState, frozenset[ProcessingState]] = {
    ProcessingState.PROCESSING: frozenset({ProcessingState.WAITING}),
    ProcessingState.WAITING: frozenset({ProcessingState.CHECKING}),
    ProcessingState.CHECKING: frozenset({ProcessingState.SUCCESS, ProcessingState.ERROR}),
    ProcessingState.SUCCESS: frozenset(),
    ProcessingState.ERROR: frozenset({ProcessingState.PROCESSING}),
}


@dataclass(frozen=True)
class PollerTimings:
    waiting_delay: float = 3
    checking_delay: float = 2
    attempt_interval: float = 3
    max_attempts: int = 6
    error_reset_delay: float = 3


class PollOutcome(str, Enum):
    PAID = "paid"
    DECLINED = "declined"
    EXHAUSTED = "exhausted"


class StagedPoller:
    def __init__(
        self,
        order_id: str,
        check: Callable[[], Awaitable[PaymentRecord | None]],
        on_state: Callable[[ProcessingState], Awaitable[None]],
        on_paid: Callable[[PaymentRecord], Awaitable[object]],
        on_failure: Callable[[FailureKind], Awaitable[None]],
        on_reset: Callable[[], Awaitable[None]],
        timings: PollerTimings | None = None,
    ):
        self.order_id = order_id
        self._check = check
        self._on_state = on_state
        self._on_paid = on_paid
        self._on_failure = on_failure
        self._on_reset = on_reset
        self.timings = timings or PollerTimings()
        self.state: ProcessingState | None = None
        self.attempts = 0

    async def run(self) -> PollOutcome:
        await self._enter(ProcessingState.PROCESSING)
        await asyncio.sleep(self.timings.waiting_delay)
        await self._enter(ProcessingState.WAITING)
        await asyncio.sleep(self.timings.checking_delay)
        await self._enter(ProcessingState.CHECKING)

        while self.attempts < self.timings.max_attempts:
            if self.attempts:
                await asyncio.sleep(self.timings.attempt_interval)
            self.attempts += 1
            record = await self._check()
            logger.debug(
                "Payment check %s/%s: order_id=%s status=%s",
                self.attempts,
                self.timings.max_attempts,
                self.order_id,
                record.status.value if record else "inconclusive",
            )
            if record is None or record.status is PaymentStatus.PENDING:
                continue
            if record.status is PaymentStatus.PAID:
                await self._on_paid(record)
                return PollOutcome.PAID
            logger.warning("Payment declined: order_id=%s status=%s", self.order_id, record.status.value)
            await self._fail(FailureKind.DECLINED)
            return PollOutcome.DECLINED

        logger.warning(
            "Payment not confirmed after %s attempts: order_id=%s",
            self.attempts,
            self.order_id,
        )
        await self._fail(FailureKind.BUDGET_EXHAUSTED)
        return PollOutcome.EXHAUSTED

    async def _fail(self, kind: FailureKind) -> None:
        await self._enter(ProcessingState.ERROR)
        await self._on_failure(kind)
        await asyncio.sleep(self.timings.error_reset_delay)
        await self._enter(ProcessingState.PROCESSING, notify=False)
        await self._on_reset()

    async def _enter(self, state: ProcessingState, notify: bool = True) -> None:
        if self.state is not None and state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid processing transition {self.state.value} -> {state.value}")
        self.state = state
        if notify:
            await self._on_state(state)
