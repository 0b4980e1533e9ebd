"""Property-based tests for ledger invariants.

These tests use hypothesis to drive the real ledger through random
sequences of refunds and callbacks, and check after every step that:
1. refunded_amount + refund_reserved never exceeds the payment amount
2. Only ResultCode 0 (number or string) completes an STK payment
3. Redelivering a callback leaves the entry exactly as the first delivery did
"""

from __future__ import annotations

import asyncio
import tempfile
from decimal import Decimal
from pathlib import Path
from typing import Any
from uuid import UUID, uuid4

import httpx
import pytest
from hypothesis import given, settings, strategies as st
from hypothesis.stateful import (
    RuleBasedStateMachine,
    initialize,
    invariant,
    precondition,
    rule,
)

from paygate.credentials.cipher import SecretCipher
from paygate.credentials.store import DatabaseCredentialStore
from paygate.database import create_engine, create_schema, create_session_factory, session_scope
from paygate.errors import RefundAmountExceededError
from paygate.events.emitter import AsyncEventEmitter
from paygate.gateway_config import ProcessorConfig
from paygate.models.business import Business
from paygate.models.transaction import Transaction
from paygate.processors.dispatch import AdapterSet
from paygate.processors.mobile_money import MobileMoneyAdapter
from paygate.services.ledger import TransactionLedger
from paygate.services.reconciler import CallbackReconciler, CallbackStatus
from tests.conftest import APP_ID, BUSINESS_ID, TEST_ENCRYPTION_KEY, stk_callback


# =============================================================================
# Ledger harness
# =============================================================================


class LedgerHarness:
    """The real ledger on a throwaway SQLite file.

    Hypothesis drives tests synchronously, so every coroutine runs on one
    private event loop owned by the harness.
    """

    def __init__(self) -> None:
        self._dir = tempfile.TemporaryDirectory()
        self.loop = asyncio.new_event_loop()
        self.engine = create_engine(f"sqlite+aiosqlite:///{Path(self._dir.name) / 'ledger.db'}")
        self.sessions = create_session_factory(self.engine)
        self.http = httpx.AsyncClient()
        self.events: list[Any] = []

        emitter = AsyncEventEmitter()
        emitter.on_all(self._record)
        self.callbacks = CallbackReconciler(
            self.sessions,
            DatabaseCredentialStore(self.sessions, SecretCipher(TEST_ENCRYPTION_KEY)),
            AdapterSet.create(self.http, ProcessorConfig()),
            emitter,
        )
        self.run(self._setup())

    async def _record(self, event: Any) -> None:
        self.events.append(event)

    async def _setup(self) -> None:
        await create_schema(self.engine)
        async with session_scope(self.sessions) as db:
            db.add(Business(business_id=BUSINESS_ID, name="Corner Shop"))

    def run(self, coro: Any) -> Any:
        return self.loop.run_until_complete(coro)

    def close(self) -> None:
        self.run(self.http.aclose())
        self.run(self.engine.dispose())
        self.loop.close()
        self._dir.cleanup()

    def payment(
        self,
        amount: Decimal,
        *,
        status: str = "completed",
        method: str = "cash",
        correlation_id: str | None = None,
    ) -> UUID:
        async def create() -> UUID:
            async with session_scope(self.sessions) as db:
                ledger = TransactionLedger(db)
                entry = await ledger.create_entry(
                    business_id=BUSINESS_ID,
                    app_id=APP_ID,
                    amount=amount,
                    currency="KES",
                    method=method,
                    status=status,
                )
                if correlation_id:
                    await ledger.update_open(entry.id, correlation_id=correlation_id)
            return entry.id

        return self.run(create())

    def entry(self, transaction_id: UUID) -> Transaction:
        async def load() -> Transaction:
            async with session_scope(self.sessions) as db:
                return await TransactionLedger(db).require(transaction_id)

        return self.run(load())

    def reserve(self, transaction_id: UUID, amount: Decimal) -> UUID | None:
        """Create a processing refund, or None if the amount is not available."""

        async def create() -> UUID:
            async with session_scope(self.sessions) as db:
                refund = await TransactionLedger(db).create_refund(
                    transaction_id, amount=amount, reason="requested_by_customer"
                )
            return refund.id

        try:
            return self.run(create())
        except RefundAmountExceededError:
            return None

    def settle(self, refund_id: UUID, *, completed: bool) -> None:
        async def finish() -> None:
            async with session_scope(self.sessions) as db:
                ledger = TransactionLedger(db)
                if completed:
                    await ledger.complete_refund(refund_id)
                else:
                    await ledger.fail_refund(refund_id, reason="declined")

        self.run(finish())


@pytest.fixture(scope="module")
def ledger():
    harness = LedgerHarness()
    yield harness
    harness.close()


def snapshot(entry: Transaction) -> dict[str, Any]:
    return {
        "status": entry.status,
        "result_code": entry.result_code,
        "result_description": entry.result_description,
        "receipt_number": entry.receipt_number,
        "callback_payload": entry.callback_payload,
        "processor_details": entry.processor_details,
        "version": entry.version,
        "updated_at": entry.updated_at,
    }


refund_amounts = st.decimals(min_value=Decimal("0.01"), max_value=Decimal("600"), places=2)


# =============================================================================
# Pure Property Tests
# =============================================================================


class TestRefundBounds:
    """Property tests for the refund reservation."""

    @given(
        amount=st.integers(min_value=1, max_value=500),
        steps=st.lists(
            st.tuples(refund_amounts, st.sampled_from(["completed", "failed", "processing"])),
            min_size=1,
            max_size=12,
        ),
    )
    @settings(max_examples=40, deadline=None)
    def test_refunds_never_exceed_amount(self, ledger, amount, steps):
        """refunded_amount + refund_reserved <= amount after every refund."""
        total = Decimal(amount)
        transaction_id = ledger.payment(total)
        completed = Decimal("0")
        in_flight = Decimal("0")

        for requested, outcome in steps:
            available = ledger.entry(transaction_id).refundable_amount
            refund_id = ledger.reserve(transaction_id, requested)
            if refund_id is None:
                assert requested > available
                continue

            if outcome == "completed":
                ledger.settle(refund_id, completed=True)
                completed += requested
            elif outcome == "failed":
                ledger.settle(refund_id, completed=False)
            else:
                in_flight += requested

            entry = ledger.entry(transaction_id)
            assert entry.refunded_amount + entry.refund_reserved <= entry.amount
            assert entry.refunded_amount == completed
            assert entry.refund_reserved == in_flight
            assert entry.refunded == (completed == total)


class TestResultCodeMapping:
    """Property tests for the STK ResultCode -> status mapping."""

    @given(
        code=st.one_of(
            st.integers(min_value=-10, max_value=5000),
            st.text(alphabet="0123456789 -x", max_size=5),
        )
    )
    @settings(max_examples=200)
    def test_only_zero_completes(self, code):
        callback = MobileMoneyAdapter.parse_callback(stk_callback("ws_codes", code))

        outcome = MobileMoneyAdapter.outcome(callback)

        assert outcome.status in ("completed", "failed")
        assert (outcome.status == "completed") == (code == 0 or code == "0")
        assert outcome.result_code == str(code)


class TestCallbackRedelivery:
    """Property tests for exactly-once callback application."""

    @given(
        code=st.sampled_from([0, "0", 1, "1", 1032, 1037, 2001]),
        deliveries=st.integers(min_value=2, max_value=4),
    )
    @settings(max_examples=30, deadline=None)
    def test_redelivery_changes_nothing(self, ledger, code, deliveries):
        checkout_id = f"ws_CO_{uuid4().hex[:12]}"
        transaction_id = ledger.payment(
            Decimal("100"),
            status="processing",
            method="mobile_money",
            correlation_id=checkout_id,
        )
        payload = stk_callback(checkout_id, code, receipt=f"R{uuid4().hex[:9].upper()}")
        events_before = len(ledger.events)

        first = ledger.run(ledger.callbacks.handle_mobile_money_callback(payload))
        once = snapshot(ledger.entry(transaction_id))

        for _ in range(deliveries - 1):
            again = ledger.run(ledger.callbacks.handle_mobile_money_callback(payload))
            assert again.status is CallbackStatus.DUPLICATE
            assert snapshot(ledger.entry(transaction_id)) == once

        assert first.status is CallbackStatus.PROCESSED
        assert once["status"] == ("completed" if code in (0, "0") else "failed")
        assert len(ledger.events) == events_before + 1


# =============================================================================
# Stateful Property Tests
# =============================================================================


class RefundReservationMachine(RuleBasedStateMachine):
    """
    Random interleavings of refund requests and their outcomes on one
    payment, with the balance checked after every step.
    """

    def __init__(self):
        super().__init__()
        self.ledger = LedgerHarness()
        self.in_flight: list[tuple[UUID, Decimal]] = []
        self.completed = Decimal("0")

    @initialize(amount=st.integers(min_value=1, max_value=300))
    def create_payment(self, amount):
        self.amount = Decimal(amount)
        self.transaction_id = self.ledger.payment(self.amount)

    @rule(amount=refund_amounts)
    def request_refund(self, amount):
        available = self.ledger.entry(self.transaction_id).refundable_amount
        refund_id = self.ledger.reserve(self.transaction_id, amount)
        if refund_id is None:
            assert amount > available
        else:
            self.in_flight.append((refund_id, amount))

    @precondition(lambda self: self.in_flight)
    @rule()
    def complete_oldest(self):
        refund_id, amount = self.in_flight.pop(0)
        self.ledger.settle(refund_id, completed=True)
        self.completed += amount

    @precondition(lambda self: self.in_flight)
    @rule()
    def fail_newest(self):
        refund_id, _ = self.in_flight.pop()
        self.ledger.settle(refund_id, completed=False)

    @invariant()
    def refunds_bounded(self):
        entry = self.ledger.entry(self.transaction_id)
        assert entry.refunded_amount + entry.refund_reserved <= entry.amount

    @invariant()
    def reservation_matches_in_flight(self):
        entry = self.ledger.entry(self.transaction_id)
        assert entry.refund_reserved == sum((a for _, a in self.in_flight), Decimal("0"))
        assert entry.refunded_amount == self.completed
        assert entry.refunded == (self.completed >= self.amount)

    def teardown(self):
        self.ledger.close()


TestRefundReservationMachine = RefundReservationMachine.TestCase
TestRefundReservationMachine.settings = settings(
    max_examples=20, stateful_step_count=12, deadline=None
)
