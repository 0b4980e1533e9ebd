"""Tests for transaction and invoice state machines."""

import pytest

from paygate.errors import InvalidTransitionError
from paygate.services.state_machine import (
    InvoiceStateMachine,
    InvoiceStatus,
    TransactionStateMachine,
    TransactionStatus,
)


class TestTransactionStateMachine:
    """Test ledger entry transitions."""

    def test_valid_transitions(self):
        """Pending and processing entries can reach every terminal state."""
        assert TransactionStateMachine.can_transition("pending", "processing") is True
        for terminal in ("completed", "failed", "cancelled"):
            assert TransactionStateMachine.can_transition("pending", terminal) is True
            assert TransactionStateMachine.can_transition("processing", terminal) is True

    def test_terminal_states_never_transition(self):
        """Terminal entries are never re-transitioned."""
        for terminal in ("completed", "failed", "cancelled"):
            assert TransactionStateMachine.is_terminal(terminal) is True
            assert TransactionStateMachine.get_next_statuses(terminal) == []
            for target in TransactionStatus:
                assert TransactionStateMachine.can_transition(terminal, target.value) is False

    def test_processing_cannot_go_back_to_pending(self):
        assert TransactionStateMachine.can_transition("processing", "pending") is False

    def test_validate_transition_raises(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            TransactionStateMachine.validate_transition("completed", "failed")

        assert exc_info.value.from_status == "completed"
        assert exc_info.value.to_status == "failed"
        assert exc_info.value.code == "invalid_transition"

    def test_sources_for_terminal_status(self):
        """The conditional update guard lists exactly the open statuses."""
        assert sorted(TransactionStateMachine.sources_for(TransactionStatus.COMPLETED)) == [
            "pending",
            "processing",
        ]
        assert TransactionStateMachine.sources_for(TransactionStatus.PROCESSING) == ["pending"]
        assert TransactionStateMachine.sources_for(TransactionStatus.PENDING) == []


class TestInvoiceStateMachine:
    """Test invoice transitions."""

    def test_valid_transitions(self):
        assert InvoiceStateMachine.can_transition("draft", "sent") is True
        assert InvoiceStateMachine.can_transition("sent", "partially_paid") is True
        assert InvoiceStateMachine.can_transition("partially_paid", "paid") is True
        assert InvoiceStateMachine.can_transition("sent", "overdue") is True
        assert InvoiceStateMachine.can_transition("overdue", "paid") is True
        assert InvoiceStateMachine.can_transition("partially_paid", "cancelled") is True

    def test_invalid_transitions(self):
        # Can't pay a draft without sending it
        assert InvoiceStateMachine.can_transition("draft", "paid") is False

        # Paid and cancelled are terminal
        assert InvoiceStateMachine.can_transition("paid", "cancelled") is False
        assert InvoiceStateMachine.can_transition("cancelled", "sent") is False

        # No way back to draft
        assert InvoiceStateMachine.can_transition("sent", "draft") is False

    def test_can_accept_payment(self):
        assert InvoiceStateMachine.can_accept_payment(InvoiceStatus.SENT) is True
        assert InvoiceStateMachine.can_accept_payment("partially_paid") is True
        assert InvoiceStateMachine.can_accept_payment("overdue") is True
        assert InvoiceStateMachine.can_accept_payment("draft") is False
        assert InvoiceStateMachine.can_accept_payment("paid") is False
        assert InvoiceStateMachine.can_accept_payment("cancelled") is False

    def test_validate_transition_raises(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            InvoiceStateMachine.validate_transition(InvoiceStatus.PAID, InvoiceStatus.SENT)

        assert exc_info.value.from_status == "paid"
        assert exc_info.value.to_status == "sent"
