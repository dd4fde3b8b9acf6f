"""
Settlement coordinator tests: buyer confirmation, eligibility checks, payout
failures and split allocations.
"""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from conftest import BUYER_ID, T0, days, load_escrow, load_order
from models import OrderStatus, Recipient, ReleaseVia
from services.dispute_service import DisputeService
from services.outbox_service import FUNDS_RELEASED, OutboxService
from services.payout_gateway import PayoutError, PayoutGateway, set_payout_gateway
from services.settlement_coordinator import (
    RejectionReason, SettlementCoordinator, SettlementOutcome
)
from utils.settlement_exceptions import EscrowNotFound, OrderNotFound


class TestConfirmReceipt:

    def test_confirm_delivered_order(self, make_order):
        order_id = make_order(OrderStatus.DELIVERED)

        result = SettlementCoordinator.confirm_receipt(order_id, BUYER_ID, now=T0 + days(1))

        assert result.outcome == SettlementOutcome.RELEASED
        assert result.released_to == "buyer_confirmation"
        assert result.recipient == "seller"
        escrow = load_escrow(order_id)
        assert escrow.release_status == "released"
        assert escrow.allocations == {"seller": "100.00"}
        assert load_order(order_id).status == "COMPLETED"

    def test_confirm_shipped_order_marks_delivered_then_completed(self, make_order):
        """Buyer confirmation of a shipped order implies delivery"""
        order_id = make_order(OrderStatus.SHIPPED)

        result = SettlementCoordinator.confirm_receipt(order_id, BUYER_ID, now=T0 + days(2))

        assert result.outcome == SettlementOutcome.RELEASED
        order = load_order(order_id)
        assert order.status == "COMPLETED"
        assert order.delivered_at == T0 + days(2)

    def test_second_confirmation_is_already_released(self, make_order):
        order_id = make_order(OrderStatus.DELIVERED)

        first = SettlementCoordinator.confirm_receipt(order_id, BUYER_ID)
        second = SettlementCoordinator.confirm_receipt(order_id, BUYER_ID)

        assert first.outcome == SettlementOutcome.RELEASED
        assert second.outcome == SettlementOutcome.ALREADY_RELEASED
        assert second.ok, "ALREADY_RELEASED is a success for the caller"
        assert second.released_to == "buyer_confirmation"
        assert len(OutboxService.events_for(order_id, FUNDS_RELEASED)) == 1

    def test_only_the_buyer_can_confirm(self, make_order):
        order_id = make_order(OrderStatus.DELIVERED)

        result = SettlementCoordinator.confirm_receipt(order_id, "someone-else")

        assert result.outcome == SettlementOutcome.REJECTED
        assert result.reason == RejectionReason.NOT_ORDER_BUYER
        assert load_escrow(order_id).release_status == "pending"

    @pytest.mark.parametrize("status", [OrderStatus.PENDING, OrderStatus.PROCESSING])
    def test_not_shipped_yet(self, make_order, status):
        order_id = make_order(status)

        result = SettlementCoordinator.confirm_receipt(order_id, BUYER_ID)

        assert result.reason == RejectionReason.NOT_SHIPPED_OR_DELIVERED
        assert load_escrow(order_id).release_status == "pending"

    def test_open_dispute_blocks_confirmation(self, make_order):
        order_id = make_order(OrderStatus.DELIVERED)
        DisputeService.open_dispute(order_id, BUYER_ID, "WRONG_ITEM_SENT", "Got a blue one", now=T0)

        result = SettlementCoordinator.confirm_receipt(order_id, BUYER_ID, now=T0)

        assert result.outcome == SettlementOutcome.REJECTED
        assert result.reason == RejectionReason.DISPUTE_OPEN
        assert load_escrow(order_id).release_status == "pending"

    def test_unknown_order_and_missing_escrow(self, make_order):
        with pytest.raises(OrderNotFound):
            SettlementCoordinator.confirm_receipt("nope", BUYER_ID)

        order_id = make_order(OrderStatus.PENDING, with_escrow=False)
        with pytest.raises(EscrowNotFound):
            SettlementCoordinator.confirm_receipt(order_id, BUYER_ID)


class TestAttemptRelease:

    def test_auto_release_on_processing_order_is_rejected(self, make_order):
        order_id = make_order(OrderStatus.PROCESSING)

        result = SettlementCoordinator.attempt_release(order_id, ReleaseVia.AUTO_RELEASE)

        assert result.reason == RejectionReason.ORDER_NOT_ELIGIBLE
        assert load_escrow(order_id).release_status == "pending"

    def test_dispute_gate_blocks_everything_but_resolution(self, make_order):
        order_id = make_order(OrderStatus.DELIVERED)
        DisputeService.open_dispute(order_id, BUYER_ID, "OTHER", "Missing manual", now=T0)

        for via in (ReleaseVia.AUTO_RELEASE, ReleaseVia.BUYER_CONFIRMATION):
            result = SettlementCoordinator.attempt_release(order_id, via, now=T0 + days(5))
            assert result.reason == RejectionReason.DISPUTE_OPEN, via

    def test_invalid_split_rejected_before_payout(self, make_order):
        order_id = make_order(OrderStatus.DELIVERED)
        gateway = MagicMock(spec=PayoutGateway)
        set_payout_gateway(gateway)

        result = SettlementCoordinator.attempt_release(
            order_id, ReleaseVia.AUTO_RELEASE, recipient=Recipient.SPLIT, refund_amount=Decimal("100.00")
        )

        assert result.reason == RejectionReason.INVALID_SPLIT
        gateway.pay_out.assert_not_called()
        assert load_escrow(order_id).release_status == "pending"

    def test_payout_reference_recorded(self, make_order):
        order_id = make_order(OrderStatus.DELIVERED)
        gateway = MagicMock(spec=PayoutGateway)
        gateway.name = "mock"
        gateway.pay_out.return_value = "TRF_abc123"
        set_payout_gateway(gateway)

        result = SettlementCoordinator.confirm_receipt(order_id, BUYER_ID)

        assert result.outcome == SettlementOutcome.RELEASED
        order, escrow, allocations, reference = gateway.pay_out.call_args[0]
        assert order.id == order_id
        assert allocations == {"seller": Decimal("100.00")}
        assert reference.startswith(f"ESC-{order_id[:8]}")
        assert load_escrow(order_id).payout_reference == "TRF_abc123"


class TestPayoutFailure:

    @pytest.fixture(autouse=True)
    def failing_gateway(self, db):
        gateway = MagicMock(spec=PayoutGateway)
        gateway.name = "mock"
        gateway.pay_out.side_effect = PayoutError("Seller payment account not configured", provider="mock")
        set_payout_gateway(gateway)
        return gateway

    def test_payout_failure_marks_escrow_failed(self, make_order):
        order_id = make_order(OrderStatus.DELIVERED)

        result = SettlementCoordinator.confirm_receipt(order_id, BUYER_ID)

        assert result.outcome == SettlementOutcome.REJECTED
        assert result.reason == RejectionReason.PAYOUT_FAILED
        escrow = load_escrow(order_id)
        assert escrow.release_status == "failed"
        assert "Seller payment account not configured" in escrow.release_reason
        assert load_order(order_id).status == "DELIVERED", "order stays where it was"
        assert OutboxService.events_for(order_id, FUNDS_RELEASED) == []

    def test_failed_escrow_is_not_retried(self, make_order, failing_gateway):
        order_id = make_order(OrderStatus.DELIVERED)
        SettlementCoordinator.confirm_receipt(order_id, BUYER_ID)
        set_payout_gateway(None)

        result = SettlementCoordinator.confirm_receipt(order_id, BUYER_ID)

        assert result.outcome == SettlementOutcome.REJECTED
        assert result.reason == RejectionReason.ESCROW_FAILED
        assert failing_gateway.pay_out.call_count == 1


class TestAllocations:

    def _escrow(self, amount="100.00"):
        escrow = MagicMock()
        escrow.amount_held = Decimal(amount)
        return escrow

    def test_seller_and_buyer(self):
        assert SettlementCoordinator.allocations_for(self._escrow(), Recipient.SELLER) == {"seller": Decimal("100.00")}
        assert SettlementCoordinator.allocations_for(self._escrow(), Recipient.BUYER) == {"buyer": Decimal("100.00")}

    def test_split(self):
        allocations = SettlementCoordinator.allocations_for(self._escrow(), Recipient.SPLIT, "35.50")
        assert allocations == {"seller": Decimal("64.50"), "buyer": Decimal("35.50")}
        assert sum(allocations.values()) == Decimal("100.00")

    @pytest.mark.parametrize("refund", [None, "0", "-1", "100.00", "150"])
    def test_split_bounds(self, refund):
        with pytest.raises(ValueError):
            SettlementCoordinator.allocations_for(self._escrow(), Recipient.SPLIT, refund)


def test_result_serialization():
    from services.settlement_coordinator import SettlementResult

    result = SettlementResult(
        outcome=SettlementOutcome.REJECTED, order_id="o-1",
        reason=RejectionReason.DISPUTE_OPEN, detail="blocked",
    )
    assert result.describe() == "rejected:dispute_open"
    assert not result.ok
    assert result.to_dict()["reason"] == "dispute_open"
