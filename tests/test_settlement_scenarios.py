"""
End-to-end settlement scenarios.

Setup for every scenario: 100.00 GHS held, order delivered at T0, release date
T0 + 4 days.
"""

from conftest import BUYER_ID, T0, days, load_escrow, load_order
from models import OrderStatus
from services.dispute_service import DisputeService
from services.outbox_service import FUNDS_RELEASED, OutboxService
from services.release_scheduler import ReleaseScheduler
from services.settlement_coordinator import SettlementCoordinator, SettlementOutcome


class TestSettlementScenarios:

    def test_buyer_confirms_within_window(self, make_order):
        """Buyer confirms on day 1: released via buyer_confirmation, task cancelled"""
        order_id = make_order(OrderStatus.DELIVERED, amount="100.00", now=T0)
        assert load_escrow(order_id).release_date == T0 + days(4)

        result = SettlementCoordinator.confirm_receipt(order_id, BUYER_ID, now=T0 + days(1))

        assert result.outcome == SettlementOutcome.RELEASED
        escrow = load_escrow(order_id)
        assert escrow.release_status == "released"
        assert escrow.released_to == "buyer_confirmation"
        assert load_order(order_id).status == "COMPLETED"
        assert ReleaseScheduler.get_job(order_id).status == "cancelled"

        # The deadline passing later changes nothing
        assert ReleaseScheduler.fire_due(now=T0 + days(4)) == []
        assert len(OutboxService.events_for(order_id, FUNDS_RELEASED)) == 1

    def test_buyer_never_confirms(self, make_order):
        """Deadline passes: the worker releases via auto_release"""
        order_id = make_order(OrderStatus.DELIVERED, amount="100.00", now=T0)

        assert ReleaseScheduler.fire_due(now=T0 + days(4) - days(1) / 24) == []
        fired = ReleaseScheduler.fire_due(now=T0 + days(4))

        assert [f.order_id for f in fired] == [order_id]
        escrow = load_escrow(order_id)
        assert escrow.release_status == "released"
        assert escrow.released_to == "auto_release"
        assert escrow.recipient == "seller"
        assert load_order(order_id).status == "COMPLETED"

    def test_dispute_then_refund(self, make_order):
        """Dispute on day 2 blocks the day-4 release; admin refunds on day 5"""
        order_id = make_order(OrderStatus.DELIVERED, amount="100.00", now=T0)

        dispute = DisputeService.open_dispute(
            order_id, BUYER_ID, "ITEM_NOT_AS_DESCRIBED", "Wrong size", now=T0 + days(2)
        )
        assert ReleaseScheduler.get_job(order_id).status == "cancelled"

        assert ReleaseScheduler.fire_due(now=T0 + days(4)) == []
        blocked = SettlementCoordinator.confirm_receipt(order_id, BUYER_ID, now=T0 + days(4))
        assert blocked.outcome == SettlementOutcome.REJECTED
        assert load_escrow(order_id).release_status == "pending"

        resolved, result = DisputeService.resolve_dispute(
            dispute.id, "refund-to-buyer", "admin-1", resolution="Seller shipped wrong size",
            now=T0 + days(5),
        )

        assert result.outcome == SettlementOutcome.RELEASED
        assert resolved.status == "RESOLVED"
        escrow = load_escrow(order_id)
        assert escrow.release_status == "released"
        assert escrow.released_to == "dispute_resolution"
        assert escrow.recipient == "buyer"
        assert escrow.released_at == T0 + days(5)

    def test_confirmation_and_deadline_collide(self, make_order):
        """
        The scheduler wins the claim at the deadline; the buyer's confirmation a
        moment later is answered with ALREADY_RELEASED naming the winning trigger.
        """
        order_id = make_order(OrderStatus.DELIVERED, amount="100.00", now=T0)
        deadline = T0 + days(4)

        fired = ReleaseScheduler.fire_due(now=deadline)
        late = SettlementCoordinator.confirm_receipt(order_id, BUYER_ID, now=deadline)

        assert fired[0].result.outcome == SettlementOutcome.RELEASED
        assert late.outcome == SettlementOutcome.ALREADY_RELEASED
        assert late.ok
        assert late.released_to == "auto_release"
        assert len(OutboxService.events_for(order_id, FUNDS_RELEASED)) == 1
