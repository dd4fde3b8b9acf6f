"""
Concurrency tests for the settlement critical section.

Release triggers for one order run in parallel worker threads against the same
database file. Whatever the interleaving, the escrow is released at most once and
exactly one FundsReleased event is written.
"""

import asyncio
import logging

import pytest
from sqlalchemy import func, select

from conftest import BUYER_ID, T0, days, load_escrow, load_order
from database import managed_session
from models import OrderStatus, OrderStatusHistory
from services.dispute_service import DisputeService
from services.outbox_service import FUNDS_RELEASED, OutboxService
from services.release_scheduler import ReleaseScheduler
from services.settlement_coordinator import SettlementCoordinator, SettlementOutcome
from utils.settlement_exceptions import AlreadyDisputed, AlreadyReleased

logger = logging.getLogger(__name__)


def _outcomes(results):
    exceptions = [r for r in results if isinstance(r, Exception)]
    assert not exceptions, f"unexpected errors: {exceptions}"
    return [r.outcome for r in results]


class TestConcurrentReleases:

    @pytest.mark.asyncio
    async def test_parallel_buyer_confirmations(self, make_order):
        """Five simultaneous confirmations: one RELEASED, the rest ALREADY_RELEASED"""
        order_id = make_order(OrderStatus.DELIVERED)

        results = await asyncio.gather(*[
            asyncio.to_thread(SettlementCoordinator.confirm_receipt, order_id, BUYER_ID, T0 + days(1))
            for _ in range(5)
        ], return_exceptions=True)

        outcomes = _outcomes(results)
        logger.info(f"Confirmation outcomes: {[o.value for o in outcomes]}")
        assert outcomes.count(SettlementOutcome.RELEASED) == 1
        assert outcomes.count(SettlementOutcome.ALREADY_RELEASED) == 4
        assert len(OutboxService.events_for(order_id, FUNDS_RELEASED)) == 1

    @pytest.mark.asyncio
    async def test_confirmation_races_auto_release(self, make_order):
        """Buyer confirms at the exact moment the deadline fires"""
        order_id = make_order(OrderStatus.DELIVERED)
        deadline = T0 + days(4)

        results = await asyncio.gather(
            asyncio.to_thread(SettlementCoordinator.confirm_receipt, order_id, BUYER_ID, deadline),
            asyncio.to_thread(ReleaseScheduler.fire_due, deadline),
            asyncio.to_thread(ReleaseScheduler.fire_due, deadline),
            return_exceptions=True,
        )

        exceptions = [r for r in results if isinstance(r, Exception)]
        assert not exceptions, f"unexpected errors: {exceptions}"

        confirmation, *batches = results
        fired = [job for batch in batches for job in batch]
        assert len(fired) <= 1, "the job must fire at most once"

        released = [confirmation.outcome] + [job.result.outcome for job in fired]
        assert released.count(SettlementOutcome.RELEASED) == 1

        escrow = load_escrow(order_id)
        assert escrow.release_status == "released"
        assert escrow.released_to in ("buyer_confirmation", "auto_release")
        assert len(OutboxService.events_for(order_id, FUNDS_RELEASED)) == 1
        assert load_order(order_id).status == "COMPLETED"

        with managed_session() as session:
            completions = session.execute(
                select(func.count(OrderStatusHistory.id)).where(
                    OrderStatusHistory.order_id == order_id,
                    OrderStatusHistory.new_status == "COMPLETED",
                )
            ).scalar_one()
        assert completions == 1

    @pytest.mark.asyncio
    async def test_dispute_races_auto_release(self, make_order):
        """
        Opening a dispute and firing the deadline serialize on the escrow row:
        either the dispute wins and nothing is released, or the release wins and
        the dispute is refused.
        """
        order_id = make_order(OrderStatus.DELIVERED)
        deadline = T0 + days(4)

        results = await asyncio.gather(
            asyncio.to_thread(DisputeService.open_dispute, order_id, BUYER_ID,
                              "ITEM_NOT_AS_DESCRIBED", "Not what I ordered", deadline),
            asyncio.to_thread(ReleaseScheduler.fire_due, deadline),
            return_exceptions=True,
        )
        dispute_result, fired = results
        assert not isinstance(fired, Exception), fired

        escrow = load_escrow(order_id)
        if isinstance(dispute_result, Exception):
            assert isinstance(dispute_result, AlreadyReleased), dispute_result
            assert escrow.release_status == "released"
            assert escrow.active_dispute_id is None
        else:
            assert escrow.active_dispute_id == dispute_result.id
            assert escrow.release_status == "pending"
            assert OutboxService.events_for(order_id, FUNDS_RELEASED) == []

    @pytest.mark.asyncio
    async def test_parallel_disputes_single_winner(self, make_order):
        order_id = make_order(OrderStatus.DELIVERED)

        results = await asyncio.gather(*[
            asyncio.to_thread(DisputeService.open_dispute, order_id, BUYER_ID, "OTHER", f"attempt {i}", T0)
            for i in range(4)
        ], return_exceptions=True)

        opened = [r for r in results if not isinstance(r, Exception)]
        refused = [r for r in results if isinstance(r, Exception)]
        assert len(opened) == 1
        assert all(isinstance(r, AlreadyDisputed) for r in refused), refused
        assert load_escrow(order_id).active_dispute_id == opened[0].id

    @pytest.mark.asyncio
    async def test_resolution_races_buyer_confirmation(self, make_order):
        """With the gate set, confirmation is refused; resolution is the only release"""
        order_id = make_order(OrderStatus.DELIVERED)
        dispute = DisputeService.open_dispute(order_id, BUYER_ID, "DAMAGED_ITEM", "Dented", T0)

        resolve, confirm = await asyncio.gather(
            asyncio.to_thread(DisputeService.resolve_dispute, dispute.id, "refund-to-buyer", "admin-1"),
            asyncio.to_thread(SettlementCoordinator.confirm_receipt, order_id, BUYER_ID),
            return_exceptions=True,
        )

        assert not isinstance(resolve, Exception), resolve
        assert not isinstance(confirm, Exception), confirm
        _, resolution = resolve
        assert resolution.outcome == SettlementOutcome.RELEASED
        assert confirm.outcome in (SettlementOutcome.REJECTED, SettlementOutcome.ALREADY_RELEASED)
        escrow = load_escrow(order_id)
        assert escrow.recipient == "buyer"
        assert len(OutboxService.events_for(order_id, FUNDS_RELEASED)) == 1
