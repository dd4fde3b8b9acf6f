"""
Release scheduler tests: the durable deadline queue, at-most-once firing,
per-job error isolation and startup reconciliation.
"""

from sqlalchemy import delete, select

from conftest import BUYER_ID, T0, days, load_escrow, load_order
from database import managed_session
from models import AuditLog, OrderStatus, ReleaseJob
from services.dispute_service import DisputeService
from services.payout_gateway import PayoutError, PayoutGateway, set_payout_gateway
from services.release_scheduler import ReleaseScheduler
from services.settlement_coordinator import SettlementCoordinator


class FailingGateway(PayoutGateway):
    name = "failing"

    def pay_out(self, order, escrow, allocations, reference):
        raise PayoutError("Seller payment account not configured", provider=self.name)


class TestScheduleAndCancel:

    def test_schedule_is_idempotent_per_order(self, make_order):
        """Re-scheduling replaces the deadline instead of adding a second job"""
        order_id = make_order(OrderStatus.DELIVERED)

        ReleaseScheduler.schedule(order_id, T0 + days(10))

        with managed_session() as session:
            jobs = session.execute(select(ReleaseJob).where(ReleaseJob.order_id == order_id)).scalars().all()
        assert len(jobs) == 1
        assert jobs[0].run_at == T0 + days(10)

    def test_cancel(self, make_order):
        order_id = make_order(OrderStatus.DELIVERED)

        assert ReleaseScheduler.cancel(order_id) is True
        assert ReleaseScheduler.cancel(order_id) is False, "second cancel should be a no-op"
        assert ReleaseScheduler.get_job(order_id).status == "cancelled"

    def test_cancel_unknown_order_is_noop(self):
        assert ReleaseScheduler.cancel("never-scheduled") is False

    def test_due_order_ids(self, make_order):
        early = make_order(OrderStatus.DELIVERED, now=T0)
        late = make_order(OrderStatus.DELIVERED, now=T0 + days(2))

        assert ReleaseScheduler.due_order_ids(now=T0 + days(3)) == []
        assert ReleaseScheduler.due_order_ids(now=T0 + days(4)) == [early]
        assert ReleaseScheduler.due_order_ids(now=T0 + days(7)) == [early, late]


class TestFiring:

    def test_not_due_does_nothing(self, make_order):
        order_id = make_order(OrderStatus.DELIVERED)

        assert ReleaseScheduler.fire_due(now=T0 + days(3)) == []
        assert load_escrow(order_id).release_status == "pending"

    def test_due_job_releases_to_seller(self, make_order):
        order_id = make_order(OrderStatus.DELIVERED)

        fired = ReleaseScheduler.fire_due(now=T0 + days(4))

        assert [f.order_id for f in fired] == [order_id]
        assert fired[0].outcome == "released"
        escrow = load_escrow(order_id)
        assert escrow.release_status == "released"
        assert escrow.released_to == "auto_release"
        assert escrow.released_at == T0 + days(4)
        assert load_order(order_id).status == "COMPLETED"

        job = ReleaseScheduler.get_job(order_id)
        assert job.status == "fired"
        assert job.outcome == "released"

    def test_job_fires_at_most_once(self, make_order):
        order_id = make_order(OrderStatus.DELIVERED)

        assert ReleaseScheduler.fire(order_id, now=T0 + days(5)) is not None
        assert ReleaseScheduler.fire(order_id, now=T0 + days(6)) is None
        assert ReleaseScheduler.fire_due(now=T0 + days(7)) == []

    def test_fire_before_deadline_is_refused(self, make_order):
        order_id = make_order(OrderStatus.DELIVERED)
        assert ReleaseScheduler.fire(order_id, now=T0 + days(1)) is None
        assert ReleaseScheduler.get_job(order_id).status == "scheduled"

    def test_buyer_confirmation_cancels_job(self, make_order):
        order_id = make_order(OrderStatus.DELIVERED)

        result = SettlementCoordinator.confirm_receipt(order_id, BUYER_ID, now=T0 + days(1))

        assert result.ok
        assert ReleaseScheduler.get_job(order_id).status == "cancelled"
        assert ReleaseScheduler.fire_due(now=T0 + days(5)) == []

    def test_dispute_cancels_job(self, make_order):
        order_id = make_order(OrderStatus.DELIVERED)
        DisputeService.open_dispute(order_id, BUYER_ID, "DAMAGED_ITEM", "Screen cracked", now=T0 + days(1))

        assert ReleaseScheduler.get_job(order_id).status == "cancelled"
        assert ReleaseScheduler.fire_due(now=T0 + days(5)) == []
        assert load_escrow(order_id).release_status == "pending"

    def test_rejected_attempt_consumes_job(self, make_order):
        """A payout failure is recorded on the job and never retried automatically"""
        order_id = make_order(OrderStatus.DELIVERED)
        set_payout_gateway(FailingGateway())

        fired = ReleaseScheduler.fire_due(now=T0 + days(4))

        assert fired[0].outcome == "rejected:payout_failed"
        assert load_escrow(order_id).release_status == "failed"
        assert load_order(order_id).status == "DELIVERED"
        assert ReleaseScheduler.get_job(order_id).status == "fired"
        assert ReleaseScheduler.fire_due(now=T0 + days(8)) == []

    def test_error_consumes_job_and_batch_continues(self, make_order, monkeypatch):
        """A release attempt that raises is recorded once and never refired"""
        broken = make_order(OrderStatus.DELIVERED, now=T0)
        healthy = make_order(OrderStatus.DELIVERED, now=T0 + days(1))
        original = SettlementCoordinator.attempt_release

        def flaky_attempt_release(order_id, *args, **kwargs):
            if order_id == broken:
                raise RuntimeError("database went away")
            return original(order_id, *args, **kwargs)

        monkeypatch.setattr(SettlementCoordinator, "attempt_release", flaky_attempt_release)

        fired = ReleaseScheduler.fire_due(now=T0 + days(6))

        assert [(f.order_id, f.outcome) for f in fired] == [
            (broken, "error:RuntimeError"),
            (healthy, "released"),
        ]
        job = ReleaseScheduler.get_job(broken)
        assert job.status == "fired"
        assert job.outcome == "error:RuntimeError"
        assert load_escrow(broken).release_status == "pending"

        with managed_session() as session:
            entries = session.execute(
                select(AuditLog).where(AuditLog.event_type == "release_job_failed")
            ).scalars().all()
        assert [e.new_state["order_id"] for e in entries] == [broken]

        monkeypatch.setattr(SettlementCoordinator, "attempt_release", original)
        assert ReleaseScheduler.fire_due(now=T0 + days(7)) == []

    def test_firing_is_audited(self, make_order):
        order_id = make_order(OrderStatus.DELIVERED)
        ReleaseScheduler.fire_due(now=T0 + days(4))

        with managed_session() as session:
            entries = session.execute(
                select(AuditLog).where(AuditLog.event_type == "release_job_fired")
            ).scalars().all()
        assert len(entries) == 1
        assert entries[0].new_state == {"order_id": order_id, "outcome": "released"}


class TestReconcile:
    """Deadlines survive restarts because they live in the database"""

    def test_overdue_job_fires_on_reconcile(self, make_order):
        order_id = make_order(OrderStatus.DELIVERED)

        fired = ReleaseScheduler.reconcile(now=T0 + days(9))

        assert [f.order_id for f in fired] == [order_id]
        assert load_escrow(order_id).released_to == "auto_release"

    def test_missing_job_row_is_recreated(self, make_order):
        order_id = make_order(OrderStatus.DELIVERED)
        with managed_session() as session:
            session.execute(delete(ReleaseJob).where(ReleaseJob.order_id == order_id))

        fired = ReleaseScheduler.reconcile(now=T0 + days(1))

        assert fired == []
        job = ReleaseScheduler.get_job(order_id)
        assert job is not None and job.status == "scheduled"
        assert job.run_at == T0 + days(4)

    def test_disputed_escrow_is_not_rearmed(self, make_order):
        order_id = make_order(OrderStatus.DELIVERED)
        DisputeService.open_dispute(order_id, BUYER_ID, "ITEM_NOT_AS_DESCRIBED", "Wrong colour",
                                    now=T0 + days(1))
        with managed_session() as session:
            session.execute(delete(ReleaseJob).where(ReleaseJob.order_id == order_id))

        assert ReleaseScheduler.reconcile(now=T0 + days(9)) == []
        assert ReleaseScheduler.get_job(order_id) is None
        assert load_escrow(order_id).release_status == "pending"
