"""
Release Scheduler
Durable auto-release deadline queue.

Each order has at most one ReleaseJob row. A job is fired at most once: the worker
flips it scheduled -> fired with a compare-and-swap in the same transaction as the
release attempt, so a crash before commit leaves the job scheduled for the next
poll and two workers never fire the same job.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from config import Config
from models import EscrowRecord, ReleaseJob, ReleaseJobStatus, ReleaseStatus, ReleaseVia
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import ensure_naive_datetime, resolve_now
from utils.settlement_audit_logger import SettlementAuditLogger

logger = logging.getLogger(__name__)


@dataclass
class FiredJob:
    """Outcome of one fired auto-release job"""
    order_id: str
    job_id: int
    outcome: str
    result: Optional[object] = None


class ReleaseScheduler:
    """Schedule, cancel and fire auto-release deadlines"""

    @staticmethod
    def schedule(order_id: str, release_date: datetime, session: Optional[Session] = None) -> ReleaseJob:
        """Register (or re-arm) the order's auto-release; the previous deadline is replaced"""
        release_date = ensure_naive_datetime(release_date)
        with atomic_transaction(session) as tx:
            job = tx.execute(
                select(ReleaseJob).where(ReleaseJob.order_id == order_id)
            ).scalar_one_or_none()
            if job is None:
                job = ReleaseJob(order_id=order_id, run_at=release_date,
                                 status=ReleaseJobStatus.SCHEDULED.value)
                tx.add(job)
            else:
                job.run_at = release_date
                job.status = ReleaseJobStatus.SCHEDULED.value
                job.fired_at = None
                job.outcome = None
            tx.flush()
            logger.info(f"⏰ RELEASE_SCHEDULED: order {order_id} at {release_date.isoformat()}")
            return job

    @staticmethod
    def cancel(order_id: str, session: Optional[Session] = None) -> bool:
        """Cancel a scheduled job; a no-op (False) if it already fired, was cancelled or never existed"""
        with atomic_transaction(session) as tx:
            result = tx.execute(
                update(ReleaseJob)
                .where(
                    ReleaseJob.order_id == order_id,
                    ReleaseJob.status == ReleaseJobStatus.SCHEDULED.value,
                )
                .values(status=ReleaseJobStatus.CANCELLED.value)
                .execution_options(synchronize_session="fetch")
            )
            cancelled = result.rowcount == 1
        if cancelled:
            logger.info(f"🛑 RELEASE_CANCELLED: order {order_id}")
        return cancelled

    @staticmethod
    def get_job(order_id: str, session: Optional[Session] = None) -> Optional[ReleaseJob]:
        with atomic_transaction(session) as tx:
            return tx.execute(
                select(ReleaseJob).where(ReleaseJob.order_id == order_id)
            ).scalar_one_or_none()

    @staticmethod
    def due_order_ids(now: Optional[datetime] = None, limit: Optional[int] = None,
                      session: Optional[Session] = None) -> List[str]:
        now = resolve_now(now)
        with atomic_transaction(session) as tx:
            stmt = (
                select(ReleaseJob.order_id)
                .where(
                    ReleaseJob.status == ReleaseJobStatus.SCHEDULED.value,
                    ReleaseJob.run_at <= now,
                )
                .order_by(ReleaseJob.run_at)
            )
            if limit:
                stmt = stmt.limit(limit)
            return list(tx.execute(stmt).scalars())

    @classmethod
    def fire(cls, order_id: str, now: Optional[datetime] = None) -> Optional[FiredJob]:
        """
        Fire one due job. Returns None if the job was not due, already fired or
        cancelled by the time this worker reached it.
        """
        from services.settlement_coordinator import SettlementCoordinator

        now = resolve_now(now)
        with atomic_transaction() as tx:
            job = tx.execute(
                select(ReleaseJob).where(ReleaseJob.order_id == order_id)
            ).scalar_one_or_none()
            if job is None:
                return None

            won = tx.execute(
                update(ReleaseJob)
                .where(
                    ReleaseJob.id == job.id,
                    ReleaseJob.status == ReleaseJobStatus.SCHEDULED.value,
                    ReleaseJob.run_at <= now,
                )
                .values(status=ReleaseJobStatus.FIRED.value, fired_at=now)
                .execution_options(synchronize_session=False)
            ).rowcount == 1
            if not won:
                logger.debug(f"RELEASE_JOB_SKIPPED: order {order_id} no longer scheduled/due")
                return None

            result = SettlementCoordinator.attempt_release(
                order_id, ReleaseVia.AUTO_RELEASE, now=now, session=tx
            )
            outcome = result.describe()
            tx.execute(
                update(ReleaseJob)
                .where(ReleaseJob.id == job.id)
                .values(outcome=outcome[:60])
                .execution_options(synchronize_session=False)
            )
            SettlementAuditLogger.record(
                tx,
                event_type="release_job_fired",
                entity_type="release_job",
                entity_id=str(job.id),
                new_state={"order_id": order_id, "outcome": outcome},
            )

        logger.info(f"🔔 RELEASE_JOB_FIRED: order {order_id} -> {outcome}")
        return FiredJob(order_id=order_id, job_id=job.id, outcome=outcome, result=result)

    @staticmethod
    def _record_fire_error(order_id: str, now: datetime, error: Exception) -> Optional[FiredJob]:
        """Consume a job whose release attempt blew up; the escrow stays pending for an admin"""
        outcome = f"error:{type(error).__name__}"[:60]
        try:
            with atomic_transaction() as tx:
                job = tx.execute(
                    select(ReleaseJob).where(ReleaseJob.order_id == order_id)
                ).scalar_one_or_none()
                if job is None:
                    return None
                consumed = tx.execute(
                    update(ReleaseJob)
                    .where(
                        ReleaseJob.id == job.id,
                        ReleaseJob.status == ReleaseJobStatus.SCHEDULED.value,
                    )
                    .values(status=ReleaseJobStatus.FIRED.value, fired_at=now, outcome=outcome)
                    .execution_options(synchronize_session=False)
                ).rowcount == 1
                if not consumed:
                    return None
                SettlementAuditLogger.record(
                    tx,
                    event_type="release_job_failed",
                    entity_type="release_job",
                    entity_id=str(job.id),
                    new_state={"order_id": order_id, "outcome": outcome, "error": str(error)[:500]},
                )
                job_id = job.id
        except Exception as e:
            logger.error(f"❌ RELEASE_JOB_ERROR_NOT_RECORDED: order {order_id}: {e}", exc_info=True)
            return None

        logger.error(f"🚨 RELEASE_JOB_ABANDONED: order {order_id} -> {outcome}, escrow needs admin action")
        return FiredJob(order_id=order_id, job_id=job_id, outcome=outcome)

    @classmethod
    def fire_due(cls, now: Optional[datetime] = None, limit: Optional[int] = None) -> List[FiredJob]:
        """
        Fire every due job, each in its own transaction.

        A rejected attempt (dispute open, order not eligible) still consumes the job.
        An unexpected error rolls back that release attempt; the job is then marked
        fired with an error outcome in its own transaction and the batch continues.
        """
        now = resolve_now(now)
        limit = limit or Config.AUTO_RELEASE_BATCH_SIZE
        fired = []
        for order_id in cls.due_order_ids(now=now, limit=limit):
            try:
                job = cls.fire(order_id, now=now)
            except Exception as e:
                logger.error(f"❌ RELEASE_JOB_ERROR: order {order_id}: {e}", exc_info=True)
                job = cls._record_fire_error(order_id, now, e)
            if job is not None:
                fired.append(job)
        if fired:
            logger.info(f"📦 AUTO_RELEASE_BATCH: fired {len(fired)} job(s)")
        return fired

    @classmethod
    def reconcile(cls, now: Optional[datetime] = None) -> List[FiredJob]:
        """
        Startup recovery: re-create jobs for pending, undisputed escrows that have a
        release date but no job row, then fire everything that is due.
        """
        now = resolve_now(now)
        with atomic_transaction() as tx:
            orphans = tx.execute(
                select(EscrowRecord.order_id, EscrowRecord.release_date)
                .outerjoin(ReleaseJob, ReleaseJob.order_id == EscrowRecord.order_id)
                .where(
                    EscrowRecord.release_status == ReleaseStatus.PENDING.value,
                    EscrowRecord.release_date.is_not(None),
                    EscrowRecord.active_dispute_id.is_(None),
                    ReleaseJob.id.is_(None),
                )
            ).all()
            for order_id, release_date in orphans:
                cls.schedule(order_id, release_date, session=tx)

        if orphans:
            logger.warning(f"⚠️ RELEASE_RECONCILE: re-created {len(orphans)} missing job(s)")
        return cls.fire_due(now=now)
