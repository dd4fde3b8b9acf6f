"""
Dispute Gate
Serializes dispute existence with release eligibility.

The gate is EscrowRecord.active_dispute_id. It is only set or cleared after the
caller has claimed the escrow row, so opening a dispute and firing a release cannot
interleave: whichever claims first wins, and a dispute opened after the release
committed fails with AlreadyReleased.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional
from sqlalchemy.orm import Session

from models import Dispute, DisputeStatus, DisputeVerdict, EscrowRecord, ReleaseVia
from services.escrow_ledger import EscrowLedger
from services.release_scheduler import ReleaseScheduler
from services.settlement_coordinator import SettlementCoordinator, SettlementResult
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import resolve_now
from utils.settlement_audit_logger import SettlementAuditLogger
from utils.settlement_exceptions import (
    AlreadyDisputed, AlreadyReleased, DisputeNotFound, EscrowNotFound
)

logger = logging.getLogger(__name__)


class DisputeGate:
    """Open, close and withdraw the per-order dispute gate"""

    @staticmethod
    def is_open(order_id: str, session: Optional[Session] = None) -> bool:
        with atomic_transaction(session) as tx:
            escrow = EscrowLedger.get_by_order(order_id, tx, refresh=True)
            return escrow is not None and escrow.active_dispute_id is not None

    @staticmethod
    def _claim_escrow(tx: Session, order_id: str) -> EscrowRecord:
        claimed = EscrowLedger.claim(tx, order_id)
        escrow = EscrowLedger.get_by_order(order_id, tx, refresh=True)
        if escrow is None:
            raise EscrowNotFound(f"No escrow for order {order_id}", order_id=order_id)
        if not claimed:
            raise AlreadyReleased(
                f"Escrow for order {order_id} is already {escrow.release_status}",
                order_id=order_id,
            )
        return escrow

    @classmethod
    def open(cls, order_id: str, dispute_id: str, session: Optional[Session] = None) -> EscrowRecord:
        """
        Close the gate on releases for this order.

        Raises:
            AlreadyReleased: the escrow left pending before the gate could be set
            AlreadyDisputed: another dispute holds the gate
        """
        with atomic_transaction(session) as tx:
            escrow = cls._claim_escrow(tx, order_id)
            if escrow.active_dispute_id is not None:
                logger.info(
                    f"🔁 ALREADY_DISPUTED: order {order_id} gate held by dispute {escrow.active_dispute_id}"
                )
                raise AlreadyDisputed(
                    f"Order {order_id} already has an open dispute", order_id=order_id
                )

            escrow.active_dispute_id = dispute_id
            tx.flush()
            ReleaseScheduler.cancel(order_id, session=tx)
            logger.info(f"🔐 DISPUTE_GATE_OPENED: order {order_id} dispute {dispute_id}")
            return escrow

    @classmethod
    def close(
        cls,
        order_id: str,
        verdict,
        resolution: Optional[str] = None,
        refund_amount=None,
        admin_id: Optional[str] = None,
        now: Optional[datetime] = None,
        session: Optional[Session] = None,
    ) -> SettlementResult:
        """Resolve the open dispute and release the escrow according to the verdict"""
        verdict = DisputeVerdict(verdict)
        now = resolve_now(now)

        with atomic_transaction(session) as tx:
            escrow = cls._claim_escrow(tx, order_id)
            dispute = cls._active_dispute(tx, escrow)

            if verdict == DisputeVerdict.REFUND_TO_BUYER:
                refund_amount = escrow.amount_held
            elif verdict == DisputeVerdict.RELEASE_TO_SELLER:
                refund_amount = None
            # raises ValueError on a bad split before anything is written
            SettlementCoordinator.allocations_for(escrow, verdict.recipient, refund_amount)

            dispute.status = DisputeStatus.RESOLVED.value
            dispute.verdict = verdict.value
            dispute.resolution = resolution
            dispute.refund_amount = Decimal(str(refund_amount)) if refund_amount is not None else None
            dispute.resolved_by = admin_id
            dispute.resolved_at = now
            escrow.active_dispute_id = None
            tx.flush()
            SettlementAuditLogger.dispute_event(
                tx, dispute, "dispute_resolved", actor_id=admin_id, description=resolution
            )
            logger.info(f"🔓 DISPUTE_GATE_CLOSED: order {order_id} verdict {verdict.value}")

            return SettlementCoordinator.attempt_release(
                order_id,
                ReleaseVia.DISPUTE_RESOLUTION,
                recipient=verdict.recipient,
                reason=resolution or f"Dispute resolved: {verdict.value}",
                refund_amount=refund_amount,
                now=now,
                session=tx,
            )

    @classmethod
    def withdraw(
        cls,
        order_id: str,
        reason: Optional[str] = None,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
        session: Optional[Session] = None,
    ) -> Dispute:
        """Buyer cancels the dispute; the auto-release is re-armed at max(release_date, now)"""
        now = resolve_now(now)

        with atomic_transaction(session) as tx:
            escrow = cls._claim_escrow(tx, order_id)
            dispute = cls._active_dispute(tx, escrow)

            dispute.status = DisputeStatus.CANCELLED.value
            dispute.resolution = reason or "Withdrawn by buyer"
            dispute.resolved_by = actor_id
            dispute.resolved_at = now
            escrow.active_dispute_id = None
            tx.flush()
            SettlementAuditLogger.dispute_event(
                tx, dispute, "dispute_withdrawn", actor_id=actor_id, description=reason
            )

            if escrow.release_date is not None:
                ReleaseScheduler.schedule(order_id, max(escrow.release_date, now), session=tx)
            logger.info(f"🔓 DISPUTE_WITHDRAWN: order {order_id} dispute {dispute.id}")
            return dispute

    @staticmethod
    def _active_dispute(tx: Session, escrow: EscrowRecord) -> Dispute:
        if escrow.active_dispute_id is None:
            raise DisputeNotFound(f"No open dispute on order {escrow.order_id}", order_id=escrow.order_id)
        dispute = tx.get(Dispute, escrow.active_dispute_id)
        if dispute is None:
            raise DisputeNotFound(
                f"Dispute {escrow.active_dispute_id} not found", order_id=escrow.order_id
            )
        return dispute
