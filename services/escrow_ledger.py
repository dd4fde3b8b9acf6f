"""
Escrow Ledger
Durable record of the funds held for each order.

The ledger is append-mostly: an escrow row is created once at payment capture and
its release_status leaves 'pending' exactly once. mark_released and mark_failed are
called only by the settlement coordinator, after it has won the per-order claim.
"""

import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import EscrowRecord, Order, Recipient, ReleaseStatus, ReleaseVia
from services.outbox_service import OutboxService, FUNDS_RELEASED, ESCROW_FAILED
from utils.atomic_transactions import atomic_transaction, apply_lock_timeout
from utils.datetime_helpers import ensure_naive_datetime, resolve_now
from utils.order_state_machine import OrderStateMachine
from utils.settlement_audit_logger import SettlementAuditLogger
from utils.settlement_exceptions import (
    DuplicateEscrow,
    IllegalTransition,
    InvalidTransition,
    OrderNotFound,
)

logger = logging.getLogger(__name__)


class EscrowLedger:
    """Create, claim and settle escrow records"""

    @classmethod
    def create_escrow(
        cls,
        order_id: str,
        amount,
        currency: str,
        payment_reference: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> EscrowRecord:
        """
        Record captured buyer funds for an order.

        Raises:
            DuplicateEscrow: the order already has an escrow record
            OrderNotFound: unknown order
            IllegalTransition: order is cancelled or already shipped
            ValueError: non-positive amount or currency mismatch
        """
        try:
            amount = Decimal(str(amount))
        except InvalidOperation:
            raise ValueError(f"Invalid escrow amount: {amount!r}")
        if amount <= 0:
            raise ValueError("Escrow amount must be positive")
        currency = (currency or "").upper()

        with atomic_transaction(session) as tx:
            order = tx.get(Order, order_id)
            if order is None:
                raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)

            if cls.get_by_order(order_id, session=tx) is not None:
                logger.info(f"🔁 DUPLICATE_ESCROW: order {order_id} already has an escrow record")
                raise DuplicateEscrow(f"Escrow already exists for order {order_id}", order_id=order_id)

            if not OrderStateMachine.is_cancellable(order.status):
                raise IllegalTransition(
                    f"Cannot capture payment for order {order_id} in status {order.status}",
                    order_id=order_id,
                    from_status=order.status,
                )
            if currency != order.currency.upper():
                raise ValueError(
                    f"Escrow currency {currency} does not match order currency {order.currency}"
                )

            escrow = EscrowRecord(
                order_id=order_id,
                amount_held=amount,
                currency=currency,
                release_status=ReleaseStatus.PENDING.value,
            )
            tx.add(escrow)
            if payment_reference:
                order.payment_reference = payment_reference
            try:
                tx.flush()
            except IntegrityError as e:
                raise DuplicateEscrow(
                    f"Escrow already exists for order {order_id}", order_id=order_id
                ) from e

            SettlementAuditLogger.record(
                tx,
                event_type="escrow_created",
                entity_type="escrow",
                entity_id=escrow.id,
                new_state={"order_id": order_id, "amount_held": str(amount), "currency": currency},
            )
            logger.info(f"🔒 ESCROW_CREATED: order {order_id} holding {amount} {currency}")
            return escrow

    @staticmethod
    def get_by_order(order_id: str, session: Session, refresh: bool = False) -> Optional[EscrowRecord]:
        stmt = select(EscrowRecord).where(EscrowRecord.order_id == order_id)
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        return session.execute(stmt).scalar_one_or_none()

    @staticmethod
    def claim(session: Session, order_id: str) -> bool:
        """
        Per-order compare-and-swap on a pending escrow.

        Bumps the row version only while release_status is still 'pending'. The UPDATE
        holds the row's write lock until the caller's transaction ends, so a concurrent
        claimer blocks, then re-evaluates the predicate against the committed row and
        gets False once the first claimer has settled the escrow.
        """
        apply_lock_timeout(session)
        result = session.execute(
            update(EscrowRecord)
            .where(
                EscrowRecord.order_id == order_id,
                EscrowRecord.release_status == ReleaseStatus.PENDING.value,
            )
            .values(version=EscrowRecord.version + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    def _guard_pending(escrow: EscrowRecord, action: str):
        if escrow.release_status != ReleaseStatus.PENDING.value:
            logger.error(
                f"🚨 LEDGER_GUARD_VIOLATION: {action} on escrow {escrow.id} (order {escrow.order_id}) "
                f"with release_status={escrow.release_status}"
            )
            raise InvalidTransition(
                f"Escrow {escrow.id} is {escrow.release_status}, cannot {action}",
                order_id=escrow.order_id,
            )

    @classmethod
    def mark_released(
        cls,
        session: Session,
        escrow: EscrowRecord,
        released_to,
        recipient=Recipient.SELLER,
        reason: Optional[str] = None,
        payout_reference: Optional[str] = None,
        allocations: Optional[Dict[str, Decimal]] = None,
        now: Optional[datetime] = None,
    ) -> EscrowRecord:
        """Settle the escrow and queue the FundsReleased event in the same transaction"""
        cls._guard_pending(escrow, "release")
        released_to = ReleaseVia(released_to)
        recipient = Recipient(recipient)
        now = resolve_now(now)

        if recipient != Recipient.SELLER and not reason:
            reason = f"Funds released to {recipient.value} via {released_to.value}"

        allocations = allocations or {recipient.value: escrow.amount_held}
        escrow.release_status = ReleaseStatus.RELEASED.value
        escrow.released_at = now
        escrow.released_to = released_to.value
        escrow.recipient = recipient.value
        escrow.release_reason = reason
        escrow.payout_reference = payout_reference
        escrow.allocations = {party: str(value) for party, value in allocations.items()}
        session.flush()

        OutboxService.emit(session, FUNDS_RELEASED, escrow.order_id, {
            "order_id": escrow.order_id,
            "escrow_id": escrow.id,
            "amount": str(escrow.amount_held),
            "currency": escrow.currency,
            "recipient": recipient.value,
            "allocations": escrow.allocations,
            "released_to": released_to.value,
            "payout_reference": payout_reference,
        })
        SettlementAuditLogger.escrow_settled(session, escrow)
        logger.info(
            f"✅ ESCROW_RELEASED: order {escrow.order_id} {escrow.amount_held} {escrow.currency} "
            f"to {recipient.value} via {released_to.value}"
        )
        return escrow

    @classmethod
    def mark_failed(
        cls,
        session: Session,
        escrow: EscrowRecord,
        reason: str,
        released_to=None,
        payout_reference: Optional[str] = None,
        paid_allocations: Optional[Dict[str, Decimal]] = None,
        now: Optional[datetime] = None,
    ) -> EscrowRecord:
        """
        Freeze the escrow for manual admin action.

        paid_allocations records payout legs that already went through, so whoever
        settles the escrow by hand only pays what is still owed.
        """
        if not reason:
            raise ValueError("A reason is required to fail an escrow")
        cls._guard_pending(escrow, "fail")

        escrow.release_status = ReleaseStatus.FAILED.value
        escrow.release_reason = reason
        if released_to is not None:
            escrow.released_to = ReleaseVia(released_to).value
        if paid_allocations:
            escrow.payout_reference = payout_reference
            escrow.allocations = {party: str(value) for party, value in paid_allocations.items()}
        escrow.updated_at = resolve_now(now)
        session.flush()

        OutboxService.emit(session, ESCROW_FAILED, escrow.order_id, {
            "order_id": escrow.order_id,
            "escrow_id": escrow.id,
            "amount": str(escrow.amount_held),
            "currency": escrow.currency,
            "reason": reason,
            "payout_reference": escrow.payout_reference,
            "paid_allocations": escrow.allocations or {},
        })
        SettlementAuditLogger.escrow_settled(session, escrow)
        logger.error(f"❌ ESCROW_FAILED: order {escrow.order_id} - {reason}")
        if paid_allocations:
            logger.error(f"🚨 ESCROW_PARTIALLY_PAID: order {escrow.order_id} already paid {escrow.allocations}")
        return escrow

    @staticmethod
    def set_release_date(session: Session, escrow: EscrowRecord, release_date: datetime) -> EscrowRecord:
        escrow.release_date = ensure_naive_datetime(release_date)
        session.flush()
        logger.info(f"⏰ RELEASE_DATE_SET: order {escrow.order_id} releases at {escrow.release_date.isoformat()}")
        return escrow

    @staticmethod
    def order_is_settled(escrow: Optional[EscrowRecord]) -> bool:
        return escrow is not None and escrow.release_status != ReleaseStatus.PENDING.value
