"""
Settlement Coordinator
The single authority that decides and commits an escrow release.

Buyer confirmation, the auto-release scheduler and dispute resolution all race
through attempt_release. The winner is whoever claims the escrow row first
(EscrowLedger.claim); every later caller sees release_status != pending and gets
ALREADY_RELEASED, which is a normal outcome, not an error.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional
from sqlalchemy import select
from sqlalchemy.orm import Session

from models import (
    Actor, EscrowRecord, Order, OrderStatus, Recipient, ReleaseStatus, ReleaseVia
)
from services.escrow_ledger import EscrowLedger
from services.payout_gateway import PayoutError, get_payout_gateway, new_payout_reference
from services.release_scheduler import ReleaseScheduler
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import resolve_now
from utils.order_state_machine import OrderStateMachine
from utils.settlement_exceptions import EscrowNotFound, OrderNotFound

logger = logging.getLogger(__name__)


class SettlementOutcome(Enum):
    RELEASED = "released"
    ALREADY_RELEASED = "already_released"
    REJECTED = "rejected"


class RejectionReason(Enum):
    DISPUTE_OPEN = "dispute_open"
    NOT_SHIPPED_OR_DELIVERED = "not_shipped_or_delivered"
    NOT_ORDER_BUYER = "not_order_buyer"
    ORDER_NOT_ELIGIBLE = "order_not_eligible"
    ESCROW_FAILED = "escrow_failed"
    PAYOUT_FAILED = "payout_failed"
    INVALID_SPLIT = "invalid_split"


@dataclass
class SettlementResult:
    """Result of a release-triggering call"""
    outcome: SettlementOutcome
    order_id: str
    escrow_id: Optional[str] = None
    released_to: Optional[str] = None
    recipient: Optional[str] = None
    reason: Optional[RejectionReason] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        """Released now or earlier; callers must not treat ALREADY_RELEASED as a failure"""
        return self.outcome in (SettlementOutcome.RELEASED, SettlementOutcome.ALREADY_RELEASED)

    def describe(self) -> str:
        if self.reason is not None:
            return f"{self.outcome.value}:{self.reason.value}"
        return self.outcome.value

    def to_dict(self) -> Dict:
        return {
            "outcome": self.outcome.value,
            "orderId": self.order_id,
            "escrowId": self.escrow_id,
            "releasedTo": self.released_to,
            "recipient": self.recipient,
            "reason": self.reason.value if self.reason else None,
            "detail": self.detail,
        }


def _rejected(order_id, escrow, reason: RejectionReason, detail: str) -> SettlementResult:
    logger.info(f"🚫 RELEASE_REJECTED: order {order_id} {reason.value} - {detail}")
    return SettlementResult(
        outcome=SettlementOutcome.REJECTED,
        order_id=order_id,
        escrow_id=escrow.id if escrow is not None else None,
        reason=reason,
        detail=detail,
    )


def _already_settled(order_id, escrow: EscrowRecord) -> SettlementResult:
    if escrow.release_status == ReleaseStatus.FAILED.value:
        return _rejected(
            order_id, escrow, RejectionReason.ESCROW_FAILED,
            f"Escrow failed and awaits admin action: {escrow.release_reason}",
        )
    logger.info(
        f"🔁 ALREADY_RELEASED: order {order_id} was released via {escrow.released_to}"
    )
    return SettlementResult(
        outcome=SettlementOutcome.ALREADY_RELEASED,
        order_id=order_id,
        escrow_id=escrow.id,
        released_to=escrow.released_to,
        recipient=escrow.recipient,
    )


class SettlementCoordinator:
    """Serializes every release trigger into one winner per order"""

    @staticmethod
    def allocations_for(escrow: EscrowRecord, recipient: Recipient,
                        refund_amount: Optional[Decimal] = None) -> Dict[str, Decimal]:
        """Split the held amount between seller and buyer"""
        held = Decimal(escrow.amount_held)
        if recipient == Recipient.SELLER:
            return {"seller": held}
        if recipient == Recipient.BUYER:
            return {"buyer": held}

        refund = Decimal(str(refund_amount)) if refund_amount is not None else None
        if refund is None or refund <= 0 or refund >= held:
            raise ValueError(
                f"Split refund must be between 0 and {held} exclusive, got {refund_amount}"
            )
        return {"seller": held - refund, "buyer": refund}

    @classmethod
    def confirm_receipt(cls, order_id: str, buyer_id: str, now: Optional[datetime] = None,
                        session: Optional[Session] = None) -> SettlementResult:
        """Buyer confirms the goods arrived; releases to the seller"""
        with atomic_transaction(session) as tx:
            order = tx.get(Order, order_id)
            if order is None:
                raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)
            escrow = EscrowLedger.get_by_order(order_id, tx, refresh=True)
            if escrow is None:
                raise EscrowNotFound(f"No escrow for order {order_id}", order_id=order_id)

            if EscrowLedger.order_is_settled(escrow):
                return _already_settled(order_id, escrow)
            if str(order.buyer_id) != str(buyer_id):
                return _rejected(order_id, escrow, RejectionReason.NOT_ORDER_BUYER,
                                 "Only the order's buyer can confirm receipt")
            if not OrderStateMachine.awaiting_receipt(order.status):
                return _rejected(order_id, escrow, RejectionReason.NOT_SHIPPED_OR_DELIVERED,
                                 f"Order is {order.status}; receipt can be confirmed once shipped")
            if escrow.active_dispute_id is not None:
                return _rejected(order_id, escrow, RejectionReason.DISPUTE_OPEN,
                                 "A dispute is open on this order")

            return cls.attempt_release(order_id, ReleaseVia.BUYER_CONFIRMATION, now=now, session=tx)

    @classmethod
    def attempt_release(
        cls,
        order_id: str,
        via,
        recipient=Recipient.SELLER,
        reason: Optional[str] = None,
        refund_amount=None,
        now: Optional[datetime] = None,
        session: Optional[Session] = None,
    ) -> SettlementResult:
        """
        The critical section.

        Claims the escrow row, re-checks the dispute gate and order eligibility under
        the claim, pays out, settles the ledger, completes the order and cancels any
        scheduled auto-release. A payout failure marks the escrow failed and leaves
        the order where it was.
        """
        from services.order_state_service import OrderStateService

        via = ReleaseVia(via)
        recipient = Recipient(recipient)
        now = resolve_now(now)

        with atomic_transaction(session) as tx:
            claimed = EscrowLedger.claim(tx, order_id)
            escrow = EscrowLedger.get_by_order(order_id, tx, refresh=True)
            if escrow is None:
                raise EscrowNotFound(f"No escrow for order {order_id}", order_id=order_id)
            if not claimed:
                return _already_settled(order_id, escrow)

            if escrow.active_dispute_id is not None and via != ReleaseVia.DISPUTE_RESOLUTION:
                return _rejected(order_id, escrow, RejectionReason.DISPUTE_OPEN,
                                 f"Dispute {escrow.active_dispute_id} is open; {via.value} blocked")

            order = tx.execute(
                select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
            ).scalar_one_or_none()
            if order is None:
                raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)

            if via == ReleaseVia.ORDER_CANCELLATION:
                eligible = order.status == OrderStatus.CANCELLED.value
            else:
                eligible = OrderStateMachine.awaiting_receipt(order.status)
            if not eligible:
                return _rejected(order_id, escrow, RejectionReason.ORDER_NOT_ELIGIBLE,
                                 f"Order is {order.status}, not eligible for {via.value}")

            try:
                allocations = cls.allocations_for(escrow, recipient, refund_amount)
            except ValueError as e:
                return _rejected(order_id, escrow, RejectionReason.INVALID_SPLIT, str(e))

            gateway = get_payout_gateway()
            try:
                payout_reference = gateway.pay_out(
                    order, escrow, allocations, new_payout_reference(order_id)
                )
            except PayoutError as e:
                logger.error(f"❌ PAYOUT_FAILED: order {order_id} via {gateway.name}: {e}")
                EscrowLedger.mark_failed(
                    tx, escrow, f"Payout failed: {e}",
                    released_to=via,
                    payout_reference=e.payout_reference,
                    paid_allocations=e.paid,
                    now=now,
                )
                ReleaseScheduler.cancel(order_id, session=tx)
                return _rejected(order_id, escrow, RejectionReason.PAYOUT_FAILED, str(e))

            EscrowLedger.mark_released(
                tx, escrow, via, recipient,
                reason=reason,
                payout_reference=payout_reference,
                allocations=allocations,
                now=now,
            )

            if via != ReleaseVia.ORDER_CANCELLATION:
                if order.status == OrderStatus.SHIPPED.value:
                    OrderStateService.transition(
                        order_id, OrderStatus.SHIPPED, OrderStatus.DELIVERED, Actor.SYSTEM,
                        reason=f"Delivered on {via.value}", now=now, session=tx,
                    )
                OrderStateService.transition(
                    order_id, OrderStatus.DELIVERED, OrderStatus.COMPLETED, Actor.SYSTEM,
                    reason=f"Escrow released via {via.value}", now=now, session=tx,
                )
            ReleaseScheduler.cancel(order_id, session=tx)

            logger.info(
                f"🏁 RELEASE_COMMITTED: order {order_id} via {via.value} to {recipient.value}"
            )
            return SettlementResult(
                outcome=SettlementOutcome.RELEASED,
                order_id=order_id,
                escrow_id=escrow.id,
                released_to=via.value,
                recipient=recipient.value,
            )
