"""
Escrow Query Service
Read models for buyer, seller and admin clients
"""

import logging
from typing import Dict, List, Optional, Tuple
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models import (
    Dispute, DisputeStatus, EscrowRecord, Order, ReleaseStatus
)
from services.escrow_ledger import EscrowLedger
from utils.atomic_transactions import atomic_transaction
from utils.order_state_machine import OrderStateMachine
from utils.settlement_exceptions import EscrowNotFound, NotAuthorized, OrderNotFound

logger = logging.getLogger(__name__)


class EscrowQueryService:

    @staticmethod
    def escrow_view(order_id: str, viewer_id: str, is_admin: bool = False,
                    session: Optional[Session] = None) -> Dict:
        """
        Escrow status for an order.

        canConfirmReceipt is true only for the buyer, while the escrow is pending,
        no dispute is open and the order is shipped or delivered.
        """
        with atomic_transaction(session) as tx:
            order = tx.get(Order, order_id)
            if order is None:
                raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)
            is_buyer = str(viewer_id) == str(order.buyer_id)
            if not (is_admin or is_buyer or str(viewer_id) == str(order.store_id)):
                raise NotAuthorized(f"User {viewer_id} cannot view order {order_id}", order_id=order_id)

            escrow = EscrowLedger.get_by_order(order_id, tx, refresh=True)
            if escrow is None:
                raise EscrowNotFound(f"No escrow for order {order_id}", order_id=order_id)

            can_confirm = (
                is_buyer
                and escrow.is_pending
                and escrow.active_dispute_id is None
                and OrderStateMachine.awaiting_receipt(order.status)
            )
            return {
                "escrow": escrow.to_dict(),
                "orderStatus": order.status,
                "canConfirmReceipt": can_confirm,
            }

    @staticmethod
    def pending_escrows(page: int = 1, limit: int = 20,
                        session: Optional[Session] = None) -> Tuple[List[EscrowRecord], int]:
        """Pending escrows, soonest release first (escrows without a date last)"""
        page = max(page, 1)
        limit = max(1, min(limit, 100))
        with atomic_transaction(session) as tx:
            base = select(EscrowRecord).where(EscrowRecord.release_status == ReleaseStatus.PENDING.value)
            total = tx.execute(select(func.count()).select_from(base.subquery())).scalar_one()
            items = list(tx.execute(
                base.order_by(
                    EscrowRecord.release_date.is_(None),
                    EscrowRecord.release_date,
                    EscrowRecord.created_at,
                )
                .offset((page - 1) * limit)
                .limit(limit)
            ).scalars())
            return items, total

    @staticmethod
    def failed_escrows(session: Optional[Session] = None) -> List[EscrowRecord]:
        """Escrows frozen by a payout failure, awaiting admin action"""
        with atomic_transaction(session) as tx:
            return list(tx.execute(
                select(EscrowRecord)
                .where(EscrowRecord.release_status == ReleaseStatus.FAILED.value)
                .order_by(EscrowRecord.updated_at.desc())
            ).scalars())

    @staticmethod
    def settlement_summary(session: Optional[Session] = None) -> Dict:
        with atomic_transaction(session) as tx:
            rows = tx.execute(
                select(
                    EscrowRecord.release_status,
                    func.count(EscrowRecord.id),
                    func.coalesce(func.sum(EscrowRecord.amount_held), 0),
                ).group_by(EscrowRecord.release_status)
            ).all()
            by_status = {status.value: {"count": 0, "amount": "0"} for status in ReleaseStatus}
            for status, count, amount in rows:
                by_status[status] = {"count": count, "amount": str(amount)}

            by_via = dict(tx.execute(
                select(EscrowRecord.released_to, func.count(EscrowRecord.id))
                .where(EscrowRecord.release_status == ReleaseStatus.RELEASED.value)
                .group_by(EscrowRecord.released_to)
            ).all())

            open_disputes = tx.execute(
                select(func.count(Dispute.id)).where(Dispute.status == DisputeStatus.PENDING.value)
            ).scalar_one()

            return {
                "escrows": by_status,
                "releasedVia": by_via,
                "openDisputes": open_disputes,
                "failedAwaitingAction": by_status[ReleaseStatus.FAILED.value]["count"],
            }
