"""
Dispute Service
Dispute records, message threads and listings. Gate changes go through DisputeGate.
"""

import logging
import uuid
from datetime import datetime
from typing import List, Optional, Tuple
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from models import (
    Dispute, DisputeMessage, DisputeStatus, DisputeType, DisputeVerdict,
    MessageAuthorRole, Order
)
from services.dispute_gate import DisputeGate
from services.escrow_ledger import EscrowLedger
from services.settlement_coordinator import SettlementResult
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import resolve_now
from utils.order_state_machine import OrderStateMachine
from utils.settlement_audit_logger import SettlementAuditLogger
from utils.settlement_exceptions import (
    AlreadyDisputed, AlreadyReleased, DisputeNotFound, DisputeWindowClosed,
    EscrowNotFound, IllegalTransition, NotAuthorized, OrderNotFound
)

logger = logging.getLogger(__name__)


class DisputeService:
    """The dispute subsystem: buyers open, admins resolve, either side talks"""

    @staticmethod
    def _get_dispute(tx: Session, dispute_id: str) -> Dispute:
        dispute = tx.get(Dispute, dispute_id)
        if dispute is None:
            raise DisputeNotFound(f"Dispute {dispute_id} not found")
        return dispute

    @staticmethod
    def _role_for(order: Order, user_id: str, is_admin: bool = False) -> MessageAuthorRole:
        if is_admin:
            return MessageAuthorRole.ADMIN
        if str(user_id) == str(order.buyer_id):
            return MessageAuthorRole.BUYER
        if str(user_id) == str(order.store_id):
            return MessageAuthorRole.SELLER
        raise NotAuthorized(f"User {user_id} is not a party to order {order.id}", order_id=order.id)

    @classmethod
    def open_dispute(
        cls,
        order_id: str,
        buyer_id: str,
        dispute_type: str,
        description: str,
        now: Optional[datetime] = None,
        session: Optional[Session] = None,
    ) -> Dispute:
        """
        Buyer raises a dispute. Allowed while the order is SHIPPED or DELIVERED and,
        once a release date is set, no later than that date.
        """
        dispute_type = DisputeType(dispute_type).value
        if not description or not description.strip():
            raise ValueError("A dispute needs a description")
        now = resolve_now(now)

        with atomic_transaction(session) as tx:
            order = tx.get(Order, order_id)
            if order is None:
                raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)
            if str(order.buyer_id) != str(buyer_id):
                raise NotAuthorized("Only the order's buyer can open a dispute", order_id=order_id)

            escrow = EscrowLedger.get_by_order(order_id, tx, refresh=True)
            if escrow is None:
                raise EscrowNotFound(f"No escrow for order {order_id}", order_id=order_id)
            if EscrowLedger.order_is_settled(escrow):
                raise AlreadyReleased(
                    f"Escrow for order {order_id} is already {escrow.release_status}", order_id=order_id
                )
            if not OrderStateMachine.awaiting_receipt(order.status):
                raise DisputeWindowClosed(
                    f"Disputes can be opened on shipped or delivered orders (order is {order.status})",
                    order_id=order_id,
                )
            if escrow.release_date is not None and now > escrow.release_date:
                raise DisputeWindowClosed(
                    f"Confirmation window for order {order_id} closed at {escrow.release_date.isoformat()}",
                    order_id=order_id,
                )

            dispute_id = str(uuid.uuid4())
            DisputeGate.open(order_id, dispute_id, session=tx)

            dispute = Dispute(
                id=dispute_id,
                order_id=order_id,
                buyer_id=str(buyer_id),
                type=dispute_type,
                status=DisputeStatus.PENDING.value,
                description=description.strip(),
                created_at=now,
            )
            tx.add(dispute)
            try:
                tx.flush()
            except IntegrityError as e:
                raise AlreadyDisputed(f"Order {order_id} already has an open dispute", order_id=order_id) from e

            SettlementAuditLogger.dispute_event(tx, dispute, "dispute_opened", actor_id=buyer_id,
                                                description=dispute_type)
            logger.info(f"⚖️ DISPUTE_OPENED: {dispute_id} on order {order_id} ({dispute_type})")
            return dispute

    @classmethod
    def resolve_dispute(
        cls,
        dispute_id: str,
        verdict: str,
        admin_id: str,
        resolution: Optional[str] = None,
        refund_amount=None,
        now: Optional[datetime] = None,
        session: Optional[Session] = None,
    ) -> Tuple[Dispute, SettlementResult]:
        """Admin verdict; the escrow is released through the gate"""
        verdict = DisputeVerdict(verdict)
        with atomic_transaction(session) as tx:
            dispute = cls._get_dispute(tx, dispute_id)
            if dispute.status != DisputeStatus.PENDING.value:
                raise IllegalTransition(f"Dispute {dispute_id} is already {dispute.status}",
                                        order_id=dispute.order_id)
            result = DisputeGate.close(
                dispute.order_id, verdict,
                resolution=resolution,
                refund_amount=refund_amount,
                admin_id=admin_id,
                now=now,
                session=tx,
            )
            tx.refresh(dispute)
            return dispute, result

    @classmethod
    def cancel_dispute(
        cls,
        dispute_id: str,
        user_id: str,
        reason: Optional[str] = None,
        is_admin: bool = False,
        now: Optional[datetime] = None,
        session: Optional[Session] = None,
    ) -> Dispute:
        """Buyer (or an admin on their behalf) withdraws a pending dispute"""
        with atomic_transaction(session) as tx:
            dispute = cls._get_dispute(tx, dispute_id)
            if not is_admin and str(user_id) != str(dispute.buyer_id):
                raise NotAuthorized("Only the buyer who opened the dispute can cancel it",
                                    order_id=dispute.order_id)
            if dispute.status != DisputeStatus.PENDING.value:
                raise IllegalTransition(f"Dispute {dispute_id} is already {dispute.status}",
                                        order_id=dispute.order_id)
            return DisputeGate.withdraw(dispute.order_id, reason=reason, actor_id=user_id,
                                        now=now, session=tx)

    @classmethod
    def add_message(
        cls,
        dispute_id: str,
        author_id: str,
        body: str,
        is_admin: bool = False,
        session: Optional[Session] = None,
    ) -> DisputeMessage:
        """Append to the dispute thread; only while the dispute is pending"""
        if not body or not body.strip():
            raise ValueError("Message body is empty")

        with atomic_transaction(session) as tx:
            dispute = cls._get_dispute(tx, dispute_id)
            order = tx.get(Order, dispute.order_id)
            role = cls._role_for(order, author_id, is_admin)
            if dispute.status != DisputeStatus.PENDING.value:
                raise IllegalTransition(f"Dispute {dispute_id} is {dispute.status}; the thread is closed",
                                        order_id=dispute.order_id)

            message = DisputeMessage(
                dispute_id=dispute_id,
                author_id=str(author_id),
                author_role=role.value,
                body=body.strip(),
            )
            tx.add(message)
            tx.flush()
            logger.info(f"💬 DISPUTE_MESSAGE: {dispute_id} from {role.value}")
            return message

    @classmethod
    def get_dispute(cls, dispute_id: str, viewer_id: str, is_admin: bool = False,
                    session: Optional[Session] = None) -> Dispute:
        with atomic_transaction(session) as tx:
            dispute = tx.execute(
                select(Dispute)
                .where(Dispute.id == dispute_id)
                .options(selectinload(Dispute.messages))
            ).scalar_one_or_none()
            if dispute is None:
                raise DisputeNotFound(f"Dispute {dispute_id} not found")
            order = tx.get(Order, dispute.order_id)
            cls._role_for(order, viewer_id, is_admin)
            return dispute

    @staticmethod
    def list_disputes(
        status: Optional[str] = None,
        dispute_type: Optional[str] = None,
        buyer_id: Optional[str] = None,
        store_id: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
        session: Optional[Session] = None,
    ) -> Tuple[List[Dispute], int]:
        """Newest first, with the total count for pagination"""
        page = max(page, 1)
        limit = max(1, min(limit, 100))

        with atomic_transaction(session) as tx:
            stmt = select(Dispute)
            if status:
                stmt = stmt.where(Dispute.status == DisputeStatus(status).value)
            if dispute_type:
                stmt = stmt.where(Dispute.type == DisputeType(dispute_type).value)
            if buyer_id:
                stmt = stmt.where(Dispute.buyer_id == str(buyer_id))
            if store_id:
                stmt = stmt.join(Order, Order.id == Dispute.order_id).where(Order.store_id == str(store_id))

            total = tx.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
            items = list(tx.execute(
                stmt.order_by(Dispute.created_at.desc(), Dispute.id)
                .offset((page - 1) * limit)
                .limit(limit)
            ).scalars())
            return items, total
