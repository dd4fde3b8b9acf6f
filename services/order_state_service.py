"""
Order State Service
Persisted order transitions, delivery info and cancellation.

transition() is the only writer of Order.status. It validates the edge against
OrderStateMachine, then applies it with a conditional UPDATE on the expected current
status so a stale caller gets IllegalTransition instead of overwriting a newer state.
"""

import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Optional, Tuple
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from config import Config
from models import (
    Actor, DeliveryInfo, DeliveryStatus, Order, OrderStatus, OrderStatusHistory,
    Recipient, ReleaseVia
)
from services.escrow_ledger import EscrowLedger
from services.release_policy import ReleasePolicyService
from services.release_scheduler import ReleaseScheduler
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import resolve_now
from utils.order_state_machine import OrderStateMachine
from utils.settlement_audit_logger import SettlementAuditLogger
from utils.settlement_exceptions import (
    IllegalTransition, MissingDeliveryInfo, NotAuthorized, OrderNotFound
)

logger = logging.getLogger(__name__)


def _status_value(status) -> str:
    return status.value if isinstance(status, OrderStatus) else OrderStatus(status).value


class OrderStateService:
    """Apply order lifecycle transitions and their side effects"""

    @staticmethod
    def create_order(
        buyer_id: str,
        store_id: str,
        total_amount,
        currency: Optional[str] = None,
        order_id: Optional[str] = None,
        seller_payout_code: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> Order:
        """Register a marketplace order with the engine (status PENDING)"""
        try:
            total = Decimal(str(total_amount))
        except InvalidOperation:
            raise ValueError(f"Invalid order total: {total_amount!r}")
        if total <= 0:
            raise ValueError("Order total must be positive")

        with atomic_transaction(session) as tx:
            order = Order(
                buyer_id=str(buyer_id),
                store_id=str(store_id),
                total_amount=total,
                currency=(currency or Config.DEFAULT_CURRENCY).upper(),
                status=OrderStatus.PENDING.value,
                seller_payout_code=seller_payout_code,
            )
            if order_id:
                order.id = order_id
            tx.add(order)
            tx.flush()
            tx.add(OrderStatusHistory(
                order_id=order.id, old_status=None, new_status=order.status,
                actor=Actor.BUYER.value, actor_id=order.buyer_id, reason="Order placed",
            ))
            logger.info(f"🛒 ORDER_CREATED: {order.id} buyer={buyer_id} store={store_id} {total} {order.currency}")
            return order

    @staticmethod
    def get_order(order_id: str, session: Session) -> Order:
        order = session.get(Order, order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)
        return order

    @staticmethod
    def _authorize(order: Order, actor: Actor, actor_id: Optional[str]):
        if actor_id is None:
            return
        if actor == Actor.BUYER and str(actor_id) != str(order.buyer_id):
            raise NotAuthorized(f"User {actor_id} is not the buyer of order {order.id}", order_id=order.id)
        if actor == Actor.SELLER and str(actor_id) != str(order.store_id):
            raise NotAuthorized(f"User {actor_id} does not own store {order.store_id}", order_id=order.id)

    @classmethod
    def transition(
        cls,
        order_id: str,
        from_status,
        to_status,
        actor,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
        session: Optional[Session] = None,
    ) -> Order:
        """
        Move an order from from_status to to_status.

        Raises:
            IllegalTransition: edge not in the table, actor not permitted, or the
                persisted status is no longer from_status
            MissingDeliveryInfo: SHIPPED without courier and tracking number
            NotAuthorized: actor_id does not own the order
            OrderNotFound: unknown order
        """
        from_value = _status_value(from_status)
        to_value = _status_value(to_status)
        actor = Actor(actor)
        now = resolve_now(now)

        is_valid, message = OrderStateMachine.validate_transition(from_value, to_value, actor, order_id)
        if not is_valid:
            raise IllegalTransition(message, order_id=order_id, from_status=from_value, to_status=to_value)

        with atomic_transaction(session) as tx:
            order = cls.get_order(order_id, tx)
            cls._authorize(order, actor, actor_id)

            delivery = tx.execute(
                select(DeliveryInfo).where(DeliveryInfo.order_id == order_id)
            ).scalar_one_or_none()
            if to_value == OrderStatus.SHIPPED.value and (delivery is None or not delivery.has_courier):
                raise MissingDeliveryInfo(
                    f"Order {order_id} needs a courier and tracking number before it can ship",
                    order_id=order_id,
                )

            values = {"status": to_value, "version": Order.version + 1, "updated_at": now}
            if to_value == OrderStatus.DELIVERED.value:
                values["delivered_at"] = now
            if to_value == OrderStatus.CANCELLED.value:
                values["cancelled_at"] = now
                values["cancelled_by"] = actor.value

            result = tx.execute(
                update(Order)
                .where(Order.id == order_id, Order.status == from_value)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                current = tx.execute(
                    select(Order.status).where(Order.id == order_id)
                ).scalar_one()
                logger.info(
                    f"🔁 STALE_TRANSITION: order {order_id} expected {from_value}, found {current}"
                )
                raise IllegalTransition(
                    f"Order {order_id} is {current}, not {from_value}",
                    order_id=order_id, from_status=current, to_status=to_value,
                )
            tx.refresh(order)

            tx.add(OrderStatusHistory(
                order_id=order_id, old_status=from_value, new_status=to_value,
                actor=actor.value, actor_id=actor_id, reason=reason,
            ))
            SettlementAuditLogger.order_transition(
                tx, order_id, from_value, to_value, actor.value, actor_id, reason
            )
            logger.info(f"🔄 ORDER_TRANSITION: {order_id} {from_value} -> {to_value} by {actor.value}")

            if delivery is not None and to_value in (OrderStatus.SHIPPED.value, OrderStatus.DELIVERED.value):
                delivery.status = to_value
                if to_value == OrderStatus.DELIVERED.value:
                    delivery.actual_delivery = now

            cls._arm_release_deadline(tx, order, to_value, now)

            if to_value == OrderStatus.CANCELLED.value:
                cls._refund_on_cancellation(tx, order, actor, reason, now)

            tx.flush()
            return order

    @staticmethod
    def _arm_release_deadline(tx: Session, order: Order, to_value: str, now: datetime):
        """Start the confirmation window when the order reaches its release anchor"""
        policy = ReleasePolicyService.for_store(tx, order.store_id)
        if to_value != policy.anchor_status.value:
            return
        escrow = EscrowLedger.get_by_order(order.id, tx)
        if escrow is None or not escrow.is_pending:
            return

        release_date = policy.release_date(now)
        EscrowLedger.set_release_date(tx, escrow, release_date)
        if escrow.active_dispute_id is None:
            ReleaseScheduler.schedule(order.id, release_date, session=tx)
        else:
            logger.info(f"⏸️ RELEASE_DEFERRED: order {order.id} has an open dispute, not scheduling")

    @staticmethod
    def _refund_on_cancellation(tx: Session, order: Order, actor: Actor, reason: Optional[str], now: datetime):
        from services.settlement_coordinator import SettlementCoordinator

        escrow = EscrowLedger.get_by_order(order.id, tx)
        if escrow is None or not escrow.is_pending:
            return
        SettlementCoordinator.attempt_release(
            order.id,
            ReleaseVia.ORDER_CANCELLATION,
            recipient=Recipient.BUYER,
            reason=reason or f"Order cancelled by {actor.value}",
            now=now,
            session=tx,
        )

    @classmethod
    def cancel_order(
        cls,
        order_id: str,
        actor,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
        session: Optional[Session] = None,
    ) -> Order:
        """Cancel from whatever pre-shipment state the order is in; refunds a pending escrow"""
        with atomic_transaction(session) as tx:
            order = cls.get_order(order_id, tx)
            if not OrderStateMachine.is_cancellable(order.status):
                raise IllegalTransition(
                    f"Order {order_id} is {order.status} and can no longer be cancelled; open a dispute instead",
                    order_id=order_id, from_status=order.status, to_status=OrderStatus.CANCELLED.value,
                )
            return cls.transition(
                order_id, order.status, OrderStatus.CANCELLED, actor,
                actor_id=actor_id, reason=reason, now=now, session=tx,
            )

    @classmethod
    def set_delivery_info(
        cls,
        order_id: str,
        courier_service: str,
        tracking_number: str,
        tracking_url: Optional[str] = None,
        estimated_delivery: Optional[datetime] = None,
        actor_id: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> DeliveryInfo:
        """Assign a courier; only while the order is CONFIRMED or PROCESSING"""
        if not courier_service or not tracking_number:
            raise MissingDeliveryInfo("Courier service and tracking number are required", order_id=order_id)

        with atomic_transaction(session) as tx:
            order = cls.get_order(order_id, tx)
            cls._authorize(order, Actor.SELLER, actor_id)
            if order.status not in (OrderStatus.CONFIRMED.value, OrderStatus.PROCESSING.value):
                raise IllegalTransition(
                    f"Courier can only be assigned to confirmed or processing orders (order is {order.status})",
                    order_id=order_id, from_status=order.status,
                )

            delivery = tx.execute(
                select(DeliveryInfo).where(DeliveryInfo.order_id == order_id)
            ).scalar_one_or_none()
            if delivery is None:
                delivery = DeliveryInfo(order_id=order_id, status=DeliveryStatus.PENDING.value)
                tx.add(delivery)
            delivery.courier_service = courier_service
            delivery.tracking_number = tracking_number
            delivery.tracking_url = tracking_url
            delivery.estimated_delivery = estimated_delivery
            tx.flush()
            logger.info(f"🚚 COURIER_ASSIGNED: order {order_id} {courier_service} #{tracking_number}")
            return delivery

    @classmethod
    def update_delivery_status(
        cls,
        order_id: str,
        status,
        actor=Actor.SELLER,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
        session: Optional[Session] = None,
    ) -> Tuple[Order, DeliveryInfo]:
        """
        Record a courier status. SHIPPED and DELIVERED drive the order transitions;
        the other statuses only update the delivery record.
        """
        status = DeliveryStatus(status)
        actor = Actor(actor)
        now = resolve_now(now)

        with atomic_transaction(session) as tx:
            order = cls.get_order(order_id, tx)
            cls._authorize(order, actor, actor_id)
            delivery = tx.execute(
                select(DeliveryInfo).where(DeliveryInfo.order_id == order_id)
            ).scalar_one_or_none()
            if delivery is None:
                raise MissingDeliveryInfo(f"Order {order_id} has no delivery info", order_id=order_id)

            if status == DeliveryStatus.SHIPPED and order.status == OrderStatus.PROCESSING.value:
                cls.transition(order_id, OrderStatus.PROCESSING, OrderStatus.SHIPPED, actor,
                               actor_id=actor_id, reason="Courier picked up", now=now, session=tx)
            elif status == DeliveryStatus.DELIVERED:
                if order.status == OrderStatus.PROCESSING.value:
                    cls.transition(order_id, OrderStatus.PROCESSING, OrderStatus.SHIPPED, actor,
                                   actor_id=actor_id, reason="Courier picked up", now=now, session=tx)
                if order.status == OrderStatus.SHIPPED.value:
                    cls.transition(order_id, OrderStatus.SHIPPED, OrderStatus.DELIVERED, actor,
                                   actor_id=actor_id, reason="Courier delivered", now=now, session=tx)
            elif status == DeliveryStatus.RETURNED:
                logger.warning(f"↩️ DELIVERY_RETURNED: order {order_id} returned by courier")

            delivery.status = status.value
            if status == DeliveryStatus.DELIVERED and delivery.actual_delivery is None:
                delivery.actual_delivery = now
            tx.flush()
            return order, delivery

    @staticmethod
    def history(order_id: str, session: Session):
        return list(session.execute(
            select(OrderStatusHistory)
            .where(OrderStatusHistory.order_id == order_id)
            .order_by(OrderStatusHistory.created_at, OrderStatusHistory.id)
        ).scalars())
