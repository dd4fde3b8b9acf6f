"""
Order-Escrow Settlement Engine - Database Schema
================================================

Schema for the marketplace settlement core:
- Orders and their lifecycle history
- Escrow records (one per order) holding captured buyer funds
- Disputes with structured message threads
- Durable release jobs (the auto-release deadline queue)
- Delivery info, per-store release policies
- Outbox events and audit trail

All timestamps are naive UTC (see utils/datetime_helpers.py).
"""

import uuid
from enum import Enum
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Text, Boolean,
    ForeignKey, Index, CheckConstraint, JSON, event, text
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, relationship
from sqlalchemy.orm.base import NO_VALUE, NEVER_SET

from utils.datetime_helpers import get_naive_utc_now
from utils.settlement_exceptions import ImmutableFieldError


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in local runs and tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _new_id() -> str:
    return str(uuid.uuid4())


def _in_clause(enum_cls) -> str:
    return ", ".join(f"'{member.value}'" for member in enum_cls)


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class OrderStatus(Enum):
    """Order lifecycle states"""
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class ReleaseStatus(Enum):
    """Escrow release status - PENDING moves to RELEASED or FAILED exactly once"""
    PENDING = "pending"
    RELEASED = "released"
    FAILED = "failed"


class ReleaseVia(Enum):
    """Which trigger released the escrow"""
    BUYER_CONFIRMATION = "buyer_confirmation"
    AUTO_RELEASE = "auto_release"
    DISPUTE_RESOLUTION = "dispute_resolution"
    ORDER_CANCELLATION = "order_cancellation"


class Recipient(Enum):
    """Who receives the held funds"""
    SELLER = "seller"
    BUYER = "buyer"
    SPLIT = "split"


class DisputeStatus(Enum):
    """Dispute lifecycle"""
    PENDING = "PENDING"
    RESOLVED = "RESOLVED"
    CANCELLED = "CANCELLED"


class DisputeType(Enum):
    REFUND_REQUEST = "REFUND_REQUEST"
    ITEM_NOT_AS_DESCRIBED = "ITEM_NOT_AS_DESCRIBED"
    ITEM_NOT_RECEIVED = "ITEM_NOT_RECEIVED"
    WRONG_ITEM_SENT = "WRONG_ITEM_SENT"
    DAMAGED_ITEM = "DAMAGED_ITEM"
    OTHER = "OTHER"


class DisputeVerdict(Enum):
    """Machine-readable outcome of an admin dispute resolution"""
    RELEASE_TO_SELLER = "release-to-seller"
    REFUND_TO_BUYER = "refund-to-buyer"
    SPLIT = "split"

    @property
    def recipient(self) -> "Recipient":
        return {
            DisputeVerdict.RELEASE_TO_SELLER: Recipient.SELLER,
            DisputeVerdict.REFUND_TO_BUYER: Recipient.BUYER,
            DisputeVerdict.SPLIT: Recipient.SPLIT,
        }[self]


class MessageAuthorRole(Enum):
    BUYER = "buyer"
    SELLER = "seller"
    ADMIN = "admin"


class ReleaseJobStatus(Enum):
    """Durable auto-release job states - a job fires at most once"""
    SCHEDULED = "scheduled"
    FIRED = "fired"
    CANCELLED = "cancelled"


class DeliveryStatus(Enum):
    """Courier-facing delivery status, distinct from the order status"""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    RETURNED = "RETURNED"


class ReleaseAnchor(Enum):
    """Order transition that starts the buyer confirmation window"""
    SHIPPED = "shipped"
    DELIVERED = "delivered"


class Actor(Enum):
    """Who is driving an order transition"""
    BUYER = "buyer"
    SELLER = "seller"
    ADMIN = "admin"
    COURIER = "courier"
    SYSTEM = "system"


# ============================================================================
# CORE TABLES
# ============================================================================

class Order(Base):
    """Marketplace order - status is only mutated through the order state service"""
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=_new_id)
    buyer_id = Column(String(64), nullable=False, index=True)
    store_id = Column(String(64), nullable=False, index=True)
    seller_payout_code = Column(String(100), nullable=True)  # payout recipient code for the store
    payment_reference = Column(String(100), nullable=True)  # capture reference, used for refunds
    total_amount = Column(Numeric(14, 2), nullable=False)
    currency = Column(String(10), nullable=False)
    status = Column(String(20), nullable=False, default=OrderStatus.PENDING.value)
    version = Column(Integer, nullable=False, default=1)

    delivered_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancelled_by = Column(String(20), nullable=True)

    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at = Column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)

    escrow = relationship("EscrowRecord", back_populates="order", uselist=False)
    delivery_info = relationship("DeliveryInfo", back_populates="order", uselist=False)

    __table_args__ = (
        CheckConstraint(f"status IN ({_in_clause(OrderStatus)})", name="ck_order_status_valid"),
        CheckConstraint("total_amount > 0", name="ck_order_total_positive"),
        Index("ix_orders_store_status", "store_id", "status"),
    )

    def __repr__(self):
        return f"<Order(id={self.id}, status={self.status}, total={self.total_amount} {self.currency})>"


class EscrowRecord(Base):
    """
    Funds held for one order.

    release_status leaves 'pending' exactly once. active_dispute_id is the dispute
    gate: while it is set, only dispute resolution may release the funds.
    version is bumped by the per-order claim (compare-and-swap) in the ledger.
    """
    __tablename__ = "escrow_records"

    id = Column(String(36), primary_key=True, default=_new_id)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, unique=True)
    amount_held = Column(Numeric(14, 2), nullable=False)
    currency = Column(String(10), nullable=False)

    release_status = Column(String(20), nullable=False, default=ReleaseStatus.PENDING.value)
    release_date = Column(DateTime, nullable=True)  # auto-release deadline
    released_at = Column(DateTime, nullable=True)
    released_to = Column(String(30), nullable=True)  # ReleaseVia
    recipient = Column(String(20), nullable=True)  # Recipient
    release_reason = Column(Text, nullable=True)
    payout_reference = Column(String(100), nullable=True)
    allocations = Column(JSONType, nullable=True)  # {"seller": "..", "buyer": ".."}

    active_dispute_id = Column(String(36), nullable=True)
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at = Column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)

    order = relationship("Order", back_populates="escrow")

    __table_args__ = (
        CheckConstraint(f"release_status IN ({_in_clause(ReleaseStatus)})", name="ck_escrow_release_status_valid"),
        CheckConstraint("amount_held > 0", name="ck_escrow_amount_positive"),
        CheckConstraint(
            f"released_to IS NULL OR released_to IN ({_in_clause(ReleaseVia)})",
            name="ck_escrow_released_to_valid",
        ),
        CheckConstraint(
            "release_status != 'failed' OR release_reason IS NOT NULL",
            name="ck_escrow_failed_has_reason",
        ),
        Index("ix_escrow_status_release_date", "release_status", "release_date"),
    )

    @property
    def is_pending(self) -> bool:
        return self.release_status == ReleaseStatus.PENDING.value

    def to_dict(self):
        return {
            "id": self.id,
            "orderId": self.order_id,
            "amountHeld": str(self.amount_held),
            "currency": self.currency,
            "releaseStatus": self.release_status.upper(),
            "releaseDate": self.release_date.isoformat() if self.release_date else None,
            "releasedAt": self.released_at.isoformat() if self.released_at else None,
            "releasedTo": self.released_to,
            "recipient": self.recipient,
            "releaseReason": self.release_reason,
            "payoutReference": self.payout_reference,
            "allocations": self.allocations,
            "disputeOpen": self.active_dispute_id is not None,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<EscrowRecord(order_id={self.order_id}, status={self.release_status}, amount={self.amount_held})>"


@event.listens_for(EscrowRecord.amount_held, "set", active_history=True)
def _reject_amount_held_change(target, value, oldvalue, initiator):
    """amount_held is fixed once the escrow row exists"""
    if oldvalue in (NO_VALUE, NEVER_SET, None):
        return value
    if value != oldvalue:
        raise ImmutableFieldError(
            f"amount_held is immutable (escrow {target.id}: {oldvalue} -> {value})",
            order_id=target.order_id,
        )
    return value


class Dispute(Base):
    """Buyer dispute on an order; at most one PENDING per order"""
    __tablename__ = "disputes"

    id = Column(String(36), primary_key=True, default=_new_id)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False)
    buyer_id = Column(String(64), nullable=False)
    type = Column(String(40), nullable=False)
    status = Column(String(20), nullable=False, default=DisputeStatus.PENDING.value)
    description = Column(Text, nullable=False)

    resolution = Column(Text, nullable=True)
    verdict = Column(String(30), nullable=True)
    refund_amount = Column(Numeric(14, 2), nullable=True)
    resolved_by = Column(String(64), nullable=True)

    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    resolved_at = Column(DateTime, nullable=True)

    order = relationship("Order", foreign_keys=[order_id])
    messages = relationship(
        "DisputeMessage", back_populates="dispute", order_by="DisputeMessage.id"
    )

    __table_args__ = (
        CheckConstraint(f"status IN ({_in_clause(DisputeStatus)})", name="ck_dispute_status_valid"),
        CheckConstraint(f"type IN ({_in_clause(DisputeType)})", name="ck_dispute_type_valid"),
        CheckConstraint(
            f"verdict IS NULL OR verdict IN ({_in_clause(DisputeVerdict)})",
            name="ck_dispute_verdict_valid",
        ),
        Index(
            "uq_disputes_one_pending_per_order",
            "order_id",
            unique=True,
            sqlite_where=text("status = 'PENDING'"),
            postgresql_where=text("status = 'PENDING'"),
        ),
        Index("ix_disputes_status_created", "status", "created_at"),
        Index("ix_disputes_buyer", "buyer_id"),
    )

    def to_dict(self, include_messages: bool = False):
        data = {
            "id": self.id,
            "orderId": self.order_id,
            "buyerId": self.buyer_id,
            "type": self.type,
            "status": self.status,
            "description": self.description,
            "resolution": self.resolution,
            "verdict": self.verdict,
            "refundAmount": str(self.refund_amount) if self.refund_amount is not None else None,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "resolvedAt": self.resolved_at.isoformat() if self.resolved_at else None,
        }
        if include_messages:
            data["messages"] = [message.to_dict() for message in self.messages]
        return data

    def __repr__(self):
        return f"<Dispute(order_id={self.order_id}, status={self.status}, type={self.type})>"


class DisputeMessage(Base):
    """Append-only message thread on a dispute"""
    __tablename__ = "dispute_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    dispute_id = Column(String(36), ForeignKey("disputes.id"), nullable=False)
    author_id = Column(String(64), nullable=False)
    author_role = Column(String(10), nullable=False)
    body = Column(Text, nullable=False)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    dispute = relationship("Dispute", back_populates="messages")

    __table_args__ = (
        CheckConstraint(f"author_role IN ({_in_clause(MessageAuthorRole)})", name="ck_dispute_message_role_valid"),
        Index("ix_dispute_messages_dispute", "dispute_id", "created_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "authorId": self.author_id,
            "authorRole": self.author_role,
            "body": self.body,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<DisputeMessage(dispute_id={self.dispute_id}, author_role={self.author_role})>"


class ReleaseJob(Base):
    """Durable auto-release deadline - one row per order, fired at most once"""
    __tablename__ = "release_jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, unique=True)
    run_at = Column(DateTime, nullable=False)
    status = Column(String(20), nullable=False, default=ReleaseJobStatus.SCHEDULED.value)
    fired_at = Column(DateTime, nullable=True)
    outcome = Column(String(60), nullable=True)

    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at = Column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint(f"status IN ({_in_clause(ReleaseJobStatus)})", name="ck_release_job_status_valid"),
        Index("ix_release_jobs_due", "status", "run_at"),
    )

    def __repr__(self):
        return f"<ReleaseJob(order_id={self.order_id}, status={self.status}, run_at={self.run_at})>"


class DeliveryInfo(Base):
    """Courier assignment and delivery tracking for an order"""
    __tablename__ = "delivery_info"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, unique=True)
    courier_service = Column(String(100), nullable=True)
    tracking_number = Column(String(100), nullable=True)
    tracking_url = Column(String(500), nullable=True)
    status = Column(String(20), nullable=False, default=DeliveryStatus.PENDING.value)
    estimated_delivery = Column(DateTime, nullable=True)
    actual_delivery = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at = Column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)

    order = relationship("Order", back_populates="delivery_info")

    __table_args__ = (
        CheckConstraint(f"status IN ({_in_clause(DeliveryStatus)})", name="ck_delivery_status_valid"),
    )

    @property
    def has_courier(self) -> bool:
        return bool(self.courier_service and self.tracking_number)

    def to_dict(self):
        return {
            "orderId": self.order_id,
            "courierService": self.courier_service,
            "trackingNumber": self.tracking_number,
            "trackingUrl": self.tracking_url,
            "status": self.status,
            "estimatedDelivery": self.estimated_delivery.isoformat() if self.estimated_delivery else None,
            "actualDelivery": self.actual_delivery.isoformat() if self.actual_delivery else None,
        }


class StoreReleasePolicy(Base):
    """Per-store override of the buyer confirmation window"""
    __tablename__ = "store_release_policies"

    store_id = Column(String(64), primary_key=True)
    confirmation_window_hours = Column(Integer, nullable=True)
    release_anchor = Column(String(20), nullable=True)  # ReleaseAnchor

    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at = Column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "confirmation_window_hours IS NULL OR confirmation_window_hours > 0",
            name="ck_store_policy_window_positive",
        ),
    )


class OrderStatusHistory(Base):
    """Append-only log of order status transitions"""
    __tablename__ = "order_status_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False)
    old_status = Column(String(20), nullable=True)
    new_status = Column(String(20), nullable=False)
    actor = Column(String(20), nullable=False)
    actor_id = Column(String(64), nullable=True)
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        Index("ix_order_status_history_order", "order_id", "created_at"),
    )


class OutboxEvent(Base):
    """Outbox pattern for reliable event processing"""
    __tablename__ = "outbox_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_type = Column(String(50), nullable=False)
    aggregate_id = Column(String(100), nullable=False)
    event_data = Column(JSONType, nullable=False)
    processed = Column(Boolean, default=False, nullable=False)

    # Timestamps
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    processed_at = Column(DateTime, nullable=True)

    # Error handling
    retry_count = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_outbox_events_processed", "processed", "created_at"),
        Index("ix_outbox_events_aggregate", "event_type", "aggregate_id"),
    )

    def __repr__(self):
        return f"<OutboxEvent(type={self.event_type}, aggregate={self.aggregate_id}, processed={self.processed})>"


class AuditLog(Base):
    """Settlement audit trail"""
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)

    event_type = Column(String(50), nullable=False, index=True)
    entity_type = Column(String(50), nullable=False)  # order, escrow, dispute, release_job
    entity_id = Column(String(64), nullable=False)
    actor_id = Column(String(64), nullable=True)

    previous_state = Column(JSONType, nullable=True)
    new_state = Column(JSONType, nullable=True)
    description = Column(Text, nullable=True)

    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        Index("ix_audit_entity_id", "entity_type", "entity_id"),
        Index("ix_audit_created", "created_at"),
    )
