"""
Outbox Service
Transactional outbox for settlement domain events (FundsReleased, ...).

Events are written in the same transaction as the state change that produced them;
the downstream payout subsystem polls unprocessed events and acknowledges them.
"""

import logging
from typing import Any, Dict, List, Optional
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from models import OutboxEvent
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)

FUNDS_RELEASED = "FundsReleased"
ESCROW_FAILED = "EscrowReleaseFailed"


class OutboxService:
    """Write and consume outbox events"""

    @staticmethod
    def emit(session: Session, event_type: str, aggregate_id: str, payload: Dict[str, Any]) -> OutboxEvent:
        event = OutboxEvent(
            event_type=event_type,
            aggregate_id=str(aggregate_id),
            event_data=payload,
        )
        session.add(event)
        logger.info(f"📤 OUTBOX: {event_type} queued for {aggregate_id}")
        return event

    @staticmethod
    def fetch_pending(limit: int = 100, event_type: Optional[str] = None,
                      session: Optional[Session] = None) -> List[OutboxEvent]:
        """Oldest unprocessed events first"""
        with atomic_transaction(session) as tx:
            stmt = select(OutboxEvent).where(OutboxEvent.processed.is_(False))
            if event_type:
                stmt = stmt.where(OutboxEvent.event_type == event_type)
            stmt = stmt.order_by(OutboxEvent.created_at, OutboxEvent.id).limit(limit)
            return list(tx.execute(stmt).scalars())

    @staticmethod
    def mark_processed(event_id: int, session: Optional[Session] = None) -> bool:
        """Acknowledge an event; False if it was already acknowledged"""
        with atomic_transaction(session) as tx:
            result = tx.execute(
                update(OutboxEvent)
                .where(OutboxEvent.id == event_id, OutboxEvent.processed.is_(False))
                .values(processed=True, processed_at=get_naive_utc_now())
            )
            return result.rowcount == 1

    @staticmethod
    def mark_failed(event_id: int, error: str, session: Optional[Session] = None) -> None:
        """Record a consumer failure; the event stays unprocessed"""
        with atomic_transaction(session) as tx:
            tx.execute(
                update(OutboxEvent)
                .where(OutboxEvent.id == event_id)
                .values(retry_count=OutboxEvent.retry_count + 1, last_error=error[:2000])
            )
        logger.warning(f"⚠️ OUTBOX: event {event_id} consumer failed: {error}")

    @staticmethod
    def events_for(aggregate_id: str, event_type: Optional[str] = None,
                   session: Optional[Session] = None) -> List[OutboxEvent]:
        with atomic_transaction(session) as tx:
            stmt = select(OutboxEvent).where(OutboxEvent.aggregate_id == str(aggregate_id))
            if event_type:
                stmt = stmt.where(OutboxEvent.event_type == event_type)
            return list(tx.execute(stmt.order_by(OutboxEvent.id)).scalars())
