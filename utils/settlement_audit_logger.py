"""
Settlement Audit Logger
Writes settlement decisions to the audit_logs table inside the caller's transaction
"""

import logging
from typing import Any, Dict, Optional
from sqlalchemy.orm import Session

from models import AuditLog

logger = logging.getLogger(__name__)


class SettlementAuditLogger:
    """Audit trail for order, escrow and dispute state changes"""

    @staticmethod
    def record(
        session: Session,
        event_type: str,
        entity_type: str,
        entity_id: str,
        actor_id: Optional[str] = None,
        previous_state: Optional[Dict[str, Any]] = None,
        new_state: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
    ) -> AuditLog:
        entry = AuditLog(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=str(entity_id),
            actor_id=str(actor_id) if actor_id is not None else None,
            previous_state=previous_state,
            new_state=new_state,
            description=description,
        )
        session.add(entry)
        logger.debug(f"📝 AUDIT: {event_type} {entity_type}={entity_id}")
        return entry

    @classmethod
    def order_transition(cls, session, order_id, old_status, new_status, actor, actor_id=None, reason=None):
        return cls.record(
            session,
            event_type="order_status_changed",
            entity_type="order",
            entity_id=order_id,
            actor_id=actor_id,
            previous_state={"status": old_status},
            new_state={"status": new_status, "actor": actor},
            description=reason,
        )

    @classmethod
    def escrow_settled(cls, session, escrow, actor_id=None):
        return cls.record(
            session,
            event_type=f"escrow_{escrow.release_status}",
            entity_type="escrow",
            entity_id=escrow.id,
            actor_id=actor_id,
            previous_state={"release_status": "pending"},
            new_state={
                "release_status": escrow.release_status,
                "released_to": escrow.released_to,
                "recipient": escrow.recipient,
                "payout_reference": escrow.payout_reference,
            },
            description=escrow.release_reason,
        )

    @classmethod
    def dispute_event(cls, session, dispute, event_type, actor_id=None, description=None):
        return cls.record(
            session,
            event_type=event_type,
            entity_type="dispute",
            entity_id=dispute.id,
            actor_id=actor_id,
            new_state={"status": dispute.status, "verdict": dispute.verdict, "order_id": dispute.order_id},
            description=description,
        )
