"""
Order State Transition Table
============================

Legal order-status edges and the actors allowed to drive each one.
Pure validation; persistence lives in services/order_state_service.py.
"""

import logging
from typing import Dict, FrozenSet, Optional, Set, Tuple, Union

from models import Actor, OrderStatus

logger = logging.getLogger(__name__)

StatusLike = Union[OrderStatus, str]
ActorLike = Union[Actor, str]

_SELLER = frozenset({Actor.SELLER, Actor.ADMIN})


class OrderStateMachine:
    """
    Order lifecycle:

        PENDING -> CONFIRMED -> PROCESSING -> SHIPPED -> DELIVERED -> COMPLETED
           \\____________\\____________\\____-> CANCELLED

    SHIPPED, DELIVERED and COMPLETED are not cancellable (a dispute is used
    instead). COMPLETED is reached only by the system after escrow release.
    """

    # (from, to) -> actors permitted to drive the edge
    EDGES: Dict[Tuple[OrderStatus, OrderStatus], FrozenSet[Actor]] = {
        (OrderStatus.PENDING, OrderStatus.CONFIRMED): _SELLER,
        (OrderStatus.PENDING, OrderStatus.CANCELLED): frozenset({Actor.SELLER, Actor.BUYER, Actor.ADMIN}),
        (OrderStatus.CONFIRMED, OrderStatus.PROCESSING): _SELLER,
        (OrderStatus.CONFIRMED, OrderStatus.CANCELLED): _SELLER,
        (OrderStatus.PROCESSING, OrderStatus.SHIPPED): _SELLER,
        (OrderStatus.PROCESSING, OrderStatus.CANCELLED): _SELLER,
        (OrderStatus.SHIPPED, OrderStatus.DELIVERED): frozenset(
            {Actor.SELLER, Actor.ADMIN, Actor.COURIER, Actor.SYSTEM}
        ),
        (OrderStatus.DELIVERED, OrderStatus.COMPLETED): frozenset({Actor.SYSTEM}),
    }

    TERMINAL_STATES: Set[OrderStatus] = {OrderStatus.COMPLETED, OrderStatus.CANCELLED}

    CANCELLABLE_STATES: Set[OrderStatus] = {
        OrderStatus.PENDING,
        OrderStatus.CONFIRMED,
        OrderStatus.PROCESSING,
    }

    # Buyers may confirm receipt or open a dispute only once goods are on the way
    RECEIPT_STATES: Set[OrderStatus] = {OrderStatus.SHIPPED, OrderStatus.DELIVERED}

    @staticmethod
    def _status(value: StatusLike) -> OrderStatus:
        return value if isinstance(value, OrderStatus) else OrderStatus(value)

    @staticmethod
    def _actor(value: ActorLike) -> Actor:
        return value if isinstance(value, Actor) else Actor(value)

    @classmethod
    def validate_transition(
        cls,
        from_status: StatusLike,
        to_status: StatusLike,
        actor: ActorLike,
        order_id: Optional[str] = None,
    ) -> Tuple[bool, str]:
        """
        Check an edge against the table.

        Returns:
            Tuple[bool, str]: (is_valid, reason)
        """
        order_ref = f"Order {order_id}" if order_id else "Order"
        try:
            from_enum = cls._status(from_status)
            to_enum = cls._status(to_status)
            actor_enum = cls._actor(actor)
        except ValueError as e:
            return False, f"Unknown status or actor: {e}"

        allowed_actors = cls.EDGES.get((from_enum, to_enum))
        if allowed_actors is None:
            valid_next = sorted(s.value for s in cls.get_valid_next_states(from_enum))
            logger.warning(
                f"❌ INVALID_ORDER_TRANSITION: {order_ref} {from_enum.value} -> {to_enum.value} "
                f"(valid: {valid_next})"
            )
            return False, (
                f"Invalid transition: {from_enum.value} -> {to_enum.value}. "
                f"Valid transitions from {from_enum.value}: {valid_next}"
            )

        if actor_enum not in allowed_actors:
            logger.warning(
                f"❌ ACTOR_NOT_PERMITTED: {order_ref} {from_enum.value} -> {to_enum.value} "
                f"by {actor_enum.value}"
            )
            return False, (
                f"{actor_enum.value} may not move an order from {from_enum.value} to {to_enum.value}"
            )

        return True, "Valid state transition"

    @classmethod
    def is_valid_transition(cls, from_status: StatusLike, to_status: StatusLike, actor: ActorLike) -> bool:
        is_valid, _ = cls.validate_transition(from_status, to_status, actor)
        return is_valid

    @classmethod
    def get_valid_next_states(cls, current_status: StatusLike) -> Set[OrderStatus]:
        """Get all valid next states from the current status"""
        current = cls._status(current_status)
        return {to for (frm, to) in cls.EDGES if frm == current}

    @classmethod
    def is_terminal_state(cls, status: StatusLike) -> bool:
        return cls._status(status) in cls.TERMINAL_STATES

    @classmethod
    def is_cancellable(cls, status: StatusLike) -> bool:
        return cls._status(status) in cls.CANCELLABLE_STATES

    @classmethod
    def awaiting_receipt(cls, status: StatusLike) -> bool:
        return cls._status(status) in cls.RECEIPT_STATES
