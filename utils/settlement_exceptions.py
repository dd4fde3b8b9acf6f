"""
Settlement Exceptions
Error taxonomy for the escrow ledger, order state machine, dispute gate and coordinator
"""

from typing import Optional


class SettlementError(Exception):
    """Base class for all settlement engine errors"""

    code = "settlement_error"

    def __init__(self, message: str, order_id: Optional[str] = None):
        self.message = message
        self.order_id = order_id
        super().__init__(message)


class OrderNotFound(SettlementError):
    code = "order_not_found"


class EscrowNotFound(SettlementError):
    code = "escrow_not_found"


class DisputeNotFound(SettlementError):
    code = "dispute_not_found"


class IllegalTransition(SettlementError):
    """Order-state edge not permitted, or the expected current status is stale"""

    code = "illegal_transition"

    def __init__(
        self,
        message: str,
        order_id: Optional[str] = None,
        from_status: Optional[str] = None,
        to_status: Optional[str] = None,
    ):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(message, order_id)


class InvalidTransition(SettlementError):
    """Ledger guard: escrow release status is no longer PENDING"""

    code = "invalid_ledger_transition"


class DuplicateEscrow(SettlementError):
    code = "duplicate_escrow"


class AlreadyReleased(SettlementError):
    """Escrow already left PENDING; benign for release callers"""

    code = "already_released"


class AlreadyDisputed(SettlementError):
    code = "already_disputed"


class DisputeWindowClosed(SettlementError):
    code = "dispute_window_closed"


class MissingDeliveryInfo(SettlementError):
    code = "missing_delivery_info"


class NotAuthorized(SettlementError):
    code = "not_authorized"


class ImmutableFieldError(SettlementError):
    code = "immutable_field"


__all__ = [
    "SettlementError",
    "OrderNotFound",
    "EscrowNotFound",
    "DisputeNotFound",
    "IllegalTransition",
    "InvalidTransition",
    "DuplicateEscrow",
    "AlreadyReleased",
    "AlreadyDisputed",
    "DisputeWindowClosed",
    "MissingDeliveryInfo",
    "NotAuthorized",
    "ImmutableFieldError",
]
