"""
Settlement API Routes
FastAPI routes exposing the settlement engine to buyer, seller and admin clients.

Caller identity arrives in X-User-Id / X-User-Role headers set by the upstream
auth gateway. Responses use the {success, message, data} envelope.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from database import managed_session
from models import Actor, DisputeType, DisputeVerdict, DeliveryStatus, OrderStatus
from services.dispute_service import DisputeService
from services.escrow_ledger import EscrowLedger
from services.escrow_query_service import EscrowQueryService
from services.order_state_service import OrderStateService
from services.settlement_coordinator import RejectionReason, SettlementCoordinator, SettlementOutcome
from utils.settlement_exceptions import (
    AlreadyDisputed, AlreadyReleased, DisputeNotFound, DisputeWindowClosed,
    DuplicateEscrow, EscrowNotFound, IllegalTransition, ImmutableFieldError,
    InvalidTransition, MissingDeliveryInfo, NotAuthorized, OrderNotFound, SettlementError
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["settlement"])


# ============================================================================
# Identity and envelopes
# ============================================================================

class Caller(BaseModel):
    user_id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def get_caller(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header("buyer"),
) -> Caller:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    role = (x_user_role or "buyer").lower()
    if role not in ("buyer", "seller", "admin", "courier"):
        raise HTTPException(status_code=400, detail=f"Unknown role {role}")
    return Caller(user_id=x_user_id, role=role)


def require_admin(caller: Caller = Depends(get_caller)) -> Caller:
    if not caller.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return caller


def ok(data=None, message: str = "OK"):
    return {"success": True, "message": message, "data": data}


ERROR_STATUS = {
    OrderNotFound: 404,
    EscrowNotFound: 404,
    DisputeNotFound: 404,
    NotAuthorized: 403,
    IllegalTransition: 409,
    DuplicateEscrow: 409,
    AlreadyReleased: 409,
    AlreadyDisputed: 409,
    DisputeWindowClosed: 409,
    MissingDeliveryInfo: 400,
    ImmutableFieldError: 400,
    InvalidTransition: 500,
}

REJECTION_STATUS = {
    RejectionReason.NOT_ORDER_BUYER: 403,
    RejectionReason.DISPUTE_OPEN: 409,
    RejectionReason.NOT_SHIPPED_OR_DELIVERED: 409,
    RejectionReason.ORDER_NOT_ELIGIBLE: 409,
    RejectionReason.ESCROW_FAILED: 409,
    RejectionReason.PAYOUT_FAILED: 502,
    RejectionReason.INVALID_SPLIT: 400,
}


async def settlement_error_handler(request: Request, exc: SettlementError):
    status_code = ERROR_STATUS.get(type(exc), 400)
    if status_code >= 500:
        logger.error(f"❌ API_ERROR: {request.method} {request.url.path} -> {exc.code}: {exc.message}")
    else:
        logger.info(f"API_REJECTED: {request.method} {request.url.path} -> {exc.code}: {exc.message}")
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "message": exc.message, "data": {"code": exc.code}},
    )


async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"success": False, "message": str(exc), "data": None})


def register_error_handlers(app: FastAPI):
    app.add_exception_handler(SettlementError, settlement_error_handler)
    app.add_exception_handler(ValueError, value_error_handler)


def settlement_response(result):
    """RELEASED and ALREADY_RELEASED are both successes; REJECTED maps to an error status"""
    if result.outcome == SettlementOutcome.REJECTED:
        return JSONResponse(
            status_code=REJECTION_STATUS.get(result.reason, 409),
            content={"success": False, "message": result.detail, "data": result.to_dict()},
        )
    message = "Funds released" if result.outcome == SettlementOutcome.RELEASED else "Funds were already released"
    return ok(result.to_dict(), message)


def order_dict(order):
    return {
        "id": order.id,
        "buyerId": order.buyer_id,
        "storeId": order.store_id,
        "totalAmount": str(order.total_amount),
        "currency": order.currency,
        "status": order.status,
        "deliveredAt": order.delivered_at.isoformat() if order.delivered_at else None,
        "cancelledAt": order.cancelled_at.isoformat() if order.cancelled_at else None,
        "createdAt": order.created_at.isoformat() if order.created_at else None,
        "updatedAt": order.updated_at.isoformat() if order.updated_at else None,
    }


# ============================================================================
# Request bodies
# ============================================================================

class CreateOrderRequest(BaseModel):
    buyer_id: str
    store_id: str
    total_amount: Decimal = Field(gt=0)
    currency: Optional[str] = None
    order_id: Optional[str] = None
    seller_payout_code: Optional[str] = None


class CaptureEscrowRequest(BaseModel):
    amount: Decimal = Field(gt=0)
    currency: str
    payment_reference: Optional[str] = None


class TransitionRequest(BaseModel):
    from_status: OrderStatus
    to_status: OrderStatus
    reason: Optional[str] = None


class DeliveryInfoRequest(BaseModel):
    courier_service: str
    tracking_number: str
    tracking_url: Optional[str] = None
    estimated_delivery: Optional[datetime] = None


class DeliveryStatusRequest(BaseModel):
    status: DeliveryStatus


class CancelOrderRequest(BaseModel):
    reason: Optional[str] = None


class OpenDisputeRequest(BaseModel):
    type: DisputeType
    description: str = Field(min_length=1)


class DisputeMessageRequest(BaseModel):
    body: str = Field(min_length=1)


class CancelDisputeRequest(BaseModel):
    reason: Optional[str] = None


class ResolveDisputeRequest(BaseModel):
    verdict: DisputeVerdict
    resolution: Optional[str] = None
    refund_amount: Optional[Decimal] = None


# ============================================================================
# Orders and escrow
# ============================================================================

@router.post("/orders", status_code=201)
def create_order(body: CreateOrderRequest, caller: Caller = Depends(get_caller)):
    """Marketplace registers an order with the engine"""
    if not caller.is_admin and caller.user_id != body.buyer_id:
        raise HTTPException(status_code=403, detail="Orders can only be placed for yourself")
    with managed_session() as session:
        order = OrderStateService.create_order(
            body.buyer_id, body.store_id, body.total_amount,
            currency=body.currency, order_id=body.order_id,
            seller_payout_code=body.seller_payout_code, session=session,
        )
        return ok(order_dict(order), "Order created")


@router.post("/orders/{order_id}/escrow", status_code=201)
def capture_escrow(order_id: str, body: CaptureEscrowRequest, caller: Caller = Depends(require_admin)):
    """Payment capture service records the held funds"""
    with managed_session() as session:
        escrow = EscrowLedger.create_escrow(
            order_id, body.amount, body.currency,
            payment_reference=body.payment_reference, session=session,
        )
        return ok(escrow.to_dict(), "Escrow created")


@router.get("/orders/{order_id}/escrow")
def get_order_escrow(order_id: str, caller: Caller = Depends(get_caller)):
    """Returns {escrow, canConfirmReceipt}"""
    with managed_session() as session:
        view = EscrowQueryService.escrow_view(order_id, caller.user_id, caller.is_admin, session=session)
        return ok(view)


@router.post("/orders/{order_id}/transition")
def transition_order(order_id: str, body: TransitionRequest, caller: Caller = Depends(get_caller)):
    actor = Actor.ADMIN if caller.is_admin else Actor(caller.role)
    with managed_session() as session:
        order = OrderStateService.transition(
            order_id, body.from_status, body.to_status, actor,
            actor_id=None if caller.is_admin else caller.user_id,
            reason=body.reason, session=session,
        )
        return ok(order_dict(order), f"Order is now {order.status}")


@router.put("/orders/{order_id}/delivery")
def set_delivery_info(order_id: str, body: DeliveryInfoRequest, caller: Caller = Depends(get_caller)):
    if caller.role not in ("seller", "admin"):
        raise HTTPException(status_code=403, detail="Only the seller can assign a courier")
    with managed_session() as session:
        delivery = OrderStateService.set_delivery_info(
            order_id, body.courier_service, body.tracking_number,
            tracking_url=body.tracking_url, estimated_delivery=body.estimated_delivery,
            actor_id=None if caller.is_admin else caller.user_id, session=session,
        )
        return ok(delivery.to_dict(), "Courier assigned")


@router.post("/orders/{order_id}/delivery-status")
def update_delivery_status(order_id: str, body: DeliveryStatusRequest, caller: Caller = Depends(get_caller)):
    """Seller or courier webhook; SHIPPED and DELIVERED move the order"""
    if caller.role not in ("seller", "courier", "admin"):
        raise HTTPException(status_code=403, detail="Only the seller or courier can update delivery")
    actor = Actor(caller.role)
    with managed_session() as session:
        order, delivery = OrderStateService.update_delivery_status(
            order_id, body.status, actor=actor,
            actor_id=caller.user_id if actor == Actor.SELLER else None,
            session=session,
        )
        return ok({"order": order_dict(order), "delivery": delivery.to_dict()}, "Delivery status updated")


@router.post("/orders/{order_id}/cancel")
def cancel_order(order_id: str, body: CancelOrderRequest, caller: Caller = Depends(get_caller)):
    if caller.role not in ("buyer", "seller", "admin"):
        raise HTTPException(status_code=403, detail="Not allowed to cancel orders")
    actor = Actor(caller.role)
    with managed_session() as session:
        order = OrderStateService.cancel_order(
            order_id, actor,
            actor_id=None if caller.is_admin else caller.user_id,
            reason=body.reason, session=session,
        )
        escrow = EscrowLedger.get_by_order(order_id, session)
        return ok(
            {"order": order_dict(order), "escrow": escrow.to_dict() if escrow else None},
            "Order cancelled",
        )


@router.post("/orders/{order_id}/confirm-receipt")
def confirm_receipt(order_id: str, caller: Caller = Depends(get_caller)):
    result = SettlementCoordinator.confirm_receipt(order_id, caller.user_id)
    return settlement_response(result)


# ============================================================================
# Disputes
# ============================================================================

@router.post("/orders/{order_id}/disputes", status_code=201)
def open_dispute(order_id: str, body: OpenDisputeRequest, caller: Caller = Depends(get_caller)):
    with managed_session() as session:
        dispute = DisputeService.open_dispute(
            order_id, caller.user_id, body.type.value, body.description, session=session,
        )
        return ok(dispute.to_dict(), "Dispute opened")


@router.get("/disputes")
def my_disputes(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    caller: Caller = Depends(get_caller),
):
    """Disputes on the caller's orders (as buyer) or store (as seller)"""
    filters = {"store_id": caller.user_id} if caller.role == "seller" else {"buyer_id": caller.user_id}
    items, total = DisputeService.list_disputes(page=page, limit=limit, **filters)
    return ok({"items": [d.to_dict() for d in items], "total": total, "page": page, "limit": limit})


@router.get("/disputes/{dispute_id}")
def get_dispute(dispute_id: str, caller: Caller = Depends(get_caller)):
    dispute = DisputeService.get_dispute(dispute_id, caller.user_id, caller.is_admin)
    return ok(dispute.to_dict(include_messages=True))


@router.post("/disputes/{dispute_id}/messages", status_code=201)
def add_dispute_message(dispute_id: str, body: DisputeMessageRequest, caller: Caller = Depends(get_caller)):
    with managed_session() as session:
        message = DisputeService.add_message(
            dispute_id, caller.user_id, body.body, is_admin=caller.is_admin, session=session,
        )
        return ok(message.to_dict(), "Message added")


@router.post("/disputes/{dispute_id}/cancel")
def cancel_dispute(dispute_id: str, body: CancelDisputeRequest, caller: Caller = Depends(get_caller)):
    with managed_session() as session:
        dispute = DisputeService.cancel_dispute(
            dispute_id, caller.user_id, reason=body.reason, is_admin=caller.is_admin, session=session,
        )
        return ok(dispute.to_dict(), "Dispute cancelled")


# ============================================================================
# Admin
# ============================================================================

@router.get("/admin/escrows/pending")
def pending_escrows(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    caller: Caller = Depends(require_admin),
):
    items, total = EscrowQueryService.pending_escrows(page=page, limit=limit)
    return ok({"items": [e.to_dict() for e in items], "total": total, "page": page, "limit": limit})


@router.get("/admin/disputes")
def admin_disputes(
    status: Optional[str] = None,
    type: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    caller: Caller = Depends(require_admin),
):
    items, total = DisputeService.list_disputes(status=status, dispute_type=type, page=page, limit=limit)
    return ok({"items": [d.to_dict() for d in items], "total": total, "page": page, "limit": limit})


@router.post("/admin/disputes/{dispute_id}/resolve")
def resolve_dispute(dispute_id: str, body: ResolveDisputeRequest, caller: Caller = Depends(require_admin)):
    dispute, result = DisputeService.resolve_dispute(
        dispute_id, body.verdict.value, caller.user_id,
        resolution=body.resolution, refund_amount=body.refund_amount,
    )
    response = settlement_response(result)
    if isinstance(response, dict):
        response["data"]["dispute"] = dispute.to_dict()
    return response


@router.get("/admin/summary")
def settlement_summary(caller: Caller = Depends(require_admin)):
    return ok(EscrowQueryService.settlement_summary())
