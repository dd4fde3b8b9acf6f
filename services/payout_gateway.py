"""
Payout Gateway
Moves released escrow funds to the seller (transfer) or back to the buyer (refund).

OutboxPayoutGateway (default) defers the money movement to the downstream payout
subsystem, which consumes FundsReleased outbox events. PaystackPayoutGateway calls
the Paystack transfer and refund APIs synchronously with a bounded timeout.
"""

import logging
import uuid
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional

import requests

from config import Config

logger = logging.getLogger(__name__)


class PayoutError(Exception):
    """
    External payout failure; the escrow is marked failed and never retried automatically.

    ``paid`` and ``references`` describe legs that went through before the failure,
    so a partially paid escrow is never paid twice by hand.
    """

    def __init__(self, message: str, provider: Optional[str] = None, retryable: bool = False,
                 references: Optional[List[str]] = None, paid: Optional[Dict[str, Decimal]] = None):
        self.provider = provider
        self.retryable = retryable
        self.references = list(references or [])
        self.paid = dict(paid or {})
        super().__init__(message)

    @property
    def payout_reference(self) -> Optional[str]:
        return ",".join(self.references) or None


def to_minor_units(amount: Decimal) -> int:
    """Provider APIs take integer minor units (pesewas, kobo)"""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PayoutGateway:
    """Interface: return a payout reference or raise PayoutError"""

    name = "base"

    def pay_out(self, order, escrow, allocations: Dict[str, Decimal], reference: str) -> str:
        raise NotImplementedError


class OutboxPayoutGateway(PayoutGateway):
    """Money moves downstream from the FundsReleased event; nothing to call here"""

    name = "outbox"

    def pay_out(self, order, escrow, allocations, reference):
        logger.info(
            f"💸 PAYOUT_DEFERRED: order {order.id} {allocations} {escrow.currency} ref={reference}"
        )
        return reference


class PaystackPayoutGateway(PayoutGateway):
    """Paystack transfers (seller share) and refunds (buyer share)"""

    name = "paystack"

    def __init__(self, secret_key: Optional[str] = None, base_url: Optional[str] = None,
                 timeout: Optional[int] = None, http=None):
        self.secret_key = secret_key or Config.PAYSTACK_SECRET_KEY
        self.base_url = (base_url or Config.PAYSTACK_BASE_URL).rstrip("/")
        self.timeout = timeout or Config.PAYOUT_TIMEOUT_SECONDS
        self.http = http or requests.Session()

    def _headers(self):
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    def _post(self, path: str, payload: Dict) -> Dict:
        url = f"{self.base_url}{path}"
        try:
            response = self.http.post(url, json=payload, headers=self._headers(), timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise PayoutError(f"Paystack request failed: {e}", provider=self.name, retryable=True) from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400 or not body.get("status"):
            message = body.get("message") or f"HTTP {response.status_code}"
            raise PayoutError(f"Paystack rejected {path}: {message}", provider=self.name)
        return body.get("data") or {}

    def transfer(self, recipient_code: str, amount: Decimal, reference: str, reason: str) -> str:
        data = self._post("/transfer", {
            "source": "balance",
            "amount": to_minor_units(amount),
            "recipient": recipient_code,
            "reference": reference,
            "reason": reason,
        })
        return data.get("transfer_code") or reference

    def refund(self, transaction_reference: str, amount: Decimal) -> str:
        data = self._post("/refund", {
            "transaction": transaction_reference,
            "amount": to_minor_units(amount),
        })
        return str(data.get("id") or transaction_reference)

    def pay_out(self, order, escrow, allocations, reference):
        references = []
        paid = {}

        try:
            seller_amount = allocations.get("seller", Decimal("0"))
            if seller_amount > 0:
                if not order.seller_payout_code:
                    raise PayoutError("Seller payment account not configured", provider=self.name)
                references.append(self.transfer(
                    order.seller_payout_code,
                    seller_amount,
                    f"{reference}-S",
                    f"Escrow release for order {order.id}",
                ))
                paid["seller"] = seller_amount

            buyer_amount = allocations.get("buyer", Decimal("0"))
            if buyer_amount > 0:
                if not order.payment_reference:
                    raise PayoutError("Buyer payment reference unknown, cannot refund", provider=self.name)
                references.append(self.refund(order.payment_reference, buyer_amount))
                paid["buyer"] = buyer_amount
        except PayoutError as e:
            if paid:
                e.references = references + e.references
                e.paid = {**paid, **e.paid}
                logger.error(
                    f"🚨 PAYOUT_PARTIAL: order {order.id} paid {paid} refs={references} before failing: {e}"
                )
            raise

        logger.info(f"💸 PAYOUT_SENT: order {order.id} via paystack refs={references}")
        return ",".join(references)


def new_payout_reference(order_id: str) -> str:
    return f"ESC-{order_id[:8]}-{uuid.uuid4().hex[:10]}"


_gateway_override: Optional[PayoutGateway] = None


def set_payout_gateway(gateway: Optional[PayoutGateway]):
    """Install a gateway instance (tests, alternative providers); None restores config selection"""
    global _gateway_override
    _gateway_override = gateway


def get_payout_gateway() -> PayoutGateway:
    if _gateway_override is not None:
        return _gateway_override
    if Config.PAYOUT_PROVIDER == "paystack":
        return PaystackPayoutGateway()
    return OutboxPayoutGateway()
