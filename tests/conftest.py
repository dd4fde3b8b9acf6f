"""
Shared fixtures for the settlement engine test suite.

Every test gets a fresh SQLite file database (file-backed so worker threads share it),
a fixed clock, and factories that drive orders through the real state machine.
"""

import os
import sys
import logging
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_settlement.db")
os.environ.setdefault("AUTO_RELEASE_ENABLED", "false")

import database  # noqa: E402
from config import Config  # noqa: E402
from models import Actor, OrderStatus  # noqa: E402
from services.escrow_ledger import EscrowLedger  # noqa: E402
from services.order_state_service import OrderStateService  # noqa: E402
from services.payout_gateway import set_payout_gateway  # noqa: E402

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

BUYER_ID = "buyer-1"
STORE_ID = "store-1"
T0 = datetime(2026, 3, 2, 9, 0, 0)


@pytest.fixture(autouse=True)
def db(tmp_path, monkeypatch):
    """Fresh schema per test, default release policy, default payout gateway"""
    monkeypatch.setattr(Config, "CONFIRMATION_WINDOW_DAYS", 4)
    monkeypatch.setattr(Config, "RELEASE_ANCHOR", "delivered")
    monkeypatch.setattr(Config, "MIN_CONFIRMATION_WINDOW_HOURS", 24)
    monkeypatch.setattr(Config, "MAX_CONFIRMATION_WINDOW_HOURS", 720)
    monkeypatch.setattr(Config, "PAYOUT_PROVIDER", "outbox")

    engine = database.configure_database(f"sqlite:///{tmp_path / 'settlement.db'}")
    database.create_tables(engine)
    set_payout_gateway(None)
    yield engine
    set_payout_gateway(None)
    database.drop_tables(engine)


@pytest.fixture
def session():
    s = database.SessionLocal()
    yield s
    s.close()


@pytest.fixture
def t0():
    return T0


def _advance(order_id, target: OrderStatus, now: datetime, store_id: str = STORE_ID):
    path = [OrderStatus.CONFIRMED, OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED]
    current = OrderStatus.PENDING
    for step in path:
        if current == target:
            break
        if step == OrderStatus.SHIPPED:
            OrderStateService.set_delivery_info(order_id, "GIG Logistics", f"TRK-{order_id[:6]}")
        actor = Actor.SELLER
        OrderStateService.transition(order_id, current, step, actor, actor_id=store_id, now=now)
        current = step


@pytest.fixture
def make_order():
    """
    Create an order with captured escrow and advance it to ``status``.

    Returns the order id. The escrow is created while the order is PENDING, the
    way payment capture happens in production.
    """

    def factory(status=OrderStatus.PENDING, amount="100.00", currency="GHS",
                with_escrow=True, now=T0, store_id=STORE_ID, buyer_id=BUYER_ID,
                seller_payout_code="RCP_store1"):
        order = OrderStateService.create_order(
            buyer_id, store_id, Decimal(amount), currency=currency, seller_payout_code=seller_payout_code
        )
        if with_escrow:
            EscrowLedger.create_escrow(order.id, Decimal(amount), currency, payment_reference=f"PAY-{order.id[:8]}")
        _advance(order.id, OrderStatus(status), now, store_id)
        return order.id

    return factory


def load_escrow(order_id):
    with database.managed_session() as s:
        return EscrowLedger.get_by_order(order_id, s)


def load_order(order_id):
    from models import Order
    with database.managed_session() as s:
        return s.get(Order, order_id)


def days(n):
    return timedelta(days=n)
