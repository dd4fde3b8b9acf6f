"""
Transaction helper and configuration tests
"""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from config import Config
from database import SessionLocal, managed_session
from models import Order
from services.order_state_service import OrderStateService
from utils.atomic_transactions import atomic_transaction


class TestAtomicTransaction:

    def test_new_session_commits(self):
        with atomic_transaction() as session:
            order = OrderStateService.create_order("b-1", "s-1", Decimal("10.00"), session=session)

        with managed_session() as session:
            assert session.get(Order, order.id) is not None

    def test_error_rolls_back(self):
        with pytest.raises(RuntimeError):
            with atomic_transaction() as session:
                order = OrderStateService.create_order("b-1", "s-1", Decimal("10.00"), session=session)
                raise RuntimeError("boom")

        with managed_session() as session:
            assert session.get(Order, order.id) is None

    def test_nested_blocks_commit_once(self):
        """Only the outermost block commits"""
        session = MagicMock()
        session._atomic_transaction_depth = 0

        with atomic_transaction(session):
            with atomic_transaction(session):
                with atomic_transaction(session):
                    pass
                session.commit.assert_not_called()
            session.commit.assert_not_called()

        session.commit.assert_called_once()
        assert session._atomic_transaction_depth == 0

    def test_nested_error_rolls_back_at_outermost(self):
        session = MagicMock()
        session._atomic_transaction_depth = 0

        with pytest.raises(ValueError):
            with atomic_transaction(session):
                with atomic_transaction(session):
                    raise ValueError("bad split")

        session.rollback.assert_called_once()
        session.commit.assert_not_called()

    def test_inner_failure_undoes_outer_work(self):
        session = SessionLocal()
        try:
            with pytest.raises(ValueError):
                with atomic_transaction(session) as tx:
                    order = OrderStateService.create_order("b-2", "s-2", Decimal("5.00"), session=tx)
                    OrderStateService.create_order("b-2", "s-2", Decimal("-1"), session=tx)
        finally:
            session.close()

        with managed_session() as check:
            assert check.get(Order, order.id) is None

    def test_new_session_is_outermost(self):
        """Services joining a fresh block must not commit it early"""
        with atomic_transaction() as session:
            assert session._atomic_transaction_depth == 1
            with atomic_transaction(session) as joined:
                assert joined is session
                assert session._atomic_transaction_depth == 2
            assert session._atomic_transaction_depth == 1


class TestConfigValidation:

    def test_defaults_are_valid(self):
        assert Config.validate() == []

    def test_bad_values_are_reported(self, monkeypatch):
        monkeypatch.setattr(Config, "RELEASE_ANCHOR", "paid")
        monkeypatch.setattr(Config, "PAYOUT_PROVIDER", "paystack")
        monkeypatch.setattr(Config, "PAYSTACK_SECRET_KEY", None)
        monkeypatch.setattr(Config, "MIN_CONFIRMATION_WINDOW_HOURS", 1000)

        problems = Config.validate()

        assert any("RELEASE_ANCHOR" in p for p in problems)
        assert any("PAYSTACK_SECRET_KEY" in p for p in problems)
        assert any("MIN_CONFIRMATION_WINDOW_HOURS" in p for p in problems)
