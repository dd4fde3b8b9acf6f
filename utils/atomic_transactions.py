"""Atomic transaction utilities for settlement operations"""

import logging
from contextlib import contextmanager
from typing import Generator, Optional
from sqlalchemy import text
from sqlalchemy.orm import Session

import database
from config import Config

logger = logging.getLogger(__name__)


@contextmanager
def atomic_transaction(session: Optional[Session] = None) -> Generator[Session, None, None]:
    """
    Context manager for atomic database transactions with proper rollback.

    Without a session a new one is opened, committed on success and closed.
    With a session the call joins the caller's transaction: depth is tracked on the
    session and only the outermost block commits.
    """
    if session is None:
        session = database.SessionLocal()
        setattr(session, "_atomic_transaction_depth", 1)
        try:
            yield session
            session.commit()
            logger.debug("Atomic transaction committed successfully")
        except Exception as e:
            session.rollback()
            logger.debug(f"Atomic transaction rolled back: {type(e).__name__}: {e}")
            raise
        finally:
            setattr(session, "_atomic_transaction_depth", 0)
            session.close()
        return

    transaction_depth = getattr(session, "_atomic_transaction_depth", 0)
    try:
        setattr(session, "_atomic_transaction_depth", transaction_depth + 1)
        if transaction_depth > 0:
            logger.debug(f"Nested transaction detected (depth: {transaction_depth + 1})")

        yield session

        # For nested transactions, let the outermost handle commit
        if transaction_depth == 0:
            session.commit()
    except Exception as e:
        if transaction_depth == 0:
            session.rollback()
            logger.debug(f"Transaction rolled back (depth: 1): {type(e).__name__}: {e}")
        raise
    finally:
        current_depth = getattr(session, "_atomic_transaction_depth", 1)
        setattr(session, "_atomic_transaction_depth", max(0, current_depth - 1))


def apply_lock_timeout(session: Session, timeout_seconds: Optional[int] = None):
    """
    Bound how long this transaction waits on another transaction's row lock.

    PostgreSQL only; SQLite connections carry a busy timeout from database.build_engine.
    """
    if not database.is_postgres(session):
        return
    timeout_seconds = timeout_seconds or Config.LOCK_TIMEOUT_SECONDS
    session.execute(text(f"SET LOCAL lock_timeout = '{int(timeout_seconds)}s'"))
