"""Atomic transaction utilities for settlement operations and admin actions"""

import logging
from contextlib import contextmanager
from typing import Optional, Generator

from sqlalchemy import update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from database import SessionLocal
from models import Order, LedgerAccount
from utils.datetime_helpers import get_naive_utc_now
from utils.exceptions import NotFoundError, MarketplaceError

logger = logging.getLogger(__name__)


@contextmanager
def atomic_transaction(session: Optional[Session] = None) -> Generator[Session, None, None]:
    """
    Context manager for atomic database transactions with proper rollback.

    With a provided session, nesting depth is tracked on the session and only the
    outermost block commits. Without one, a fresh session is opened and closed.
    Any exception rolls the whole transaction back and is re-raised.
    """
    if session is None:
        session = SessionLocal()
        try:
            yield session
            session.commit()
            logger.debug("Sync atomic transaction committed successfully")
        except MarketplaceError as e:
            session.rollback()
            logger.debug(f"Transaction rolled back on business error: {e.code}")
            raise
        except Exception as e:
            session.rollback()
            logger.error(f"Sync transaction rolled back due to error: {e}")
            raise
        finally:
            session.close()
        return

    transaction_depth = getattr(session, '_atomic_transaction_depth', 0)
    try:
        setattr(session, '_atomic_transaction_depth', transaction_depth + 1)

        if transaction_depth > 0:
            logger.debug(f"Nested sync transaction detected (depth: {transaction_depth + 1})")

        yield session

        # For nested transactions, let the outermost handle commit
        if transaction_depth == 0:
            session.commit()
            logger.debug("Outermost sync transaction committed successfully")

    except MarketplaceError as e:
        # Expected business outcome (conflict, invalid state): no error log
        if transaction_depth == 0:
            session.rollback()
        logger.debug(f"Transaction rolled back on business error (depth: {transaction_depth + 1}): {e.code}")
        raise
    except Exception as e:
        if transaction_depth == 0:
            session.rollback()
        logger.error(f"Sync transaction rolled back due to error (depth: {transaction_depth + 1}): {e}")
        raise
    finally:
        current_depth = getattr(session, '_atomic_transaction_depth', 1)
        setattr(session, '_atomic_transaction_depth', max(0, current_depth - 1))


def lock_order(session: Session, order_id: int) -> Order:
    """
    Take the order's row lock for the rest of the transaction and return it fresh.

    The lock is acquired with a write (touching updated_at) so it serializes on
    every backend: a row lock on PostgreSQL, the database write lock on SQLite.
    """
    result = session.execute(
        update(Order)
        .where(Order.id == order_id)
        .values(updated_at=get_naive_utc_now())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise NotFoundError(f"Order {order_id} not found")

    order = session.get(Order, order_id, with_for_update=True, populate_existing=True)
    logger.debug(f"🔒 Acquired lock for order {order_id}")
    return order


def lock_ledger_account(session: Session, user_id: int) -> None:
    """
    Serialize balance-checked postings for one user.

    Creates the user's lock row on first use (INSERT ... ON CONFLICT DO NOTHING)
    and then bumps it, holding the lock until commit.
    """
    dialect = session.get_bind().dialect.name
    insert_fn = pg_insert if dialect == "postgresql" else sqlite_insert
    session.execute(
        insert_fn(LedgerAccount)
        .values(user_id=user_id, lock_version=0, updated_at=get_naive_utc_now())
        .on_conflict_do_nothing(index_elements=["user_id"])
    )
    session.execute(
        update(LedgerAccount)
        .where(LedgerAccount.user_id == user_id)
        .values(lock_version=LedgerAccount.lock_version + 1, updated_at=get_naive_utc_now())
        .execution_options(synchronize_session=False)
    )
    logger.debug(f"🔒 Acquired ledger lock for user {user_id}")
