"""Atomic transaction utilities for order, escrow and payout state changes"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Generator, Optional
from sqlalchemy import update
from sqlalchemy.orm import Session
from database import SessionLocal

logger = logging.getLogger(__name__)


@contextmanager
def atomic_transaction(session: Optional[Session] = None) -> Generator[Session, None, None]:
    """
    Synchronous context manager for atomic database transactions with proper rollback.

    When a session is provided, nesting depth is tracked on it and only the
    outermost block commits. Without one, a fresh session is opened and closed.
    """
    if session is None:
        session = SessionLocal()
        try:
            yield session
            session.commit()
            logger.debug("Sync atomic transaction committed successfully")
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

    except Exception as e:
        # Always rollback on error, regardless of nesting
        session.rollback()
        logger.error(f"Sync transaction rolled back due to error (depth: {transaction_depth + 1}): {e}")
        raise
    finally:
        current_depth = getattr(session, '_atomic_transaction_depth', 1)
        setattr(session, '_atomic_transaction_depth', max(0, current_depth - 1))


def compare_and_swap(
    session: Session,
    model,
    ident: Any,
    expected: Dict[str, Any],
    values: Dict[str, Any],
) -> bool:
    """
    Conditionally update a single row.

    Issues ``UPDATE <model> SET <values> WHERE id = :ident AND <expected>``
    where a ``None`` expectation compiles to ``IS NULL``. Returns True when
    exactly one row matched. Loaded instances are synchronized in the session.
    """
    stmt = update(model).where(model.id == ident)
    for column_name, expected_value in expected.items():
        column = getattr(model, column_name)
        if expected_value is None:
            stmt = stmt.where(column.is_(None))
        else:
            stmt = stmt.where(column == expected_value)
    stmt = stmt.values(**values).execution_options(synchronize_session="fetch")

    result = session.execute(stmt)
    swapped = result.rowcount == 1
    if not swapped:
        logger.warning(
            f"🔒 CAS_MISS: {model.__tablename__} id={ident} expected={expected} - concurrent modification"
        )
    return swapped
