"""Atomic transaction utilities for conversion and order book operations"""

import logging
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy.orm import Session, sessionmaker

from database import SessionLocal

logger = logging.getLogger(__name__)


@contextmanager
def atomic_transaction(session_factory: Optional[sessionmaker] = None) -> Generator[Session, None, None]:
    """
    Synchronous context manager for atomic database transactions with proper rollback.

    Commits when the block exits cleanly; rolls back and re-raises otherwise.
    The block must not await anything: it holds a connection for its lifetime.
    """
    session = (session_factory or SessionLocal)()
    try:
        yield session
        session.commit()
        logger.debug("Sync atomic transaction committed successfully")
    except Exception as e:
        session.rollback()
        logger.warning(f"Sync transaction rolled back due to error: {type(e).__name__}: {e}")
        raise
    finally:
        session.close()


@contextmanager
def serializable_transaction(session_factory: Optional[sessionmaker] = None) -> Generator[Session, None, None]:
    """
    Like atomic_transaction, but the connection runs at SERIALIZABLE isolation.

    Used where correctness must hold across concurrent processes, e.g. matching
    two orders: the isolation level is pinned before the first statement runs.
    """
    session = (session_factory or SessionLocal)()
    try:
        session.connection(execution_options={"isolation_level": "SERIALIZABLE"})
        yield session
        session.commit()
        logger.debug("Serializable transaction committed successfully")
    except Exception as e:
        session.rollback()
        logger.warning(f"Serializable transaction rolled back: {type(e).__name__}: {e}")
        raise
    finally:
        session.close()
