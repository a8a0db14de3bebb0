"""Translation of SQLAlchemy failures into the application error taxonomy."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, TimeoutError
from sqlalchemy.orm import Session

from app.core.exceptions import ConflictError, TransientStoreError

logger = logging.getLogger(__name__)


@contextmanager
def translate_store_errors(db: Session, operation: str) -> Iterator[None]:
    """Roll back and re-raise storage exceptions as AppError subclasses.

    IntegrityError becomes ConflictError, connection/timeout failures become
    TransientStoreError. Anything else propagates unchanged.
    """
    try:
        yield
    except IntegrityError as exc:
        db.rollback()
        logger.info("Unique constraint hit during %s: %s", operation, exc.orig)
        raise ConflictError(f"Conflict during {operation}") from exc
    except (OperationalError, TimeoutError) as exc:
        db.rollback()
        logger.warning("Transient store failure during %s: %s", operation, exc)
        raise TransientStoreError(operation=operation) from exc
    except DBAPIError as exc:
        db.rollback()
        if exc.connection_invalidated:
            logger.warning("Connection invalidated during %s", operation)
            raise TransientStoreError(operation=operation) from exc
        raise
