import logging
from contextlib import contextmanager

from sqlalchemy.exc import SQLAlchemyError

from fieldsync.core.errors import StorageError

logger = logging.getLogger("fieldsync.db")


@contextmanager
def storage_guard(db, operation: str, agency: str | None = None, table: str | None = None):
    """Roll back and re-raise engine failures as StorageError."""
    try:
        yield
    except SQLAlchemyError as exc:
        db.rollback()
        message = str(getattr(exc, "orig", None) or exc)
        logger.error(
            "storage failure operation=%s agency=%s table=%s error=%s",
            operation,
            agency,
            table,
            message,
        )
        raise StorageError(operation, message, agency=agency, table=table) from exc
