import logging
from contextlib import contextmanager
from typing import Any, Optional
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from leaveflow.core.exceptions import ConcurrentModificationError


class BaseService:
    """Shared plumbing for domain services: session, logger and unit-of-work handling."""

    def __init__(self, db: Session):
        self.db = db
        self._logger = logging.getLogger(self.__class__.__module__)

    def log_info(self, message: str, **extra: Any):
        self._logger.info(message, extra=extra or None)

    def log_warning(self, message: str, **extra: Any):
        self._logger.warning(message, extra=extra or None)

    @contextmanager
    def unit_of_work(self, entity: str = "record", key: Optional[Any] = None):
        """
        Commit on success, roll back on any failure.
        A version-check failure on flush/commit surfaces as ConcurrentModificationError.
        """
        try:
            yield
            self.db.commit()
        except StaleDataError as e:
            self.db.rollback()
            self._logger.warning(f"Concurrent modification of {entity} {key}: {e}")
            raise ConcurrentModificationError(entity, key) from e
        except Exception:
            self.db.rollback()
            raise
