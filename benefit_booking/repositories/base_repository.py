# benefit_booking/repositories/base_repository.py
"""
Base repository for the booking store.

Repositories own every SQL statement; services own transactions. A
repository method never commits: it flushes so the caller's transaction
sees its effects and can still roll them back.
"""

import logging
from typing import Any, Generic, Optional, Type, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Query, Session

from ..core.exceptions import RepositoryException
from ..database.session_utils import supports_row_locks

T = TypeVar("T")

logger = logging.getLogger(__name__)


class BaseRepository(Generic[T]):
    """
    Shared lookups and inserts for one model.

    Attributes:
        db: SQLAlchemy session (transaction managed by the service layer)
        model: SQLAlchemy model class
    """

    def __init__(self, db: Session, model: Type[T]):
        self.db = db
        self.model = model
        self.logger = logging.getLogger(f"{__name__}.{model.__name__}")

    def get_by_id(self, id: str) -> Optional[T]:
        try:
            return self.db.get(self.model, id)
        except SQLAlchemyError as e:
            self.logger.error("Error getting %s %s: %s", self.model.__name__, id, e)
            raise RepositoryException(f"Failed to retrieve {self.model.__name__}: {e}")

    def create(self, **kwargs: Any) -> T:
        """
        Add and flush a new row.

        IntegrityError propagates unchanged so services can map it to a
        domain error (duplicate booking, replayed idempotency key).
        """
        entity = self.model(**kwargs)
        try:
            self.db.add(entity)
            self.db.flush()
            return entity
        except IntegrityError:
            raise
        except SQLAlchemyError as e:
            self.logger.error("Error creating %s: %s", self.model.__name__, e)
            raise RepositoryException(f"Failed to create {self.model.__name__}: {e}")

    def flush(self) -> None:
        self.db.flush()

    def find_one_by(self, **kwargs: Any) -> Optional[T]:
        try:
            return self.db.query(self.model).filter_by(**kwargs).first()
        except SQLAlchemyError as e:
            self.logger.error("Error finding %s by %s: %s", self.model.__name__, kwargs, e)
            raise RepositoryException(f"Failed to find {self.model.__name__}: {e}")

    def _lock_rows(self, query: Query) -> Query:
        """
        Apply SELECT ... FOR UPDATE where the dialect supports it.

        SQLite has no row locks; there the conditional UPDATE statements are
        the only guard and a lost race surfaces as ConcurrentUpdateError.
        """
        if supports_row_locks(self.db):
            return query.with_for_update()
        return query
