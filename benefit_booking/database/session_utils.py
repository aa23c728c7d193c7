"""
Dialect checks for a SQLAlchemy session.
"""

from __future__ import annotations

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

# Dialects that honour SELECT ... FOR UPDATE row locks
ROW_LOCK_DIALECTS = frozenset({"postgresql", "mysql", "mariadb", "oracle"})


def get_dialect_name(session: Session, default: str = "sqlite") -> str:
    """Name of the dialect the session is bound to, or ``default`` when unbound."""
    try:
        bind = session.get_bind()
    except SQLAlchemyError:
        return default
    return getattr(getattr(bind, "dialect", None), "name", None) or default


def supports_row_locks(session: Session) -> bool:
    return get_dialect_name(session) in ROW_LOCK_DIALECTS
