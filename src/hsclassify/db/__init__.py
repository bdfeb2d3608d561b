"""Database layer: SQLAlchemy tables, session management and repository."""

from hsclassify.db.models import AuditEntryRecord, Base, ClassificationRecord, DecisionRecord
from hsclassify.db.repository import SqlClassificationRepository
from hsclassify.db.session import drop_all, get_engine, get_session_factory, get_standalone_session, init_db

__all__ = [
    # Models
    "Base",
    "ClassificationRecord",
    "DecisionRecord",
    "AuditEntryRecord",
    # Session
    "get_engine",
    "get_session_factory",
    "get_standalone_session",
    "init_db",
    "drop_all",
    # Repository
    "SqlClassificationRepository",
]
