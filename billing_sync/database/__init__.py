"""Database package for billing sync."""
from .connection import close_db, create_engine, create_session_factory, get_db, init_db
from .models import (
    AdminNotification,
    Base,
    CustomerRecord,
    PaymentRecord,
    SubscriptionRecord,
)
from .repository import RecordStore, SqlAlchemyRecordStore

__all__ = [
    "Base",
    "CustomerRecord",
    "SubscriptionRecord",
    "PaymentRecord",
    "AdminNotification",
    "RecordStore",
    "SqlAlchemyRecordStore",
    "create_engine",
    "create_session_factory",
    "get_db",
    "init_db",
    "close_db",
]
