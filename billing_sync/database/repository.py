"""
Local system of record for reconciled provider objects.

Every write is an upsert keyed by the provider's external id, so replaying an
event converges on the same row instead of duplicating it.
"""
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Type, TypeVar

import structlog
from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_sync.database.models import (
    AdminNotification,
    Base,
    CustomerRecord,
    PaymentRecord,
    SubscriptionRecord,
)

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=Base)

_INSERT_BY_DIALECT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class RecordStore(ABC):
    """Lookup and upsert operations used by the reconciliation handlers."""

    @abstractmethod
    async def find_customer_by_external_id(
        self, stripe_customer_id: str
    ) -> Optional[CustomerRecord]:
        ...

    @abstractmethod
    async def find_customer_by_account_id(self, account_id: str) -> Optional[CustomerRecord]:
        ...

    @abstractmethod
    async def upsert_customer(
        self, stripe_customer_id: str, account_id: str, email: Optional[str] = None
    ) -> CustomerRecord:
        ...

    @abstractmethod
    async def find_subscription_by_external_id(
        self, stripe_subscription_id: str
    ) -> Optional[SubscriptionRecord]:
        ...

    @abstractmethod
    async def upsert_subscription(
        self, stripe_subscription_id: str, customer_id: uuid.UUID, **fields: Any
    ) -> SubscriptionRecord:
        ...

    @abstractmethod
    async def find_payment_by_external_id(self, external_id: str) -> Optional[PaymentRecord]:
        ...

    @abstractmethod
    async def upsert_payment(
        self, external_id: str, kind: str, customer_id: uuid.UUID, **fields: Any
    ) -> PaymentRecord:
        ...

    @abstractmethod
    async def add_admin_notification(self, **fields: Any) -> AdminNotification:
        ...


class SqlAlchemyRecordStore(RecordStore):
    """
    RecordStore over an async SQLAlchemy session factory.

    Upserts use INSERT ... ON CONFLICT DO UPDATE on PostgreSQL and SQLite.
    Each operation runs in its own transaction.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def find_customer_by_external_id(
        self, stripe_customer_id: str
    ) -> Optional[CustomerRecord]:
        return await self._find_one(
            CustomerRecord, CustomerRecord.stripe_customer_id == stripe_customer_id
        )

    async def find_customer_by_account_id(self, account_id: str) -> Optional[CustomerRecord]:
        return await self._find_one(CustomerRecord, CustomerRecord.account_id == account_id)

    async def upsert_customer(
        self, stripe_customer_id: str, account_id: str, email: Optional[str] = None
    ) -> CustomerRecord:
        values: Dict[str, Any] = {
            "stripe_customer_id": stripe_customer_id,
            "account_id": account_id,
        }
        if email is not None:
            values["email"] = email
        return await self._upsert(CustomerRecord, "stripe_customer_id", values)

    async def find_subscription_by_external_id(
        self, stripe_subscription_id: str
    ) -> Optional[SubscriptionRecord]:
        return await self._find_one(
            SubscriptionRecord,
            SubscriptionRecord.stripe_subscription_id == stripe_subscription_id,
        )

    async def upsert_subscription(
        self, stripe_subscription_id: str, customer_id: uuid.UUID, **fields: Any
    ) -> SubscriptionRecord:
        values = {
            "stripe_subscription_id": stripe_subscription_id,
            "customer_id": customer_id,
            **fields,
        }
        return await self._upsert(SubscriptionRecord, "stripe_subscription_id", values)

    async def find_payment_by_external_id(self, external_id: str) -> Optional[PaymentRecord]:
        return await self._find_one(PaymentRecord, PaymentRecord.external_id == external_id)

    async def upsert_payment(
        self, external_id: str, kind: str, customer_id: uuid.UUID, **fields: Any
    ) -> PaymentRecord:
        values = {
            "external_id": external_id,
            "kind": kind,
            "customer_id": customer_id,
            **fields,
        }
        return await self._upsert(PaymentRecord, "external_id", values)

    async def add_admin_notification(self, **fields: Any) -> AdminNotification:
        async with self.session_factory() as session:
            async with session.begin():
                notification = AdminNotification(**fields)
                session.add(notification)
        return notification

    async def _find_one(self, model: Type[ModelT], criterion: Any) -> Optional[ModelT]:
        async with self.session_factory() as session:
            result = await session.execute(select(model).where(criterion))
            return result.scalar_one_or_none()

    async def _upsert(self, model: Type[ModelT], key: str, values: Dict[str, Any]) -> ModelT:
        async with self.session_factory() as session:
            async with session.begin():
                insert = _INSERT_BY_DIALECT.get(session.bind.dialect.name)
                if insert is None:
                    raise NotImplementedError(
                        f"Upsert not supported for dialect {session.bind.dialect.name}"
                    )

                stmt = insert(model).values(**values)
                updates = {column: stmt.excluded[column] for column in values if column != key}
                updates["updated_at"] = func.now()
                stmt = stmt.on_conflict_do_update(index_elements=[key], set_=updates)
                await session.execute(stmt)

                result = await session.execute(
                    select(model)
                    .where(getattr(model, key) == values[key])
                    .execution_options(populate_existing=True)
                )
                record = result.scalar_one()

        logger.debug("record_upserted", table=model.__tablename__, key=values[key])
        return record
