"""
Subscription store.

Persistence boundary for subscription aggregates. Every write that touches
more than one table (aggregate + metadata + history + ledger) happens in a
single transaction, and aggregate updates are guarded by an optimistic
version check.
"""

import asyncio
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime, timedelta
from weakref import WeakValueDictionary

import structlog
from sqlalchemy import Select, delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from subs.billing.exceptions import StaleSubscriptionError, SubscriptionNotFoundError
from subs.billing.money_utils import round_amount
from subs.billing.subscriptions.entities import (
    JobLeaseEntity,
    ProcessedWebhookEventEntity,
    SubscriptionEntity,
    SubscriptionHistoryEntity,
    SubscriptionMetaEntity,
)
from subs.billing.subscriptions.models import (
    ACTIVE_STATUSES,
    BillingPeriod,
    ExtensionMetadata,
    HistoryAction,
    HistoryEntry,
    ProcessedEvent,
    Subscription,
    SubscriptionStatus,
)
from subs.db import session_scope, utcnow

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]

_AGGREGATE_COLUMNS = (
    "order_id",
    "customer_id",
    "product_id",
    "external_subscription_id",
    "billing_interval",
    "start_date",
    "next_payment_date",
    "last_payment_date",
    "end_date",
    "trial_end_date",
    "subscription_amount",
    "fee_amount",
    "total_amount",
    "currency",
    "payment_method_id",
    "delivery_address",
    "notes",
)


def _entity_values(subscription: Subscription) -> dict[str, object]:
    values: dict[str, object] = {
        column: getattr(subscription, column) for column in _AGGREGATE_COLUMNS
    }
    values["status"] = subscription.status.value
    values["billing_period"] = subscription.billing_period.value
    return values


def _to_domain(entity: SubscriptionEntity, meta_rows: Iterable[SubscriptionMetaEntity]) -> Subscription:
    currency = entity.currency
    return Subscription(
        subscription_id=entity.subscription_id,
        order_id=entity.order_id,
        customer_id=entity.customer_id,
        product_id=entity.product_id,
        external_subscription_id=entity.external_subscription_id,
        status=SubscriptionStatus(entity.status),
        billing_period=BillingPeriod(entity.billing_period),
        billing_interval=entity.billing_interval,
        start_date=entity.start_date,
        next_payment_date=entity.next_payment_date,
        last_payment_date=entity.last_payment_date,
        end_date=entity.end_date,
        trial_end_date=entity.trial_end_date,
        subscription_amount=round_amount(entity.subscription_amount, currency),
        fee_amount=round_amount(entity.fee_amount, currency),
        total_amount=round_amount(entity.total_amount, currency),
        currency=currency,
        payment_method_id=entity.payment_method_id,
        delivery_address=entity.delivery_address,
        notes=entity.notes,
        created_at=entity.created_at,
        modified_at=entity.modified_at,
        version=entity.version,
        metadata=ExtensionMetadata.from_dict({row.meta_key: row.meta_value for row in meta_rows}),
    )


def _history_entity(entry: HistoryEntry) -> SubscriptionHistoryEntity:
    return SubscriptionHistoryEntity(
        subscription_id=entry.subscription_id,
        action=entry.action.value,
        status_from=entry.status_from.value if entry.status_from else None,
        status_to=entry.status_to.value if entry.status_to else None,
        note=entry.note,
        actor=entry.actor,
        created_at=entry.created_at,
    )


def _history_domain(entity: SubscriptionHistoryEntity) -> HistoryEntry:
    return HistoryEntry(
        id=entity.id,
        subscription_id=entity.subscription_id,
        action=HistoryAction(entity.action),
        status_from=SubscriptionStatus(entity.status_from) if entity.status_from else None,
        status_to=SubscriptionStatus(entity.status_to) if entity.status_to else None,
        note=entity.note,
        actor=entity.actor,
        created_at=entity.created_at,
    )


def _meta_entities(subscription: Subscription) -> list[SubscriptionMetaEntity]:
    return [
        SubscriptionMetaEntity(
            subscription_id=subscription.subscription_id, meta_key=key, meta_value=value
        )
        for key, value in subscription.metadata.to_dict().items()
    ]


class SubscriptionStore:
    """Async repository for subscriptions and their satellite tables."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock
        self._locks: WeakValueDictionary[str, asyncio.Lock] = WeakValueDictionary()

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    def lock(self, subscription_id: str) -> asyncio.Lock:
        """Per-subscription lock serializing read-modify-write in this process."""
        lock = self._locks.get(subscription_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[subscription_id] = lock
        return lock

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _load(
        self, session: AsyncSession, entities: Sequence[SubscriptionEntity]
    ) -> list[Subscription]:
        if not entities:
            return []
        ids = [entity.subscription_id for entity in entities]
        result = await session.execute(
            select(SubscriptionMetaEntity).where(SubscriptionMetaEntity.subscription_id.in_(ids))
        )
        meta_by_id: dict[str, list[SubscriptionMetaEntity]] = {}
        for row in result.scalars():
            meta_by_id.setdefault(row.subscription_id, []).append(row)
        return [
            _to_domain(entity, meta_by_id.get(entity.subscription_id, [])) for entity in entities
        ]

    async def _list(self, stmt: Select[tuple[SubscriptionEntity]]) -> list[Subscription]:
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return await self._load(session, result.scalars().all())

    async def get(self, subscription_id: str) -> Subscription:
        """Load a subscription or raise SubscriptionNotFoundError."""
        async with self._session_factory() as session:
            entity = await session.get(SubscriptionEntity, subscription_id)
            if entity is None:
                raise SubscriptionNotFoundError(
                    f"Subscription {subscription_id} not found", subscription_id=subscription_id
                )
            return (await self._load(session, [entity]))[0]

    async def find_by_external_id(self, external_subscription_id: str) -> Subscription | None:
        subscriptions = await self._list(
            select(SubscriptionEntity).where(
                SubscriptionEntity.external_subscription_id == external_subscription_id
            )
        )
        return subscriptions[0] if subscriptions else None

    async def list_by_order(self, order_id: str) -> list[Subscription]:
        return await self._list(
            select(SubscriptionEntity)
            .where(SubscriptionEntity.order_id == order_id)
            .order_by(SubscriptionEntity.created_at)
        )

    async def list_by_customer(self, customer_id: str) -> list[Subscription]:
        return await self._list(
            select(SubscriptionEntity)
            .where(SubscriptionEntity.customer_id == customer_id)
            .order_by(SubscriptionEntity.created_at.desc())
        )

    async def list_due(self, now: datetime, limit: int = 100) -> list[Subscription]:
        """Active or trialing subscriptions whose next charge is at or before ``now``."""
        return await self._list(
            select(SubscriptionEntity)
            .where(
                SubscriptionEntity.status.in_([s.value for s in ACTIVE_STATUSES]),
                SubscriptionEntity.next_payment_date.is_not(None),
                SubscriptionEntity.next_payment_date <= now,
            )
            .order_by(SubscriptionEntity.next_payment_date)
            .limit(limit)
        )

    async def list_by_status(
        self, statuses: Iterable[SubscriptionStatus], limit: int | None = None
    ) -> list[Subscription]:
        stmt = (
            select(SubscriptionEntity)
            .where(SubscriptionEntity.status.in_([s.value for s in statuses]))
            .order_by(SubscriptionEntity.next_payment_date)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return await self._list(stmt)

    async def get_history(self, subscription_id: str, limit: int | None = None) -> list[HistoryEntry]:
        """History rows, newest first."""
        stmt = (
            select(SubscriptionHistoryEntity)
            .where(SubscriptionHistoryEntity.subscription_id == subscription_id)
            .order_by(SubscriptionHistoryEntity.created_at.desc(), SubscriptionHistoryEntity.id.desc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_history_domain(row) for row in result.scalars()]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(
        self,
        subscription: Subscription,
        actor: str | None = None,
        note: str = "Subscription created",
    ) -> Subscription:
        """Insert aggregate, metadata and a ``created`` history row."""
        now = self._clock()
        entity = SubscriptionEntity(
            subscription_id=subscription.subscription_id,
            created_at=now,
            modified_at=now,
            version=1,
            **_entity_values(subscription),
        )
        history = HistoryEntry(
            subscription_id=subscription.subscription_id,
            action=HistoryAction.CREATED,
            status_to=subscription.status,
            note=note,
            actor=actor,
            created_at=now,
        )
        async with session_scope(self._session_factory) as session:
            session.add(entity)
            # Parent row first so child foreign keys resolve
            await session.flush()
            session.add_all(_meta_entities(subscription))
            session.add(_history_entity(history))

        logger.info(
            "subscription.created",
            subscription_id=subscription.subscription_id,
            order_id=subscription.order_id,
            status=subscription.status.value,
        )
        return subscription.model_copy(update={"version": 1, "created_at": now, "modified_at": now})

    async def update(
        self,
        subscription: Subscription,
        history: Iterable[HistoryEntry] = (),
        processed_event: ProcessedEvent | None = None,
    ) -> Subscription:
        """
        Persist an aggregate with optimistic concurrency.

        Metadata is replaced, history rows and the optional ledger record are
        appended, all in one transaction.

        Raises:
            SubscriptionNotFoundError: The row no longer exists
            StaleSubscriptionError: The row was written since it was read
        """
        expected = subscription.version
        now = self._clock()
        values = _entity_values(subscription)
        values.update(version=expected + 1, modified_at=now)

        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                update(SubscriptionEntity)
                .where(
                    SubscriptionEntity.subscription_id == subscription.subscription_id,
                    SubscriptionEntity.version == expected,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                exists = await session.scalar(
                    select(SubscriptionEntity.subscription_id).where(
                        SubscriptionEntity.subscription_id == subscription.subscription_id
                    )
                )
                if exists is None:
                    raise SubscriptionNotFoundError(
                        f"Subscription {subscription.subscription_id} not found",
                        subscription_id=subscription.subscription_id,
                    )
                raise StaleSubscriptionError(subscription.subscription_id, expected)

            await session.execute(
                delete(SubscriptionMetaEntity).where(
                    SubscriptionMetaEntity.subscription_id == subscription.subscription_id
                )
            )
            session.add_all(_meta_entities(subscription))
            session.add_all(_history_entity(entry) for entry in history)
            if processed_event is not None:
                session.add(
                    ProcessedWebhookEventEntity(
                        event_id=processed_event.event_id,
                        event_type=processed_event.event_type,
                        subscription_id=processed_event.subscription_id,
                        processed_at=processed_event.processed_at,
                    )
                )

        return subscription.model_copy(update={"version": expected + 1, "modified_at": now})

    @retry(
        retry=retry_if_exception_type(StaleSubscriptionError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.05, max=0.5),
        reraise=True,
    )
    async def modify(
        self,
        subscription_id: str,
        mutate: Callable[[Subscription], Sequence[HistoryEntry]],
    ) -> Subscription:
        """Reload, mutate in place and save, retrying on version conflicts.

        ``mutate`` receives a fresh copy and returns the history rows to append.
        """
        subscription = await self.get(subscription_id)
        history = mutate(subscription)
        return await self.update(subscription, history=history)

    async def append_history(self, entry: HistoryEntry) -> HistoryEntry:
        """Append a single history row without touching the aggregate."""
        async with session_scope(self._session_factory) as session:
            row = _history_entity(entry)
            session.add(row)
            await session.flush()
            return entry.model_copy(update={"id": row.id})

    async def delete(self, subscription_id: str) -> None:
        """Remove the aggregate together with its metadata and history."""
        async with session_scope(self._session_factory) as session:
            await session.execute(
                delete(SubscriptionMetaEntity).where(
                    SubscriptionMetaEntity.subscription_id == subscription_id
                )
            )
            await session.execute(
                delete(SubscriptionHistoryEntity).where(
                    SubscriptionHistoryEntity.subscription_id == subscription_id
                )
            )
            result = await session.execute(
                delete(SubscriptionEntity).where(
                    SubscriptionEntity.subscription_id == subscription_id
                )
            )
            if result.rowcount == 0:
                raise SubscriptionNotFoundError(
                    f"Subscription {subscription_id} not found", subscription_id=subscription_id
                )

        logger.info("subscription.deleted", subscription_id=subscription_id)

    # ------------------------------------------------------------------
    # Processed webhook event ledger
    # ------------------------------------------------------------------

    async def is_event_processed(self, event_id: str) -> bool:
        async with self._session_factory() as session:
            return await session.get(ProcessedWebhookEventEntity, event_id) is not None

    async def record_processed_event(self, event: ProcessedEvent) -> bool:
        """Record a ledger row on its own; False if the id was already recorded."""
        try:
            async with session_scope(self._session_factory) as session:
                session.add(
                    ProcessedWebhookEventEntity(
                        event_id=event.event_id,
                        event_type=event.event_type,
                        subscription_id=event.subscription_id,
                        processed_at=event.processed_at,
                    )
                )
        except IntegrityError:
            return False
        return True

    async def purge_processed_events(self, older_than: datetime) -> int:
        """Delete ledger rows processed before ``older_than``."""
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                delete(ProcessedWebhookEventEntity).where(
                    ProcessedWebhookEventEntity.processed_at < older_than
                )
            )
            deleted = result.rowcount or 0

        logger.info("webhook_ledger.purged", deleted=deleted, older_than=older_than.isoformat())
        return deleted

    # ------------------------------------------------------------------
    # Sweep leases
    # ------------------------------------------------------------------

    async def acquire_lease(self, name: str, holder: str, ttl_seconds: int) -> bool:
        """Take the named lease if it is free, expired, or already ours."""
        now = self._clock()
        expires_at = now + timedelta(seconds=ttl_seconds)
        try:
            async with session_scope(self._session_factory) as session:
                lease = await session.get(JobLeaseEntity, name)
                if lease is None:
                    session.add(
                        JobLeaseEntity(
                            name=name, holder=holder, acquired_at=now, expires_at=expires_at
                        )
                    )
                else:
                    if lease.holder != holder and lease.expires_at > now:
                        return False
                    result = await session.execute(
                        update(JobLeaseEntity)
                        .where(
                            JobLeaseEntity.name == name,
                            JobLeaseEntity.holder == lease.holder,
                            JobLeaseEntity.expires_at == lease.expires_at,
                        )
                        .values(holder=holder, acquired_at=now, expires_at=expires_at)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 0:
                        return False
        except IntegrityError:
            return False
        return True

    async def release_lease(self, name: str, holder: str) -> None:
        async with session_scope(self._session_factory) as session:
            await session.execute(
                delete(JobLeaseEntity).where(
                    JobLeaseEntity.name == name, JobLeaseEntity.holder == holder
                )
            )
