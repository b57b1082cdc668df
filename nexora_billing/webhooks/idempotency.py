"""Idempotency ledger for webhook deliveries.

The provider delivers at least once; this store turns that into at most
one successful processing per event id. In the SQL store the primary key on
event_id is the serialization point: whichever delivery inserts first owns
the event, and the loser sees an IntegrityError.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from threading import Lock

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from nexora_billing.core.exceptions import DuplicateEventError
from nexora_billing.db.base import get_session_factory
from nexora_billing.db.models.processed_event import ProcessedWebhookEvent
from nexora_billing.domain.enums import EventStatus
from nexora_billing.repositories.base import as_utc, utcnow

logger = structlog.get_logger(__name__)


@dataclass
class ProcessedEventRecord:
    event_id: str
    event_type: str
    status: EventStatus
    actions: list[str] = field(default_factory=list)
    error: str | None = None
    processing_time_ms: int | None = None
    attempts: int = 0
    delivery_count: int = 1
    received_at: datetime | None = None
    processed_at: datetime | None = None

    @classmethod
    def from_row(cls, row: ProcessedWebhookEvent) -> "ProcessedEventRecord":
        return cls(
            event_id=row.event_id,
            event_type=row.event_type,
            status=EventStatus(row.status),
            actions=list(row.actions or []),
            error=row.error,
            processing_time_ms=row.processing_time_ms,
            attempts=row.attempts,
            delivery_count=row.delivery_count,
            received_at=as_utc(row.received_at),
            processed_at=as_utc(row.processed_at),
        )


class IdempotencyStore(ABC):
    def __init__(self, claim_ttl_seconds: int = 300):
        self.claim_ttl_seconds = claim_ttl_seconds

    @abstractmethod
    async def has_processed(self, event_id: str) -> bool: ...

    @abstractmethod
    async def record_received(self, event_id: str, event_type: str, now: datetime | None = None) -> ProcessedEventRecord:
        """Claim event_id for this delivery.

        Raises DuplicateEventError if the event is already processed or another
        delivery holds a live claim. Failed events and abandoned claims are
        re-claimed.
        """

    @abstractmethod
    async def mark_processed(
        self,
        event_id: str,
        status: EventStatus,
        actions: list[str],
        error: str | None = None,
        processing_time_ms: int | None = None,
        attempts: int = 0,
    ) -> bool:
        """Finalize a claimed event. Returns False if the row was already processed."""

    @abstractmethod
    async def get(self, event_id: str) -> ProcessedEventRecord | None: ...

    def _reclaimable(self, status: EventStatus, received_at: datetime | None, now: datetime) -> bool:
        if status == EventStatus.FAILED:
            return True
        if status == EventStatus.RECEIVED and received_at is not None:
            # Worker crashed mid-processing: the claim has gone stale
            return received_at < now - timedelta(seconds=self.claim_ttl_seconds)
        return False


class SqlIdempotencyStore(IdempotencyStore):
    """Durable, shared-across-instances ledger in processed_webhook_events."""

    async def has_processed(self, event_id: str) -> bool:
        async with get_session_factory()() as session:
            result = await session.execute(
                select(ProcessedWebhookEvent.status).where(ProcessedWebhookEvent.event_id == event_id)
            )
            return result.scalar_one_or_none() == EventStatus.PROCESSED.value

    async def get(self, event_id: str) -> ProcessedEventRecord | None:
        async with get_session_factory()() as session:
            row = await session.get(ProcessedWebhookEvent, event_id)
            return ProcessedEventRecord.from_row(row) if row is not None else None

    async def record_received(self, event_id: str, event_type: str, now: datetime | None = None) -> ProcessedEventRecord:
        now = now or utcnow()
        factory = get_session_factory()

        async with factory() as session:
            try:
                row = ProcessedWebhookEvent(
                    event_id=event_id,
                    event_type=event_type,
                    status=EventStatus.RECEIVED.value,
                    actions=[],
                    attempts=0,
                    delivery_count=1,
                    received_at=now,
                )
                session.add(row)
                await session.commit()
                return ProcessedEventRecord.from_row(row)
            except IntegrityError:
                await session.rollback()

        # Someone inserted first: decide between duplicate and re-claim
        async with factory() as session:
            existing = await session.get(ProcessedWebhookEvent, event_id)
            if existing is None:
                # Row vanished between insert and read; treat as in flight
                raise DuplicateEventError(event_id, EventStatus.RECEIVED.value)

            status = EventStatus(existing.status)
            if not self._reclaimable(status, as_utc(existing.received_at), now):
                raise DuplicateEventError(event_id, status.value)

            # delivery_count doubles as a version number: only one re-claimer matches it
            observed_count = existing.delivery_count
            result = await session.execute(
                update(ProcessedWebhookEvent)
                .where(
                    ProcessedWebhookEvent.event_id == event_id,
                    ProcessedWebhookEvent.status == status.value,
                    ProcessedWebhookEvent.delivery_count == observed_count,
                )
                .values(
                    status=EventStatus.RECEIVED.value,
                    received_at=now,
                    error=None,
                    delivery_count=observed_count + 1,
                )
            )
            await session.commit()

            if result.rowcount != 1:
                raise DuplicateEventError(event_id, EventStatus.RECEIVED.value)

        logger.info("webhook_event_reclaimed", event_id=event_id, previous_status=status.value, delivery=observed_count + 1)
        return await self.get(event_id)

    async def mark_processed(
        self,
        event_id: str,
        status: EventStatus,
        actions: list[str],
        error: str | None = None,
        processing_time_ms: int | None = None,
        attempts: int = 0,
    ) -> bool:
        async with get_session_factory()() as session:
            result = await session.execute(
                update(ProcessedWebhookEvent)
                .where(
                    ProcessedWebhookEvent.event_id == event_id,
                    ProcessedWebhookEvent.status != EventStatus.PROCESSED.value,
                )
                .values(
                    status=status.value,
                    actions=list(actions),
                    error=error,
                    processing_time_ms=processing_time_ms,
                    attempts=attempts,
                    processed_at=utcnow(),
                )
            )
            await session.commit()

        if result.rowcount != 1:
            logger.warning("ledger_finalize_skipped", event_id=event_id, status=status.value)
            return False
        return True


class InMemoryIdempotencyStore(IdempotencyStore):
    """Process-local ledger for development and single-instance use only."""

    def __init__(self, claim_ttl_seconds: int = 300):
        super().__init__(claim_ttl_seconds)
        self._records: dict[str, ProcessedEventRecord] = {}
        self._lock = Lock()

    async def has_processed(self, event_id: str) -> bool:
        with self._lock:
            record = self._records.get(event_id)
            return record is not None and record.status == EventStatus.PROCESSED

    async def get(self, event_id: str) -> ProcessedEventRecord | None:
        with self._lock:
            record = self._records.get(event_id)
            return replace(record, actions=list(record.actions)) if record is not None else None

    async def record_received(self, event_id: str, event_type: str, now: datetime | None = None) -> ProcessedEventRecord:
        now = now or utcnow()
        with self._lock:
            existing = self._records.get(event_id)
            if existing is None:
                record = ProcessedEventRecord(event_id, event_type, EventStatus.RECEIVED, received_at=now)
            elif self._reclaimable(existing.status, existing.received_at, now):
                record = replace(
                    existing,
                    status=EventStatus.RECEIVED,
                    error=None,
                    received_at=now,
                    delivery_count=existing.delivery_count + 1,
                )
            else:
                raise DuplicateEventError(event_id, existing.status.value)
            self._records[event_id] = record
            return replace(record)

    async def mark_processed(
        self,
        event_id: str,
        status: EventStatus,
        actions: list[str],
        error: str | None = None,
        processing_time_ms: int | None = None,
        attempts: int = 0,
    ) -> bool:
        with self._lock:
            existing = self._records.get(event_id)
            if existing is None or existing.status == EventStatus.PROCESSED:
                logger.warning("ledger_finalize_skipped", event_id=event_id, status=status.value)
                return False
            self._records[event_id] = replace(
                existing,
                status=status,
                actions=list(actions),
                error=error,
                processing_time_ms=processing_time_ms,
                attempts=attempts,
                processed_at=utcnow(),
            )
            return True
