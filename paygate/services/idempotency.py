"""
Idempotency Store - reserve/commit deduplication backed by the database.

A key is reserved by inserting its row; the primary key makes the insert an
atomic test-and-set across processes. The reservation holder later commits
the operation's result snapshot, which every later caller receives instead of
re-running the operation. A reservation that is never committed expires with
its lease and may be taken over.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from sqlalchemy import and_, delete, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paygate.db.models import IdempotencyRecord, utc_now
from paygate.exceptions import IdempotencyConflictError
from paygate.observability.logging import get_logger

logger = get_logger(__name__)

RESERVED = "reserved"
COMMITTED = "committed"


@dataclass(frozen=True)
class Reservation:
    """Answer to check_and_reserve."""

    key: str
    is_new: bool
    token: str | None = None
    existing_result: dict[str, Any] | None = None


class IdempotencyStore:
    """
    Database-backed idempotency store.

    Usage:
        reservation = await store.check_and_reserve("webhook:card-hosted:abc")
        if reservation.is_new:
            result = await do_work()
            await store.commit(reservation.key, reservation.token, result)
        else:
            result = reservation.existing_result
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        lease: timedelta = timedelta(seconds=60),
        retention: timedelta = timedelta(days=30),
    ) -> None:
        self.session_factory = session_factory
        self.lease = lease
        self.retention = retention

    async def check_and_reserve(self, key: str) -> Reservation:
        """
        Reserve key, or return the committed result of an earlier holder.

        Raises:
            IdempotencyConflictError: Another caller holds a live reservation
        """
        token = uuid4().hex
        now = utc_now()

        async with self.session_factory() as session:
            session.add(
                IdempotencyRecord(
                    key=key,
                    state=RESERVED,
                    owner_token=token,
                    lease_expires_at=now + self.lease,
                    first_seen_at=now,
                )
            )
            try:
                await session.commit()
                logger.debug("idempotency_key_reserved", key=key)
                return Reservation(key=key, is_new=True, token=token)
            except IntegrityError:
                await session.rollback()

            record = await session.get(IdempotencyRecord, key, populate_existing=True)
            if record is None:
                # Purged between our insert and read; the caller retries
                raise IdempotencyConflictError(key)

            if record.state == COMMITTED:
                logger.info("idempotency_key_replayed", key=key)
                return Reservation(key=key, is_new=False, existing_result=record.result_snapshot)

            if record.lease_expires_at > now:
                raise IdempotencyConflictError(key)

            return await self._take_over(session, record, token, now)

    async def _take_over(
        self,
        session: AsyncSession,
        record: IdempotencyRecord,
        token: str,
        now: datetime,
    ) -> Reservation:
        """Compare-and-set an expired reservation to a new owner."""
        stmt = (
            update(IdempotencyRecord)
            .where(
                IdempotencyRecord.key == record.key,
                IdempotencyRecord.state == RESERVED,
                IdempotencyRecord.owner_token == record.owner_token,
            )
            .values(owner_token=token, lease_expires_at=now + self.lease)
        )
        result = await session.execute(stmt)
        await session.commit()

        if result.rowcount != 1:
            raise IdempotencyConflictError(record.key)

        logger.warning(
            "idempotency_lease_taken_over",
            key=record.key,
            first_seen_at=record.first_seen_at.isoformat(),
        )
        return Reservation(key=record.key, is_new=True, token=token)

    async def commit(self, key: str, token: str, result: dict[str, Any]) -> bool:
        """
        Store the final result for key.

        Returns False when the lease was lost to another holder; the result of
        the winning holder stands in that case.
        """
        stmt = (
            update(IdempotencyRecord)
            .where(
                IdempotencyRecord.key == key,
                IdempotencyRecord.owner_token == token,
                IdempotencyRecord.state == RESERVED,
            )
            .values(state=COMMITTED, result_snapshot=result, committed_at=utc_now())
        )
        async with self.session_factory() as session:
            outcome = await session.execute(stmt)
            await session.commit()

        if outcome.rowcount != 1:
            logger.warning("idempotency_commit_lost_lease", key=key)
            return False
        return True

    async def release(self, key: str, token: str) -> None:
        """Drop an uncommitted reservation so the next delivery can retry."""
        stmt = delete(IdempotencyRecord).where(
            IdempotencyRecord.key == key,
            IdempotencyRecord.owner_token == token,
            IdempotencyRecord.state == RESERVED,
        )
        async with self.session_factory() as session:
            await session.execute(stmt)
            await session.commit()
        logger.debug("idempotency_key_released", key=key)

    async def get(self, key: str) -> IdempotencyRecord | None:
        async with self.session_factory() as session:
            return await session.get(IdempotencyRecord, key)

    async def purge_expired(self, now: datetime | None = None) -> int:
        """Delete committed records past retention and abandoned reservations."""
        now = now or utc_now()
        stmt = delete(IdempotencyRecord).where(
            or_(
                and_(
                    IdempotencyRecord.state == COMMITTED,
                    IdempotencyRecord.first_seen_at < now - self.retention,
                ),
                and_(
                    IdempotencyRecord.state == RESERVED,
                    IdempotencyRecord.lease_expires_at < now - self.lease,
                ),
            )
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()

        purged = result.rowcount or 0
        if purged:
            logger.info("idempotency_records_purged", count=purged)
        return purged
