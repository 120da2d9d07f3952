"""Processing locks guarding branch-wide runs."""

from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from hr_payroll.calculators.types import PayPeriod
from hr_payroll.errors import ProcessingInProgressError
from hr_payroll.models import ProcessingLock, utcnow

logger = logging.getLogger(__name__)


class LockingService:
    """Row-based named locks.

    The lock key is the primary key of ``processing_lock``, so two
    concurrent acquisitions cannot both insert. A lock whose ``expires_at``
    has passed belongs to a crashed holder and may be taken over.

    Callers own the transaction: commit after ``acquire`` so other
    workers see the lock.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    @staticmethod
    def branch_key(branch_id: str, period: PayPeriod) -> str:
        return f"branch-run:{branch_id}:{period}"

    async def acquire(self, lock_key: str, holder: str, ttl_seconds: int) -> ProcessingLock:
        """Take the lock or raise ProcessingInProgressError."""
        now = utcnow()

        expired = await self.session.execute(
            delete(ProcessingLock).where(
                ProcessingLock.lock_key == lock_key,
                ProcessingLock.expires_at < now,
            )
        )
        if expired.rowcount:
            logger.warning("Took over expired processing lock %s", lock_key)

        lock = ProcessingLock(
            lock_key=lock_key,
            holder=holder,
            acquired_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )
        self.session.add(lock)
        try:
            await self.session.flush()
        except IntegrityError as e:
            raise ProcessingInProgressError(
                f"Processing already in progress for {lock_key}",
                lock_key=lock_key,
            ) from e
        return lock

    async def release(self, lock_key: str, holder: str) -> bool:
        """Release a lock held by ``holder``. Returns False if it was not held."""
        result = await self.session.execute(
            delete(ProcessingLock).where(
                ProcessingLock.lock_key == lock_key,
                ProcessingLock.holder == holder,
            )
        )
        return bool(result.rowcount)

    async def is_locked(self, lock_key: str) -> bool:
        result = await self.session.execute(
            select(ProcessingLock.lock_key).where(
                ProcessingLock.lock_key == lock_key,
                ProcessingLock.expires_at >= utcnow(),
            )
        )
        return result.scalar_one_or_none() is not None
