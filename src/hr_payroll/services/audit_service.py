"""Append-only audit trail for payroll state transitions."""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from hr_payroll.errors import AuditWriteError
from hr_payroll.models import AuditEntry, utcnow

logger = logging.getLogger(__name__)


class AuditTrailRecorder:
    """Writes and reads immutable audit entries.

    ``append`` adds the entry to the caller's transaction and flushes at
    once, so a transition that cannot be audited fails before its own
    changes are committed.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def append(
        self,
        subject_type: str,
        subject_id: Any,
        from_state: str | None,
        to_state: str,
        actor_id: str,
        payload: dict[str, Any] | None = None,
    ) -> AuditEntry:
        """Record one state transition. ``from_state`` is None on creation."""
        payload = _json_safe(payload or {})
        entry = AuditEntry(
            subject_type=subject_type,
            subject_id=str(subject_id),
            from_state=from_state,
            to_state=to_state,
            actor_id=actor_id,
            occurred_at=utcnow(),
            payload=payload,
            payload_hash=self._compute_hash(payload),
        )
        try:
            self.session.add(entry)
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error(
                "Audit write failed for %s %s (%s -> %s): %s",
                subject_type,
                subject_id,
                from_state,
                to_state,
                e,
            )
            raise AuditWriteError(
                f"Could not audit {subject_type} {subject_id} transition to {to_state}",
                subject_type=subject_type,
                subject_id=str(subject_id),
            ) from e
        return entry

    async def query_by_subject(self, subject_type: str, subject_id: Any) -> list[AuditEntry]:
        """All entries for one subject in chronological order."""
        result = await self.session.execute(
            select(AuditEntry)
            .where(
                AuditEntry.subject_type == subject_type,
                AuditEntry.subject_id == str(subject_id),
            )
            .order_by(AuditEntry.sequence)
        )
        return list(result.scalars().all())

    async def query_by_actor(self, actor_id: str) -> list[AuditEntry]:
        result = await self.session.execute(
            select(AuditEntry)
            .where(AuditEntry.actor_id == actor_id)
            .order_by(AuditEntry.sequence)
        )
        return list(result.scalars().all())

    async def query_by_date_range(self, start: datetime, end: datetime) -> list[AuditEntry]:
        """Entries with ``start <= occurred_at < end``."""
        result = await self.session.execute(
            select(AuditEntry)
            .where(AuditEntry.occurred_at >= start, AuditEntry.occurred_at < end)
            .order_by(AuditEntry.sequence)
        )
        return list(result.scalars().all())

    def _compute_hash(self, data: dict[str, Any]) -> str:
        """Deterministic SHA-256 of the payload."""
        json_str = json.dumps(data, sort_keys=True, default=str)
        return hashlib.sha256(json_str.encode()).hexdigest()


def _json_safe(data: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(data, sort_keys=True, default=str))
