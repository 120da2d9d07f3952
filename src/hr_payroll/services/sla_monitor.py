"""Periodic sweep reporting approvals that exceed their SLA."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hr_payroll.events import ApprovalOverdue, EventEmitter, EventMetadata
from hr_payroll.services.approval_service import (
    ApprovalChain,
    OverdueApproval,
    PayslipApprovalWorkflow,
)

logger = logging.getLogger(__name__)


class ApprovalSlaMonitor:
    """Reports pending approvals older than ``sla_hours``.

    Reporting only: nothing is escalated or changed.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        chain: ApprovalChain,
        sla_hours: int,
        emitter: EventEmitter | None = None,
    ):
        self.session_factory = session_factory
        self.chain = chain
        self.sla_hours = sla_hours
        self.emitter = emitter or EventEmitter()

    async def run_once(self, now: datetime | None = None) -> list[OverdueApproval]:
        async with self.session_factory() as session:
            workflow = PayslipApprovalWorkflow(session, chain=self.chain)
            overdue = await workflow.find_overdue(self.sla_hours, now)

        for item in overdue:
            logger.warning(
                "Record %s (branch %s) pending at level %d since %s exceeds %dh SLA",
                item.payroll_record_id,
                item.branch_id,
                item.level,
                item.opened_at.isoformat(),
                self.sla_hours,
            )
            self.emitter.emit(
                ApprovalOverdue(
                    metadata=EventMetadata.create(source_service="sla_monitor"),
                    payroll_record_id=item.payroll_record_id,
                    branch_id=item.branch_id,
                    level=item.level,
                    pending_since=item.opened_at,
                )
            )
        return overdue

    async def run_forever(self, interval_seconds: float, stop_event: asyncio.Event) -> None:
        """Sweep every ``interval_seconds`` until ``stop_event`` is set."""
        logger.info("Approval SLA sweep every %ss (SLA %dh)", interval_seconds, self.sla_hours)
        while not stop_event.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("Approval SLA sweep failed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                pass
