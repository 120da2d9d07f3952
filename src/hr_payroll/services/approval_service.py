"""Multi-level approval and release of payroll records."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, Sequence
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from hr_payroll.calculators.types import PayPeriod
from hr_payroll.config import ApprovalLevelConfig, get_settings
from hr_payroll.errors import (
    ApproverNotAuthorizedError,
    ComplianceBlockedError,
    ConcurrentModificationError,
    InvalidTransitionError,
    LevelMismatchError,
    NotFoundError,
    PayrollError,
    ValidationError,
)
from hr_payroll.events import (
    ApprovalDecisionRecorded,
    EventEmitter,
    EventMetadata,
    PayslipReleased,
    RecordSubmittedForApproval,
)
from hr_payroll.models import ApprovalStep, PayrollRecord, PayrollRecordHead, utcnow
from hr_payroll.providers.base import PayslipRenderer
from hr_payroll.services.audit_service import AuditTrailRecorder
from hr_payroll.services.compliance import (
    ComplianceRuleSet,
    ComplianceValidator,
    ComplianceViolation,
)
from hr_payroll.services.payroll_service import RECORD_SUBJECT, flush_or_conflict
from hr_payroll.services.state_machine import (
    ApprovalDecision,
    PayrollRecordStateMachine,
    PayrollRecordStatus,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Actor:
    """Identity and roles of whoever performs an operation."""

    actor_id: str
    roles: frozenset[str] = frozenset()

    def has_role(self, role: str) -> bool:
        return role in self.roles


class ApprovalChain:
    """Ordered ``(level, required_role)`` table driving the approval state machine.

    Levels must be 1..N without gaps.
    """

    def __init__(self, levels: Sequence[ApprovalLevelConfig]):
        ordered = sorted(levels, key=lambda l: l.level)
        if not ordered:
            raise ValueError("Approval chain must define at least one level")
        expected = list(range(1, len(ordered) + 1))
        if [l.level for l in ordered] != expected:
            raise ValueError(
                f"Approval levels must be contiguous from 1, got {[l.level for l in ordered]}"
            )
        self._levels = tuple(ordered)

    @classmethod
    def from_settings(cls, settings: Any = None) -> ApprovalChain:
        settings = settings or get_settings()
        return cls(settings.approval_chain)

    @property
    def levels(self) -> tuple[ApprovalLevelConfig, ...]:
        return self._levels

    @property
    def final_level(self) -> int:
        return self._levels[-1].level

    def role_for(self, level: int) -> str:
        if not 1 <= level <= self.final_level:
            raise ValidationError(f"Approval level {level} is not configured")
        return self._levels[level - 1].required_role

    def next_level(self, level: int) -> int | None:
        """Level after ``level``, or None when ``level`` is final."""
        return level + 1 if level < self.final_level else None

    def __len__(self) -> int:
        return len(self._levels)


@dataclass
class ReleaseOutcome:
    """Per-record result of a release batch."""

    payroll_record_id: UUID
    released: bool
    error_code: str | None = None
    error: str | None = None
    violations: list[ComplianceViolation] = field(default_factory=list)
    document_rendered: bool = False
    render_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "payroll_record_id": str(self.payroll_record_id),
            "released": self.released,
            "error_code": self.error_code,
            "error": self.error,
            "violations": [v.to_dict() for v in self.violations],
            "document_rendered": self.document_rendered,
            "render_error": self.render_error,
        }


@dataclass(frozen=True)
class OverdueApproval:
    """A pending approval step older than the SLA."""

    payroll_record_id: UUID
    employee_id: str
    branch_id: str
    level: int
    opened_at: datetime


class PayslipApprovalWorkflow:
    """Carries calculated records through the approval chain to release.

    State machine per record:
    calculated → pending_approval(1) → … → pending_approval(N) → approved → released,
    with rejected at any level returning the record to draft.

    Every transition writes one audit entry in the caller's transaction
    and emits one event once the caller commits the session.
    """

    def __init__(
        self,
        session: AsyncSession,
        chain: ApprovalChain | None = None,
        renderer: PayslipRenderer | None = None,
        emitter: EventEmitter | None = None,
    ):
        self.session = session
        self.chain = chain or ApprovalChain.from_settings()
        self.renderer = renderer
        self.emitter = emitter or EventEmitter()
        self.audit = AuditTrailRecorder(session)

    # ===== Submission =====

    async def submit_for_approval(
        self, record_ids: Iterable[UUID], submitted_by: str
    ) -> list[PayrollRecord]:
        """Move every record to pending_approval at level 1, or none of them."""
        records = [await self._get_record(rid) for rid in dict.fromkeys(record_ids)]
        if not records:
            raise ValidationError("No payroll records to submit")

        for record in records:
            if record.status != PayrollRecordStatus.CALCULATED.value:
                raise InvalidTransitionError(
                    record.status,
                    PayrollRecordStatus.PENDING_APPROVAL.value,
                    f"record {record.payroll_record_id} is not calculated",
                )

        first_level = self.chain.levels[0]
        now = utcnow()
        for record in records:
            from_status = record.status
            record.status = PayrollRecordStatus.PENDING_APPROVAL.value
            record.approval_cycle += 1
            record.approval_level = first_level.level
            self.session.add(self._open_step(record, first_level.level, now))
            await flush_or_conflict(self.session, f"Payroll record {record.payroll_record_id}")
            await self.audit.append(
                RECORD_SUBJECT,
                record.payroll_record_id,
                from_status,
                record.status,
                submitted_by,
                {"level": record.approval_level, "approval_cycle": record.approval_cycle},
            )
            self.emitter.emit_on_commit(
                self.session,
                RecordSubmittedForApproval(
                    metadata=EventMetadata.create(actor_id=submitted_by),
                    payroll_record_id=record.payroll_record_id,
                    employee_id=record.employee_id,
                    level=first_level.level,
                    required_role=first_level.required_role,
                ),
            )

        logger.info("Submitted %d payroll record(s) for approval", len(records))
        return records

    # ===== Decisions =====

    async def decide(
        self,
        record_id: UUID,
        level: int,
        approver: Actor,
        decision: ApprovalDecision | str,
        notes: str | None = None,
    ) -> PayrollRecord:
        """Approve or reject a record at its current level."""
        try:
            decision = ApprovalDecision(decision)
        except ValueError as e:
            raise ValidationError(f"Unknown approval decision '{decision}'") from e
        if decision == ApprovalDecision.PENDING:
            raise ValidationError("Decision must be approved or rejected")
        if decision == ApprovalDecision.REJECTED and not (notes and notes.strip()):
            raise ValidationError("Rejection requires notes")

        record = await self._get_record(record_id)
        target = (
            PayrollRecordStatus.DRAFT.value
            if decision == ApprovalDecision.REJECTED
            else PayrollRecordStatus.APPROVED.value
        )
        if record.status != PayrollRecordStatus.PENDING_APPROVAL.value:
            raise InvalidTransitionError(record.status, target, "record is not pending approval")
        if level != record.approval_level:
            raise LevelMismatchError(record.payroll_record_id, record.approval_level, level)

        required_role = self.chain.role_for(level)
        if not approver.has_role(required_role):
            raise ApproverNotAuthorizedError(
                f"Approver {approver.actor_id} lacks role '{required_role}' for level {level}",
                approver_id=approver.actor_id,
                level=level,
            )

        step = await self._current_step(record)
        if step is None or step.decision != ApprovalDecision.PENDING.value:
            raise ConcurrentModificationError(
                f"Level {level} of record {record_id} was decided concurrently"
            )

        now = utcnow()
        step.decision = decision.value
        step.approver_id = approver.actor_id
        step.decided_at = now
        step.notes = notes

        from_status = record.status
        next_level: int | None = None
        if decision == ApprovalDecision.REJECTED:
            record.status = PayrollRecordStatus.DRAFT.value
            record.approval_level = 0
        else:
            next_level = self.chain.next_level(level)
            if next_level is not None:
                record.approval_level = next_level
                self.session.add(self._open_step(record, next_level, now))
            else:
                record.status = PayrollRecordStatus.APPROVED.value
        PayrollRecordStateMachine.validate_transition(from_status, record.status)

        await flush_or_conflict(self.session, f"Payroll record {record_id}")
        await self.audit.append(
            RECORD_SUBJECT,
            record.payroll_record_id,
            from_status,
            record.status,
            approver.actor_id,
            {
                "level": level,
                "decision": decision.value,
                "next_level": next_level,
                "approval_cycle": record.approval_cycle,
                "notes": notes,
            },
        )

        logger.info(
            "Record %s level %d %s by %s", record_id, level, decision.value, approver.actor_id
        )
        self.emitter.emit_on_commit(
            self.session,
            ApprovalDecisionRecorded(
                metadata=EventMetadata.create(actor_id=approver.actor_id),
                payroll_record_id=record.payroll_record_id,
                employee_id=record.employee_id,
                level=level,
                decision=decision.value,
                new_status=record.status,
                next_level=next_level,
                notes=notes,
            )
        )
        return record

    # ===== Release =====

    async def release(
        self,
        record_ids: Iterable[UUID],
        released_by: str,
        template_id: str | None = None,
        compliance: ComplianceRuleSet | None = None,
    ) -> list[ReleaseOutcome]:
        """Release approved records, each independently of the others.

        Each record transitions inside its own savepoint; a failure only
        undoes that record. Payslip rendering happens after the transition
        and never undoes it.
        """
        outcomes: list[ReleaseOutcome] = []
        for record_id in dict.fromkeys(record_ids):
            try:
                async with self.session.begin_nested():
                    record = await self._release_one(record_id, released_by, compliance)
            except ComplianceBlockedError as e:
                outcomes.append(
                    ReleaseOutcome(
                        record_id, False, e.code, e.message, violations=list(e.violations)
                    )
                )
                continue
            except PayrollError as e:
                outcomes.append(ReleaseOutcome(record_id, False, e.code, e.message))
                continue

            outcome = ReleaseOutcome(record_id, True)
            document = await self._render(record, template_id, outcome)
            self.emitter.emit_on_commit(
                self.session,
                PayslipReleased(
                    metadata=EventMetadata.create(actor_id=released_by),
                    payroll_record_id=record.payroll_record_id,
                    employee_id=record.employee_id,
                    period=str(record.period),
                    version=record.version,
                    net=record.net,
                    currency=record.currency,
                    document=document,
                )
            )
            outcomes.append(outcome)

        released = sum(1 for o in outcomes if o.released)
        logger.info("Released %d of %d payroll record(s)", released, len(outcomes))
        return outcomes

    async def _release_one(
        self,
        record_id: UUID,
        released_by: str,
        compliance: ComplianceRuleSet | None,
    ) -> PayrollRecord:
        record = await self._get_record(record_id)
        target = PayrollRecordStatus.RELEASED.value
        if record.status != PayrollRecordStatus.APPROVED.value:
            raise InvalidTransitionError(record.status, target, "record is not approved")
        if record.approval_level != self.chain.final_level:
            raise InvalidTransitionError(
                record.status, target, "record has not cleared the final approval level"
            )

        steps = await self.steps_for(record.payroll_record_id, record.approval_cycle)
        levels = [s.level for s in steps]
        if levels != list(range(1, self.chain.final_level + 1)) or any(
            s.decision != ApprovalDecision.APPROVED.value for s in steps
        ):
            raise InvalidTransitionError(
                record.status, target, "approval steps do not cover every level in order"
            )

        if compliance is not None:
            violations = ComplianceValidator.validate(record, compliance)
            if violations:
                raise ComplianceBlockedError(
                    f"Record {record_id} violates {len(violations)} "
                    f"{compliance.jurisdiction} threshold(s)",
                    violations,
                )

        from_status = record.status
        PayrollRecordStateMachine.validate_transition(from_status, target)
        record.status = target
        record.released_at = utcnow()
        record.released_by = released_by
        await flush_or_conflict(self.session, f"Payroll record {record_id}")
        await self.audit.append(
            RECORD_SUBJECT,
            record.payroll_record_id,
            from_status,
            record.status,
            released_by,
            {"version": record.version, "net": record.net, "currency": record.currency},
        )
        return record

    async def _render(
        self,
        record: PayrollRecord,
        template_id: str | None,
        outcome: ReleaseOutcome,
    ) -> bytes | None:
        if self.renderer is None:
            return None
        try:
            document = await self.renderer.render_payslip_document(record, template_id)
        except Exception as e:
            logger.exception(
                "Payslip rendering failed for released record %s", record.payroll_record_id
            )
            outcome.render_error = str(e)
            return None
        outcome.document_rendered = True
        return document

    # ===== Reads =====

    async def steps_for(self, record_id: UUID, cycle: int | None = None) -> list[ApprovalStep]:
        """Approval steps of a record, optionally for one cycle, in level order."""
        stmt = select(ApprovalStep).where(ApprovalStep.payroll_record_id == record_id)
        if cycle is not None:
            stmt = stmt.where(ApprovalStep.approval_cycle == cycle)
        result = await self.session.execute(
            stmt.order_by(ApprovalStep.approval_cycle, ApprovalStep.level)
        )
        return list(result.scalars().all())

    async def pending_for_level(
        self, level: int, branch_id: str | None = None
    ) -> list[PayrollRecord]:
        stmt = select(PayrollRecord).where(
            PayrollRecord.status == PayrollRecordStatus.PENDING_APPROVAL.value,
            PayrollRecord.approval_level == level,
        )
        if branch_id is not None:
            stmt = stmt.where(PayrollRecord.branch_id == branch_id)
        result = await self.session.execute(
            stmt.order_by(PayrollRecord.branch_id, PayrollRecord.employee_id)
        )
        return list(result.scalars().all())

    async def approval_summary(self, branch_id: str, period: PayPeriod) -> dict[str, int]:
        """Count of head records per status for a branch and period."""
        result = await self.session.execute(
            select(PayrollRecord.status, func.count())
            .join(
                PayrollRecordHead,
                PayrollRecordHead.head_record_id == PayrollRecord.payroll_record_id,
            )
            .where(
                PayrollRecord.branch_id == branch_id,
                PayrollRecord.period_year == period.year,
                PayrollRecord.period_month == period.month,
            )
            .group_by(PayrollRecord.status)
        )
        summary = {status.value: 0 for status in PayrollRecordStatus}
        for status, count in result.all():
            summary[status] = count
        return summary

    async def find_overdue(
        self,
        sla_hours: int | None = None,
        now: datetime | None = None,
    ) -> list[OverdueApproval]:
        """Pending steps opened more than ``sla_hours`` ago."""
        if sla_hours is None:
            sla_hours = get_settings().approval_sla_hours
        cutoff = (now or utcnow()) - timedelta(hours=sla_hours)
        result = await self.session.execute(
            select(PayrollRecord, ApprovalStep)
            .join(
                ApprovalStep,
                (ApprovalStep.payroll_record_id == PayrollRecord.payroll_record_id)
                & (ApprovalStep.approval_cycle == PayrollRecord.approval_cycle)
                & (ApprovalStep.level == PayrollRecord.approval_level),
            )
            .where(
                PayrollRecord.status == PayrollRecordStatus.PENDING_APPROVAL.value,
                ApprovalStep.decision == ApprovalDecision.PENDING.value,
                ApprovalStep.opened_at < cutoff,
            )
            .order_by(ApprovalStep.opened_at)
        )
        return [
            OverdueApproval(
                payroll_record_id=record.payroll_record_id,
                employee_id=record.employee_id,
                branch_id=record.branch_id,
                level=step.level,
                opened_at=step.opened_at,
            )
            for record, step in result.all()
        ]

    # ===== Internals =====

    async def _get_record(self, record_id: UUID) -> PayrollRecord:
        record = await self.session.get(PayrollRecord, record_id)
        if record is None:
            raise NotFoundError(f"Payroll record {record_id} not found")
        return record

    async def _current_step(self, record: PayrollRecord) -> ApprovalStep | None:
        result = await self.session.execute(
            select(ApprovalStep)
            .where(
                ApprovalStep.payroll_record_id == record.payroll_record_id,
                ApprovalStep.approval_cycle == record.approval_cycle,
                ApprovalStep.level == record.approval_level,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _open_step(record: PayrollRecord, level: int, now: datetime) -> ApprovalStep:
        return ApprovalStep(
            payroll_record_id=record.payroll_record_id,
            record_version=record.version,
            approval_cycle=record.approval_cycle,
            level=level,
            decision=ApprovalDecision.PENDING.value,
            opened_at=now,
        )
