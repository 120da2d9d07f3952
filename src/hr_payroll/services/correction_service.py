"""Error corrections - audited adjustments to released payroll records."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from hr_payroll.calculators.line_builder import LineItemBuilder
from hr_payroll.calculators.types import LineCandidate, LineType
from hr_payroll.config import get_settings
from hr_payroll.errors import (
    AlreadyProcessedError,
    ApproverNotAuthorizedError,
    InvalidTransitionError,
    NegativeNetPay,
    NotFoundError,
    RecordNotReleasedError,
    ValidationError,
)
from hr_payroll.events import (
    CorrectionStatusChanged,
    EventEmitter,
    EventMetadata,
    PayrollRecordCorrected,
)
from hr_payroll.models import (
    ErrorCorrection,
    PayrollLine,
    PayrollRecord,
    PayrollRecordHead,
    utcnow,
)
from hr_payroll.services.approval_service import Actor
from hr_payroll.services.audit_service import AuditTrailRecorder
from hr_payroll.services.payroll_service import RECORD_SUBJECT, flush_or_conflict
from hr_payroll.services.state_machine import (
    CorrectionStateMachine,
    CorrectionStatus,
    PayrollRecordStateMachine,
    PayrollRecordStatus,
)

logger = logging.getLogger(__name__)

CORRECTION_SUBJECT = "error_correction"


class CorrectionType(str, Enum):
    AMOUNT_ADJUSTMENT = "amount_adjustment"
    COMPONENT_ADDITION = "component_addition"
    COMPONENT_REMOVAL = "component_removal"


@dataclass(frozen=True)
class CorrectionDetails:
    """One change to one component of a released record.

    ``amount`` is the signed change for an adjustment, the new line's
    amount for an addition, and unused for a removal.
    """

    correction_type: CorrectionType
    line_type: LineType
    component_name: str
    description: str
    amount: Decimal | None = None
    reason: str | None = None

    @classmethod
    def from_correction(cls, correction: ErrorCorrection) -> CorrectionDetails:
        return cls(
            correction_type=CorrectionType(correction.correction_type),
            line_type=LineType(correction.line_type),
            component_name=correction.component_name,
            description=correction.description,
            amount=correction.amount,
            reason=correction.reason,
        )


@dataclass
class CorrectionPreview:
    """Original vs corrected totals and the changed lines."""

    correction_id: UUID
    payroll_record_id: UUID
    currency: str
    original_gross: Decimal
    original_net: Decimal
    corrected_gross: Decimal
    corrected_net: Decimal
    changes: list[dict[str, Any]]

    @property
    def net_difference(self) -> Decimal:
        return self.corrected_net - self.original_net

    def to_dict(self) -> dict[str, Any]:
        return {
            "correction_id": str(self.correction_id),
            "payroll_record_id": str(self.payroll_record_id),
            "currency": self.currency,
            "original_gross": str(self.original_gross),
            "original_net": str(self.original_net),
            "corrected_gross": str(self.corrected_gross),
            "corrected_net": str(self.corrected_net),
            "net_difference": str(self.net_difference),
            "changes": self.changes,
        }


def apply_correction(
    lines: list[Any], details: CorrectionDetails, currency: str
) -> list[LineCandidate]:
    """Return the record's lines with the correction applied.

    Earnings come first, then deductions, each group in its original
    order; an added component goes at the end of its group. Raises
    ValidationError when the change does not fit the record.
    """
    line_type = details.line_type.value
    name = details.component_name
    existing = [l for l in lines if _type_of(l) == line_type and l.name == name]

    if details.correction_type == CorrectionType.COMPONENT_ADDITION:
        if existing:
            raise ValidationError(f"{line_type.capitalize()} '{name}' already exists")
        if details.amount is None or details.amount <= 0:
            raise ValidationError("Added component needs a positive amount")
    elif not existing:
        raise ValidationError(f"Record has no {line_type} named '{name}'")
    if details.correction_type == CorrectionType.AMOUNT_ADJUSTMENT and not details.amount:
        raise ValidationError("Amount adjustment needs a non-zero amount")
    if details.correction_type == CorrectionType.COMPONENT_REMOVAL and details.amount is not None:
        raise ValidationError("Component removal takes no amount")
    if (
        details.amount is not None
        and LineItemBuilder.round_amount(details.amount, currency) != details.amount
    ):
        raise ValidationError(f"Amount {details.amount} is finer than {currency} minor units")

    result: list[LineCandidate] = []
    for group in (LineType.EARNING, LineType.DEDUCTION):
        for line in lines:
            if _type_of(line) != group.value:
                continue
            amount = line.amount
            explanation = line.explanation
            if group.value == line_type and line.name == name:
                if details.correction_type == CorrectionType.COMPONENT_REMOVAL:
                    continue
                amount = amount + details.amount
                explanation = f"Corrected: {details.description}"
                if amount < 0:
                    raise ValidationError(
                        f"Adjustment leaves {line_type} '{name}' negative ({amount})"
                    )
            result.append(LineCandidate(group, line.name, amount, explanation))
        if (
            details.correction_type == CorrectionType.COMPONENT_ADDITION
            and group.value == line_type
        ):
            result.append(LineCandidate(group, name, details.amount, details.description))
    return result


def _type_of(line: Any) -> str:
    line_type = line.line_type
    return line_type.value if isinstance(line_type, LineType) else line_type


def _snapshot(record: PayrollRecord) -> dict[str, Any]:
    return {
        "payroll_record_id": str(record.payroll_record_id),
        "version": record.version,
        "gross": str(record.gross),
        "net": str(record.net),
        "currency": record.currency,
        "lines": [
            {"line_type": l.line_type, "name": l.name, "amount": str(l.amount)}
            for l in record.lines
        ],
    }


class ErrorCorrectionManager:
    """Creates, decides and applies error corrections.

    State machine:
    requested → approved → processed, requested|approved → cancelled,
    requested → rejected.

    Processing never edits a released record. It appends version N+1
    (released directly), marks version N corrected and moves the chain
    head, all in the caller's transaction.
    """

    def __init__(
        self,
        session: AsyncSession,
        emitter: EventEmitter | None = None,
        approver_role: str | None = None,
    ):
        self.session = session
        self.emitter = emitter or EventEmitter()
        self.approver_role = approver_role or get_settings().correction_approver_role
        self.audit = AuditTrailRecorder(session)

    # ===== Lifecycle =====

    async def create(
        self,
        record_id: UUID,
        details: CorrectionDetails,
        requested_by: str,
    ) -> ErrorCorrection:
        """Request a correction against the released head of a version chain."""
        if not details.description or not details.description.strip():
            raise ValidationError("Correction needs a description")
        record = await self._get_record(record_id)
        await self._ensure_released_head(record)

        corrected = apply_correction(list(record.lines), details, record.currency)
        self._ensure_non_negative(record, corrected)

        correction = ErrorCorrection(
            correction_id=uuid4(),
            payroll_record_id=record.payroll_record_id,
            record_version=record.version,
            branch_id=record.branch_id,
            correction_type=details.correction_type.value,
            line_type=details.line_type.value,
            component_name=details.component_name,
            currency=record.currency,
            amount=details.amount,
            description=details.description,
            reason=details.reason,
            status=CorrectionStatus.REQUESTED.value,
            requested_by=requested_by,
            requested_at=utcnow(),
            original_snapshot=_snapshot(record),
        )
        self.session.add(correction)
        await flush_or_conflict(self.session, f"Correction for record {record_id}")
        await self.audit.append(
            CORRECTION_SUBJECT,
            correction.correction_id,
            None,
            correction.status,
            requested_by,
            {
                "payroll_record_id": str(record.payroll_record_id),
                "record_version": record.version,
                "correction_type": correction.correction_type,
                "line_type": correction.line_type,
                "component_name": correction.component_name,
                "amount": correction.amount,
                "description": correction.description,
            },
        )
        logger.info(
            "Correction %s requested on record %s v%d by %s",
            correction.correction_id,
            record.payroll_record_id,
            record.version,
            requested_by,
        )
        self._emit_status(correction, None, requested_by)
        return correction

    async def approve(
        self, correction_id: UUID, approver: Actor, notes: str | None = None
    ) -> ErrorCorrection:
        return await self._decide(correction_id, approver, CorrectionStatus.APPROVED, notes)

    async def reject(self, correction_id: UUID, approver: Actor, notes: str) -> ErrorCorrection:
        if not notes or not notes.strip():
            raise ValidationError("Rejection requires notes")
        return await self._decide(correction_id, approver, CorrectionStatus.REJECTED, notes)

    async def process(self, correction_id: UUID, processed_by: str) -> PayrollRecord:
        """Apply an approved correction, returning the new released version.

        A second call raises AlreadyProcessedError carrying the id of the
        version the first call created.
        """
        correction = await self.get_correction(correction_id)
        if correction.status == CorrectionStatus.PROCESSED.value:
            raise AlreadyProcessedError(
                correction.correction_id,
                correction.status,
                correction.resulting_record_id,
            )
        CorrectionStateMachine.validate_transition(
            correction.status, CorrectionStatus.PROCESSED.value
        )

        original = await self._get_record(correction.payroll_record_id)
        head = await self._ensure_released_head(original)
        if original.version != correction.record_version:
            raise RecordNotReleasedError(
                f"Correction {correction_id} targets version {correction.record_version}, "
                f"record is at version {original.version}",
            )

        details = CorrectionDetails.from_correction(correction)
        lines = apply_correction(list(original.lines), details, original.currency)
        gross, net = self._ensure_non_negative(original, lines)

        now = utcnow()
        new_record = PayrollRecord(
            payroll_record_id=uuid4(),
            employee_id=original.employee_id,
            branch_id=original.branch_id,
            period_year=original.period_year,
            period_month=original.period_month,
            version=original.version + 1,
            previous_version_id=original.payroll_record_id,
            correction_id=correction.correction_id,
            status=PayrollRecordStatus.RELEASED.value,
            approval_level=original.approval_level,
            approval_cycle=original.approval_cycle,
            currency=original.currency,
            contract_currency=original.contract_currency,
            exchange_rate=original.exchange_rate,
            gross=gross,
            net=net,
            rule_snapshot=original.rule_snapshot,
            inputs_fingerprint=original.inputs_fingerprint,
            rules_fingerprint=original.rules_fingerprint,
            calculated_at=now,
            calculated_by=processed_by,
            released_at=now,
            released_by=processed_by,
            lines=[
                PayrollLine(
                    line_type=line.line_type.value,
                    position=position,
                    name=line.name,
                    currency=original.currency,
                    amount=line.amount,
                    explanation=line.explanation,
                )
                for position, line in enumerate(lines)
            ],
        )
        self.session.add(new_record)
        # Head and correction rows reference the new version
        await flush_or_conflict(self.session, f"Payroll record {original.payroll_record_id}")

        original_status = original.status
        PayrollRecordStateMachine.validate_transition(
            original_status, PayrollRecordStatus.CORRECTED.value
        )
        original.status = PayrollRecordStatus.CORRECTED.value
        head.head_record_id = new_record.payroll_record_id

        correction_status = correction.status
        correction.status = CorrectionStatus.PROCESSED.value
        correction.processed_by = processed_by
        correction.processed_at = now
        correction.resulting_record_id = new_record.payroll_record_id
        await flush_or_conflict(self.session, f"Correction {correction_id}")

        await self.audit.append(
            RECORD_SUBJECT,
            new_record.payroll_record_id,
            None,
            new_record.status,
            processed_by,
            {
                "version": new_record.version,
                "previous_version_id": str(original.payroll_record_id),
                "correction_id": str(correction.correction_id),
                "gross": gross,
                "net": net,
            },
        )
        await self.audit.append(
            RECORD_SUBJECT,
            original.payroll_record_id,
            original_status,
            original.status,
            processed_by,
            {
                "superseded_by": str(new_record.payroll_record_id),
                "correction_id": str(correction.correction_id),
            },
        )
        await self.audit.append(
            CORRECTION_SUBJECT,
            correction.correction_id,
            correction_status,
            correction.status,
            processed_by,
            {
                "resulting_record_id": str(new_record.payroll_record_id),
                "original_net": original.net,
                "corrected_net": net,
            },
        )

        logger.info(
            "Correction %s processed: record %s v%d -> %s v%d (net %s -> %s %s)",
            correction_id,
            original.payroll_record_id,
            original.version,
            new_record.payroll_record_id,
            new_record.version,
            original.net,
            net,
            new_record.currency,
        )
        self._emit_status(correction, correction_status, processed_by)
        self.emitter.emit_on_commit(
            self.session,
            PayrollRecordCorrected(
                metadata=EventMetadata.create(actor_id=processed_by),
                correction_id=correction.correction_id,
                original_record_id=original.payroll_record_id,
                new_record_id=new_record.payroll_record_id,
                employee_id=new_record.employee_id,
                version=new_record.version,
                net=net,
                currency=new_record.currency,
            )
        )
        return new_record

    async def cancel(
        self, correction_id: UUID, cancelled_by: str, reason: str
    ) -> ErrorCorrection:
        """Cancel a correction that has not been processed or decided against."""
        if not reason or not reason.strip():
            raise ValidationError("Cancellation requires a reason")
        correction = await self.get_correction(correction_id)
        if not CorrectionStateMachine.can_cancel(correction.status):
            raise AlreadyProcessedError(
                correction.correction_id,
                correction.status,
                correction.resulting_record_id,
            )

        from_status = correction.status
        correction.status = CorrectionStatus.CANCELLED.value
        correction.cancelled_by = cancelled_by
        correction.cancelled_at = utcnow()
        correction.cancel_reason = reason
        await flush_or_conflict(self.session, f"Correction {correction_id}")
        await self.audit.append(
            CORRECTION_SUBJECT,
            correction.correction_id,
            from_status,
            correction.status,
            cancelled_by,
            {"reason": reason},
        )
        logger.info("Correction %s cancelled by %s", correction_id, cancelled_by)
        self._emit_status(correction, from_status, cancelled_by)
        return correction

    # ===== Reads =====

    async def get_correction(self, correction_id: UUID) -> ErrorCorrection:
        correction = await self.session.get(ErrorCorrection, correction_id)
        if correction is None:
            raise NotFoundError(f"Correction {correction_id} not found")
        return correction

    async def preview(self, correction_id: UUID) -> CorrectionPreview:
        """Totals before and after applying a correction, without applying it."""
        correction = await self.get_correction(correction_id)
        record = await self._get_record(correction.payroll_record_id)
        details = CorrectionDetails.from_correction(correction)
        corrected = apply_correction(list(record.lines), details, record.currency)

        before = {(l.line_type, l.name): l.amount for l in record.lines}
        after = {(l.line_type.value, l.name): l.amount for l in corrected}
        changes = []
        for key in list(before) + [k for k in after if k not in before]:
            old, new = before.get(key), after.get(key)
            if old != new:
                changes.append(
                    {
                        "line_type": key[0],
                        "name": key[1],
                        "before": str(old) if old is not None else None,
                        "after": str(new) if new is not None else None,
                    }
                )

        return CorrectionPreview(
            correction_id=correction.correction_id,
            payroll_record_id=record.payroll_record_id,
            currency=record.currency,
            original_gross=record.gross,
            original_net=record.net,
            corrected_gross=LineItemBuilder.calculate_gross(corrected),
            corrected_net=LineItemBuilder.calculate_net(corrected),
            changes=changes,
        )

    async def corrections_for_record(self, record_id: UUID) -> list[ErrorCorrection]:
        result = await self.session.execute(
            select(ErrorCorrection)
            .where(ErrorCorrection.payroll_record_id == record_id)
            .order_by(ErrorCorrection.requested_at)
        )
        return list(result.scalars().all())

    async def pending_corrections(self, branch_id: str | None = None) -> list[ErrorCorrection]:
        """Corrections still awaiting a decision or processing."""
        stmt = select(ErrorCorrection).where(
            ErrorCorrection.status.in_(
                [CorrectionStatus.REQUESTED.value, CorrectionStatus.APPROVED.value]
            )
        )
        if branch_id is not None:
            stmt = stmt.where(ErrorCorrection.branch_id == branch_id)
        result = await self.session.execute(stmt.order_by(ErrorCorrection.requested_at))
        return list(result.scalars().all())

    # ===== Internals =====

    async def _decide(
        self,
        correction_id: UUID,
        approver: Actor,
        to_status: CorrectionStatus,
        notes: str | None,
    ) -> ErrorCorrection:
        if not approver.has_role(self.approver_role):
            raise ApproverNotAuthorizedError(
                f"Approver {approver.actor_id} lacks role '{self.approver_role}'",
                approver_id=approver.actor_id,
            )
        correction = await self.get_correction(correction_id)
        if correction.status == CorrectionStatus.PROCESSED.value:
            raise AlreadyProcessedError(
                correction.correction_id,
                correction.status,
                correction.resulting_record_id,
            )
        if correction.status != CorrectionStatus.REQUESTED.value:
            raise InvalidTransitionError(
                correction.status, to_status.value, "correction is not awaiting a decision"
            )

        from_status = correction.status
        correction.status = to_status.value
        correction.approver_id = approver.actor_id
        correction.decided_at = utcnow()
        correction.decision_notes = notes
        await flush_or_conflict(self.session, f"Correction {correction_id}")
        await self.audit.append(
            CORRECTION_SUBJECT,
            correction.correction_id,
            from_status,
            correction.status,
            approver.actor_id,
            {"notes": notes},
        )
        logger.info("Correction %s %s by %s", correction_id, to_status.value, approver.actor_id)
        self._emit_status(correction, from_status, approver.actor_id)
        return correction

    async def _get_record(self, record_id: UUID) -> PayrollRecord:
        record = await self.session.get(PayrollRecord, record_id)
        if record is None:
            raise NotFoundError(f"Payroll record {record_id} not found")
        return record

    async def _ensure_released_head(self, record: PayrollRecord) -> PayrollRecordHead:
        head = await self.session.get(
            PayrollRecordHead,
            (record.employee_id, record.period_year, record.period_month),
            populate_existing=True,
        )
        if head is None or head.head_record_id != record.payroll_record_id:
            raise RecordNotReleasedError(
                f"Payroll record {record.payroll_record_id} has been superseded",
                payroll_record_id=str(record.payroll_record_id),
            )
        if record.status != PayrollRecordStatus.RELEASED.value:
            raise RecordNotReleasedError(
                f"Payroll record {record.payroll_record_id} is {record.status}, not released",
                payroll_record_id=str(record.payroll_record_id),
            )
        return head

    @staticmethod
    def _ensure_non_negative(
        record: PayrollRecord, lines: list[LineCandidate]
    ) -> tuple[Decimal, Decimal]:
        gross = LineItemBuilder.calculate_gross(lines)
        net = LineItemBuilder.calculate_net(lines)
        if net < 0:
            raise NegativeNetPay(
                f"Correction would leave net pay {net} {record.currency}",
                employee_id=record.employee_id,
                net=str(net),
            )
        return gross, net

    def _emit_status(
        self, correction: ErrorCorrection, from_status: str | None, actor_id: str
    ) -> None:
        self.emitter.emit_on_commit(
            self.session,
            CorrectionStatusChanged(
                metadata=EventMetadata.create(actor_id=actor_id),
                correction_id=correction.correction_id,
                payroll_record_id=correction.payroll_record_id,
                from_status=from_status,
                to_status=correction.status,
            )
        )
