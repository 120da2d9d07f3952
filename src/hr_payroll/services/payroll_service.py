"""Payroll record service - calculate and store one employee's record."""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from hr_payroll.calculators.engine import PayrollCalculator
from hr_payroll.calculators.types import CalculationResult, PayPeriod
from hr_payroll.errors import (
    CalculationError,
    ConcurrentModificationError,
    DataUnavailable,
    InvalidTransitionError,
    NotFoundError,
    PayrollError,
    RecordReleasedError,
    ValidationError,
)
from hr_payroll.events import (
    EventEmitter,
    EventMetadata,
    PayrollCalculationFailed,
    PayrollRecordCalculated,
)
from hr_payroll.models import PayrollLine, PayrollRecord, PayrollRecordHead, utcnow
from hr_payroll.providers.base import CompensationInputProvider, EmployeeDirectory
from hr_payroll.services.audit_service import AuditTrailRecorder
from hr_payroll.services.state_machine import (
    PayrollRecordStateMachine,
    PayrollRecordStatus,
)

logger = logging.getLogger(__name__)

RECORD_SUBJECT = "payroll_record"

# ISO 4217 code for "no currency", used on drafts whose inputs never resolved
NO_CURRENCY = "XXX"


async def flush_or_conflict(session: AsyncSession, subject: str) -> None:
    """Flush pending changes, mapping lost optimistic-lock races."""
    try:
        await session.flush()
    except StaleDataError as e:
        raise ConcurrentModificationError(
            f"{subject} was modified concurrently; reload and retry",
        ) from e
    except IntegrityError as e:
        raise ConcurrentModificationError(
            f"{subject} conflicts with a concurrent write; reload and retry",
        ) from e


async def gather_and_calculate(
    provider: CompensationInputProvider,
    calculator: PayrollCalculator,
    employee_id: str,
    period: PayPeriod,
    branch_currency: str | None = None,
    as_of: date | None = None,
) -> CalculationResult:
    """Fetch inputs, rules and rate once, then run the calculator.

    Touches no database state, so it may run concurrently for many
    employees.
    """
    inputs = await provider.get_employee_inputs(employee_id, period)
    rule_set = await provider.get_rule_set(employee_id, period)

    rate: Decimal | None = None
    if (
        rule_set is not None
        and branch_currency
        and branch_currency.upper() != rule_set.contract_currency.upper()
    ):
        rate = await provider.get_exchange_rate(
            rule_set.contract_currency, branch_currency, period
        )

    return calculator.calculate(
        employee_id,
        period,
        inputs,
        rule_set,
        branch_currency=branch_currency,
        exchange_rate=rate,
        as_of=as_of,
    )


class PayrollService:
    """Stores calculation results as versioned payroll records.

    Operations:
    - calculate: fetch inputs, calculate and store one employee's record
    - store_result: persist a calculation result (create or overwrite)
    - record_failure: leave a draft carrying the calculation error
    - get_record / find_record / history: reads over the version chain

    Every status change writes one audit entry in the same transaction.
    The caller owns the session and commits.
    """

    def __init__(
        self,
        session: AsyncSession,
        provider: CompensationInputProvider | None = None,
        directory: EmployeeDirectory | None = None,
        emitter: EventEmitter | None = None,
        calculator: PayrollCalculator | None = None,
    ):
        self.session = session
        self.provider = provider
        self.directory = directory
        self.emitter = emitter or EventEmitter()
        self.calculator = calculator or PayrollCalculator()
        self.audit = AuditTrailRecorder(session)

    # ===== Reads =====

    async def get_record(self, record_id: UUID) -> PayrollRecord:
        record = await self.session.get(PayrollRecord, record_id)
        if record is None:
            raise NotFoundError(f"Payroll record {record_id} not found")
        return record

    async def find_record(self, employee_id: str, period: PayPeriod) -> PayrollRecord | None:
        """Current head of the version chain for (employee, period)."""
        head = await self._get_head(employee_id, period)
        if head is None:
            return None
        return await self.session.get(PayrollRecord, head.head_record_id)

    async def history(self, employee_id: str, period: PayPeriod) -> list[PayrollRecord]:
        """All versions for (employee, period), oldest first."""
        result = await self.session.execute(
            select(PayrollRecord)
            .where(
                PayrollRecord.employee_id == employee_id,
                PayrollRecord.period_year == period.year,
                PayrollRecord.period_month == period.month,
            )
            .order_by(PayrollRecord.version)
        )
        return list(result.scalars().all())

    async def list_records(
        self,
        branch_id: str,
        period: PayPeriod,
        status: str | None = None,
    ) -> list[PayrollRecord]:
        """Head records of a branch for a period."""
        stmt = (
            select(PayrollRecord)
            .join(
                PayrollRecordHead,
                PayrollRecordHead.head_record_id == PayrollRecord.payroll_record_id,
            )
            .where(
                PayrollRecord.branch_id == branch_id,
                PayrollRecord.period_year == period.year,
                PayrollRecord.period_month == period.month,
            )
            .order_by(PayrollRecord.employee_id)
        )
        if status is not None:
            stmt = stmt.where(PayrollRecord.status == status)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def employee_records(
        self,
        employee_id: str,
        year: int,
        month: int | None = None,
    ) -> list[PayrollRecord]:
        """Head records of one employee for a year, or one month of it.

        Newest period first.
        """
        stmt = (
            select(PayrollRecord)
            .join(
                PayrollRecordHead,
                PayrollRecordHead.head_record_id == PayrollRecord.payroll_record_id,
            )
            .where(
                PayrollRecord.employee_id == employee_id,
                PayrollRecord.period_year == year,
            )
            .order_by(PayrollRecord.period_month.desc())
        )
        if month is not None:
            stmt = stmt.where(PayrollRecord.period_month == month)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # ===== Calculation =====

    async def calculate(
        self,
        employee_id: str,
        branch_id: str,
        period: PayPeriod,
        calculated_by: str,
        as_of: date | None = None,
    ) -> PayrollRecord:
        """Calculate and store the record for one employee and one period.

        On a calculation failure the record is left (or put back) in draft
        with ``calculation_error`` set, and the error is re-raised. Commit
        the session before propagating it if that draft should persist.
        """
        if self.provider is None:
            raise ValidationError("PayrollService.calculate needs an input provider")
        if not period.is_closed(as_of or date.today()):
            raise ValidationError(f"Pay period {period} is not closed")

        existing = await self.find_record(employee_id, period)
        if existing is not None:
            self.ensure_recalculable(existing)

        branch_currency = None
        if self.directory is not None:
            branch_currency = await self.directory.get_branch_currency(branch_id)

        try:
            result = await gather_and_calculate(
                self.provider,
                self.calculator,
                employee_id,
                period,
                branch_currency=branch_currency,
                as_of=as_of,
            )
        except (CalculationError, DataUnavailable) as e:
            await self.record_failure(
                employee_id,
                branch_id,
                period,
                e,
                calculated_by,
                currency=branch_currency,
            )
            raise

        return await self.store_result(result, branch_id, calculated_by)

    def ensure_recalculable(self, record: PayrollRecord) -> None:
        """Raise unless the record may be overwritten by a new calculation."""
        if PayrollRecordStateMachine.is_released(record.status):
            raise RecordReleasedError(
                f"Payroll record {record.payroll_record_id} is {record.status}; "
                "changes require an error correction",
                payroll_record_id=str(record.payroll_record_id),
            )
        if not PayrollRecordStateMachine.can_recalculate(record.status):
            raise InvalidTransitionError(
                record.status,
                PayrollRecordStatus.CALCULATED.value,
                "record is in the approval pipeline",
            )

    async def store_result(
        self,
        result: CalculationResult,
        branch_id: str,
        calculated_by: str,
    ) -> PayrollRecord:
        """Persist a calculation as the record for its (employee, period).

        A new key creates version 1 (draft, then calculated). An existing
        draft/calculated head is overwritten in place, keeping its id and
        version.
        """
        record = await self.find_record(result.employee_id, result.period)
        if record is None:
            record = await self._create_record(
                result.employee_id,
                branch_id,
                result.period,
                result.currency,
                calculated_by,
            )
        else:
            self.ensure_recalculable(record)

        from_status = record.status
        PayrollRecordStateMachine.validate_transition(
            from_status, PayrollRecordStatus.CALCULATED.value
        )
        self._apply_result(record, result, branch_id, calculated_by)
        record.status = PayrollRecordStatus.CALCULATED.value
        await flush_or_conflict(self.session, f"Payroll record {record.payroll_record_id}")

        await self.audit.append(
            RECORD_SUBJECT,
            record.payroll_record_id,
            from_status,
            record.status,
            calculated_by,
            {
                "version": record.version,
                "gross": record.gross,
                "net": record.net,
                "currency": record.currency,
                "inputs_fingerprint": record.inputs_fingerprint,
                "rules_fingerprint": record.rules_fingerprint,
            },
        )

        logger.info(
            "Calculated payroll record %s for employee %s %s: net=%s %s",
            record.payroll_record_id,
            record.employee_id,
            result.period,
            record.net,
            record.currency,
        )
        self.emitter.emit(
            PayrollRecordCalculated(
                metadata=EventMetadata.create(actor_id=calculated_by),
                payroll_record_id=record.payroll_record_id,
                employee_id=record.employee_id,
                branch_id=record.branch_id,
                period=str(result.period),
                gross=record.gross,
                net=record.net,
                currency=record.currency,
            )
        )
        return record

    async def record_failure(
        self,
        employee_id: str,
        branch_id: str,
        period: PayPeriod,
        error: PayrollError,
        calculated_by: str,
        currency: str | None = None,
    ) -> PayrollRecord | None:
        """Leave the (employee, period) record in draft with the error set.

        Records past ``calculated`` are not touched; the failure is only
        reported. Returns the affected record, if any.
        """
        record = await self.find_record(employee_id, period)
        if record is None:
            record = await self._create_record(
                employee_id,
                branch_id,
                period,
                currency or NO_CURRENCY,
                calculated_by,
            )
        elif not PayrollRecordStateMachine.can_recalculate(record.status):
            record = None

        if record is not None:
            from_status = record.status
            record.calculation_error = f"{error.code}: {error.message}"
            record.calculated_by = calculated_by
            if from_status != PayrollRecordStatus.DRAFT.value:
                PayrollRecordStateMachine.validate_transition(
                    from_status, PayrollRecordStatus.DRAFT.value
                )
                record.status = PayrollRecordStatus.DRAFT.value
            await flush_or_conflict(
                self.session, f"Payroll record {record.payroll_record_id}"
            )
            if from_status != record.status:
                await self.audit.append(
                    RECORD_SUBJECT,
                    record.payroll_record_id,
                    from_status,
                    record.status,
                    calculated_by,
                    {"error_code": error.code, "error": error.message},
                )

        logger.warning(
            "Payroll calculation failed for employee %s %s: %s",
            employee_id,
            period,
            error,
        )
        self.emitter.emit(
            PayrollCalculationFailed(
                metadata=EventMetadata.create(actor_id=calculated_by),
                employee_id=employee_id,
                branch_id=branch_id,
                period=str(period),
                error_code=error.code,
                message=error.message,
            )
        )
        return record

    # ===== Internals =====

    async def _get_head(self, employee_id: str, period: PayPeriod) -> PayrollRecordHead | None:
        return await self.session.get(
            PayrollRecordHead, (employee_id, period.year, period.month)
        )

    async def _create_record(
        self,
        employee_id: str,
        branch_id: str,
        period: PayPeriod,
        currency: str,
        created_by: str,
    ) -> PayrollRecord:
        """Insert version 1 as draft and point the chain head at it."""
        record = PayrollRecord(
            payroll_record_id=uuid4(),
            employee_id=employee_id,
            branch_id=branch_id,
            period_year=period.year,
            period_month=period.month,
            version=1,
            status=PayrollRecordStatus.DRAFT.value,
            approval_level=0,
            approval_cycle=0,
            currency=currency,
            contract_currency=currency,
            gross=Decimal("0"),
            net=Decimal("0"),
            rule_snapshot={},
            calculated_by=created_by,
            lines=[],
        )
        self.session.add(record)
        # The head row references the record, so the record goes in first
        await flush_or_conflict(self.session, f"Payroll record for {employee_id} {period}")
        self.session.add(
            PayrollRecordHead(
                employee_id=employee_id,
                period_year=period.year,
                period_month=period.month,
                head_record_id=record.payroll_record_id,
            )
        )
        await flush_or_conflict(self.session, f"Payroll record head for {employee_id} {period}")

        await self.audit.append(
            RECORD_SUBJECT,
            record.payroll_record_id,
            None,
            record.status,
            created_by,
            {
                "employee_id": employee_id,
                "branch_id": branch_id,
                "period": str(period),
                "version": 1,
            },
        )
        return record

    @staticmethod
    def _apply_result(
        record: PayrollRecord,
        result: CalculationResult,
        branch_id: str,
        calculated_by: str,
    ) -> None:
        record.branch_id = branch_id
        record.currency = result.currency
        record.contract_currency = result.contract_currency
        record.exchange_rate = result.exchange_rate
        record.gross = result.gross
        record.net = result.net
        record.rule_snapshot = result.rule_snapshot
        record.inputs_fingerprint = result.inputs_fingerprint
        record.rules_fingerprint = result.rules_fingerprint
        record.calculation_error = None
        record.calculated_at = utcnow()
        record.calculated_by = calculated_by
        record.approval_level = 0
        record.lines = [
            PayrollLine(
                line_type=line.line_type.value,
                position=position,
                name=line.name,
                currency=result.currency,
                amount=line.amount,
                explanation=line.explanation,
            )
            for position, line in enumerate(result.lines)
        ]
