"""Branch-wide payroll processing."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hr_payroll.calculators.engine import PayrollCalculator
from hr_payroll.calculators.types import CalculationResult, PayPeriod
from hr_payroll.config import get_settings
from hr_payroll.errors import NotFoundError, PayrollError, ValidationError
from hr_payroll.events import BranchRunFinished, EventEmitter, EventMetadata
from hr_payroll.models import BranchProcessingRun, utcnow
from hr_payroll.providers.base import CompensationInputProvider, EmployeeDirectory
from hr_payroll.services.locking_service import LockingService
from hr_payroll.services.payroll_service import PayrollService, gather_and_calculate

logger = logging.getLogger(__name__)


class UnexpectedProcessingError(PayrollError):
    """A collaborator raised something outside the payroll error taxonomy."""

    code = "UNEXPECTED_ERROR"


@dataclass
class EmployeeOutcome:
    """Result of processing one employee within a branch run."""

    employee_id: str
    status: str  # calculated | failed | skipped
    payroll_record_id: UUID | None = None
    net: Decimal | None = None
    currency: str | None = None
    error_code: str | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == "calculated"

    def to_dict(self) -> dict[str, Any]:
        return {
            "employee_id": self.employee_id,
            "status": self.status,
            "payroll_record_id": str(self.payroll_record_id) if self.payroll_record_id else None,
            "net": str(self.net) if self.net is not None else None,
            "currency": self.currency,
            "error_code": self.error_code,
            "error": self.error,
        }


@dataclass
class BranchRunResult:
    """Per-employee outcomes of one branch run."""

    run_id: UUID
    branch_id: str
    period: PayPeriod
    status: str
    outcomes: list[EmployeeOutcome] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return sum(1 for o in self.outcomes if o.status == "calculated")

    @property
    def failure_count(self) -> int:
        return sum(1 for o in self.outcomes if o.status == "failed")

    @property
    def skipped_count(self) -> int:
        return sum(1 for o in self.outcomes if o.status == "skipped")

    @property
    def failures(self) -> list[EmployeeOutcome]:
        return [o for o in self.outcomes if o.status == "failed"]

    def outcome_for(self, employee_id: str) -> EmployeeOutcome:
        for outcome in self.outcomes:
            if outcome.employee_id == employee_id:
                return outcome
        raise KeyError(employee_id)


class BranchPayrollProcessor:
    """Calculates every active employee of a branch for one period.

    Processing pipeline:
    1) Take the (branch, period) processing lock, or fail fast
    2) Record a run and list the branch's active employees
    3) Fetch inputs and calculate, at most ``worker_pool_size`` at a time
    4) Persist each employee's outcome in its own transaction as it finishes
    5) Record run totals, emit BranchRunFinished, release the lock

    One employee's failure never aborts the others. Setting
    ``cancel_event`` stops the run: outcomes already committed stay
    calculated, everything else is reported as skipped.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        provider: CompensationInputProvider,
        directory: EmployeeDirectory,
        emitter: EventEmitter | None = None,
        calculator: PayrollCalculator | None = None,
        worker_pool_size: int | None = None,
        lock_ttl_seconds: int | None = None,
    ):
        self.session_factory = session_factory
        self.provider = provider
        self.directory = directory
        self.emitter = emitter or EventEmitter()
        self.calculator = calculator or PayrollCalculator()
        if worker_pool_size is None or lock_ttl_seconds is None:
            settings = get_settings()
            worker_pool_size = worker_pool_size or settings.worker_pool_size
            lock_ttl_seconds = lock_ttl_seconds or settings.lock_ttl_seconds
        if worker_pool_size < 1:
            raise ValueError("worker_pool_size must be at least 1")
        self.worker_pool_size = worker_pool_size
        self.lock_ttl_seconds = lock_ttl_seconds

    async def process_branch(
        self,
        branch_id: str,
        period: PayPeriod,
        initiated_by: str,
        cancel_event: asyncio.Event | None = None,
        as_of: date | None = None,
    ) -> BranchRunResult:
        """Run payroll for a branch.

        Raises ValidationError for a period that has not closed yet and
        ProcessingInProgressError if a run already holds the branch.
        """
        if not period.is_closed(as_of or date.today()):
            raise ValidationError(f"Pay period {period} is not closed")

        lock_key = LockingService.branch_key(branch_id, period)
        holder = f"{initiated_by}:{uuid4()}"

        async with self.session_factory() as session:
            async with session.begin():
                await LockingService(session).acquire(lock_key, holder, self.lock_ttl_seconds)

        try:
            return await self._run(branch_id, period, initiated_by, cancel_event, as_of)
        finally:
            async with self.session_factory() as session:
                async with session.begin():
                    await LockingService(session).release(lock_key, holder)

    async def get_run(self, run_id: UUID) -> BranchProcessingRun:
        async with self.session_factory() as session:
            run = await session.get(BranchProcessingRun, run_id)
        if run is None:
            raise NotFoundError(f"Branch processing run {run_id} not found")
        return run

    async def list_runs(self, branch_id: str, period: PayPeriod) -> list[BranchProcessingRun]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(BranchProcessingRun)
                .where(
                    BranchProcessingRun.branch_id == branch_id,
                    BranchProcessingRun.period_year == period.year,
                    BranchProcessingRun.period_month == period.month,
                )
                .order_by(BranchProcessingRun.started_at)
            )
            return list(result.scalars().all())

    async def _run(
        self,
        branch_id: str,
        period: PayPeriod,
        initiated_by: str,
        cancel_event: asyncio.Event | None,
        as_of: date | None,
    ) -> BranchRunResult:
        run_id = uuid4()
        async with self.session_factory() as session:
            async with session.begin():
                session.add(
                    BranchProcessingRun(
                        run_id=run_id,
                        branch_id=branch_id,
                        period_year=period.year,
                        period_month=period.month,
                        initiated_by=initiated_by,
                        status="running",
                        started_at=utcnow(),
                    )
                )

        try:
            employee_ids = list(
                dict.fromkeys(await self.directory.get_active_employees(branch_id))
            )
            currency = await self.directory.get_branch_currency(branch_id)
            outcomes = await self._process_employees(
                employee_ids, branch_id, period, currency, initiated_by, cancel_event, as_of
            )
        except Exception:
            logger.exception("Branch run %s for %s %s failed", run_id, branch_id, period)
            await self._finish_run(run_id, "failed", [])
            raise

        cancelled = cancel_event is not None and cancel_event.is_set()
        result = BranchRunResult(
            run_id=run_id,
            branch_id=branch_id,
            period=period,
            status="cancelled" if cancelled else "completed",
            outcomes=[outcomes[e] for e in employee_ids],
        )
        await self._finish_run(run_id, result.status, result.outcomes)

        logger.info(
            "Branch run %s for %s %s %s: %d calculated, %d failed, %d skipped",
            run_id,
            branch_id,
            period,
            result.status,
            result.success_count,
            result.failure_count,
            result.skipped_count,
        )
        self.emitter.emit(
            BranchRunFinished(
                metadata=EventMetadata.create(actor_id=initiated_by),
                run_id=run_id,
                branch_id=branch_id,
                period=str(period),
                status=result.status,
                success_count=result.success_count,
                failure_count=result.failure_count,
                skipped_count=result.skipped_count,
            )
        )
        return result

    async def _process_employees(
        self,
        employee_ids: list[str],
        branch_id: str,
        period: PayPeriod,
        currency: str,
        initiated_by: str,
        cancel_event: asyncio.Event | None,
        as_of: date | None,
    ) -> dict[str, EmployeeOutcome]:
        semaphore = asyncio.Semaphore(self.worker_pool_size)

        def is_cancelled() -> bool:
            return cancel_event is not None and cancel_event.is_set()

        async def compute(
            employee_id: str,
        ) -> tuple[str, CalculationResult | None, PayrollError | None, bool]:
            async with semaphore:
                if is_cancelled():
                    return employee_id, None, None, True
                try:
                    result = await gather_and_calculate(
                        self.provider,
                        self.calculator,
                        employee_id,
                        period,
                        branch_currency=currency,
                        as_of=as_of,
                    )
                except PayrollError as e:
                    return employee_id, None, e, False
                except Exception as e:
                    logger.exception("Unexpected error calculating employee %s", employee_id)
                    return employee_id, None, UnexpectedProcessingError(str(e)), False
                return employee_id, result, None, False

        outcomes: dict[str, EmployeeOutcome] = {}
        tasks = [asyncio.create_task(compute(e)) for e in employee_ids]
        for next_done in asyncio.as_completed(tasks):
            employee_id, result, error, skipped = await next_done
            if skipped or is_cancelled():
                outcomes[employee_id] = EmployeeOutcome(employee_id, "skipped")
                continue
            outcomes[employee_id] = await self._persist(
                employee_id, branch_id, period, currency, initiated_by, result, error
            )
        return outcomes

    async def _persist(
        self,
        employee_id: str,
        branch_id: str,
        period: PayPeriod,
        currency: str,
        initiated_by: str,
        result: CalculationResult | None,
        error: PayrollError | None,
    ) -> EmployeeOutcome:
        """Write one employee's outcome in its own transaction."""
        if result is not None:
            try:
                async with self.session_factory() as session:
                    async with session.begin():
                        service = PayrollService(session, emitter=self.emitter)
                        record = await service.store_result(result, branch_id, initiated_by)
                return EmployeeOutcome(
                    employee_id,
                    "calculated",
                    payroll_record_id=record.payroll_record_id,
                    net=record.net,
                    currency=record.currency,
                )
            except PayrollError as e:
                error = e
            except SQLAlchemyError as e:
                logger.exception("Could not store payroll record for employee %s", employee_id)
                error = UnexpectedProcessingError(str(e))

        record_id = None
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    service = PayrollService(session, emitter=self.emitter)
                    record = await service.record_failure(
                        employee_id, branch_id, period, error, initiated_by, currency=currency
                    )
                    record_id = record.payroll_record_id if record is not None else None
        except (PayrollError, SQLAlchemyError):
            logger.exception("Could not record calculation failure for employee %s", employee_id)

        return EmployeeOutcome(
            employee_id,
            "failed",
            payroll_record_id=record_id,
            error_code=error.code,
            error=error.message,
        )

    async def _finish_run(self, run_id: UUID, status: str, outcomes: list[EmployeeOutcome]) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                run = await session.get(BranchProcessingRun, run_id)
                run.status = status
                run.success_count = sum(1 for o in outcomes if o.status == "calculated")
                run.failure_count = sum(1 for o in outcomes if o.status == "failed")
                run.skipped_count = sum(1 for o in outcomes if o.status == "skipped")
                run.finished_at = utcnow()
