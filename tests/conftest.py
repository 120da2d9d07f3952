"""Pytest fixtures for payroll workflow tests."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from decimal import Decimal
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hr_payroll.calculators.types import (
    AllowanceRule,
    DeductionCategory,
    DeductionRule,
    EmployeeInputs,
    PayPeriod,
    RuleSet,
)
from hr_payroll.config import Settings, parse_approval_chain
from hr_payroll.database import get_engine, init_models, make_session_factory
from hr_payroll.errors import DataUnavailable
from hr_payroll.events import DomainEvent, EventEmitter
from hr_payroll.models import PayrollRecord
from hr_payroll.services import (
    Actor,
    ApprovalChain,
    ErrorCorrectionManager,
    PayrollService,
    PayslipApprovalWorkflow,
)

# A closed month; tests calculate as of "today"
PERIOD = PayPeriod(2024, 1)
BRANCH = "BR-NORTH"


# ===== Collaborator fakes =====


class FakeCompensationProvider:
    """In-memory attendance, rules and exchange rates."""

    def __init__(self) -> None:
        self.inputs: dict[str, EmployeeInputs] = {}
        self.rules: dict[str, RuleSet] = {}
        self.rates: dict[tuple[str, str], Decimal] = {}
        self.unavailable: set[str] = set()
        self.calls: list[str] = []

    def add_employee(
        self,
        employee_id: str,
        worked_hours: Decimal | None = Decimal("160"),
        rule_set: RuleSet | None = None,
        **inputs: Any,
    ) -> None:
        self.inputs[employee_id] = EmployeeInputs(worked_hours=worked_hours, **inputs)
        self.rules[employee_id] = rule_set or standard_rule_set()

    async def get_employee_inputs(
        self, employee_id: str, period: PayPeriod
    ) -> EmployeeInputs | None:
        self.calls.append(employee_id)
        if employee_id in self.unavailable:
            raise DataUnavailable(
                f"Attendance service has no data for {employee_id}",
                employee_id=employee_id,
            )
        return self.inputs.get(employee_id)

    async def get_rule_set(self, employee_id: str, period: PayPeriod) -> RuleSet | None:
        return self.rules.get(employee_id)

    async def get_exchange_rate(
        self, source_currency: str, target_currency: str, period: PayPeriod
    ) -> Decimal | None:
        return self.rates.get((source_currency, target_currency))


class FakeDirectory:
    def __init__(self) -> None:
        self.employees: dict[str, list[str]] = {}
        self.currencies: dict[str, str] = {}

    async def get_active_employees(self, branch_id: str) -> list[str]:
        return list(self.employees.get(branch_id, []))

    async def get_branch_currency(self, branch_id: str) -> str:
        return self.currencies.get(branch_id, "USD")


class FakeRenderer:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.rendered: list[tuple[Any, str | None]] = []

    async def render_payslip_document(
        self, record: PayrollRecord, template_id: str | None
    ) -> bytes:
        if self.fail:
            raise RuntimeError("template engine unavailable")
        self.rendered.append((record.payroll_record_id, template_id))
        return f"payslip {record.employee_id} v{record.version}".encode()


class RecordingNotifier:
    def __init__(self) -> None:
        self.events: list[DomainEvent] = []

    def notify(self, event: DomainEvent) -> None:
        self.events.append(event)

    def of_type(self, name: str) -> list[DomainEvent]:
        return [e for e in self.events if e.event_type == name]


def standard_rule_set(
    base_salary: Decimal = Decimal("4000"),
    deduction: Decimal = Decimal("400"),
    currency: str = "USD",
) -> RuleSet:
    """Base salary with a single fixed statutory deduction."""
    return RuleSet(
        rule_set_id="rs-standard",
        base_salary=base_salary,
        contract_currency=currency,
        deductions=(
            DeductionRule(
                name="Income tax",
                category=DeductionCategory.STATUTORY,
                amount=deduction,
            ),
        ),
    )


def detailed_rule_set() -> RuleSet:
    return RuleSet(
        rule_set_id="rs-detailed",
        base_salary=Decimal("3000"),
        allowances=(
            AllowanceRule(name="Housing", amount=Decimal("500")),
            AllowanceRule(name="Transport", percent_of_base=Decimal("5")),
        ),
        deductions=(
            DeductionRule(
                name="Pension",
                category=DeductionCategory.VOLUNTARY,
                percent_of_gross=Decimal("3"),
            ),
            DeductionRule(
                name="Social security",
                category=DeductionCategory.STATUTORY,
                percent_of_gross=Decimal("10"),
                cap=Decimal("300"),
            ),
        ),
    )


# ===== Configuration =====


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path}/test.db",
        engine_version="test",
        host="127.0.0.1",
        port=8000,
        debug=False,
        log_level="INFO",
        worker_pool_size=4,
        approval_chain=parse_approval_chain("1:hr,2:finance"),
        correction_approver_role="payroll_admin",
        lock_ttl_seconds=60,
        approval_sla_hours=48,
        sla_sweep_seconds=0,
    )


@pytest.fixture
def chain(settings: Settings) -> ApprovalChain:
    return ApprovalChain(settings.approval_chain)


@pytest.fixture
def hr() -> Actor:
    return Actor("hr-anna", frozenset({"hr"}))


@pytest.fixture
def finance() -> Actor:
    return Actor("fin-omar", frozenset({"finance"}))


@pytest.fixture
def admin() -> Actor:
    return Actor("admin-lee", frozenset({"payroll_admin"}))


# ===== Database =====


@pytest_asyncio.fixture
async def engine(settings: Settings):
    """File-backed SQLite so separate sessions see each other's commits."""
    engine = get_engine(settings.database_url)
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(engine)


@pytest_asyncio.fixture
async def session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
        await session.rollback()


# ===== Collaborators =====


@pytest.fixture
def provider() -> FakeCompensationProvider:
    provider = FakeCompensationProvider()
    provider.add_employee("E1")
    return provider


@pytest.fixture
def directory() -> FakeDirectory:
    directory = FakeDirectory()
    directory.employees[BRANCH] = ["E1"]
    directory.currencies[BRANCH] = "USD"
    return directory


@pytest.fixture
def renderer() -> FakeRenderer:
    return FakeRenderer()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def emitter(notifier: RecordingNotifier) -> EventEmitter:
    emitter = EventEmitter()
    emitter.on_all(notifier.notify)
    return emitter


# ===== Services =====


@pytest.fixture
def payroll_service(session, provider, directory, emitter) -> PayrollService:
    return PayrollService(session, provider=provider, directory=directory, emitter=emitter)


@pytest.fixture
def workflow(session, chain, renderer, emitter) -> PayslipApprovalWorkflow:
    return PayslipApprovalWorkflow(session, chain=chain, renderer=renderer, emitter=emitter)


@pytest.fixture
def corrections(session, emitter, settings) -> ErrorCorrectionManager:
    return ErrorCorrectionManager(
        session, emitter=emitter, approver_role=settings.correction_approver_role
    )


@pytest_asyncio.fixture
async def calculated_record(payroll_service: PayrollService, session) -> PayrollRecord:
    """E1 calculated for PERIOD: gross 4000, net 3600."""
    record = await payroll_service.calculate("E1", BRANCH, PERIOD, calculated_by="clerk")
    await session.commit()
    return record


@pytest_asyncio.fixture
async def approved_record(
    calculated_record: PayrollRecord, workflow, session, hr, finance
) -> PayrollRecord:
    """E1 through both approval levels."""
    record_id = calculated_record.payroll_record_id
    await workflow.submit_for_approval([record_id], submitted_by="clerk")
    await workflow.decide(record_id, 1, hr, "approved")
    record = await workflow.decide(record_id, 2, finance, "approved")
    await session.commit()
    return record


@pytest_asyncio.fixture
async def released_record(approved_record: PayrollRecord, workflow, session) -> PayrollRecord:
    [outcome] = await workflow.release([approved_record.payroll_record_id], "releaser")
    assert outcome.released
    await session.commit()
    return approved_record
