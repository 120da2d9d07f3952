"""Payroll record, approval step, correction, and processing models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.orm.attributes import set_committed_value

from hr_payroll.calculators.line_builder import LineItemBuilder
from hr_payroll.calculators.types import PayPeriod
from hr_payroll.models.base import Base, TimestampMixin


# ===== Payroll Records =====


class PayrollRecord(Base, TimestampMixin):
    """One employee, one pay period, one version."""

    __tablename__ = "payroll_record"

    payroll_record_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    employee_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    branch_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    period_year: Mapped[int] = mapped_column(Integer, nullable=False)
    period_month: Mapped[int] = mapped_column(Integer, nullable=False)

    # Version chain
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    previous_version_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("payroll_record.payroll_record_id"),
        nullable=True,
    )
    correction_id: Mapped[UUID | None] = mapped_column(nullable=True)

    # Workflow
    status: Mapped[str] = mapped_column(String, nullable=False, default="draft")
    approval_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    approval_cycle: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Amounts
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    contract_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    exchange_rate: Mapped[Decimal | None] = mapped_column(Numeric(18, 8), nullable=True)
    gross: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    net: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    # Calculation provenance
    rule_snapshot: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    inputs_fingerprint: Mapped[str | None] = mapped_column(String, nullable=True)
    rules_fingerprint: Mapped[str | None] = mapped_column(String, nullable=True)
    calculation_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    calculated_at: Mapped[datetime | None] = mapped_column(nullable=True)
    calculated_by: Mapped[str | None] = mapped_column(String, nullable=True)

    released_at: Mapped[datetime | None] = mapped_column(nullable=True)
    released_by: Mapped[str | None] = mapped_column(String, nullable=True)

    row_version: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "employee_id",
            "period_year",
            "period_month",
            "version",
            name="payroll_record_key_version_unique",
        ),
        CheckConstraint(
            "status IN ('draft', 'calculated', 'pending_approval', 'approved', "
            "'released', 'corrected')",
            name="payroll_record_status_check",
        ),
        CheckConstraint(
            "period_month BETWEEN 1 AND 12",
            name="payroll_record_month_check",
        ),
    )
    __mapper_args__ = {"version_id_col": row_version}

    lines: Mapped[list[PayrollLine]] = relationship(
        back_populates="record",
        cascade="all, delete-orphan",
        order_by="PayrollLine.position",
        lazy="selectin",
    )

    @property
    def earnings(self) -> list[PayrollLine]:
        return [line for line in self.lines if line.line_type == "earning"]

    @property
    def deductions(self) -> list[PayrollLine]:
        return [line for line in self.lines if line.line_type == "deduction"]

    @property
    def total_deductions(self) -> Decimal:
        return sum((line.amount for line in self.deductions), Decimal("0"))

    @property
    def period(self) -> PayPeriod:
        return PayPeriod(self.period_year, self.period_month)


class PayrollLine(Base):
    """Earning or deduction component of a payroll record."""

    __tablename__ = "payroll_line"

    payroll_line_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    payroll_record_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_record.payroll_record_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    line_type: Mapped[str] = mapped_column(String, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    explanation: Mapped[str | None] = mapped_column(String, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "line_type IN ('earning', 'deduction')",
            name="payroll_line_type_check",
        ),
        CheckConstraint("amount >= 0", name="payroll_line_amount_non_negative"),
    )

    record: Mapped[PayrollRecord] = relationship(back_populates="lines")


class PayrollRecordHead(Base):
    """Index of the current head version per (employee, period)."""

    __tablename__ = "payroll_record_head"

    employee_id: Mapped[str] = mapped_column(String, primary_key=True)
    period_year: Mapped[int] = mapped_column(Integer, primary_key=True)
    period_month: Mapped[int] = mapped_column(Integer, primary_key=True)
    head_record_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_record.payroll_record_id"),
        nullable=False,
    )
    row_version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": row_version}


# ===== Approval =====


class ApprovalStep(Base, TimestampMixin):
    """One approval level's decision on a payroll record version."""

    __tablename__ = "approval_step"

    approval_step_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    payroll_record_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_record.payroll_record_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    record_version: Mapped[int] = mapped_column(Integer, nullable=False)
    approval_cycle: Mapped[int] = mapped_column(Integer, nullable=False)
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    decision: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    approver_id: Mapped[str | None] = mapped_column(String, nullable=True)
    opened_at: Mapped[datetime] = mapped_column(nullable=False)
    decided_at: Mapped[datetime | None] = mapped_column(nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "payroll_record_id",
            "approval_cycle",
            "level",
            name="approval_step_record_cycle_level_unique",
        ),
        CheckConstraint(
            "decision IN ('pending', 'approved', 'rejected')",
            name="approval_step_decision_check",
        ),
    )


# ===== Error Corrections =====


class ErrorCorrection(Base, TimestampMixin):
    """A requested adjustment to a released payroll record."""

    __tablename__ = "error_correction"

    correction_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    payroll_record_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_record.payroll_record_id"),
        nullable=False,
        index=True,
    )
    record_version: Mapped[int] = mapped_column(Integer, nullable=False)
    branch_id: Mapped[str] = mapped_column(String, nullable=False, index=True)

    correction_type: Mapped[str] = mapped_column(String, nullable=False)
    line_type: Mapped[str] = mapped_column(String, nullable=False)
    component_name: Mapped[str] = mapped_column(String, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(String, nullable=False, default="requested")
    requested_by: Mapped[str] = mapped_column(String, nullable=False)
    requested_at: Mapped[datetime] = mapped_column(nullable=False)
    approver_id: Mapped[str | None] = mapped_column(String, nullable=True)
    decided_at: Mapped[datetime | None] = mapped_column(nullable=True)
    decision_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_by: Mapped[str | None] = mapped_column(String, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancelled_by: Mapped[str | None] = mapped_column(String, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    resulting_record_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("payroll_record.payroll_record_id"),
        nullable=True,
    )
    original_snapshot: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict
    )

    row_version: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('requested', 'approved', 'rejected', 'processed', 'cancelled')",
            name="error_correction_status_check",
        ),
        CheckConstraint(
            "correction_type IN ('amount_adjustment', 'component_addition', "
            "'component_removal')",
            name="error_correction_type_check",
        ),
        CheckConstraint(
            "line_type IN ('earning', 'deduction')",
            name="error_correction_line_type_check",
        ),
    )
    __mapper_args__ = {"version_id_col": row_version}


# Numeric columns keep four places; amounts leave the session at the
# currency's minor unit, the precision they were calculated at.
_MONEY_COLUMNS: dict[type, tuple[str, ...]] = {
    PayrollRecord: ("gross", "net"),
    PayrollLine: ("amount",),
    ErrorCorrection: ("amount",),
}


def _round_money(target: Any, context: Any, attrs: Any = None) -> None:
    currency = target.__dict__.get("currency")
    if currency is None:
        return
    for name in _MONEY_COLUMNS[type(target)]:
        if attrs is not None and name not in attrs:
            continue
        value = target.__dict__.get(name)
        if value is not None:
            set_committed_value(target, name, LineItemBuilder.round_amount(value, currency))


for _model in _MONEY_COLUMNS:
    event.listen(_model, "load", _round_money)
    event.listen(_model, "refresh", _round_money)


# ===== Branch Processing =====


class BranchProcessingRun(Base, TimestampMixin):
    """History of branch-wide processing runs."""

    __tablename__ = "branch_processing_run"

    run_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    branch_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    period_year: Mapped[int] = mapped_column(Integer, nullable=False)
    period_month: Mapped[int] = mapped_column(Integer, nullable=False)
    initiated_by: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="running")
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    started_at: Mapped[datetime] = mapped_column(nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('running', 'completed', 'cancelled', 'failed')",
            name="branch_processing_run_status_check",
        ),
    )


class ProcessingLock(Base):
    """Named lock row; the primary key makes acquisition exclusive."""

    __tablename__ = "processing_lock"

    lock_key: Mapped[str] = mapped_column(String, primary_key=True)
    holder: Mapped[str] = mapped_column(String, nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
