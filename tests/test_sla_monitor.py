"""Tests for the approval SLA sweep."""

import asyncio
from datetime import timedelta

import pytest

from hr_payroll.models import utcnow
from hr_payroll.services import ApprovalSlaMonitor

pytestmark = pytest.mark.asyncio


@pytest.fixture
def monitor(session_factory, chain, emitter) -> ApprovalSlaMonitor:
    return ApprovalSlaMonitor(session_factory, chain, sla_hours=48, emitter=emitter)


async def test_reports_overdue_steps(calculated_record, workflow, session, monitor, notifier):
    await workflow.submit_for_approval([calculated_record.payroll_record_id], "clerk")
    await session.commit()

    assert await monitor.run_once() == []

    [overdue] = await monitor.run_once(now=utcnow() + timedelta(hours=49))

    assert overdue.payroll_record_id == calculated_record.payroll_record_id
    [event] = notifier.of_type("ApprovalOverdue")
    assert event.level == 1
    assert event.branch_id == "BR-NORTH"


async def test_decided_steps_are_not_reported(
    calculated_record, workflow, session, monitor, hr
):
    record_id = calculated_record.payroll_record_id
    await workflow.submit_for_approval([record_id], "clerk")
    await workflow.decide(record_id, 1, hr, "approved")
    await session.commit()

    [overdue] = await monitor.run_once(now=utcnow() + timedelta(hours=49))

    assert overdue.level == 2


async def test_reporting_changes_nothing(calculated_record, workflow, session, monitor):
    record_id = calculated_record.payroll_record_id
    await workflow.submit_for_approval([record_id], "clerk")
    await session.commit()

    await monitor.run_once(now=utcnow() + timedelta(hours=49))

    await session.refresh(calculated_record)
    assert calculated_record.status == "pending_approval"
    assert calculated_record.approval_level == 1


async def test_run_forever_survives_failed_sweeps(monitor, monkeypatch):
    stop = asyncio.Event()
    calls = []

    async def sweep(now=None):
        calls.append(now)
        if len(calls) == 1:
            raise RuntimeError("database restarting")
        stop.set()
        return []

    monkeypatch.setattr(monitor, "run_once", sweep)

    await asyncio.wait_for(monitor.run_forever(0, stop), timeout=5)

    assert len(calls) == 2


async def test_run_forever_stops_immediately_when_set(monitor, monkeypatch):
    stop = asyncio.Event()
    stop.set()
    calls = []

    async def sweep(now=None):
        calls.append(now)
        return []

    monkeypatch.setattr(monitor, "run_once", sweep)

    await monitor.run_forever(60, stop)

    assert calls == []
