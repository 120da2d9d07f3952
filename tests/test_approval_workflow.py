"""Tests for multi-level approval and release."""

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from hr_payroll.calculators.types import PayPeriod
from hr_payroll.config import ApprovalLevelConfig
from hr_payroll.errors import (
    ApproverNotAuthorizedError,
    ConcurrentModificationError,
    DataUnavailable,
    InvalidTransitionError,
    LevelMismatchError,
    NotFoundError,
    ValidationError,
)
from hr_payroll.models import PayrollRecord, utcnow
from hr_payroll.services import (
    Actor,
    ApprovalChain,
    AuditTrailRecorder,
    ComplianceRuleSet,
    PayslipApprovalWorkflow,
)

PERIOD = PayPeriod(2024, 1)
BRANCH = "BR-NORTH"


class TestApprovalChain:
    def test_levels_must_be_contiguous(self):
        with pytest.raises(ValueError):
            ApprovalChain([ApprovalLevelConfig(1, "hr"), ApprovalLevelConfig(3, "finance")])

    def test_role_lookup_and_next_level(self, chain):
        assert len(chain) == 2
        assert chain.final_level == 2
        assert chain.role_for(1) == "hr"
        assert chain.role_for(2) == "finance"
        assert chain.next_level(1) == 2
        assert chain.next_level(2) is None

    def test_unknown_level(self, chain):
        with pytest.raises(ValidationError):
            chain.role_for(3)


class TestSubmit:
    async def test_submit_opens_level_one(self, calculated_record, workflow, session, notifier):
        [record] = await workflow.submit_for_approval(
            [calculated_record.payroll_record_id], "clerk"
        )
        await session.commit()

        assert record.status == "pending_approval"
        assert record.approval_level == 1
        assert record.approval_cycle == 1

        steps = await workflow.steps_for(record.payroll_record_id)
        assert [(s.level, s.decision) for s in steps] == [(1, "pending")]

        [event] = notifier.of_type("RecordSubmittedForApproval")
        assert event.required_role == "hr"

    async def test_submit_is_all_or_nothing(
        self, calculated_record, workflow, payroll_service, provider, session, notifier
    ):
        """One record in the wrong state rejects the whole batch."""
        provider.unavailable.add("E2")
        with pytest.raises(DataUnavailable):
            await payroll_service.calculate("E2", BRANCH, PERIOD, "clerk")
        draft = await payroll_service.find_record("E2", PERIOD)
        await session.commit()

        with pytest.raises(InvalidTransitionError):
            await workflow.submit_for_approval(
                [calculated_record.payroll_record_id, draft.payroll_record_id], "clerk"
            )

        assert calculated_record.status == "calculated"
        assert notifier.of_type("RecordSubmittedForApproval") == []

    async def test_submit_unknown_record(self, workflow):
        with pytest.raises(NotFoundError):
            await workflow.submit_for_approval([uuid4()], "clerk")

    async def test_submit_requires_records(self, workflow):
        with pytest.raises(ValidationError):
            await workflow.submit_for_approval([], "clerk")


class TestDecide:
    """Test approve/reject across the configured levels."""

    async def test_two_level_approval(self, calculated_record, workflow, session, hr, finance):
        record_id = calculated_record.payroll_record_id
        await workflow.submit_for_approval([record_id], "clerk")

        record = await workflow.decide(record_id, 1, hr, "approved")
        assert record.status == "pending_approval"
        assert record.approval_level == 2

        record = await workflow.decide(record_id, 2, finance, "approved", notes="ok")
        await session.commit()

        assert record.status == "approved"
        assert record.approval_level == 2
        steps = await workflow.steps_for(record_id)
        assert [(s.level, s.decision, s.approver_id) for s in steps] == [
            (1, "approved", "hr-anna"),
            (2, "approved", "fin-omar"),
        ]

    async def test_wrong_role_is_refused(self, calculated_record, workflow, finance):
        record_id = calculated_record.payroll_record_id
        await workflow.submit_for_approval([record_id], "clerk")

        with pytest.raises(ApproverNotAuthorizedError):
            await workflow.decide(record_id, 1, finance, "approved")

    async def test_level_mismatch(self, calculated_record, workflow, finance):
        record_id = calculated_record.payroll_record_id
        await workflow.submit_for_approval([record_id], "clerk")

        with pytest.raises(LevelMismatchError) as exc_info:
            await workflow.decide(record_id, 2, finance, "approved")

        assert exc_info.value.expected_level == 1

    async def test_reject_requires_notes(self, calculated_record, workflow, hr):
        record_id = calculated_record.payroll_record_id
        await workflow.submit_for_approval([record_id], "clerk")

        with pytest.raises(ValidationError):
            await workflow.decide(record_id, 1, hr, "rejected", notes="  ")

    async def test_unknown_decision(self, calculated_record, workflow, hr):
        with pytest.raises(ValidationError):
            await workflow.decide(calculated_record.payroll_record_id, 1, hr, "maybe")

    async def test_reject_returns_to_draft(
        self, calculated_record, workflow, payroll_service, session, hr, finance
    ):
        """A rejected record goes back to draft and restarts at level 1."""
        record_id = calculated_record.payroll_record_id
        await workflow.submit_for_approval([record_id], "clerk")
        await workflow.decide(record_id, 1, hr, "approved")

        record = await workflow.decide(record_id, 2, finance, "rejected", notes="wrong rate")
        assert record.status == "draft"
        assert record.approval_level == 0

        # Recalculate and resubmit opens a new cycle
        await payroll_service.calculate("E1", BRANCH, PERIOD, "clerk")
        [record] = await workflow.submit_for_approval([record_id], "clerk")
        await session.commit()

        assert record.approval_cycle == 2
        assert [s.level for s in await workflow.steps_for(record_id, cycle=2)] == [1]
        assert len(await workflow.steps_for(record_id)) == 3

    async def test_decide_on_calculated_record(self, calculated_record, workflow, hr):
        with pytest.raises(InvalidTransitionError):
            await workflow.decide(calculated_record.payroll_record_id, 1, hr, "approved")

    async def test_concurrent_decisions_one_wins(
        self, calculated_record, workflow, session, session_factory, chain, hr
    ):
        """Two approvers deciding the same level: exactly one succeeds."""
        record_id = calculated_record.payroll_record_id
        await workflow.submit_for_approval([record_id], "clerk")
        await session.commit()

        async with session_factory() as other:
            other_workflow = PayslipApprovalWorkflow(other, chain=chain)
            # Keep the stale row version in the other session's identity map
            held = await other.get(PayrollRecord, record_id)
            assert held.approval_level == 1
            await other.commit()

            await workflow.decide(record_id, 1, hr, "approved")
            await session.commit()

            second = Actor("hr-ben", frozenset({"hr"}))
            with pytest.raises(ConcurrentModificationError):
                await other_workflow.decide(record_id, 1, second, "approved")

        steps = await workflow.steps_for(record_id)
        assert [(s.level, s.approver_id) for s in steps if s.decision == "approved"] == [
            (1, "hr-anna")
        ]

    async def test_decisions_are_audited(self, approved_record, session):
        entries = await AuditTrailRecorder(session).query_by_subject(
            "payroll_record", approved_record.payroll_record_id
        )

        assert [(e.from_state, e.to_state, e.actor_id) for e in entries] == [
            (None, "draft", "clerk"),
            ("draft", "calculated", "clerk"),
            ("calculated", "pending_approval", "clerk"),
            ("pending_approval", "pending_approval", "hr-anna"),
            ("pending_approval", "approved", "fin-omar"),
        ]
        assert entries[3].payload["next_level"] == 2


class TestRelease:
    async def test_release_approved_record(
        self, approved_record, workflow, session, renderer, notifier
    ):
        [outcome] = await workflow.release(
            [approved_record.payroll_record_id], "releaser", template_id="standard"
        )
        await session.commit()

        assert outcome.released is True
        assert outcome.document_rendered is True
        assert approved_record.status == "released"
        assert approved_record.released_by == "releaser"
        assert renderer.rendered == [(approved_record.payroll_record_id, "standard")]

        [event] = notifier.of_type("PayslipReleased")
        assert event.document == b"payslip E1 v1"
        assert event.version == 1

    async def test_no_notification_until_commit(
        self, approved_record, workflow, session, notifier
    ):
        [outcome] = await workflow.release([approved_record.payroll_record_id], "releaser")
        assert outcome.released
        assert notifier.of_type("PayslipReleased") == []

        await session.rollback()
        await session.commit()

        assert notifier.of_type("PayslipReleased") == []

    async def test_release_is_per_record(
        self, approved_record, calculated_record, workflow, payroll_service, provider, session
    ):
        """A record that is not approved fails alone; the others are released."""
        provider.add_employee("E2")
        other = await payroll_service.calculate("E2", BRANCH, PERIOD, "clerk")
        await session.commit()

        outcomes = await workflow.release(
            [other.payroll_record_id, approved_record.payroll_record_id, uuid4()], "releaser"
        )
        await session.commit()

        assert [o.released for o in outcomes] == [False, True, False]
        assert outcomes[0].error_code == "INVALID_STATE"
        assert outcomes[2].error_code == "NOT_FOUND"
        assert other.status == "calculated"
        assert approved_record.status == "released"

    async def test_release_twice_fails(self, released_record, workflow):
        [outcome] = await workflow.release([released_record.payroll_record_id], "releaser")

        assert outcome.released is False
        assert outcome.error_code == "INVALID_STATE"

    async def test_compliance_blocks_release(self, approved_record, workflow, session):
        rules = ComplianceRuleSet(
            jurisdiction="XX",
            minimum_net_pay=Decimal("5000"),
            required_deductions=("Pension",),
        )

        [outcome] = await workflow.release(
            [approved_record.payroll_record_id], "releaser", compliance=rules
        )

        assert outcome.released is False
        assert outcome.error_code == "COMPLIANCE_BLOCKED"
        assert {v.rule for v in outcome.violations} == {"minimum_net_pay", "required_deduction"}
        assert approved_record.status == "approved"

    async def test_render_failure_does_not_undo_release(
        self, approved_record, workflow, renderer, session
    ):
        renderer.fail = True

        [outcome] = await workflow.release([approved_record.payroll_record_id], "releaser")
        await session.commit()

        assert outcome.released is True
        assert outcome.document_rendered is False
        assert "template engine unavailable" in outcome.render_error
        assert approved_record.status == "released"

    async def test_release_without_renderer(self, approved_record, session, chain):
        workflow = PayslipApprovalWorkflow(session, chain=chain)

        [outcome] = await workflow.release([approved_record.payroll_record_id], "releaser")

        assert outcome.released is True
        assert outcome.document_rendered is False
        assert outcome.render_error is None


class TestQueries:
    async def test_pending_for_level(self, calculated_record, workflow, hr):
        record_id = calculated_record.payroll_record_id
        await workflow.submit_for_approval([record_id], "clerk")

        assert [r.payroll_record_id for r in await workflow.pending_for_level(1)] == [record_id]
        assert await workflow.pending_for_level(2) == []

        await workflow.decide(record_id, 1, hr, "approved")
        assert [r.payroll_record_id for r in await workflow.pending_for_level(2, BRANCH)] == [
            record_id
        ]
        assert await workflow.pending_for_level(2, "BR-OTHER") == []

    async def test_approval_summary(self, approved_record, workflow):
        summary = await workflow.approval_summary(BRANCH, PERIOD)

        assert summary["approved"] == 1
        assert summary["calculated"] == 0
        assert set(summary) == {
            "draft",
            "calculated",
            "pending_approval",
            "approved",
            "released",
            "corrected",
        }

    async def test_find_overdue(self, calculated_record, workflow, session):
        record_id = calculated_record.payroll_record_id
        await workflow.submit_for_approval([record_id], "clerk")
        await session.commit()

        assert await workflow.find_overdue(sla_hours=48) == []

        later = utcnow() + timedelta(hours=49)
        [overdue] = await workflow.find_overdue(sla_hours=48, now=later)
        assert overdue.payroll_record_id == record_id
        assert overdue.level == 1
        assert overdue.branch_id == BRANCH
