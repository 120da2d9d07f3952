"""API endpoint tests.

Drives the FastAPI app over ASGI against a file-backed SQLite database.
"""

from collections.abc import AsyncGenerator
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from hr_payroll.api.app import create_app

pytestmark = pytest.mark.asyncio

API = "/api/v1/payroll"
PERIOD = {"year": 2024, "month": 1}

CLERK = {"X-Actor-Id": "clerk"}
HR = {"X-Actor-Id": "hr-anna", "X-Actor-Roles": "hr"}
FINANCE = {"X-Actor-Id": "fin-omar", "X-Actor-Roles": "finance"}
ADMIN = {"X-Actor-Id": "admin-lee", "X-Actor-Roles": "payroll_admin, hr"}


@pytest.fixture
def app(session_factory, provider, directory, renderer, notifier, settings):
    return create_app(
        session_factory=session_factory,
        provider=provider,
        directory=directory,
        renderer=renderer,
        notifier=notifier,
        settings=settings,
    )


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create async HTTP client for API testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def calculate(client: AsyncClient, employee_id: str = "E1") -> dict:
    response = await client.post(
        f"{API}/records/calculate",
        headers=CLERK,
        json={"employee_id": employee_id, "branch_id": "BR-NORTH", **PERIOD},
    )
    assert response.status_code == 200, response.text
    return response.json()


async def release(client: AsyncClient, record_id: str) -> dict:
    await client.post(f"{API}/approvals/submit", headers=CLERK, json={"record_ids": [record_id]})
    await client.post(
        f"{API}/records/{record_id}/decisions",
        headers=HR,
        json={"level": 1, "decision": "approved"},
    )
    await client.post(
        f"{API}/records/{record_id}/decisions",
        headers=FINANCE,
        json={"level": 2, "decision": "approved"},
    )
    response = await client.post(
        f"{API}/approvals/release", headers=CLERK, json={"record_ids": [record_id]}
    )
    assert response.status_code == 200, response.text
    return response.json()[0]


class TestHealthEndpoints:
    async def test_health_check(self, client: AsyncClient):
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "healthy"
        assert data["approval_levels"] == 2

    async def test_readiness_check(self, client: AsyncClient):
        response = await client.get("/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    async def test_not_ready_without_collaborators(self, session_factory, settings):
        app = create_app(session_factory=session_factory, settings=settings)
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.get("/ready")

        assert response.status_code == 503
        assert response.json()["missing"] == ["provider", "directory"]

    async def test_liveness_check(self, client: AsyncClient):
        response = await client.get("/live")

        assert response.status_code == 200
        assert response.json()["status"] == "alive"


class TestRecords:
    async def test_calculate(self, client: AsyncClient):
        data = await calculate(client)

        assert data["status"] == "calculated"
        assert data["version"] == 1
        assert data["gross"] == "4000.00"
        assert data["net"] == "3600.00"
        assert [l["name"] for l in data["earnings"]] == ["Base pay"]
        assert [l["name"] for l in data["deductions"]] == ["Income tax"]

    async def test_fetched_record_keeps_minor_units(self, client: AsyncClient):
        record_id = (await calculate(client))["payroll_record_id"]

        response = await client.get(f"{API}/records/{record_id}")

        data = response.json()
        assert (data["gross"], data["net"]) == ("4000.00", "3600.00")
        assert [(l["amount"], l["currency"]) for l in data["deductions"]] == [("400.00", "USD")]

    async def test_actor_header_required(self, client: AsyncClient):
        response = await client.post(
            f"{API}/records/calculate",
            json={"employee_id": "E1", "branch_id": "BR-NORTH", **PERIOD},
        )

        assert response.status_code == 400

    async def test_invalid_month(self, client: AsyncClient):
        response = await client.post(
            f"{API}/records/calculate",
            headers=CLERK,
            json={"employee_id": "E1", "branch_id": "BR-NORTH", "year": 2024, "month": 13},
        )

        assert response.status_code == 422

    async def test_open_period(self, client: AsyncClient):
        response = await client.post(
            f"{API}/records/calculate",
            headers=CLERK,
            json={"employee_id": "E1", "branch_id": "BR-NORTH", "year": 2999, "month": 1},
        )

        assert response.status_code == 422
        assert response.json()["code"] == "VALIDATION_ERROR"

    async def test_missing_inputs_keep_draft(self, client: AsyncClient, provider):
        provider.unavailable.add("E1")

        response = await client.post(
            f"{API}/records/calculate",
            headers=CLERK,
            json={"employee_id": "E1", "branch_id": "BR-NORTH", **PERIOD},
        )

        assert response.status_code == 424
        assert response.json()["code"] == "DATA_UNAVAILABLE"

        listed = await client.get(
            f"{API}/records", params={"branch_id": "BR-NORTH", **PERIOD, "status": "draft"}
        )
        [draft] = listed.json()
        assert draft["calculation_error"].startswith("DATA_UNAVAILABLE")

    async def test_record_not_found(self, client: AsyncClient):
        response = await client.get(f"{API}/records/{uuid4()}")

        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    async def test_employee_payslips(self, client: AsyncClient):
        await calculate(client)

        year = await client.get(f"{API}/employees/E1/records", params={"year": 2024})
        month = await client.get(
            f"{API}/employees/E1/records", params={"year": 2024, "month": 2}
        )

        assert [(r["period_month"], r["net"]) for r in year.json()] == [(1, "3600.00")]
        assert month.json() == []


class TestApprovalFlow:
    async def test_submit_decide_release(self, client: AsyncClient, renderer):
        record_id = (await calculate(client))["payroll_record_id"]

        submitted = await client.post(
            f"{API}/approvals/submit", headers=CLERK, json={"record_ids": [record_id]}
        )
        assert submitted.status_code == 200
        assert submitted.json()[0]["approval_level"] == 1

        pending = await client.get(f"{API}/approvals/pending", params={"level": 1})
        assert [r["payroll_record_id"] for r in pending.json()] == [record_id]

        first = await client.post(
            f"{API}/records/{record_id}/decisions",
            headers=HR,
            json={"level": 1, "decision": "approved"},
        )
        assert first.json()["approval_level"] == 2

        # Level 1 is already decided
        again = await client.post(
            f"{API}/records/{record_id}/decisions",
            headers=HR,
            json={"level": 1, "decision": "approved"},
        )
        assert again.status_code == 409
        assert again.json()["code"] == "LEVEL_MISMATCH"

        wrong_role = await client.post(
            f"{API}/records/{record_id}/decisions",
            headers=HR,
            json={"level": 2, "decision": "approved"},
        )
        assert wrong_role.status_code == 403

        second = await client.post(
            f"{API}/records/{record_id}/decisions",
            headers=FINANCE,
            json={"level": 2, "decision": "approved", "notes": "ok"},
        )
        assert second.json()["status"] == "approved"

        released = await client.post(
            f"{API}/approvals/release",
            headers=CLERK,
            json={"record_ids": [record_id], "template_id": "standard"},
        )
        [outcome] = released.json()
        assert outcome["released"] is True
        assert outcome["document_rendered"] is True

        steps = await client.get(f"{API}/records/{record_id}/steps")
        assert [(s["level"], s["decision"]) for s in steps.json()] == [
            (1, "approved"),
            (2, "approved"),
        ]

    async def test_release_blocked_by_compliance(self, client: AsyncClient):
        record_id = (await calculate(client))["payroll_record_id"]
        await client.post(f"{API}/approvals/submit", headers=CLERK, json={"record_ids": [record_id]})
        for headers, level in ((HR, 1), (FINANCE, 2)):
            await client.post(
                f"{API}/records/{record_id}/decisions",
                headers=headers,
                json={"level": level, "decision": "approved"},
            )

        response = await client.post(
            f"{API}/approvals/release",
            headers=CLERK,
            json={
                "record_ids": [record_id],
                "compliance": {"jurisdiction": "XX", "minimum_net_pay": "5000"},
            },
        )

        [outcome] = response.json()
        assert outcome["released"] is False
        assert outcome["error_code"] == "COMPLIANCE_BLOCKED"
        assert outcome["violations"][0]["rule"] == "minimum_net_pay"

    async def test_reject_without_notes(self, client: AsyncClient):
        record_id = (await calculate(client))["payroll_record_id"]
        await client.post(f"{API}/approvals/submit", headers=CLERK, json={"record_ids": [record_id]})

        response = await client.post(
            f"{API}/records/{record_id}/decisions",
            headers=HR,
            json={"level": 1, "decision": "rejected"},
        )

        assert response.status_code == 422

    async def test_submit_wrong_state(self, client: AsyncClient):
        record_id = (await calculate(client))["payroll_record_id"]
        await client.post(f"{API}/approvals/submit", headers=CLERK, json={"record_ids": [record_id]})

        response = await client.post(
            f"{API}/approvals/submit", headers=CLERK, json={"record_ids": [record_id]}
        )

        assert response.status_code == 409
        assert response.json()["code"] == "INVALID_STATE"


class TestBranches:
    async def test_process_branch_and_summary(self, client: AsyncClient, provider, directory):
        provider.add_employee("E2")
        provider.unavailable.add("E2")
        directory.employees["BR-NORTH"] = ["E1", "E2"]

        response = await client.post(
            f"{API}/branches/BR-NORTH/process", headers=CLERK, json=PERIOD
        )

        assert response.status_code == 200, response.text
        data = response.json()
        assert (data["success_count"], data["failure_count"]) == (1, 1)
        assert data["outcomes"][1]["error_code"] == "DATA_UNAVAILABLE"

        summary = await client.get(f"{API}/branches/BR-NORTH/summary", params=PERIOD)
        assert summary.json()["calculated"] == 1
        assert summary.json()["draft"] == 1


class TestCorrections:
    async def test_correction_lifecycle(self, client: AsyncClient):
        record_id = (await calculate(client))["payroll_record_id"]
        await release(client, record_id)

        created = await client.post(
            f"{API}/corrections",
            headers=CLERK,
            json={
                "payroll_record_id": record_id,
                "correction_type": "component_addition",
                "line_type": "earning",
                "component_name": "Meal allowance",
                "amount": "200.00",
                "description": "Meal allowance missed in January",
            },
        )
        assert created.status_code == 201, created.text
        correction_id = created.json()["correction_id"]

        preview = await client.get(f"{API}/corrections/{correction_id}/preview")
        assert preview.json()["corrected_net"] == "3800.00"

        refused = await client.post(
            f"{API}/corrections/{correction_id}/approve", headers=HR, json={}
        )
        assert refused.status_code == 403

        approved = await client.post(
            f"{API}/corrections/{correction_id}/approve", headers=ADMIN, json={"notes": "ok"}
        )
        assert approved.json()["status"] == "approved"

        processed = await client.post(f"{API}/corrections/{correction_id}/process", headers=ADMIN)
        assert processed.status_code == 200
        new_version = processed.json()
        assert new_version["version"] == 2
        assert new_version["net"] == "3800.00"
        assert new_version["previous_version_id"] == record_id

        retried = await client.post(f"{API}/corrections/{correction_id}/process", headers=ADMIN)
        assert retried.status_code == 409
        assert retried.json()["code"] == "ALREADY_PROCESSED"
        assert retried.json()["context"]["resulting_record_id"] == new_version["payroll_record_id"]

        history = await client.get(f"{API}/records/{record_id}/history")
        assert [(r["version"], r["status"]) for r in history.json()] == [
            (1, "corrected"),
            (2, "released"),
        ]

        listed = await client.get(f"{API}/records/{record_id}/corrections")
        assert [c["status"] for c in listed.json()] == ["processed"]

    async def test_correction_on_unreleased_record(self, client: AsyncClient):
        record_id = (await calculate(client))["payroll_record_id"]

        response = await client.post(
            f"{API}/corrections",
            headers=CLERK,
            json={
                "payroll_record_id": record_id,
                "correction_type": "component_addition",
                "line_type": "earning",
                "component_name": "Meal allowance",
                "amount": "200.00",
                "description": "Too early",
            },
        )

        assert response.status_code == 409
        assert response.json()["code"] == "RECORD_NOT_RELEASED"


class TestAudit:
    async def test_query_by_subject_and_actor(self, client: AsyncClient):
        record_id = (await calculate(client))["payroll_record_id"]

        by_subject = await client.get(
            f"{API}/audit", params={"subject_type": "payroll_record", "subject_id": record_id}
        )
        assert [(e["from_state"], e["to_state"]) for e in by_subject.json()] == [
            (None, "draft"),
            ("draft", "calculated"),
        ]

        by_actor = await client.get(f"{API}/audit", params={"actor_id": "clerk"})
        assert len(by_actor.json()) == 2
        assert all(len(e["payload_hash"]) == 64 for e in by_actor.json())

    async def test_query_needs_a_filter(self, client: AsyncClient):
        response = await client.get(f"{API}/audit")

        assert response.status_code == 400
