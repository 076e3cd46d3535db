"""Tests for the /v1/scores endpoints and subject score listings."""

from __future__ import annotations

from typing import Any

import pytest
from fastapi.testclient import TestClient

from kpiscore.api.auth import API_KEY_HEADER
from kpiscore.models.indicator import IndicatorDefinition, IndicatorRole
from kpiscore.models.subject import Subject
from kpiscore.persistence.repositories import seed_indicator_in_memory
from kpiscore.services.notifications.dispatcher import InMemoryNotificationDispatcher
from tests.fixtures.kpi_fixture import (
    ADMIN_KEY,
    EMPLOYEE_OPS_KEY,
    EMPLOYEE_SALES_KEY,
    HEAD_SALES_KEY,
    make_indicator,
)

EMPLOYEE = {API_KEY_HEADER: EMPLOYEE_SALES_KEY}
HEAD = {API_KEY_HEADER: HEAD_SALES_KEY}
ADMIN = {API_KEY_HEADER: ADMIN_KEY}


@pytest.fixture(autouse=True)
def _seed(seeded_subjects: list[Subject], hq_indicator: IndicatorDefinition) -> None:
    """Every test here starts with the standard subjects and one HQ indicator."""


def _submit(client: TestClient, headers: dict[str, str], **overrides: Any):
    body = {"indicator_id": "ind-hq", "value": 99, "period": "Jan 2025"}
    body.update(overrides)
    return client.post("/v1/scores", headers=headers, json=body)


class TestSubmit:
    def test_capped_final_score(self, client: TestClient) -> None:
        response = _submit(client, EMPLOYEE)

        assert response.status_code == 201
        data = response.json()
        assert data["final_score"] == 20.0
        assert data["target_snapshot"] == 90
        assert data["period"] == "Jan 2025"
        assert data["verified"] is False

    def test_month_and_year_body(self, client: TestClient) -> None:
        response = _submit(client, EMPLOYEE, period=None, month="feb", year=2025)

        assert response.status_code == 201
        assert response.json()["period"] == "Feb 2025"

    def test_duplicate_is_409(self, client: TestClient) -> None:
        _submit(client, EMPLOYEE)

        response = _submit(client, EMPLOYEE, value=10)

        assert response.status_code == 409
        body = response.json()
        assert body["code"] == "DUPLICATE_PERIOD"
        assert body["details"]["period"] == "Jan 2025"

    def test_negative_value_is_400(self, client: TestClient) -> None:
        response = _submit(client, EMPLOYEE, value=-5)

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_bad_period_is_400(self, client: TestClient) -> None:
        response = _submit(client, EMPLOYEE, period="Smarch 2025")

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_PERIOD"

    def test_role_mismatch_is_403(self, client: TestClient) -> None:
        seed_indicator_in_memory(
            make_indicator("ind-dh", weight=10, role=IndicatorRole.DIVISION_HEAD)
        )

        response = _submit(client, EMPLOYEE, indicator_id="ind-dh")

        assert response.status_code == 403
        assert response.json()["code"] == "ROLE_MISMATCH"

    def test_unknown_indicator_is_404(self, client: TestClient) -> None:
        response = _submit(client, EMPLOYEE, indicator_id="nope")
        assert response.status_code == 404

    def test_submitting_for_colleague_is_403(self, client: TestClient) -> None:
        response = _submit(client, {API_KEY_HEADER: EMPLOYEE_OPS_KEY}, subject_id="emp-sales")

        assert response.status_code == 403
        assert response.json()["details"]["reason"] == "submit_on_behalf_denied"

    def test_division_head_notified(
        self, client: TestClient, dispatcher: InMemoryNotificationDispatcher
    ) -> None:
        _submit(client, EMPLOYEE)

        (event,) = dispatcher.for_recipient("head-sales")
        assert event.kind == "score_submitted"


class TestVerify:
    def test_verify_then_conflict(self, client: TestClient) -> None:
        score_id = _submit(client, EMPLOYEE).json()["score_id"]

        first = client.post(f"/v1/scores/{score_id}/verify", headers=HEAD)
        second = client.post(f"/v1/scores/{score_id}/verify", headers=ADMIN)

        assert first.status_code == 200
        assert first.json()["verified_by"] == "head-sales"
        assert second.status_code == 409
        assert second.json()["code"] == "ALREADY_VERIFIED"

    def test_employee_cannot_verify(self, client: TestClient) -> None:
        score_id = _submit(client, EMPLOYEE).json()["score_id"]

        response = client.post(f"/v1/scores/{score_id}/verify", headers=EMPLOYEE)

        assert response.status_code == 403

    def test_other_department_head_is_403(self, client: TestClient) -> None:
        score_id = _submit(client, {API_KEY_HEADER: EMPLOYEE_OPS_KEY}).json()["score_id"]

        response = client.post(f"/v1/scores/{score_id}/verify", headers=HEAD)

        assert response.status_code == 403
        assert response.json()["code"] == "FORBIDDEN"

    def test_verified_score_cannot_be_corrected(self, client: TestClient) -> None:
        score_id = _submit(client, EMPLOYEE).json()["score_id"]
        client.post(f"/v1/scores/{score_id}/verify", headers=HEAD)

        response = client.patch(f"/v1/scores/{score_id}", headers=EMPLOYEE, json={"value": 1})

        assert response.status_code == 409


class TestReadAndCorrect:
    def test_correct_value(self, client: TestClient) -> None:
        score_id = _submit(client, EMPLOYEE).json()["score_id"]

        response = client.patch(f"/v1/scores/{score_id}", headers=EMPLOYEE, json={"value": 45})

        assert response.status_code == 200
        assert response.json()["final_score"] == 10.0

    def test_get_score_visibility(self, client: TestClient) -> None:
        score_id = _submit(client, EMPLOYEE).json()["score_id"]

        assert client.get(f"/v1/scores/{score_id}", headers=HEAD).status_code == 200
        hidden = client.get(f"/v1/scores/{score_id}", headers={API_KEY_HEADER: EMPLOYEE_OPS_KEY})
        assert hidden.status_code == 404

    def test_list_subject_scores(self, client: TestClient) -> None:
        _submit(client, EMPLOYEE, period="Jan 2025")
        _submit(client, EMPLOYEE, period="Feb 2025")

        response = client.get("/v1/subjects/emp-sales/scores", headers=HEAD)

        assert response.status_code == 200
        data = response.json()
        assert data["subject_id"] == "emp-sales"
        assert [e["period"] for e in data["items"]] == ["Feb 2025", "Jan 2025"]
        assert data["items"][0]["indicator_name"] == "Tickets closed"

    def test_list_subject_scores_with_filter(self, client: TestClient) -> None:
        _submit(client, EMPLOYEE, period="Jan 2025")
        _submit(client, EMPLOYEE, period="Feb 2025")

        response = client.get("/v1/subjects/emp-sales/scores?month=jan&year=2025", headers=EMPLOYEE)

        assert [e["period"] for e in response.json()["items"]] == ["Jan 2025"]

    def test_list_subject_scores_bad_filter(self, client: TestClient) -> None:
        response = client.get("/v1/subjects/emp-sales/scores?period=soon", headers=EMPLOYEE)
        assert response.status_code == 400

    def test_list_colleague_scores_forbidden(self, client: TestClient) -> None:
        response = client.get(
            "/v1/subjects/emp-sales/scores", headers={API_KEY_HEADER: EMPLOYEE_OPS_KEY}
        )
        assert response.status_code == 403
