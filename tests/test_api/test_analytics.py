"""
Tests for Analytics API
=======================

Tests analysis runs, alert management, reports and dashboards over HTTP.
"""

import pytest
from datetime import datetime, timedelta
from fastapi import status
from fastapi.testclient import TestClient

from models import AnalyticsAlert, InteractionSeverity


# ==================== FIXTURES ====================

@pytest.fixture
def spiking_drug(make_drug, make_prescription, make_reports):
    """Warfarin with 25 recent reports against a baseline of 4"""
    current = datetime.utcnow()
    drug = make_drug("Warfarin")
    rx = make_prescription(patient_id=1, drug=drug)
    make_reports(rx, 4, current - timedelta(days=40))
    make_reports(rx, 25, current - timedelta(days=3))
    return drug


@pytest.fixture
def interacting_pair(make_drug, make_prescription, make_known_interaction):
    """Patient 7 takes two drugs with a curated contraindication"""
    sertraline = make_drug("Sertraline")
    tramadol = make_drug("Tramadol")
    make_prescription(patient_id=7, drug=sertraline)
    rx = make_prescription(patient_id=7, drug=tramadol)
    make_known_interaction(sertraline, tramadol, InteractionSeverity.CONTRAINDICATED)
    return sertraline, tramadol, rx


@pytest.fixture
def raised_alert(client: TestClient, spiking_drug):
    client.post("/api/v1/analytics/analyze", json={"window_days": 30})
    return client.get("/api/v1/analytics/alerts").json()["alerts"][0]


# ==================== ANALYSIS TESTS ====================

class TestRunAnalysis:
    """Tests for the analysis trigger endpoint"""

    @pytest.mark.api
    def test_analyze_reports_counts(self, client: TestClient, spiking_drug, interacting_pair):
        response = client.post("/api/v1/analytics/analyze", json={"window_days": 30})

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["drugs_analyzed"] == 3
        assert data["spikes_detected"] == 1
        assert data["interactions_detected"] == 1
        assert data["alerts_generated"] == 2
        assert data["error_count"] == 0
        assert data["summary"]["high_severity_alerts"] == 2

    @pytest.mark.api
    def test_analyze_without_body_uses_default_window(self, client: TestClient):
        response = client.post("/api/v1/analytics/analyze")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["window_days"] == 30

    @pytest.mark.api
    def test_analyze_rejects_bad_window(self, client: TestClient):
        response = client.post("/api/v1/analytics/analyze", json={"window_days": 0})

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    @pytest.mark.api
    def test_failed_units_hide_error_details(self, client: TestClient, make_drug,
                                             make_prescription, mock_text_analysis):
        make_prescription(patient_id=2, drug=make_drug("Drug A"))
        make_prescription(patient_id=2, drug=make_drug("Drug B"))
        mock_text_analysis.analyze_drug_interaction.side_effect = RuntimeError("dsn=postgres://secret")

        response = client.post("/api/v1/analytics/analyze")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["error_count"] == 1
        assert data["failed_units"][0]["stage"] == "interaction"
        assert "secret" not in response.text


# ==================== REPORT TESTS ====================

class TestReport:

    @pytest.mark.api
    def test_report(self, client: TestClient, spiking_drug):
        response = client.get("/api/v1/analytics/report", params={"window_days": 7})

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["summary"]["total_side_effects"] == 25
        assert data["drug_analytics"][0]["drug_name"] == "Warfarin"
        assert data["insights"] == []

    @pytest.mark.api
    def test_report_does_not_raise_alerts(self, client: TestClient, spiking_drug, db_session):
        client.get("/api/v1/analytics/report")

        assert db_session.query(AnalyticsAlert).count() == 0


class TestSpikeCheck:

    @pytest.mark.api
    def test_spike_check(self, client: TestClient, spiking_drug):
        response = client.get(f"/api/v1/analytics/drugs/{spiking_drug.id}/spike")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["is_spike"] is True
        assert data["severity"] == "high"
        assert data["metrics"]["recent_count"] == 25

    @pytest.mark.api
    def test_spike_check_unknown_drug(self, client: TestClient):
        response = client.get("/api/v1/analytics/drugs/99999/spike")

        assert response.status_code == status.HTTP_404_NOT_FOUND


# ==================== INTERACTION TESTS ====================

class TestInteractions:

    @pytest.mark.api
    def test_detect_interactions(self, client: TestClient, interacting_pair):
        response = client.post("/api/v1/analytics/interactions/detect")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["alerts_generated"] == 1
        assert data["alerts"][0]["severity"] == "critical"
        assert data["alerts"][0]["alert_type"] == "drug_interaction"

    @pytest.mark.api
    def test_prescription_check(self, client: TestClient, interacting_pair):
        _, _, rx = interacting_pair

        response = client.post(f"/api/v1/analytics/prescriptions/{rx.id}/interactions")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["alerts_generated"] == 1

    @pytest.mark.api
    def test_prescription_check_unknown(self, client: TestClient):
        response = client.post("/api/v1/analytics/prescriptions/99999/interactions")

        assert response.status_code == status.HTTP_404_NOT_FOUND

    @pytest.mark.api
    def test_list_interactions(self, client: TestClient, interacting_pair):
        response = client.get("/api/v1/analytics/interactions", params={"severity": "contraindicated"})

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert len(data) == 1
        assert {data[0]["drug_name_1"], data[0]["drug_name_2"]} == {"Sertraline", "Tramadol"}


# ==================== ALERT TESTS ====================

class TestAlerts:

    @pytest.mark.api
    def test_list_alerts(self, client: TestClient, raised_alert):
        response = client.get("/api/v1/analytics/alerts", params={"alert_type": "side_effect_spike"})

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["total"] == 1
        assert data["page"] == 1
        assert data["alerts"][0]["subject_key"] == raised_alert["subject_key"]

    @pytest.mark.api
    def test_list_alerts_rejects_unknown_type(self, client: TestClient):
        response = client.get("/api/v1/analytics/alerts", params={"alert_type": "rumour"})

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    @pytest.mark.api
    def test_get_alert(self, client: TestClient, raised_alert):
        response = client.get(f"/api/v1/analytics/alerts/{raised_alert['id']}")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["recommendations"]

    @pytest.mark.api
    def test_get_alert_not_found(self, client: TestClient):
        response = client.get("/api/v1/analytics/alerts/99999")

        assert response.status_code == status.HTTP_404_NOT_FOUND

    @pytest.mark.api
    def test_resolve_alert_once(self, client: TestClient, raised_alert):
        url = f"/api/v1/analytics/alerts/{raised_alert['id']}/resolve"

        first = client.put(url, json={"resolution_notes": "Label updated", "resolved_by": 12})
        second = client.put(url, json={"resolution_notes": "Again"})

        assert first.status_code == status.HTTP_200_OK
        assert first.json()["is_resolved"] is True
        assert first.json()["resolved_by"] == 12
        assert second.status_code == status.HTTP_409_CONFLICT

    @pytest.mark.api
    def test_resolve_missing_alert(self, client: TestClient):
        response = client.put("/api/v1/analytics/alerts/99999/resolve", json={})

        assert response.status_code == status.HTTP_404_NOT_FOUND


# ==================== DASHBOARD TESTS ====================

class TestDashboard:

    @pytest.mark.api
    def test_dashboard(self, client: TestClient, spiking_drug):
        response = client.get("/api/v1/analytics/dashboard")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["total_side_effects"] == 25
        assert data["top_drugs"][0]["drug_name"] == "Warfarin"

    @pytest.mark.api
    def test_trends(self, client: TestClient, spiking_drug):
        response = client.get("/api/v1/analytics/trends", params={"drug_id": spiking_drug.id})

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["total"] == 25
        assert len(data["daily"]) == 1

    @pytest.mark.api
    def test_trends_unknown_drug(self, client: TestClient):
        response = client.get("/api/v1/analytics/trends", params={"drug_id": 99999})

        assert response.status_code == status.HTTP_404_NOT_FOUND


# ==================== SIDE EFFECT TESTS ====================

class TestAssessSideEffect:

    @pytest.mark.api
    def test_assess_then_cached(self, client: TestClient, make_drug, make_prescription, make_reports):
        rx = make_prescription(patient_id=1, drug=make_drug("Lisinopril"))
        report = make_reports(rx, 1, datetime.utcnow())[0]
        url = f"/api/v1/analytics/side-effects/{report.id}/assess"

        first = client.post(url)
        second = client.post(url)

        assert first.status_code == status.HTTP_200_OK
        assert first.json()["cached"] is False
        assert first.json()["analysis"]["is_fallback"] is True
        assert second.json()["cached"] is True

    @pytest.mark.api
    def test_assess_unknown_report(self, client: TestClient):
        response = client.post("/api/v1/analytics/side-effects/99999/assess")

        assert response.status_code == status.HTTP_404_NOT_FOUND


# ==================== HEALTH TESTS ====================

class TestHealth:

    @pytest.mark.api
    def test_health(self, client: TestClient):
        response = client.get("/health")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["checks"]["llm"]["configured"] is False
        assert data["checks"]["llm"]["request_count"] == 0
        assert data["checks"]["llm"]["model"]
        assert data["config"]["window_days"] == 30
