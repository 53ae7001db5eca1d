"""
Tests for Periodic Analysis Orchestrator
Tests the single analysis pass, per-unit isolation and fatal startup failure
"""

import pytest
from datetime import timedelta
from unittest.mock import MagicMock, patch

from actions.alert_engine import AlertEngine
from actions.interaction_detector import InteractionDetector
from actions.orchestrator import AnalyticsUnavailableError, PeriodicAnalysisOrchestrator
from actions.spike_detector import SpikeDetector
from models import AnalyticsAlert, InteractionSeverity


# =============================================================================
# Test Fixtures
# =============================================================================

@pytest.fixture
def orchestrator(repository, mock_text_analysis):
    alert_engine = AlertEngine(repository)
    spike_detector = SpikeDetector(repository)
    interaction_detector = InteractionDetector(repository, mock_text_analysis, alert_engine)
    return PeriodicAnalysisOrchestrator(repository, spike_detector, interaction_detector, alert_engine)


@pytest.fixture
def scenario(make_drug, make_prescription, make_reports, make_known_interaction, now):
    """Warfarin spikes; patient 1 takes warfarin with a known major interaction partner"""
    warfarin = make_drug("Warfarin")
    aspirin = make_drug("Aspirin")
    make_drug("Retired", is_active=False)

    warfarin_rx = make_prescription(patient_id=1, drug=warfarin)
    make_prescription(patient_id=1, drug=aspirin)
    make_known_interaction(warfarin, aspirin, InteractionSeverity.MAJOR)

    make_reports(warfarin_rx, 4, now - timedelta(days=40))
    make_reports(warfarin_rx, 25, now - timedelta(days=3))
    return warfarin, aspirin


# =============================================================================
# Test Run
# =============================================================================

class TestRun:

    @pytest.mark.asyncio
    async def test_full_pass(self, orchestrator, scenario, db_session, now):
        result = await orchestrator.run(window_days=30, now=now)

        assert result.drugs_analyzed == 2
        assert result.spikes_detected == 1
        assert result.interactions_detected == 1
        assert result.pairs_checked == 1
        assert result.alerts_generated == 2
        assert result.errors == []
        assert db_session.query(AnalyticsAlert).count() == 2
        assert result.summary["total_alerts"] == 2
        assert result.summary["high_severity_alerts"] == 2
        assert result.summary["recent_side_effects"] == 25
        assert result.finished_at is not None

    @pytest.mark.asyncio
    async def test_second_pass_is_deduplicated(self, orchestrator, scenario, db_session, now):
        await orchestrator.run(window_days=30, now=now)
        again = await orchestrator.run(window_days=30, now=now + timedelta(hours=2))

        assert again.spikes_detected == 1
        assert again.alerts_generated == 0
        assert db_session.query(AnalyticsAlert).count() == 2

    @pytest.mark.asyncio
    async def test_empty_store(self, orchestrator, now):
        result = await orchestrator.run(window_days=30, now=now)

        assert result.drugs_analyzed == 0
        assert result.alerts_generated == 0
        assert result.errors == []

    @pytest.mark.asyncio
    async def test_spike_failure_is_isolated(self, orchestrator, scenario, now):
        warfarin, aspirin = scenario
        real_detect = orchestrator.spike_detector.detect_spike

        def flaky(drug_id, **kwargs):
            if drug_id == warfarin.id:
                raise RuntimeError("database hiccup")
            return real_detect(drug_id, **kwargs)

        with patch.object(orchestrator.spike_detector, "detect_spike", side_effect=flaky):
            result = await orchestrator.run(window_days=30, now=now)

        assert len(result.errors) == 1
        error = result.errors[0]
        assert error.unit == f"drug:{warfarin.id}"
        assert error.stage == "spike"
        assert error.error_type == "RuntimeError"
        # The interaction scan still ran
        assert result.interactions_detected == 1
        assert result.alerts_generated == 1

    @pytest.mark.asyncio
    async def test_interaction_pair_failure_is_reported(self, orchestrator, make_drug,
                                                        make_prescription, mock_text_analysis, now):
        a, b = make_drug("Drug A"), make_drug("Drug B")
        make_prescription(patient_id=1, drug=a)
        make_prescription(patient_id=1, drug=b)
        mock_text_analysis.analyze_drug_interaction.side_effect = ValueError("bad payload")

        result = await orchestrator.run(window_days=30, now=now)

        assert [e.unit for e in result.errors] == [f"drugs:{a.id}:{b.id}"]
        assert result.errors[0].stage == "interaction"

    @pytest.mark.asyncio
    async def test_unreachable_store_is_fatal(self, mock_text_analysis, now):
        repository = MagicMock()
        repository.find_active_drugs.side_effect = ConnectionError("db down")
        orchestrator = PeriodicAnalysisOrchestrator(
            repository,
            SpikeDetector(repository),
            InteractionDetector(repository, mock_text_analysis, AlertEngine(repository)),
            AlertEngine(repository),
        )

        with pytest.raises(AnalyticsUnavailableError):
            await orchestrator.run(window_days=30, now=now)

    @pytest.mark.asyncio
    async def test_result_serializes_errors(self, orchestrator, make_drug, make_prescription,
                                            mock_text_analysis, now):
        a, b = make_drug("Drug A"), make_drug("Drug B")
        make_prescription(patient_id=1, drug=a)
        make_prescription(patient_id=1, drug=b)
        mock_text_analysis.analyze_drug_interaction.side_effect = RuntimeError("boom")

        data = (await orchestrator.run(window_days=30, now=now)).to_dict()

        assert data["errors"] == [{
            "unit": f"drugs:{a.id}:{b.id}",
            "stage": "interaction",
            "error_type": "RuntimeError",
            "message": "boom",
        }]

    @pytest.mark.asyncio
    async def test_zero_window_is_rejected(self, orchestrator, scenario, db_session, now):
        with pytest.raises(ValueError):
            await orchestrator.run(window_days=0, now=now)

        assert db_session.query(AnalyticsAlert).count() == 0
