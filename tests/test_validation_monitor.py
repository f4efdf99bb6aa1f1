"""
Tests for validation outcome monitoring
"""

from datetime import datetime, timedelta, timezone

import pytest


class FakeClock:
    def __init__(self):
        self.now = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


def _passing():
    from pcm_advisor.models import ValidationResult

    return ValidationResult(valid=True)


def _failing(code="HALLUCINATED_CITATION", severity="critical"):
    from pcm_advisor.models import ValidationError, ValidationResult

    return ValidationResult(valid=False, errors=[
        ValidationError(code=code, message=f"{code} detected", severity=severity),
    ])


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def monitor(clock):
    from pcm_advisor.validation_monitor import ValidationMonitor

    return ValidationMonitor(clock=clock)


class TestValidationMonitor:
    """Tests for ValidationMonitor aggregates and reports"""

    def test_success_rate_below_target(self, monitor):
        """Should compute 95% and report the target as not met"""
        from pcm_advisor.models import ValidationStage

        for _ in range(95):
            monitor.record_validation(ValidationStage.POST_RESPONSE, _passing(), 2.0)
        for _ in range(5):
            monitor.record_validation(ValidationStage.POST_RESPONSE, _failing(), 4.0, {"query": "TP 9999"})

        metrics = monitor.get_metrics()

        assert metrics.total_validations == 100
        assert metrics.success_rate == pytest.approx(95.0)
        assert metrics.critical_errors == 5
        assert metrics.average_validation_time == pytest.approx(2.1)
        assert not monitor.meets_success_target()
        assert "TARGET (99%): ✗ NOT MET" in monitor.generate_report()

    def test_target_met(self, monitor):
        """Should report the target as met when every validation passes"""
        from pcm_advisor.models import ValidationStage

        for _ in range(10):
            monitor.record_validation(ValidationStage.PRE_RETRIEVAL, _passing(), 1.0)

        assert monitor.meets_success_target()
        assert "TARGET (99%): ✓ MET" in monitor.generate_report()

    def test_patterns_ranked_by_frequency(self, monitor):
        """Should rank repeated error codes and keep a few examples"""
        from pcm_advisor.models import ValidationStage

        for _ in range(3):
            monitor.record_validation(ValidationStage.POST_RESPONSE, _failing("DOSE_OUT_OF_RANGE"), 1.0)
        for _ in range(2):
            monitor.record_validation(ValidationStage.POST_RESPONSE, _failing("HALLUCINATED_CITATION"), 1.0)
        monitor.record_validation(ValidationStage.POST_RESPONSE, _failing("RESPONSE_CONTRADICTIONS", "error"), 1.0)

        patterns = monitor.get_patterns()

        assert [p.error_code for p in patterns] == ["DOSE_OUT_OF_RANGE", "HALLUCINATED_CITATION"]
        assert patterns[0].frequency == 3
        assert patterns[0].examples[0] == "DOSE_OUT_OF_RANGE detected"
        assert "TOP ERROR PATTERNS:" in monitor.generate_report()

    def test_examples_capped(self, monitor):
        """Should keep at most five examples per pattern"""
        from pcm_advisor.models import ValidationStage

        for _ in range(8):
            monitor.record_validation(ValidationStage.POST_RESPONSE, _failing(), 1.0)

        assert len(monitor.get_patterns()[0].examples) == 5

    def test_recent_failures_newest_first(self, monitor, clock):
        """Should return failures newest first with the query"""
        from pcm_advisor.models import ValidationStage

        monitor.record_validation(ValidationStage.PRE_RETRIEVAL, _failing("INVALID_PROTOCOL_CODE", "error"), 1.0,
                                  {"query": "first"})
        clock.now += timedelta(seconds=5)
        monitor.record_validation(ValidationStage.POST_RESPONSE, _failing(), 1.0, {"query": "second"})

        recent = monitor.get_recent_failures()

        assert [f.query for f in recent] == ["second", "first"]
        assert "RECENT FAILURES:" in monitor.generate_report()

    def test_failures_by_stage(self, monitor):
        """Should filter and rate failures per stage"""
        from pcm_advisor.models import ValidationStage

        monitor.record_validation(ValidationStage.PRE_RESPONSE, _failing("MISSING_BASE_CONTACT"), 1.0)
        monitor.record_validation(ValidationStage.POST_RESPONSE, _passing(), 1.0)

        assert len(monitor.get_failures_by_stage(ValidationStage.PRE_RESPONSE)) == 1
        assert monitor.get_failures_by_stage("post-response") == []
        rates = monitor.get_failure_rate_by_stage()
        assert rates["pre-response"] == pytest.approx(50.0)
        assert rates["post-response"] == 0.0

    def test_time_window(self, monitor, clock):
        """Should only aggregate validations inside the window"""
        from pcm_advisor.models import ValidationStage

        monitor.record_validation(ValidationStage.POST_RESPONSE, _failing(), 1.0)
        clock.now += timedelta(hours=2)
        monitor.record_validation(ValidationStage.POST_RESPONSE, _passing(), 1.0)

        assert monitor.get_metrics(window_seconds=3600).success_rate == pytest.approx(100.0)
        assert monitor.get_metrics().success_rate == pytest.approx(50.0)

    def test_bounded_history(self, clock):
        """Should drop the oldest entries beyond capacity"""
        from pcm_advisor.models import ValidationStage
        from pcm_advisor.validation_monitor import ValidationMonitor

        monitor = ValidationMonitor(max_failures=2, max_validations=3, clock=clock)
        for _ in range(5):
            monitor.record_validation(ValidationStage.POST_RESPONSE, _failing(), 1.0)

        assert monitor.get_metrics().total_validations == 3
        assert len(monitor.get_recent_failures()) == 2

    def test_clear_and_export(self, monitor):
        """Should export a JSON-ready snapshot and clear everything"""
        from pcm_advisor.models import ValidationStage

        monitor.record_validation(ValidationStage.POST_RESPONSE, _failing(), 1.0)
        exported = monitor.export_metrics()
        monitor.clear()

        assert exported["metrics"]["failed_validations"] == 1
        assert exported["recent_failures"][0]["stage"] == "post-response"
        assert monitor.get_metrics().total_validations == 0
        assert monitor.get_patterns(min_frequency=1) == []
