"""
Tests for logging context and metrics helpers.
"""

import structlog
from prometheus_client import REGISTRY

from referral_engine.observability import log_context, metrics


class TestLogContext:
    """log_context binds and unbinds contextvars."""

    def test_binds_within_block(self) -> None:
        with log_context(workflow_id="rescan-1", submission_id="abc"):
            bound = structlog.contextvars.get_contextvars()
            assert bound["workflow_id"] == "rescan-1"
            assert bound["submission_id"] == "abc"

        bound = structlog.contextvars.get_contextvars()
        assert "workflow_id" not in bound
        assert "submission_id" not in bound


class TestMetrics:
    """Metric helpers skip zero increments."""

    def _sample(self, name: str, labels: dict[str, str] | None = None) -> float:
        return REGISTRY.get_sample_value(name, labels or {}) or 0.0

    def test_days_awarded(self) -> None:
        labels = {"award_type": "EARNED_DAYS"}
        before = self._sample("referral_days_awarded_total", labels)

        metrics.record_days_awarded("EARNED_DAYS", 0)
        metrics.record_days_awarded("EARNED_DAYS", 3)

        assert self._sample("referral_days_awarded_total", labels) == before + 3

    def test_slots_disabled(self) -> None:
        before = self._sample("referral_slots_disabled_total")

        metrics.record_slots_disabled(0)
        metrics.record_slots_disabled(2)

        assert self._sample("referral_slots_disabled_total") == before + 2
