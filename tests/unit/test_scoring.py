"""Tests for the scoring engine and log summaries."""

import pytest
from model_group_optimizer.models import KeyStats, LogEntry, PeriodStats, StatsSnapshot
from model_group_optimizer.scoring import (
    DAILY_UNSTABLE,
    HOURLY_UNSTABLE,
    KEY_SHORTAGE,
    KEY_UNAVAILABLE,
    LOW_CONFIDENCE,
    TREND_DEGRADING,
    health_level,
    score,
    summarize_logs,
)


def _snap(
    keys: tuple[int, int, int] | None = (10, 10, 0),
    hourly: tuple[int, float] | None = None,
    daily: tuple[int, float] | None = None,
    weekly: tuple[int, float] | None = None,
) -> StatsSnapshot:
    def period(p):
        if p is None:
            return None
        requests, rate = p
        return PeriodStats(total_requests=requests, failed_requests=round(requests * rate), failure_rate=rate)

    return StatsSnapshot(
        key_stats=KeyStats(active_keys=keys[0], total_keys=keys[1], invalid_keys=keys[2]) if keys else None,
        hourly_stats=period(hourly),
        daily_stats=period(daily),
        weekly_stats=period(weekly),
    )


class TestScore:
    def test_all_keys_invalid_scores_zero(self):
        result = score(_snap(keys=(0, 5, 5)))
        assert result.score == 0
        assert result.health_level == "critical"
        assert KEY_UNAVAILABLE in result.recommendations

    def test_no_keys_scores_zero(self):
        result = score(_snap(keys=(0, 0, 0), hourly=(500, 0.0)))
        assert result.score == 0
        assert KEY_UNAVAILABLE in result.recommendations

    def test_healthy_group_is_excellent(self):
        result = score(_snap(keys=(10, 10, 0), hourly=(200, 0.01)))
        assert result.score >= 90
        assert result.health_level == "excellent"
        assert [f.factor for f in result.factors] == ["key_health", "hourly_performance"]

    def test_key_ratio_multiplies_score(self):
        # 5/10 active, 2/10 invalid -> 0.5 * 0.9
        result = score(_snap(keys=(5, 10, 2)))
        assert result.score == 45
        assert result.health_level == "fair"

    def test_hourly_volume_weighting(self):
        # 50 requests at 90% success: 0.765 hourly score -> 100 * (0.7 + 0.2295)
        result = score(_snap(hourly=(50, 0.1)))
        assert result.score == 93

    def test_daily_stability_bonus_is_capped(self):
        result = score(_snap(daily=(5000, 0.0)))
        assert result.score == 100
        assert result.factors[-1].score == pytest.approx(1.1)

    def test_trend_degrading(self):
        result = score(_snap(daily=(100, 0.2), weekly=(700, 0.1)))
        trend = result.factors[-1]
        assert trend.factor == "trend_analysis"
        assert trend.details["trend"] == "degrading"
        # 100 * (0.8 + 0.2 * 0.8) * 0.95
        assert result.score == 91
        assert TREND_DEGRADING in result.recommendations
        assert DAILY_UNSTABLE in result.recommendations

    def test_trend_skipped_without_daily_failures(self):
        result = score(_snap(daily=(100, 0.0), weekly=(700, 0.1)))
        assert "trend_analysis" not in [f.factor for f in result.factors]

    def test_missing_key_stats_skips_key_factor(self):
        result = score(_snap(keys=None, hourly=(200, 0.0)))
        assert result.score == 100
        assert result.factors[0].factor == "hourly_performance"

    def test_empty_snapshot_scores_zero(self):
        result = score(StatsSnapshot.empty("boom", fetched_at=0.0))
        assert result.score == 0

    def test_recommendations(self):
        result = score(_snap(keys=(4, 10, 0), hourly=(8, 0.25)))
        assert KEY_SHORTAGE in result.recommendations
        assert HOURLY_UNSTABLE in result.recommendations
        low = score(_snap(hourly=(5, 0.0)))
        assert LOW_CONFIDENCE in low.recommendations

    def test_level_message_always_last(self):
        result = score(_snap())
        assert result.recommendations == ["Group is healthy"]

    @pytest.mark.parametrize(
        "snap",
        [
            _snap(keys=(1, 100, 99), hourly=(1000, 1.0), daily=(10, 1.0), weekly=(10, 0.0)),
            _snap(keys=(10, 10, 0), hourly=(1, 0.0), daily=(10_000, 0.0), weekly=(10, 0.0)),
            _snap(keys=None, daily=(1, 0.5), weekly=(1, 0.9)),
        ],
    )
    def test_bounds_and_determinism(self, snap):
        first = score(snap)
        assert 0 <= first.score <= 100
        assert score(snap) == first


class TestHealthLevel:
    @pytest.mark.parametrize(
        "value,level",
        [(100, "excellent"), (80, "excellent"), (79, "good"), (60, "good"), (40, "fair"), (20, "poor"), (19, "critical")],
    )
    def test_thresholds(self, value, level):
        assert health_level(value) == level


class TestSummarizeLogs:
    def test_no_data(self):
        summary = summarize_logs("gpt-4o-via-a", [])
        assert summary.status == "no_data"
        assert summary.total_requests == 0

    def test_critical_with_error_histogram(self):
        logs = [
            LogEntry(is_success=False, status_code=429, duration_ms=100, error_message="rate limited"),
            LogEntry(is_success=False, status_code=429, duration_ms=100, error_message="rate limited"),
            LogEntry(is_success=True, status_code=200, duration_ms=400),
        ]
        summary = summarize_logs("g", logs, time_range_hours=6)
        assert summary.status == "critical"
        assert summary.error_types == {"429_rate limited": 2}
        assert summary.avg_response_time == pytest.approx(200)
        assert summary.last_error is not None
        assert summary.time_range_hours == 6

    def test_error_message_truncated(self):
        logs = [LogEntry(is_success=False, status_code=500, error_message="x" * 80)] + [
            LogEntry(is_success=True) for _ in range(9)
        ]
        summary = summarize_logs("g", logs)
        assert list(summary.error_types) == ["500_" + "x" * 50]
        assert summary.status == "healthy"

    def test_slow_channel_is_warning(self):
        logs = [LogEntry(is_success=True, duration_ms=40_000) for _ in range(3)]
        assert summarize_logs("g", logs).status == "warning"
