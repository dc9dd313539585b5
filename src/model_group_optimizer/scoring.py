"""Health scoring from passively collected group statistics.

Everything in this module is a pure function: identical input always yields
an identical result, and nothing here touches the registry.
"""

from collections import Counter

from model_group_optimizer.models import (
    ChannelLogSummary,
    HealthLevel,
    LogEntry,
    ScoreFactor,
    ScoreResult,
    StatsSnapshot,
)

KEY_UNAVAILABLE = "No active API keys: add or repair keys for this group immediately"
KEY_SHORTAGE = "Fewer than 50% of keys are active: check invalid keys"
HOURLY_UNSTABLE = "Hourly failure rate is above 20%: check upstream stability"
LOW_CONFIDENCE = "Fewer than 10 requests in the last hour: score is based on little data"
DAILY_UNSTABLE = "Daily failure rate is above 10%: keep an eye on stability"
TREND_DEGRADING = "Failure rate is trending up: consider proactive maintenance"

_LEVEL_MESSAGES = (
    (80, "Group is healthy"),
    (60, "Group is working normally, minor optimisation possible"),
    (40, "Group needs attention: review its configuration"),
    (0, "Group has serious problems and needs immediate action"),
)


def health_level(score: int) -> HealthLevel:
    if score >= 80:
        return "excellent"
    if score >= 60:
        return "good"
    if score >= 40:
        return "fair"
    if score >= 20:
        return "poor"
    return "critical"


def score(stats: StatsSnapshot) -> ScoreResult:
    """Compute a 0-100 health score and its explanation.

    The score starts at 100 and is multiplied by one factor per available
    statistic: key health, hourly performance (30% weight), daily stability
    (20% weight) and, when weekly data exists, a week-over-day trend factor.
    """
    value = 100.0
    factors: list[ScoreFactor] = []

    ks = stats.key_stats
    if ks is not None:
        if ks.total_keys == 0:
            factors.append(
                ScoreFactor(
                    factor="key_health",
                    score=0.0,
                    details={"active_keys": ks.active_keys, "total_keys": 0, "invalid_keys": ks.invalid_keys, "ratio": 0.0},
                )
            )
            return _result(0, factors)

        active_ratio = ks.active_keys / ks.total_keys
        invalid_ratio = ks.invalid_keys / ks.total_keys
        key_score = active_ratio * (1 - invalid_ratio * 0.5)
        value *= key_score
        factors.append(
            ScoreFactor(
                factor="key_health",
                score=key_score,
                details={
                    "active_keys": ks.active_keys,
                    "total_keys": ks.total_keys,
                    "invalid_keys": ks.invalid_keys,
                    "ratio": active_ratio,
                },
            )
        )
        if ks.active_keys == 0:
            return _result(0, factors)

    hourly = stats.hourly_stats
    if hourly is not None and hourly.total_requests > 0:
        success_rate = 1 - hourly.failure_rate
        volume_weight = min(hourly.total_requests / 100, 1)
        hourly_score = success_rate * (0.7 + 0.3 * volume_weight)
        value *= 0.7 + 0.3 * hourly_score
        factors.append(
            ScoreFactor(
                factor="hourly_performance",
                score=hourly_score,
                details={
                    "total_requests": hourly.total_requests,
                    "failed_requests": hourly.failed_requests,
                    "failure_rate": hourly.failure_rate,
                    "success_rate": success_rate,
                },
            )
        )

    daily = stats.daily_stats
    if daily is not None and daily.total_requests > 0:
        daily_success = 1 - daily.failure_rate
        stability_bonus = 1.1 if daily.total_requests > 1000 else 1.0
        daily_score = daily_success * stability_bonus
        value *= 0.8 + 0.2 * min(daily_score, 1)
        factors.append(
            ScoreFactor(
                factor="daily_stability",
                score=daily_score,
                details={
                    "total_requests": daily.total_requests,
                    "failure_rate": daily.failure_rate,
                    "success_rate": daily_success,
                },
            )
        )

    # A zero daily failure rate carries no trend signal.
    weekly = stats.weekly_stats
    if weekly is not None and daily is not None and daily.failure_rate:
        improving = daily.failure_rate <= weekly.failure_rate
        trend_factor = 1.05 if improving else 0.95
        value *= trend_factor
        factors.append(
            ScoreFactor(
                factor="trend_analysis",
                score=trend_factor,
                details={
                    "weekly_failure_rate": weekly.failure_rate,
                    "daily_failure_rate": daily.failure_rate,
                    "trend": "improving" if improving else "degrading",
                },
            )
        )

    return _result(int(max(0.0, min(100.0, round_half_up(value)))), factors)


def recommendations(final_score: int, factors: list[ScoreFactor]) -> list[str]:
    result: list[str] = []
    for f in factors:
        d = f.details
        if f.factor == "key_health":
            if d.get("active_keys", 0) == 0:
                result.append(KEY_UNAVAILABLE)
            elif d.get("ratio", 1.0) < 0.5:
                result.append(KEY_SHORTAGE)
        elif f.factor == "hourly_performance":
            if d.get("failure_rate", 0.0) > 0.2:
                result.append(HOURLY_UNSTABLE)
            elif d.get("total_requests", 0) < 10:
                result.append(LOW_CONFIDENCE)
        elif f.factor == "daily_stability":
            if d.get("failure_rate", 0.0) > 0.1:
                result.append(DAILY_UNSTABLE)
        elif f.factor == "trend_analysis":
            if d.get("trend") == "degrading":
                result.append(TREND_DEGRADING)

    for threshold, message in _LEVEL_MESSAGES:
        if final_score >= threshold:
            result.append(message)
            break
    return result


def _result(final_score: int, factors: list[ScoreFactor]) -> ScoreResult:
    return ScoreResult(
        score=final_score,
        health_level=health_level(final_score),
        factors=factors,
        recommendations=recommendations(final_score, factors),
    )


def round_half_up(value: float) -> int:
    # round() would send 0.5 to the nearest even integer
    return int(value + 0.5) if value >= 0 else -int(-value + 0.5)


# ------------------------------------------------------------------
# Request log summaries
# ------------------------------------------------------------------


def summarize_logs(group_name: str, logs: list[LogEntry], time_range_hours: float = 24) -> ChannelLogSummary:
    """Summarise a channel's request log into a status and error histogram."""
    if not logs:
        return ChannelLogSummary(
            group_name=group_name,
            status="no_data",
            message="No requests in the selected time range",
            time_range_hours=time_range_hours,
        )

    total = len(logs)
    successes = sum(1 for entry in logs if entry.is_success)
    success_rate = successes / total
    avg_response_time = sum(entry.duration_ms for entry in logs) / total

    errors = [entry for entry in logs if not entry.is_success]
    error_types: Counter[str] = Counter(
        f"{entry.status_code if entry.status_code is not None else 'unknown'}_{(entry.error_message or '')[:50]}"
        for entry in errors
    )

    if success_rate < 0.5:
        status, message = "critical", f"Success rate {success_rate:.1%} is critically low"
    elif success_rate < 0.8 or avg_response_time > 30_000:
        status, message = "warning", f"Success rate {success_rate:.1%}, average latency {avg_response_time:.0f} ms"
    else:
        status, message = "healthy", f"Success rate {success_rate:.1%}"

    return ChannelLogSummary(
        group_name=group_name,
        status=status,
        message=message,
        total_requests=total,
        success_rate=success_rate,
        avg_response_time=avg_response_time,
        error_types=dict(error_types),
        last_error=errors[-1] if errors else None,
        time_range_hours=time_range_hours,
    )
