"""
Trend Analyzer — short-term direction and variability per patient.

Window: the current reading plus the patient's prior readings from the
last 24 hours, newest first, capped at 10 readings in total.

  - Heart-rate variability: sample standard deviation (≥2 values)
  - Blood-pressure trend: mean systolic of the 3 newest vs the 3 oldest
    readings, ±10 mmHg
  - Temperature trend: same comparison, ±0.5 °C
  - Overall status: critical now → critical; fewer than 3 prior readings
    → unknown; any alert in the window → concerning; else good

Read-only over the measurement store.
"""

from __future__ import annotations

import logging
import statistics
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Sequence

from careline import settings
from careline.alerting.vitals import (
    Alert,
    OverallStatus,
    Parameter,
    TrendDirection,
    TrendSummary,
    VitalSignsRecord,
)

logger = logging.getLogger("alerting.trends")

BP_TREND_THRESHOLD = 10.0
TEMPERATURE_TREND_THRESHOLD = 0.5
TREND_SAMPLE = 3
MIN_HISTORY_FOR_STATUS = 3


@dataclass
class Reading:
    """Values and alerts of one reading inside the window."""

    values: Mapping[Parameter, float]
    alerts: list[Alert] = field(default_factory=list)

    @classmethod
    def from_record(cls, record: VitalSignsRecord) -> "Reading":
        return cls(values=record.values(), alerts=list(record.alerts))


def heart_rate_variability(readings: Sequence[Reading]) -> float | None:
    rates = [
        r.values[Parameter.HEART_RATE]
        for r in readings
        if r.values.get(Parameter.HEART_RATE) is not None
    ]
    if len(rates) < 2:
        return None
    return round(statistics.stdev(rates), 2)


def direction(values: Sequence[float], threshold: float) -> TrendDirection:
    """Compare the newest TREND_SAMPLE values with the oldest TREND_SAMPLE."""
    if len(values) < 2:
        return TrendDirection.UNKNOWN
    recent = values[:TREND_SAMPLE]
    older = values[-TREND_SAMPLE:]
    difference = statistics.fmean(recent) - statistics.fmean(older)
    if difference > threshold:
        return TrendDirection.WORSENING
    if difference < -threshold:
        return TrendDirection.IMPROVING
    return TrendDirection.STABLE


def _series(readings: Sequence[Reading], parameter: Parameter) -> list[float]:
    return [
        r.values[parameter]
        for r in readings
        if r.values.get(parameter) is not None
    ]


def overall_status(
    current_alerts: Sequence[Alert],
    window: Sequence[Reading],
    history_count: int,
) -> OverallStatus:
    if any(a.is_critical for a in current_alerts):
        return OverallStatus.CRITICAL
    if history_count < MIN_HISTORY_FOR_STATUS:
        return OverallStatus.UNKNOWN
    if any(r.alerts for r in window):
        return OverallStatus.CONCERNING
    return OverallStatus.GOOD


def summarize(
    current: Reading,
    history: Sequence[Reading],
    window_limit: int = 10,
) -> TrendSummary:
    """
    Build a TrendSummary from the current reading and prior history.

    ``history`` must already be newest-first and limited to the time
    window; it is truncated so the window holds at most ``window_limit``
    readings including the current one.
    """
    prior = list(history[: max(window_limit - 1, 0)])
    window = [current, *prior]

    return TrendSummary(
        heart_rate_variability=heart_rate_variability(window),
        blood_pressure_trend=direction(
            _series(window, Parameter.BP_SYSTOLIC), BP_TREND_THRESHOLD
        ),
        temperature_trend=direction(
            _series(window, Parameter.TEMPERATURE), TEMPERATURE_TREND_THRESHOLD
        ),
        overall_status=overall_status(current.alerts, window, len(prior)),
        readings_considered=len(window),
    )


class TrendAnalyzer:
    """Computes TrendSummaries against a measurement store."""

    def __init__(
        self,
        measurement_store: Any,
        window_hours: int = settings.TREND_WINDOW_HOURS,
        window_limit: int = settings.TREND_WINDOW_LIMIT,
    ) -> None:
        self._store = measurement_store
        self._window = timedelta(hours=window_hours)
        self._limit = window_limit

    def analyze(
        self,
        patient_id: str,
        current_values: Mapping[Parameter, float],
        current_alerts: Sequence[Alert],
        now: datetime | None = None,
        exclude_record_id: str | None = None,
    ) -> TrendSummary:
        now = now or datetime.now(timezone.utc)
        history = [
            r for r in self._store.recent(
                patient_id, since=now - self._window, limit=self._limit,
            )
            if r.record_id != exclude_record_id
        ]
        summary = summarize(
            Reading(values=current_values, alerts=list(current_alerts)),
            [Reading.from_record(r) for r in history],
            window_limit=self._limit,
        )
        logger.debug(
            "Trends for %s: status=%s bp=%s temp=%s hrv=%s (window=%d)",
            patient_id, summary.overall_status.value,
            summary.blood_pressure_trend.value, summary.temperature_trend.value,
            summary.heart_rate_variability, summary.readings_considered,
        )
        return summary
