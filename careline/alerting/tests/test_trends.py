"""
Tests for the Trend Analyzer.

Tests cover:
  - Heart-rate variability (sample standard deviation)
  - Direction of blood-pressure and temperature trends
  - Overall status precedence
  - Window limits against the measurement store
"""

from datetime import datetime, timedelta, timezone

import pytest

from careline.alerting.store import MeasurementStore
from careline.alerting.thresholds import evaluate
from careline.alerting.trends import (
    Reading,
    TrendAnalyzer,
    direction,
    heart_rate_variability,
    summarize,
)
from careline.alerting.vitals import (
    Measurement,
    OverallStatus,
    Parameter,
    TrendDirection,
    VitalSignsRecord,
)


def _reading(**values) -> Reading:
    vals = {Parameter(k): v for k, v in values.items()}
    return Reading(values=vals, alerts=evaluate(vals))


def _record(patient_id: str, when: datetime, **values) -> VitalSignsRecord:
    measurements = [
        Measurement(patient_id=patient_id, parameter=Parameter(k), value=v,
                    unit="x", timestamp=when)
        for k, v in values.items()
    ]
    record = VitalSignsRecord(patient_id=patient_id, timestamp=when, measurements=measurements)
    record.alerts = evaluate(record.values())
    return record


class TestHeartRateVariability:

    def test_needs_two_values(self):
        assert heart_rate_variability([_reading(heart_rate=70)]) is None

    def test_sample_standard_deviation(self):
        readings = [_reading(heart_rate=v) for v in (70, 80, 90)]
        assert heart_rate_variability(readings) == 10.0

    def test_ignores_readings_without_heart_rate(self):
        readings = [_reading(heart_rate=70), _reading(temperature=37), _reading(heart_rate=74)]
        assert heart_rate_variability(readings) == pytest.approx(2.83, abs=0.01)


class TestDirection:

    def test_unknown_with_fewer_than_two(self):
        assert direction([120], 10) == TrendDirection.UNKNOWN
        assert direction([], 10) == TrendDirection.UNKNOWN

    def test_worsening_when_newest_higher(self):
        # newest first
        assert direction([160, 158, 155, 130, 128, 126], 10) == TrendDirection.WORSENING

    def test_improving_when_newest_lower(self):
        assert direction([120, 121, 122, 140, 141, 142], 10) == TrendDirection.IMPROVING

    def test_stable_within_threshold(self):
        assert direction([125, 124, 123, 120, 121, 122], 10) == TrendDirection.STABLE

    def test_temperature_threshold(self):
        assert direction([38.5, 38.4, 38.3, 37.0, 37.1, 37.0], 0.5) == TrendDirection.WORSENING
        assert direction([37.2, 37.1, 37.0, 37.0, 36.9, 36.9], 0.5) == TrendDirection.STABLE

    def test_short_series_compares_overlapping_samples(self):
        # with fewer than six values the newest and oldest samples overlap
        assert direction([38.0, 37.0], 0.5) == TrendDirection.STABLE


class TestOverallStatus:

    def test_current_critical_wins(self):
        summary = summarize(_reading(heart_rate=35), [])
        assert summary.overall_status == OverallStatus.CRITICAL

    def test_unknown_with_little_history(self):
        history = [_reading(heart_rate=70), _reading(heart_rate=72)]
        summary = summarize(_reading(heart_rate=71), history)
        assert summary.overall_status == OverallStatus.UNKNOWN

    def test_concerning_when_window_has_alerts(self):
        history = [_reading(heart_rate=70), _reading(heart_rate=110), _reading(heart_rate=72)]
        summary = summarize(_reading(heart_rate=71), history)
        assert summary.overall_status == OverallStatus.CONCERNING

    def test_good_when_window_clean(self):
        history = [_reading(heart_rate=70) for _ in range(4)]
        summary = summarize(_reading(heart_rate=71), history)
        assert summary.overall_status == OverallStatus.GOOD

    def test_window_capped(self):
        history = [_reading(heart_rate=70) for _ in range(20)]
        summary = summarize(_reading(heart_rate=71), history, window_limit=10)
        assert summary.readings_considered == 10


class TestTrendAnalyzer:

    def test_only_last_24_hours_considered(self):
        store = MeasurementStore()
        now = datetime.now(timezone.utc)
        store.save(_record("PT-1", now - timedelta(hours=30), heart_rate=140))
        for minutes in (30, 20, 10):
            store.save(_record("PT-1", now - timedelta(minutes=minutes), heart_rate=72))

        analyzer = TrendAnalyzer(store, window_hours=24, window_limit=10)
        values = {Parameter.HEART_RATE: 74}
        summary = analyzer.analyze("PT-1", values, evaluate(values), now=now)

        assert summary.readings_considered == 4
        assert summary.overall_status == OverallStatus.GOOD

    def test_blood_pressure_trend_from_history(self):
        store = MeasurementStore()
        now = datetime.now(timezone.utc)
        for i, systolic in enumerate([120, 122, 121, 124]):
            store.save(_record(
                "PT-1", now - timedelta(minutes=40 - i * 10),
                blood_pressure_systolic=systolic,
            ))

        analyzer = TrendAnalyzer(store)
        values = {Parameter.BP_SYSTOLIC: 160}
        summary = analyzer.analyze("PT-1", values, evaluate(values), now=now)
        assert summary.blood_pressure_trend == TrendDirection.WORSENING

    def test_excludes_current_record(self):
        store = MeasurementStore()
        now = datetime.now(timezone.utc)
        record = _record("PT-1", now, heart_rate=72)
        store.save(record)

        analyzer = TrendAnalyzer(store)
        summary = analyzer.analyze(
            "PT-1", record.values(), record.alerts, now=now,
            exclude_record_id=record.record_id,
        )
        assert summary.readings_considered == 1
