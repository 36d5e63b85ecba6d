"""
Tests for measurement validation and the VitalSignsRecord model.
"""

from datetime import datetime, timedelta, timezone

import pytest

from careline.alerting.errors import ValidationError
from careline.alerting.vitals import (
    Measurement,
    MeasurementInput,
    Parameter,
    VitalSignsRecord,
    build_measurement,
    parse_parameter,
)


class TestParseParameter:

    def test_canonical_names(self):
        assert parse_parameter("heart_rate") == Parameter.HEART_RATE
        assert parse_parameter("oxygen_saturation") == Parameter.OXYGEN_SATURATION

    @pytest.mark.parametrize("raw,expected", [
        ("heartRate", Parameter.HEART_RATE),
        ("SpO2", Parameter.OXYGEN_SATURATION),
        ("systolic", Parameter.BP_SYSTOLIC),
        ("temp", Parameter.TEMPERATURE),
    ])
    def test_aliases(self, raw, expected):
        assert parse_parameter(raw) == expected

    def test_unknown_parameter(self):
        with pytest.raises(ValidationError, match="Unknown parameter"):
            parse_parameter("glucose")


class TestBuildMeasurement:

    def test_defaults_unit_and_timestamp(self):
        m = build_measurement("PT-1", MeasurementInput(parameter="heart_rate", value=72))
        assert m.value == 72.0
        assert m.unit == "bpm"
        assert m.timestamp.tzinfo is not None

    def test_numeric_string_accepted(self):
        m = build_measurement("PT-1", MeasurementInput(parameter="heart_rate", value="88"))
        assert m.value == 88.0

    @pytest.mark.parametrize("value", [None, "abc", True, float("nan"), float("inf")])
    def test_non_numeric_rejected(self, value):
        with pytest.raises(ValidationError):
            build_measurement("PT-1", MeasurementInput(parameter="heart_rate", value=value))

    @pytest.mark.parametrize("parameter,value", [
        ("oxygen_saturation", -5),
        ("oxygen_saturation", 101),
        ("heart_rate", -1),
        ("heart_rate", 400),
        ("temperature", 50),
        ("blood_pressure_diastolic", 260),
    ])
    def test_physically_impossible_values_rejected(self, parameter, value):
        with pytest.raises(ValidationError, match="physical range"):
            build_measurement("PT-1", MeasurementInput(parameter=parameter, value=value))

    def test_fahrenheit_converted(self):
        m = build_measurement(
            "PT-1", MeasurementInput(parameter="temperature", value=103.1, unit="fahrenheit")
        )
        assert m.unit == "celsius"
        assert m.value == pytest.approx(39.5, abs=0.01)

    def test_naive_timestamp_becomes_utc(self):
        naive = datetime(2026, 1, 1, 12, 0)
        m = build_measurement(
            "PT-1", MeasurementInput(parameter="heart_rate", value=70, timestamp=naive)
        )
        assert m.timestamp == naive.replace(tzinfo=timezone.utc)

    def test_measurement_is_immutable(self):
        m = build_measurement("PT-1", MeasurementInput(parameter="heart_rate", value=70))
        with pytest.raises(Exception):
            m.value = 80


class TestVitalSignsRecord:

    def test_values_newest_reading_wins(self):
        now = datetime.now(timezone.utc)
        record = VitalSignsRecord(
            patient_id="PT-1",
            measurements=[
                Measurement(patient_id="PT-1", parameter=Parameter.HEART_RATE,
                            value=70, unit="bpm", timestamp=now - timedelta(minutes=1)),
                Measurement(patient_id="PT-1", parameter=Parameter.HEART_RATE,
                            value=90, unit="bpm", timestamp=now),
            ],
        )
        assert record.values() == {Parameter.HEART_RATE: 90}
        assert record.value(Parameter.TEMPERATURE) is None
