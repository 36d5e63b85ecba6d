"""
Threshold Evaluator — Deterministic classification of a measurement set.

Pure function: no I/O, no state.  Each parameter is checked against its
critical band first, then its warning band.  Blood pressure is judged as
one reading so a hypertensive crisis yields one alert, not two.

Bands are exclusive at their limits: a heart rate of exactly 40 bpm is a
warning, exactly 60 bpm is normal.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping, Optional, Union

from careline.alerting.vitals import Alert, Parameter, Severity

logger = logging.getLogger("alerting.thresholds")


@dataclass(frozen=True)
class Band:
    """Normal interval.  ``None`` leaves that side unbounded."""

    low: Optional[float] = None
    high: Optional[float] = None

    def breached(self, value: float) -> Optional[float]:
        """Return the limit that ``value`` crosses, or None if inside."""
        if self.low is not None and value < self.low:
            return self.low
        if self.high is not None and value > self.high:
            return self.high
        return None


@dataclass(frozen=True)
class ParameterThresholds:
    label: str
    unit: str
    warning: Band
    critical: Band
    low_word: str = "Abnormal"


# (warning band, critical band) per parameter
THRESHOLDS: dict[Parameter, ParameterThresholds] = {
    Parameter.HEART_RATE: ParameterThresholds(
        "heart rate", "bpm", Band(60, 100), Band(40, 150),
    ),
    Parameter.BP_SYSTOLIC: ParameterThresholds(
        "systolic pressure", "mmHg", Band(90, 140), Band(70, 180),
    ),
    Parameter.BP_DIASTOLIC: ParameterThresholds(
        "diastolic pressure", "mmHg", Band(60, 90), Band(40, 120),
    ),
    Parameter.TEMPERATURE: ParameterThresholds(
        "temperature", "°C", Band(36.1, 37.2), Band(35.0, 39.0),
    ),
    Parameter.OXYGEN_SATURATION: ParameterThresholds(
        "oxygen saturation", "%", Band(95, None), Band(90, None), low_word="Low",
    ),
    Parameter.RESPIRATORY_RATE: ParameterThresholds(
        "respiratory rate", "breaths/min", Band(12, 20), Band(8, 30),
    ),
}

# Evaluated one by one; blood pressure is handled jointly.
SINGLE_PARAMETERS = [
    Parameter.HEART_RATE,
    Parameter.TEMPERATURE,
    Parameter.OXYGEN_SATURATION,
    Parameter.RESPIRATORY_RATE,
]

BLOOD_PRESSURE = "blood_pressure"


def _fmt(value: float) -> str:
    return f"{value:g}"


def _normalise(values: Mapping[Union[Parameter, str], float]) -> dict[Parameter, float]:
    out: dict[Parameter, float] = {}
    for key, value in values.items():
        if value is None:
            continue
        param = key if isinstance(key, Parameter) else Parameter(key)
        out[param] = float(value)
    return out


def _evaluate_single(parameter: Parameter, value: float) -> Alert | None:
    band = THRESHOLDS[parameter]
    unit = band.unit if band.unit == "%" else f" {band.unit}"

    threshold = band.critical.breached(value)
    if threshold is not None:
        return Alert(
            parameter=parameter.value,
            value=value,
            severity=Severity.CRITICAL,
            threshold=threshold,
            message=f"Critical {band.label}: {_fmt(value)}{unit}",
        )

    threshold = band.warning.breached(value)
    if threshold is not None:
        return Alert(
            parameter=parameter.value,
            value=value,
            severity=Severity.WARNING,
            threshold=threshold,
            message=f"{band.low_word} {band.label}: {_fmt(value)}{unit}",
        )
    return None


def _evaluate_blood_pressure(
    systolic: float | None, diastolic: float | None
) -> Alert | None:
    components = [
        (Parameter.BP_SYSTOLIC, systolic),
        (Parameter.BP_DIASTOLIC, diastolic),
    ]
    present = [(p, v) for p, v in components if v is not None]
    if not present:
        return None

    if systolic is not None and diastolic is not None:
        shown: Union[float, str] = f"{_fmt(systolic)}/{_fmt(diastolic)}"
    else:
        shown = present[0][1]

    for severity, band_name, word in (
        (Severity.CRITICAL, "critical", "Critical"),
        (Severity.WARNING, "warning", "Abnormal"),
    ):
        for param, value in present:
            threshold = getattr(THRESHOLDS[param], band_name).breached(value)
            if threshold is not None:
                return Alert(
                    parameter=BLOOD_PRESSURE,
                    value=shown,
                    severity=severity,
                    threshold=threshold,
                    message=f"{word} blood pressure: {shown} mmHg",
                )
    return None


def evaluate(values: Mapping[Union[Parameter, str], float]) -> list[Alert]:
    """
    Classify a measurement set.

    ``values`` maps parameter → numeric value.  Missing parameters produce
    no alert.  Returns alerts in a stable order: heart rate, blood
    pressure, temperature, oxygen saturation, respiratory rate.
    """
    readings = _normalise(values)
    alerts: list[Alert] = []

    hr = readings.get(Parameter.HEART_RATE)
    if hr is not None:
        alert = _evaluate_single(Parameter.HEART_RATE, hr)
        if alert:
            alerts.append(alert)

    bp_alert = _evaluate_blood_pressure(
        readings.get(Parameter.BP_SYSTOLIC),
        readings.get(Parameter.BP_DIASTOLIC),
    )
    if bp_alert:
        alerts.append(bp_alert)

    for parameter in SINGLE_PARAMETERS[1:]:
        value = readings.get(parameter)
        if value is None:
            continue
        alert = _evaluate_single(parameter, value)
        if alert:
            alerts.append(alert)

    if alerts:
        logger.debug(
            "Evaluated %d parameters → %d alerts (%d critical)",
            len(readings), len(alerts), sum(1 for a in alerts if a.is_critical),
        )
    return alerts


def has_critical(alerts: list[Alert]) -> bool:
    return any(a.is_critical for a in alerts)
