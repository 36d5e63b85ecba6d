"""
Vital Signs — measurement, alert and trend models.

A measurement batch from a device is validated item by item into
immutable ``Measurement`` objects, evaluated into ``Alert`` objects and
stored as one ``VitalSignsRecord``.  Alerts are never stored on their
own; they always ride on a record or on an emergency case timeline.
"""

from __future__ import annotations

import math
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, Field

from careline.alerting.errors import ValidationError


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Enums
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class Parameter(str, Enum):
    HEART_RATE = "heart_rate"
    BP_SYSTOLIC = "blood_pressure_systolic"
    BP_DIASTOLIC = "blood_pressure_diastolic"
    TEMPERATURE = "temperature"
    OXYGEN_SATURATION = "oxygen_saturation"
    RESPIRATORY_RATE = "respiratory_rate"


class Severity(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


class TrendDirection(str, Enum):
    WORSENING = "worsening"
    IMPROVING = "improving"
    STABLE = "stable"
    UNKNOWN = "unknown"


class OverallStatus(str, Enum):
    GOOD = "good"
    CONCERNING = "concerning"
    CRITICAL = "critical"
    UNKNOWN = "unknown"


DEFAULT_UNITS: dict[Parameter, str] = {
    Parameter.HEART_RATE: "bpm",
    Parameter.BP_SYSTOLIC: "mmHg",
    Parameter.BP_DIASTOLIC: "mmHg",
    Parameter.TEMPERATURE: "celsius",
    Parameter.OXYGEN_SATURATION: "%",
    Parameter.RESPIRATORY_RATE: "breaths/min",
}

# Physically plausible ranges (inclusive).  Anything outside is a device
# or entry error, not a clinical finding.
PHYSICAL_RANGES: dict[Parameter, tuple[float, float]] = {
    Parameter.HEART_RATE: (0, 350),
    Parameter.BP_SYSTOLIC: (0, 350),
    Parameter.BP_DIASTOLIC: (0, 250),
    Parameter.TEMPERATURE: (20.0, 47.0),
    Parameter.OXYGEN_SATURATION: (0, 100),
    Parameter.RESPIRATORY_RATE: (0, 100),
}

# Accepted spellings for parameters coming from devices
PARAMETER_ALIASES: dict[str, Parameter] = {
    "heartrate": Parameter.HEART_RATE,
    "hr": Parameter.HEART_RATE,
    "systolic": Parameter.BP_SYSTOLIC,
    "diastolic": Parameter.BP_DIASTOLIC,
    "temp": Parameter.TEMPERATURE,
    "oxygensaturation": Parameter.OXYGEN_SATURATION,
    "spo2": Parameter.OXYGEN_SATURATION,
    "respiratoryrate": Parameter.RESPIRATORY_RATE,
    "rr": Parameter.RESPIRATORY_RATE,
}

FAHRENHEIT_UNITS = {"fahrenheit", "f", "°f", "degf"}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_uuid() -> str:
    return str(uuid.uuid4())


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Models
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class MeasurementInput(BaseModel):
    """One raw entry of a measurement batch, before validation."""

    parameter: str
    value: Any = None
    unit: Optional[str] = None
    timestamp: Optional[datetime] = None


class Measurement(BaseModel):
    """A single validated reading.  Immutable once recorded."""

    patient_id: str
    parameter: Parameter
    value: float
    unit: str
    timestamp: datetime

    model_config = {"frozen": True}


class Alert(BaseModel):
    """Threshold breach produced by the evaluator."""

    parameter: str
    value: Union[float, str]
    severity: Severity
    threshold: Optional[float] = None
    message: str

    @property
    def is_critical(self) -> bool:
        return self.severity == Severity.CRITICAL


class TrendSummary(BaseModel):
    heart_rate_variability: Optional[float] = None
    blood_pressure_trend: TrendDirection = TrendDirection.UNKNOWN
    temperature_trend: TrendDirection = TrendDirection.UNKNOWN
    overall_status: OverallStatus = OverallStatus.UNKNOWN
    readings_considered: int = 0
    computed_at: datetime = Field(default_factory=_now)


class VitalSignsRecord(BaseModel):
    """One accepted batch of measurements for a patient."""

    record_id: str = Field(default_factory=_new_uuid)
    patient_id: str
    device_id: str = ""
    timestamp: datetime = Field(default_factory=_now)
    measurements: list[Measurement] = Field(default_factory=list)
    alerts: list[Alert] = Field(default_factory=list)
    trends: Optional[TrendSummary] = None
    is_emergency: bool = False
    case_id: Optional[str] = None

    def values(self) -> dict[Parameter, float]:
        """Parameter → value.  If a parameter repeats, the newest reading wins."""
        latest: dict[Parameter, Measurement] = {}
        for m in self.measurements:
            current = latest.get(m.parameter)
            if current is None or m.timestamp >= current.timestamp:
                latest[m.parameter] = m
        return {p: m.value for p, m in latest.items()}

    def value(self, parameter: Parameter) -> float | None:
        return self.values().get(parameter)

    @property
    def critical_alerts(self) -> list[Alert]:
        return [a for a in self.alerts if a.is_critical]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Validation
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def parse_parameter(raw: str) -> Parameter:
    """Resolve a parameter name or alias.  Raises ValidationError."""
    key = (raw or "").strip()
    try:
        return Parameter(key)
    except ValueError:
        pass
    alias = PARAMETER_ALIASES.get(key.lower().replace("_", "").replace(" ", ""))
    if alias is None:
        raise ValidationError(f"Unknown parameter '{raw}'")
    return alias


def build_measurement(
    patient_id: str,
    entry: MeasurementInput,
    default_timestamp: datetime | None = None,
) -> Measurement:
    """
    Validate one raw entry into a Measurement.

    Rejects unknown parameters, non-numeric values and values outside the
    physically plausible range.  Fahrenheit temperatures are converted to
    celsius first.
    """
    parameter = parse_parameter(entry.parameter)

    value = entry.value
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{parameter.value}: value is required and must be numeric")
    try:
        value = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{parameter.value}: value '{entry.value}' is not numeric")
    if math.isnan(value) or math.isinf(value):
        raise ValidationError(f"{parameter.value}: value must be a finite number")

    unit = (entry.unit or DEFAULT_UNITS[parameter]).strip()
    if parameter == Parameter.TEMPERATURE and unit.lower() in FAHRENHEIT_UNITS:
        value = round((value - 32.0) * 5.0 / 9.0, 2)
        unit = DEFAULT_UNITS[parameter]

    low, high = PHYSICAL_RANGES[parameter]
    if value < low or value > high:
        raise ValidationError(
            f"{parameter.value}: {value:g} {unit} is outside the physical range "
            f"{low:g}–{high:g}"
        )

    timestamp = entry.timestamp or default_timestamp or _now()
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)

    return Measurement(
        patient_id=patient_id,
        parameter=parameter,
        value=value,
        unit=unit,
        timestamp=timestamp,
    )
