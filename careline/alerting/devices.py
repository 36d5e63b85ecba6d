"""
Device Registry — monitoring devices assigned to patients.

Every ingested batch that names a registered device marks it online and
counts the reading.  Batches from unregistered devices are still
ingested; the registry just has nothing to update.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from careline.alerting.errors import NotFoundError, StateConflictError
from careline.alerting.store import PatientRegistry

logger = logging.getLogger("alerting.devices")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class DeviceType(str, Enum):
    SMARTWATCH = "smartwatch"
    FITNESS_TRACKER = "fitness_tracker"
    BLOOD_PRESSURE_MONITOR = "blood_pressure_monitor"
    PULSE_OXIMETER = "pulse_oximeter"
    THERMOMETER = "thermometer"
    ECG_MONITOR = "ecg_monitor"
    FALL_DETECTOR = "fall_detector"
    PANIC_BUTTON = "panic_button"
    SMARTPHONE_APP = "smartphone_app"


class DeviceStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    MAINTENANCE = "maintenance"
    ERROR = "error"
    LOST = "lost"


class ConnectivityType(str, Enum):
    BLUETOOTH = "bluetooth"
    WIFI = "wifi"
    CELLULAR = "cellular"


class Manufacturer(BaseModel):
    name: str = ""
    model: str = ""
    version: str = ""


class Connectivity(BaseModel):
    type: ConnectivityType = ConnectivityType.BLUETOOTH
    last_connected: Optional[datetime] = None
    signal_strength: Optional[float] = None
    battery_level: Optional[float] = Field(default=None, ge=0, le=100)
    is_online: bool = False


class DeviceUsage(BaseModel):
    total_readings: int = 0
    last_reading: Optional[datetime] = None


class Device(BaseModel):
    device_id: str
    serial_number: str
    patient_id: str
    device_type: DeviceType
    manufacturer: Manufacturer = Field(default_factory=Manufacturer)
    capabilities: list[str] = Field(default_factory=list)
    status: DeviceStatus = DeviceStatus.ACTIVE
    connectivity: Connectivity = Field(default_factory=Connectivity)
    usage: DeviceUsage = Field(default_factory=DeviceUsage)
    created_at: datetime = Field(default_factory=_now)


class DeviceStatusUpdate(BaseModel):
    """Fields a device (or its gateway app) may report.  Unset fields are left alone."""

    status: Optional[DeviceStatus] = None
    battery_level: Optional[float] = Field(default=None, ge=0, le=100)
    signal_strength: Optional[float] = None
    is_online: Optional[bool] = None


class DeviceRegistry:
    def __init__(self, patients: PatientRegistry) -> None:
        self._patients = patients
        self._devices: dict[str, Device] = {}

    def register(self, device: Device) -> Device:
        """Raises UnknownPatientError, or StateConflictError for a duplicate id or serial."""
        self._patients.get(device.patient_id)
        if device.device_id in self._devices:
            raise StateConflictError(f"Device '{device.device_id}' is already registered")
        if any(d.serial_number == device.serial_number for d in self._devices.values()):
            raise StateConflictError(
                f"Serial number '{device.serial_number}' is already registered"
            )
        self._devices[device.device_id] = device
        logger.info(
            "Registered %s %s for patient %s",
            device.device_type.value, device.device_id, device.patient_id,
        )
        return device

    def get(self, device_id: str) -> Device:
        device = self._devices.get(device_id)
        if device is None:
            raise NotFoundError(f"Device '{device_id}' not found")
        return device

    def update_status(self, device_id: str, update: DeviceStatusUpdate) -> Device:
        device = self.get(device_id)
        if update.status is not None:
            device.status = update.status
        if update.battery_level is not None:
            device.connectivity.battery_level = update.battery_level
        if update.signal_strength is not None:
            device.connectivity.signal_strength = update.signal_strength
        if update.is_online is not None:
            device.connectivity.is_online = update.is_online
        device.connectivity.last_connected = _now()
        if device.status in (DeviceStatus.ERROR, DeviceStatus.LOST):
            logger.warning("Device %s reported %s", device_id, device.status.value)
        return device

    def record_reading(self, device_id: str, patient_id: str) -> Device | None:
        """
        Count one ingested batch against a device.  Returns None when the
        device is unknown or assigned to a different patient.
        """
        device = self._devices.get(device_id)
        if device is None:
            logger.debug("Reading from unregistered device %s", device_id)
            return None
        if device.patient_id != patient_id:
            logger.warning(
                "Device %s is assigned to %s but sent a reading for %s; not counted",
                device_id, device.patient_id, patient_id,
            )
            return None

        now = _now()
        device.connectivity.last_connected = now
        device.connectivity.is_online = True
        device.usage.last_reading = now
        device.usage.total_readings += 1
        return device

    def list_for_patient(self, patient_id: str) -> list[Device]:
        devices = [d for d in self._devices.values() if d.patient_id == patient_id]
        return sorted(devices, key=lambda d: d.created_at, reverse=True)
