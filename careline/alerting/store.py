"""
Stores — patient registry, measurement history and emergency cases.

The core only needs read-your-writes per case, so the default stores are
in-process.  ``GCSCaseStore`` persists each case as one JSON document:

    gs://{bucket}/emergency_cases/{case_id}.json

and uses GCS generation-match for optimistic locking, so two processes
sharing a bucket cannot overwrite each other's case updates.
"""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from datetime import datetime
from pathlib import Path
from typing import Optional

from google.api_core.exceptions import GoogleAPICallError, NotFound, PreconditionFailed
from pydantic import BaseModel, Field

from careline.alerting.emergency_case import (
    CasePriority,
    CaseSeverity,
    EmergencyCase,
)
from careline.alerting.errors import (
    CaseConcurrencyError,
    NotFoundError,
    StorageError,
    UnknownPatientError,
)
from careline.alerting.vitals import Parameter, TrendSummary, VitalSignsRecord

logger = logging.getLogger("alerting.store")


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Patients
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class EmergencyContact(BaseModel):
    name: str
    relationship: str = ""
    phone: str = ""
    email: str = ""


class Patient(BaseModel):
    patient_id: str
    name: str = ""
    phone: str = ""
    email: str = ""
    medical_record_number: Optional[str] = None
    emergency_contacts: list[EmergencyContact] = Field(default_factory=list)


class PatientRegistry:
    """Known patients.  Identity management lives elsewhere; this is a lookup."""

    def __init__(self, patients: list[Patient] | None = None) -> None:
        self._patients: dict[str, Patient] = {}
        for p in patients or []:
            self.register(p)

    def register(self, patient: Patient) -> Patient:
        self._patients[patient.patient_id] = patient
        logger.info("Registered patient %s", patient.patient_id)
        return patient

    def get(self, patient_id: str) -> Patient:
        patient = self._patients.get(patient_id)
        if patient is None:
            raise UnknownPatientError(f"Unknown patient '{patient_id}'")
        return patient

    def exists(self, patient_id: str) -> bool:
        return patient_id in self._patients

    def list_all(self) -> list[Patient]:
        return list(self._patients.values())

    def load_file(self, path: str) -> int:
        """Seed from a JSON array of patients.  Returns the number loaded."""
        data = json.loads(Path(path).read_text())
        for item in data:
            self.register(Patient.model_validate(item))
        return len(data)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Measurements
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class MeasurementStore:
    """Vital-signs records per patient plus the latest TrendSummary."""

    MAX_RECORDS_PER_PATIENT = 500

    def __init__(self) -> None:
        self._records: dict[str, list[VitalSignsRecord]] = defaultdict(list)
        self._latest_trend: dict[str, TrendSummary] = {}

    def save(self, record: VitalSignsRecord) -> VitalSignsRecord:
        records = self._records[record.patient_id]
        records.append(record)
        if len(records) > self.MAX_RECORDS_PER_PATIENT:
            del records[: len(records) - self.MAX_RECORDS_PER_PATIENT]
        if record.trends is not None:
            self._latest_trend[record.patient_id] = record.trends
        return record

    def _newest_first(self, patient_id: str) -> list[VitalSignsRecord]:
        return sorted(
            self._records.get(patient_id, []),
            key=lambda r: r.timestamp,
            reverse=True,
        )

    def recent(
        self,
        patient_id: str,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[VitalSignsRecord]:
        """Records newer than ``since``, newest first."""
        records = [
            r for r in self._newest_first(patient_id)
            if since is None or r.timestamp >= since
        ]
        return records[:limit] if limit is not None else records

    def history(
        self,
        patient_id: str,
        parameter: Parameter | None = None,
        limit: int = 50,
    ) -> list[VitalSignsRecord]:
        records = self._newest_first(patient_id)
        if parameter is not None:
            records = [r for r in records if r.value(parameter) is not None]
        return records[:limit]

    def latest(self, patient_id: str) -> VitalSignsRecord | None:
        records = self._newest_first(patient_id)
        return records[0] if records else None

    def latest_trend(self, patient_id: str) -> TrendSummary | None:
        return self._latest_trend.get(patient_id)

    def count(self, patient_id: str) -> int:
        return len(self._records.get(patient_id, []))


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Cases
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class InMemoryCaseStore:
    """
    Emergency cases held in process.

    ``get`` returns the stored object itself; callers mutate it only while
    holding the case's lock and then ``save`` it.
    """

    def __init__(self) -> None:
        self._cases: dict[str, EmergencyCase] = {}

    def get(self, case_id: str) -> EmergencyCase:
        case = self._cases.get(case_id)
        if case is None:
            raise NotFoundError(f"Emergency case '{case_id}' not found")
        return case

    def save(self, case: EmergencyCase) -> EmergencyCase:
        self._cases[case.case_id] = case
        return case

    def exists(self, case_id: str) -> bool:
        return case_id in self._cases

    def all(self) -> list[EmergencyCase]:
        return list(self._cases.values())

    def find_open_for_patient(self, patient_id: str) -> EmergencyCase | None:
        open_cases = [
            c for c in self._cases.values()
            if c.patient_id == patient_id and c.is_open
        ]
        if len(open_cases) > 1:
            logger.error(
                "Patient %s has %d open cases: %s",
                patient_id, len(open_cases), [c.case_id for c in open_cases],
            )
        if not open_cases:
            return None
        return min(open_cases, key=lambda c: c.created_at)

    def list_active(
        self,
        severity: CaseSeverity | None = None,
        priority: CasePriority | None = None,
        assigned_to: str | None = None,
    ) -> list[EmergencyCase]:
        cases = [c for c in self._cases.values() if c.is_open]
        if severity is not None:
            cases = [c for c in cases if c.severity == severity]
        if priority is not None:
            cases = [c for c in cases if c.priority == priority]
        if assigned_to is not None:
            cases = [c for c in cases if c.response.assigned_to == assigned_to]
        return sorted(cases, key=lambda c: c.created_at, reverse=True)

    def list_for_patient(self, patient_id: str, limit: int = 20) -> list[EmergencyCase]:
        cases = [c for c in self._cases.values() if c.patient_id == patient_id]
        cases.sort(key=lambda c: c.created_at, reverse=True)
        return cases[:limit]


class GCSCaseStore(InMemoryCaseStore):
    """
    Write-through case store backed by GCS.

    The cache only ever holds what was last uploaded: ``get`` hands out a
    copy and ``save`` replaces the cached case after the upload succeeds,
    so a failed save leaves the case as it was.  Every upload carries
    ``if_generation_match`` so two processes cannot both overwrite the
    same case.
    """

    CASE_PREFIX = "emergency_cases"

    def __init__(self, gcs_bucket_manager) -> None:
        super().__init__()
        self._gcs = gcs_bucket_manager
        self._generations: dict[str, int] = {}

    def _blob_path(self, case_id: str) -> str:
        return f"{self.CASE_PREFIX}/{case_id}.json"

    def get(self, case_id: str) -> EmergencyCase:
        case = self._cases.get(case_id)
        if case is None:
            case = self._load(case_id)
        return case.model_copy(deep=True)

    def exists(self, case_id: str) -> bool:
        if case_id in self._cases:
            return True
        try:
            return self._gcs.exists(self._blob_path(case_id))
        except GoogleAPICallError as e:
            logger.warning("Existence check for case %s failed: %s", case_id, e)
            return False

    def _load(self, case_id: str) -> EmergencyCase:
        try:
            content, generation = self._gcs.download_text(self._blob_path(case_id))
        except NotFound as e:
            raise NotFoundError(f"Emergency case '{case_id}' not found") from e
        except GoogleAPICallError as e:
            logger.error("Loading case %s from GCS failed: %s", case_id, e)
            raise StorageError(f"Could not load case {case_id}: {e}") from e
        case = EmergencyCase.model_validate(json.loads(content))
        self._cases[case_id] = case
        self._generations[case_id] = generation
        return case

    def save(self, case: EmergencyCase) -> EmergencyCase:
        # generation 0 means "must not exist yet"
        generation = self._generations.get(case.case_id, 0)
        try:
            new_generation = self._gcs.upload_json(
                self._blob_path(case.case_id),
                case.model_dump_json(indent=2),
                if_generation_match=generation,
            )
        except PreconditionFailed as e:
            raise CaseConcurrencyError(
                f"Case {case.case_id} was modified by another process"
            ) from e
        except GoogleAPICallError as e:
            logger.error("Saving case %s to GCS failed: %s", case.case_id, e)
            raise StorageError(f"Could not save case {case.case_id}: {e}") from e
        self._generations[case.case_id] = new_generation
        self._cases[case.case_id] = case.model_copy(deep=True)
        return case

    def recover(self) -> int:
        """Load every persisted case into the cache.  Returns the count."""
        loaded = 0
        for name in self._gcs.list_files(self.CASE_PREFIX):
            if not name.endswith(".json"):
                continue
            case_id = name[: -len(".json")]
            try:
                self._load(case_id)
                loaded += 1
            except Exception as exc:
                logger.warning("Failed to recover case %s: %s", case_id, exc)
        logger.info("Recovered %d emergency cases from GCS", loaded)
        return loaded
