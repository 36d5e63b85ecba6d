"""
Lazy-init shared dependencies used across routers and setup.
"""

import logging

from fastapi import HTTPException

from careline import settings

logger = logging.getLogger("careline-server")

# Global singletons - initialized lazily
gcs = None


def get_gcs():
    """Lazy initialization of GCS Bucket Manager"""
    global gcs
    if gcs is None:
        from careline.infrastructure.gcs import GCSBucketManager
        logger.info("Initializing GCS Bucket Manager (lazy)...")
        gcs = GCSBucketManager(bucket_name=settings.GCS_BUCKET_NAME)
        logger.info("GCS Bucket Manager initialized successfully")
    return gcs


def get_case_service():
    """Case service singleton; raises 503 until alerting has started."""
    from careline.alerting.setup import get_case_service as _get
    return _require(_get(), "case service")


def get_ingestor():
    from careline.alerting.setup import get_ingestor as _get
    return _require(_get(), "measurement ingestor")


def get_aggregator():
    from careline.alerting.setup import get_aggregator as _get
    return _require(_get(), "case aggregator")


def get_patients():
    from careline.alerting.setup import get_patients as _get
    return _require(_get(), "patient registry")


def get_devices():
    from careline.alerting.setup import get_devices as _get
    return _require(_get(), "device registry")


def get_measurements():
    from careline.alerting.setup import get_measurements as _get
    return _require(_get(), "measurement store")


def get_responders():
    from careline.alerting.setup import get_responders as _get
    return _require(_get(), "responder directory")


def get_broadcaster():
    from careline.alerting.setup import get_broadcaster as _get
    return _require(_get(), "broadcaster")


def _require(component, name: str):
    if component is None:
        logger.error("Alerting %s requested before initialization", name)
        raise HTTPException(status_code=503, detail=f"Alerting {name} not initialized")
    return component
