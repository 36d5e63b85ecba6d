from fastapi import APIRouter

from careline import settings

router = APIRouter()


@router.get("/")
async def root():
    return {
        "status": "CareLine alerting service is running",
        "endpoints": {
            "measurements": "/api/monitoring/measurements",
            "dashboard": "/api/monitoring/patients/{patient_id}/dashboard",
            "devices": "/api/monitoring/devices",
            "active_cases": "/api/emergency/cases/active",
            "panic_button": "/api/emergency/panic-button",
            "fall_detection": "/api/emergency/fall-detection",
            "registry": "/api/registry",
            "topics_ws": "/ws/topics/{topic}",
        },
    }


@router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "careline-alerting",
        "port": settings.PORT,
    }
