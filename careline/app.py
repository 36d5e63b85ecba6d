"""
CareLine Alerting Server — Application Factory
"""

import time
import logging
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from careline import settings
from careline.alerting.errors import (
    CareLineError,
    NotFoundError,
    SchedulingError,
    StateConflictError,
    StorageError,
    ValidationError,
)

# ── 1. Configure logging ──
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("careline-server")

_startup_time = time.time()
logger.info("Server initialization started...")

# ── 2. Create FastAPI app ──
app = FastAPI(title="CareLine Alerting Server")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── 3. Error mapping ──
# NotFoundError is checked first: UnknownPatientError is both kinds.
_STATUS_CODES = [
    (NotFoundError, 404),
    (ValidationError, 422),
    (StateConflictError, 409),
    (SchedulingError, 503),
    (StorageError, 503),
]


def status_for(exc: CareLineError) -> int:
    for cls, code in _STATUS_CODES:
        if isinstance(exc, cls):
            return code
    if exc.kind == "state_conflict":
        return 409
    return 500


@app.exception_handler(CareLineError)
async def careline_error_handler(request: Request, exc: CareLineError):
    code = status_for(exc)
    if code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=code,
        content={"success": False, "error": exc.to_dict()},
    )


# ── 4. Register routers ──
from careline.routers import emergency, health, monitoring, registry, topics

app.include_router(health.router)
app.include_router(monitoring.router)
app.include_router(emergency.router)
app.include_router(registry.router)
app.include_router(topics.router)


# ── 5. Startup / shutdown ──
@app.on_event("startup")
async def startup_event():
    logger.info("=" * 60)
    logger.info("CareLine Alerting Server Starting")
    logger.info("Listening on port: %s", settings.PORT)

    from careline.alerting.setup import initialize_alerting
    await initialize_alerting()

    logger.info("Total init time: %.2fs", time.time() - _startup_time)
    logger.info("=" * 60)


@app.on_event("shutdown")
async def shutdown_event():
    from careline.alerting.setup import shutdown_alerting
    await shutdown_alerting()
