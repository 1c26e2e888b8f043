"""
FastAPI status application for the CGM link.

Read-only HTTP endpoints exposing the session state, the current glucose
reading and sensor metadata. The host process builds a
:class:`~cgm_link.session.SessionOrchestrator` with its transport and
registers it with :func:`~cgm_link.session.set_session`.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from .config import get_settings
from .constants import DEFAULT_LOG_FORMAT
from .exceptions import CgmLinkError, ReconnectExhaustedError, SessionNotStartedError
from .models import GlucoseReading, HealthResponse, SensorStatusResponse, SessionStatusResponse
from .session import SessionOrchestrator, get_session

# =============================================================================
# Logging Configuration
# =============================================================================

logging.basicConfig(
    level=get_settings().log_level,
    format=DEFAULT_LOG_FORMAT,
)
logger = logging.getLogger(__name__)


# =============================================================================
# Application Lifecycle
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup and shutdown."""
    logger.info("CGM link status API starting up")
    yield
    logger.info("CGM link status API shutting down")


# =============================================================================
# FastAPI Application
# =============================================================================

app = FastAPI(
    title="CGM Link",
    description="Status of the CGM sensor session: connection, current glucose and sensor lifetime",
    version="1.0.0",
    lifespan=lifespan,
    debug=get_settings().debug,
)


# =============================================================================
# Exception Handlers
# =============================================================================

@app.exception_handler(CgmLinkError)
async def cgm_link_error_handler(
    request: Request,
    exc: CgmLinkError,
) -> JSONResponse:
    """Handle application exceptions with structured error responses."""
    logger.error(
        "Application error",
        extra={
            "error_code": exc.error_code.value,
            "error_message": exc.message,
            "details": exc.details,
            "path": request.url.path,
        }
    )

    status_code = 500
    if isinstance(exc, (SessionNotStartedError, ReconnectExhaustedError)):
        status_code = 503

    return JSONResponse(
        status_code=status_code,
        content=exc.to_dict(),
    )


# =============================================================================
# Middleware
# =============================================================================

@app.middleware("http")
async def add_request_context(request: Request, call_next):
    """Add request ID and timing to all requests."""
    request_id = str(uuid.uuid4())[:8]
    start_time = datetime.now()

    request.state.request_id = request_id

    response = await call_next(request)

    duration_ms = (datetime.now() - start_time).total_seconds() * 1000

    response.headers["X-Request-ID"] = request_id
    response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"

    logger.info(
        "Request completed",
        extra={
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": round(duration_ms, 2),
        }
    )

    return response


# =============================================================================
# Endpoints
# =============================================================================

@app.get("/", response_model=HealthResponse)
async def root():
    """
    Root endpoint - service information.

    Returns service name and status for quick verification.
    """
    return HealthResponse(
        status="healthy",
        service="cgm-link",
    )


@app.get("/health")
async def health_check():
    """Liveness probe."""
    return {
        "status": "ok",
        "timestamp": datetime.now().isoformat(),
    }


@app.get("/session", response_model=SessionStatusResponse)
async def get_session_status(
    session: SessionOrchestrator = Depends(get_session),
):
    """
    Get the session state.

    **Response Fields**:
    - `state`: Orchestrator state (idle, scanning, ..., error)
    - `connection_state`: Simplified connection state for display
    - `reconnect_attempt`: Current reconnect attempt, 0 when connected
    - `last_error`: Most recent error message, advisory only
    """
    return session.status()


@app.get("/glucose/current", response_model=GlucoseReading)
async def get_current_glucose(
    session: SessionOrchestrator = Depends(get_session),
):
    """
    Get the most recent glucose reading with its trend arrow.

    Returns 503 until the first reading has been received.
    """
    reading = session.current_reading
    if reading is None:
        raise SessionNotStartedError(
            message="No glucose reading available",
            details="Waiting for the first reading from the sensor",
        )
    return reading


@app.get("/sensor", response_model=SensorStatusResponse)
async def get_sensor_status(
    session: SessionOrchestrator = Depends(get_session),
):
    """
    Get sensor metadata: serial number, lifecycle phase and remaining time.

    Key material is never returned.
    """
    state = session.state_store.load()
    if not state.serial_number:
        raise SessionNotStartedError(
            message="No sensor information available",
            details="Sensor info has not been received yet",
        )

    now_ms = int(datetime.now().timestamp() * 1000)
    return SensorStatusResponse(
        serial_number=state.serial_number,
        generation=state.generation,
        start_time_ms=state.start_time_ms,
        expiry_time_ms=state.expiry_time_ms,
        lifecycle=state.lifecycle(now_ms),
        remaining_ms=state.remaining_ms(now_ms),
    )
