"""Clinic Scheduling and Calendar Sync Service."""
import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core.database import create_db_and_tables
from app.core.errors import (
    CredentialsNotFound,
    ExternalServiceError,
    InvalidTransition,
    NotFoundError,
    RefreshFailed,
    SchedulingConflict,
    SchedulingError,
    SchedulingValidationError,
)
from app.core.scheduler import shutdown_scheduler, start_scheduler
from app.routes import auth, change_requests, events, sync

# Configure logging
log_dir = Path.home() / ".logs" / "clinic-scheduling"
log_dir.mkdir(parents=True, exist_ok=True)
log_file = log_dir / "latest.log"

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    filename=str(log_file),
)
logger = logging.getLogger(__name__)

# Most specific first; the first matching class wins
ERROR_STATUS = [
    (CredentialsNotFound, 401),
    (RefreshFailed, 401),
    (SchedulingConflict, 409),
    (InvalidTransition, 409),
    (SchedulingValidationError, 422),
    (NotFoundError, 404),
    (ExternalServiceError, 502),
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown lifecycle."""
    # Startup
    logger.info("Starting Clinic Scheduling application")
    create_db_and_tables()
    start_scheduler()
    yield
    # Shutdown
    shutdown_scheduler()
    logger.info("Clinic Scheduling application shut down")


app = FastAPI(
    title=settings.app_name,
    description="Clinic scheduling with Google Calendar synchronization",
    version="0.1.0",
    lifespan=lifespan,
)

# Configure CORS for external access
origins = (
    ["*"]
    if settings.allowed_origins == "*"
    else [o.strip() for o in settings.allowed_origins.split(",")]
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(SchedulingError)
async def scheduling_error_handler(request: Request, exc: SchedulingError):
    """Map domain errors to HTTP responses with a machine-readable code."""
    status_code = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 400)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=status_code, content={"detail": exc.message, "code": exc.code})


# Include routers
app.include_router(auth.router)
app.include_router(events.router)
app.include_router(change_requests.router)
app.include_router(sync.router)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy", "app": settings.app_name}
