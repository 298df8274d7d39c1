"""
Medicine Delivery Dispatch Service
Order lifecycle, courier assignment and notification fanout
"""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import asyncio
import subprocess
import os

from shared.core import ServiceHealth, setup_logging, RequestLoggingMiddleware, get_logger
from dispatch.core_settings import get_settings
from dispatch.api.routes import router as orders_router
from dispatch.api.couriers import router as couriers_router
from dispatch.api.notifications import router as notifications_router
from dispatch.api.dispatch import router as dispatch_router
from dispatch.application.coordinator import DispatchCoordinator
from dispatch.application.errors import DispatchError
from dispatch.infrastructure.db import engine, SessionLocal, init_models
from dispatch.infrastructure.prescriptions import PrescriptionClient

settings = get_settings()

SERVICE_NAME = "dispatch-service"
SERVICE_VERSION = settings.SERVICE_VERSION
SERVICE_DESCRIPTION = "Medicine order lifecycle and courier dispatch"

setup_logging(service_name=SERVICE_NAME, level=settings.LOG_LEVEL, version=SERVICE_VERSION)

logger = get_logger(__name__)

coordinator = DispatchCoordinator(
    SessionLocal,
    settings,
    prescriptions=PrescriptionClient(settings.PRESCRIPTIONS_SERVICE_URL, settings.PRESCRIPTIONS_TIMEOUT),
)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle management"""
    logger.info(f"Starting {SERVICE_NAME} version {SERVICE_VERSION}")

    if settings.RUN_MIGRATIONS:
        try:
            logger.info("Running database migrations")
            result = subprocess.run(
                ["alembic", "upgrade", "head"],
                cwd=os.path.join(os.path.dirname(__file__), ".."),
                capture_output=True,
                text=True,
                check=False
            )
            if result.returncode != 0:
                logger.warning(f"Migration output: {result.stderr}")
            else:
                logger.info("Database migrations completed")
        except OSError as e:
            logger.error(f"Migration error: {e}")

    try:
        init_models()
        logger.info("Database models initialized")
    except Exception as e:
        logger.error(f"Failed to initialize database models: {e}")
        raise

    sweeper = None
    if settings.SWEEP_ENABLED:
        sweeper = asyncio.create_task(app.state.coordinator.run_sweeps(settings.SWEEP_INTERVAL_SECONDS))
        logger.info(f"Dispatch sweep every {settings.SWEEP_INTERVAL_SECONDS}s")

    logger.info(f"{SERVICE_NAME} started successfully")

    yield

    logger.info(f"Shutting down {SERVICE_NAME}")
    if sweeper is not None:
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass

app = FastAPI(
    title=SERVICE_NAME,
    description=SERVICE_DESCRIPTION,
    version=SERVICE_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)
app.state.coordinator = coordinator

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)

@app.exception_handler(DispatchError)
async def dispatch_error_handler(request: Request, exc: DispatchError):
    logger.info(
        f"{exc.kind}: {exc.message}",
        extra={'extra_fields': {'order_id': exc.order_id, 'current_status': exc.current_status, 'path': request.url.path}},
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

health_service = ServiceHealth(
    SERVICE_NAME,
    SERVICE_VERSION,
    engine,
    gauges={
        "dispatch_queue_depth": lambda: app.state.coordinator.queue_depth(),
        "dispatch_timeouts_reported": lambda: len(app.state.coordinator.timeouts),
    },
)
app.include_router(health_service.create_health_router())

app.include_router(orders_router)
app.include_router(couriers_router)
app.include_router(notifications_router)
app.include_router(dispatch_router)

@app.get("/")
async def root():
    return {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "status": "running",
        "docs": "/api/docs"
    }

@app.get("/info")
async def info():
    """Service information endpoint"""
    return {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "description": SERVICE_DESCRIPTION,
        "environment": os.getenv("ENVIRONMENT", "development"),
        "endpoints": {
            "health": "/health",
            "ready": "/health/ready",
            "live": "/health/live",
            "metrics": "/metrics",
            "docs": "/api/docs"
        }
    }
