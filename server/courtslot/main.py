"""FastAPI application initialization and configuration."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .core.clock import facility_now
from .core.config import settings
from .core.database import check_database, close_db, engine, init_db
from .core.exceptions import (
    ProblemDetailsException,
    generic_exception_handler,
    problem_details_handler,
    validation_exception_handler,
)
from .core.middleware import setup_middleware
from .core.observability import (
    SERVICE_NAME,
    SERVICE_VERSION,
    instrument_fastapi,
    instrument_sqlalchemy,
    setup_metrics,
    setup_structured_logging,
    setup_tracing,
)
from .routers import (
    booking_router,
    cart_router,
    maintenance_router,
    metrics_router,
    resource_router,
    transaction_router,
    waitlist_router,
)
from .schemas.health import HealthResponse, HealthStatus, InfoResponse, ReadinessResponse
from .workers.manager import worker_manager

# Configure structured logging
setup_structured_logging()

# Configure traditional logging for compatibility
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan context manager.

    Sets up observability and the schema, then runs the background workers
    for as long as the application serves.
    """
    logger.info(
        "Starting court booking API",
        extra={"environment": settings.environment, "facility_timezone": settings.facility_timezone}
    )

    try:
        setup_tracing()
        setup_metrics()
        instrument_sqlalchemy(engine)

        await init_db()
        logger.info("Database initialized successfully")

        if settings.workers_enabled:
            await worker_manager.start_all()
    except Exception as e:
        logger.error(f"Failed to initialize application: {e}")
        raise

    logger.info("Application startup complete")

    yield

    logger.info("Shutting down court booking API")
    try:
        await worker_manager.stop_all()
        await close_db()
    except Exception as e:
        logger.error(f"Error during application cleanup: {e}", exc_info=True)

    logger.info("Application shutdown complete")


def create_app(use_lifespan: bool = True) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        use_lifespan: Run startup and shutdown hooks; tests build the app
            without them and manage the schema themselves

    Returns:
        FastAPI: Configured FastAPI application instance
    """
    app = FastAPI(
        title="Court Booking API",
        description=(
            "RPC-over-HTTP API for booking sports courts: slot availability, carts and checkout, "
            "staff approval, and waitlists with business-hours payment deadlines"
        ),
        version=SERVICE_VERSION,
        debug=settings.debug,
        lifespan=lifespan if use_lifespan else None,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "traceparent", "tracestate"],
    )

    setup_middleware(app, enable_logging=True)
    instrument_fastapi(app)

    app.add_exception_handler(ProblemDetailsException, problem_details_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    @app.get(
        "/health",
        status_code=status.HTTP_200_OK,
        tags=["Health"],
        summary="Health Check",
        response_model=HealthResponse,
    )
    async def health_check() -> JSONResponse:
        response_data = HealthResponse(
            status=HealthStatus.HEALTHY,
            timestamp=facility_now(),
            version=SERVICE_VERSION,
        )
        return JSONResponse(status_code=200, content=response_data.model_dump(mode="json"))

    @app.get(
        "/ready",
        tags=["Health"],
        summary="Readiness Check",
        description="Check that the database accepts queries",
        response_model=ReadinessResponse,
    )
    async def readiness_check() -> JSONResponse:
        try:
            await check_database()
        except Exception as e:
            logger.warning("Readiness check failed", extra={"error": str(e)})
            response_data = ReadinessResponse(status=HealthStatus.NOT_READY, checks={"database": "unavailable"})
            return JSONResponse(status_code=503, content=response_data.model_dump(mode="json"))

        response_data = ReadinessResponse(status=HealthStatus.READY, checks={"database": "ok"})
        return JSONResponse(status_code=200, content=response_data.model_dump(mode="json"))

    @app.get(
        "/info",
        status_code=status.HTTP_200_OK,
        tags=["Info"],
        summary="Service Information",
        response_model=InfoResponse,
    )
    async def service_info() -> JSONResponse:
        response_data = InfoResponse(
            service=SERVICE_NAME,
            version=SERVICE_VERSION,
            environment=settings.environment,
            facility_timezone=settings.facility_timezone,
            waitlist_enabled=settings.waitlist_enabled,
        )
        return JSONResponse(status_code=200, content=response_data.model_dump(mode="json"))

    app.include_router(resource_router)
    app.include_router(cart_router)
    app.include_router(transaction_router)
    app.include_router(booking_router)
    app.include_router(waitlist_router)
    app.include_router(maintenance_router)
    app.include_router(metrics_router)

    logger.info("FastAPI application created and configured")

    return app


# Create the application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "courtslot.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
        access_log=True,
    )
