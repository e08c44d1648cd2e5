"""
Main FastAPI application entry point.
"""
import time
import logging
import warnings
from contextlib import asynccontextmanager
from typing import Callable, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from sqlalchemy.exc import OperationalError

# Load environment variables
load_dotenv()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
    force=True
)

logger = logging.getLogger(__name__)

from config import settings
from database import SessionLocal
from alembic_runner import run_migrations
from Error_module.Error_handler import ErrorHandler

# Routers
from Login_module.OTP.OTP_router import router as auth_router
from Login_module.Device.Device_session_router import router as session_router
from Audit_module.Audit_router import router as audit_router

# Middleware
from Audit_module.Audit_middleware import AuditHTTPMiddleware
from Login_module.Utils.csrf_middleware import CSRFProtectionMiddleware
from Login_module.Utils.rate_limiter import get_client_ip

# Scheduler
from Login_module.Device.scheduler import start_scheduler, shutdown_scheduler

error_handler = ErrorHandler()


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware to log HTTP requests and responses with status codes."""

    async def dispatch(self, request: Request, call_next):
        client_ip = get_client_ip(request)
        start_time = time.time()

        logger.info(f"-> {request.method} {request.url.path} | IP: {client_ip}")

        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.time() - start_time
            logger.error(
                f"{request.method} {request.url.path} | Status: 500 (SERVER_ERROR) | "
                f"Error: {type(e).__name__} | Duration: {duration:.3f}s | IP: {client_ip}"
            )
            raise

        duration = time.time() - start_time
        status_code = response.status_code
        if 200 <= status_code < 300:
            status_category = "SUCCESS"
        elif 300 <= status_code < 400:
            status_category = "REDIRECT"
        elif 400 <= status_code < 500:
            status_category = "CLIENT_ERROR"
        else:
            status_category = "SERVER_ERROR"

        logger.info(
            f"{request.method} {request.url.path} | "
            f"Status: {status_code} ({status_category}) | "
            f"Duration: {duration:.3f}s | "
            f"IP: {client_ip}"
        )
        return response


def initialize_database():
    """
    Initialize database by running Alembic migrations.
    Handles connection errors gracefully.
    """
    try:
        logger.info("Running database migrations...")
        run_migrations()
        logger.info("Database migrations completed successfully")
    except OperationalError as e:
        logger.error(f"Failed to connect to database during migrations: {e}")
        logger.warning("Migrations will be retried on next startup")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown."""
    logger.info("Starting application...")
    error_handler.attach_log_filters()
    if settings.RUN_MIGRATIONS_ON_STARTUP:
        initialize_database()
    if settings.ENABLE_SCHEDULER:
        start_scheduler()
    logger.info("Application started successfully")
    yield
    logger.info("Shutting down application...")
    shutdown_scheduler()
    logger.info("Application shutdown complete")


def create_app(session_factory=None, clock: Optional[Callable] = None) -> FastAPI:
    """
    Build the application. `session_factory` and `clock` are shared by the request
    dependencies and the middlewares; tests point them at their own database and time.
    """
    app = FastAPI(
        title="Records Session Security API",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.session_factory = session_factory or SessionLocal
    if clock is not None:
        app.state.clock = clock

    error_handler.install(app)

    # CORS configuration
    allowed_origins = [origin.strip() for origin in settings.ALLOWED_ORIGINS.split(",")]
    if allowed_origins == ["*"]:
        warnings.warn("CORS is set to allow all origins. This is not recommended for production.")

    # Middleware - the last one added runs first
    app.add_middleware(CSRFProtectionMiddleware)
    app.add_middleware(AuditHTTPMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "X-Requested-With", settings.CSRF_HEADER_NAME],
    )
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(auth_router)
    app.include_router(session_router)
    app.include_router(audit_router)

    @app.get("/")
    def root():
        """Root endpoint with API information."""
        return {
            "status": "success",
            "message": "Records Session Security API",
            "version": "1.0.0",
            "endpoints": {
                "auth": "/auth",
                "sessions": "/sessions",
                "audit": "/audit"
            },
            "docs": "/docs",
            "redoc": "/redoc"
        }

    @app.get("/health")
    def health_check():
        """Health check endpoint for container orchestration."""
        return {
            "status": "healthy",
            "service": "Records Session Security API"
        }

    return app


app = create_app()


# Run application
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8030,
        reload=False,
        log_level="info",
        access_log=True
    )
