"""
Main FastAPI application for QuiverCore Billing API
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from database import DatabaseManager

from .config import config, validate_startup_config
from .errors import ApplicationError
from .routes import (
    usage_router, prompt_router, subscription_router,
    cron_router, admin_router, health_router
)

logging.basicConfig(level=config.LOG_LEVEL, format=config.LOG_FORMAT)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    # Startup
    logger.info(f"Starting {config.TITLE} v{config.VERSION} ({config.ENVIRONMENT})")
    try:
        validate_startup_config()
        if config.AUTO_CREATE_TABLES:
            DatabaseManager.create_tables()
            logger.info("Database tables ensured")
    except Exception as e:
        logger.error(f"Application startup failed: {str(e)}")
        raise

    yield

    # Shutdown
    logger.info(f"Shutting down {config.TITLE}")


async def application_error_handler(request: Request, exc: ApplicationError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.code}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={
            "error": "Invalid request",
            "code": "VALIDATION_ERROR",
            "fields": [
                {"loc": list(error.get("loc", ())), "message": error.get("msg")}
                for error in exc.errors()
            ],
        },
    )


async def unhandled_error_handler(request: Request, exc: Exception):
    """Return a generic error; details stay in the logs"""
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {type(exc).__name__}")
    return JSONResponse(
        status_code=500,
        content={"error": "An internal error occurred", "code": "INTERNAL_ERROR"},
    )


# Create FastAPI app
def create_app() -> FastAPI:
    """Create and configure FastAPI application"""
    app = FastAPI(
        title=config.TITLE,
        description=config.DESCRIPTION,
        version=config.VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
    )

    app.add_exception_handler(ApplicationError, application_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    for router in (usage_router, prompt_router, subscription_router, cron_router, admin_router, health_router):
        app.include_router(router)

    @app.get("/", tags=["System Information"])
    async def root():
        return {
            "service": config.TITLE,
            "version": config.VERSION,
            "endpoints": {
                "health": "/api/health",
                "docs": "/docs",
                "usage": "/api/usage/summary",
                "plans": "/api/subscriptions/plans",
            },
        }

    logger.info("FastAPI application created")
    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    logger.info("=" * 60)
    logger.info(f"Host: {config.HOST}  Port: {config.PORT}  Workers: {config.WORKERS}  Reload: {config.RELOAD}")
    logger.info("=" * 60)

    uvicorn.run(
        "quivercore.main:app",
        host=config.HOST,
        port=config.PORT,
        reload=config.RELOAD,
        workers=config.WORKERS if not config.RELOAD else 1,
        log_level=config.LOG_LEVEL.lower(),
        access_log=True,
        server_header=False,
    )
