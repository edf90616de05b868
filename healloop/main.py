from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from healloop.api.deps import sandbox_registry
from healloop.api.v1.router import api_router
from healloop.core.config import settings
from healloop.core.exceptions import HealLoopError
from healloop.core.logging_config import logger
from healloop.core.middleware import RequestLoggingMiddleware


# HealLoopError.code -> HTTP status; anything unlisted is a 500
ERROR_STATUS_CODES = {
    "PROJECT_NOT_FOUND": 404,
    "INVALID_STATE_TRANSITION": 409,
    "SANDBOX_ERROR": 502,
    "SANDBOX_BOOT_FAILED": 502,
    "SANDBOX_COMMAND_FAILED": 502,
    "SANDBOX_OWNERSHIP_UNVERIFIED": 502,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    logger.info("=" * 60)
    logger.info(f"Starting {settings.APP_NAME} {settings.APP_VERSION}...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Sandbox image: {settings.SANDBOX_IMAGE}")
    logger.info("=" * 60)

    if not settings.ANTHROPIC_API_KEY:
        logger.warning("[Startup] ANTHROPIC_API_KEY is not set - agent executions will fail with an auth error")
    if not settings.AUTO_HEAL_ENABLED:
        logger.info("[Startup] Auto-heal disabled")

    yield

    logger.info(f"Shutting down {settings.APP_NAME}...")
    await sandbox_registry.shutdown_all()
    logger.info("Destroyed all sandboxes")


app = FastAPI(
    title=settings.APP_NAME,
    description="Generate, run, detect failures and heal generated web projects",
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
    redirect_slashes=False
)

app.add_middleware(RequestLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "X-Response-Time"],
)


@app.exception_handler(HealLoopError)
async def healloop_exception_handler(request: Request, exc: HealLoopError):
    status_code = ERROR_STATUS_CODES.get(exc.code, 500)
    if status_code >= 500:
        logger.log_error_with_context(exc, context=request.url.path, error_code=exc.code)
    return JSONResponse(status_code=status_code, content={"detail": exc.message, "error": exc.to_dict()})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Global exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "message": str(exc) if settings.DEBUG else "An error occurred"
        }
    )


@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "app_name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT
    }


app.include_router(api_router, prefix=settings.API_V1_PREFIX)


def run():
    import uvicorn
    uvicorn.run(
        "healloop.main:app",
        host=settings.SERVER_HOST,
        port=settings.SERVER_PORT,
        reload=settings.DEBUG
    )


if __name__ == "__main__":
    run()
