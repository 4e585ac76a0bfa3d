"""
Main FastAPI application entry point
"""
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from core.config import settings
from core.exceptions import OneReportError
from core.logging import get_logger
from d7_billing.api import router as payment_router
from d7_billing.api import subscription_router, task_runner

logger = get_logger(__name__)

# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.is_development else [settings.app_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Exception handlers
@app.exception_handler(OneReportError)
async def onereport_error_handler(request: Request, exc: OneReportError):
    """Handle custom OneReport errors"""
    logger.error(
        f"OneReport error - error_code: {exc.error_code}, details: {exc.details}, path: {request.url.path}"
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected errors"""
    logger.exception(f"Unexpected error - path: {request.url.path}", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"error": "INTERNAL_ERROR", "message": "An unexpected error occurred"},
    )


@app.get("/health", tags=["health"])
async def health():
    """Liveness plus deferred queue depth"""
    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
        "deferred_tasks": task_runner.stats(),
    }


# Startup event
@app.on_event("startup")
async def startup_event():
    """Initialize application on startup"""
    logger.info(
        f"Starting {settings.app_name} version={settings.app_version} environment={settings.environment} "
        f"payu_mode={settings.payu_mode}"
    )
    task_runner.start()


# Shutdown event
@app.on_event("shutdown")
async def shutdown_event():
    """Let queued invoice emails finish before exiting"""
    abandoned = task_runner.shutdown(drain=True, timeout=settings.deferred_shutdown_timeout)
    if abandoned:
        logger.warning(f"Shutdown abandoned {abandoned} deferred tasks")
    logger.info(f"Shutting down {settings.app_name}")


# Register domain routers (prefixes are defined on the routers)
app.include_router(payment_router)
app.include_router(subscription_router)


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
        log_level=settings.log_level.lower(),
    )
