"""M365 Security Assessment Platform - Main Application."""

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from m365_assessment.api.dependencies import Components, get_components
from m365_assessment.api.routes import (
    assessments_router,
    consent_router,
    tenants_router,
)
from m365_assessment.core.config import get_settings
from m365_assessment.core.database import get_db, init_db
from m365_assessment.core.exceptions import (
    AssessmentNotFound,
    AssessmentPlatformError,
    ConfigurationError,
    CredentialsNotReady,
    DirectoryApiRejected,
    DirectoryApiTransient,
    MissingTenantIdentifier,
    StaleRecordError,
    TenantConflict,
    TenantNotFound,
    UnknownFeatureGroup,
    UnknownPermission,
    VaultUnavailable,
)

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Most specific first; the first matching class decides the status code
ERROR_STATUS_CODES: list[tuple[type[AssessmentPlatformError], int]] = [
    (MissingTenantIdentifier, 400),
    (UnknownFeatureGroup, 400),
    (UnknownPermission, 400),
    (TenantNotFound, 404),
    (AssessmentNotFound, 404),
    (CredentialsNotReady, 409),
    (TenantConflict, 409),
    (StaleRecordError, 409),
    (DirectoryApiRejected, 502),
    (DirectoryApiTransient, 503),
    (VaultUnavailable, 503),
    (ConfigurationError, 503),
]


def status_code_for(error: AssessmentPlatformError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    logger.info(f"Starting {settings.app_name} ({settings.environment})...")

    init_db()
    logger.info("Database initialized")

    if not settings.is_configured:
        logger.warning(
            "Platform automation identity is not configured; "
            "automatic app registration will record tenants in the Error state"
        )

    yield

    # Shutdown
    logger.info("Shutting down...")


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Multi-tenant Microsoft 365 security assessment platform: tenant onboarding, "
                "least-privilege app registration and resilient assessment collection.",
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(tenants_router)
app.include_router(assessments_router)
app.include_router(consent_router)


@app.get("/health")
async def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy", "version": settings.app_version}


@app.get("/health/detailed")
async def detailed_health_check(
    db: Session = Depends(get_db),
    components: Components = Depends(get_components),
):
    """Detailed health check with component status."""
    checks = {
        "database": "unknown",
        "key_vault": "not_configured",
        "azure_configured": components.settings.is_configured,
    }

    try:
        db.execute(text("SELECT 1"))
        checks["database"] = "healthy"
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        checks["database"] = f"unhealthy: {str(e)}"

    vault = components.custody.vault
    if vault is not None:
        checks["key_vault"] = "healthy" if await vault.health_check() else "unhealthy"

    degraded = checks["database"] != "healthy" or checks["key_vault"] == "unhealthy"
    return {
        "status": "degraded" if degraded else "healthy",
        "version": settings.app_version,
        "components": checks,
    }


@app.exception_handler(AssessmentPlatformError)
async def platform_exception_handler(request: Request, exc: AssessmentPlatformError):
    """Render platform errors as ``{error, detail, cause, remediation}``."""
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error(f"{exc.kind} on {request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.kind} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled exceptions."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "detail": str(exc) if settings.debug else "An unexpected error occurred",
            "remediation": ["Check the platform logs for the full traceback"],
        },
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "m365_assessment.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
