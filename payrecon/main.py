"""PayRecon Payment Reconciliation Core - Main Application."""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from payrecon.api.routes import directory, ingestion, reconciliation, reports, settlement
from payrecon.core.cache import TTLCache
from payrecon.core.config import settings
from payrecon.core.database import Base, engine
from payrecon.core.errors import (
    ConsistencyError,
    DuplicateError,
    NotFoundError,
    PayReconError,
    ValidationError,
)
from payrecon.core.logging import setup_logging

# Configure logging before anything else
logger = setup_logging(settings.log_level)

# Create all tables on startup
logger.info("Creating database tables...")
Base.metadata.create_all(bind=engine)
logger.info("Database tables ready")

# -- OpenAPI tag metadata for Swagger grouping --
tags_metadata = [
    {"name": "Health", "description": "Service health and readiness checks."},
    {
        "name": "Ingestion",
        "description": "Store merchant transaction batches; known transaction codes are skipped.",
    },
    {
        "name": "Reconciliation",
        "description": (
            "Run matching sessions that compare merchant and agent transactions "
            "and classify every transaction code."
        ),
    },
    {
        "name": "Settlement",
        "description": "Create payments for matched records and settle, revert or delete payment batches.",
    },
    {"name": "Reports", "description": "Debt per agent and per settlement account for a date window."},
    {"name": "Directory", "description": "Agents, merchants and application settings."},
]

_STATUS_BY_ERROR: list[tuple[type, int]] = [
    (ValidationError, 422),
    (NotFoundError, 404),
    (DuplicateError, 409),
    (ConsistencyError, 500),
]


app = FastAPI(
    title="PayRecon Payment Reconciliation Core",
    description=(
        "## Merchant / Agent Reconciliation API\n\n"
        "Matches transactions reported by the payment channel against those "
        "reported by agents, computes agent fees, settles payments in batches "
        "and reports outstanding debt.\n\n"
        "### Record Statuses\n"
        "- `MATCHED` - Same code on both sides with equal amounts\n"
        "- `ERROR_AMOUNT` - Same code on both sides, amounts differ\n"
        "- `ERROR_DUPLICATE` - Code appears more than once on one side\n"
        "- `MISSING_IN_AGENT` - Code only in merchant data\n"
        "- `MISSING_IN_MERCHANT` - Code only in agent data\n"
    ),
    version="1.0.0",
    openapi_tags=tags_metadata,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.state.settings_cache = TTLCache(settings.settings_cache_ttl_seconds)

app.include_router(ingestion.router, prefix="/api/v1/ingestion", tags=["Ingestion"])
app.include_router(
    reconciliation.router, prefix="/api/v1/reconciliation", tags=["Reconciliation"]
)
app.include_router(settlement.router, prefix="/api/v1/settlement", tags=["Settlement"])
app.include_router(reports.router, prefix="/api/v1/reports", tags=["Reports"])
app.include_router(directory.router, prefix="/api/v1/directory", tags=["Directory"])

logger.info("PayRecon API ready - routes registered")


@app.exception_handler(PayReconError)
async def handle_domain_error(request: Request, exc: PayReconError) -> JSONResponse:
    """Map domain errors to HTTP status codes with structured details."""
    status_code = 500
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            status_code = code
            break
    if status_code >= 500:
        logger.error("Request failed: %s %s -> %s", request.method, request.url.path, exc.message)
    else:
        logger.warning("Request rejected: %s %s -> %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status_code, content={"detail": exc.to_dict()})


@app.get("/health", tags=["Health"])
def health_check():
    """Health check endpoint.

    Returns a simple JSON object confirming the service is running.
    """
    return {"status": "healthy", "service": "payrecon"}
