"""
FastAPI application entry point for DukaBill.

Subscription entitlement and payment reconciliation API:
- provider webhooks (HMAC / callback token verified, not JWT)
- store-facing entitlement and billing reads (JWT)
- admin grants, unmatched queue and lifecycle commands (JWT + admin role)
"""

import os
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from dukabill.api.routes import health
from dukabill.api.routes import webhooks_payments
from dukabill.api.routes import entitlement
from dukabill.api.routes import billing
from dukabill.api.routes import admin_billing
from dukabill.billing.errors import BillingError
from dukabill.config.plan_catalog import get_plan_catalog

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logger.info("Starting DukaBill API")

    # Secrets are optional at startup; affected routes answer 503 until set.
    secret_vars = [
        "AUTH_JWT_SECRET",
        "PUSH_PAYMENT_CALLBACK_TOKEN",
        "CUSTOMER_PAYMENT_CALLBACK_TOKEN",
        "CHECKOUT_PROVIDER_SECRET",
    ]
    env_status = {var: "set" if os.getenv(var) else "missing" for var in secret_vars}
    missing_vars = [var for var, state in env_status.items() if state == "missing"]
    if missing_vars:
        logger.warning(
            f"Billing secrets not configured (missing: {missing_vars}). "
            "Affected endpoints will return 503."
        )
    else:
        logger.info("Billing secrets configured", extra={"env_status": env_status})

    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        logger.error("DATABASE_URL is not set. Database-backed endpoints will return 503.")
        app.state.database_configured = False
    else:
        masked = database_url.split("@")[-1] if "@" in database_url else "(local)"
        logger.info("DATABASE_URL configured", extra={"host_db": masked})
        app.state.database_configured = True

    catalog = get_plan_catalog()
    logger.info(
        "Plan catalog ready",
        extra={"plans": [p.id for p in catalog.list_plans()], "trial_days": catalog.trial_days},
    )

    yield

    logger.info("Shutting down DukaBill API")


app = FastAPI(
    title="DukaBill API",
    description="Subscription entitlement and payment reconciliation",
    version="1.0.0",
    lifespan=lifespan
)

cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Health (no authentication)
app.include_router(health.router)

# Provider webhooks (callback token / HMAC verification, not JWT)
app.include_router(webhooks_payments.router)

# Store-facing reads (requires authentication)
app.include_router(entitlement.router)
app.include_router(billing.router)

# Admin commands (requires admin role)
app.include_router(admin_billing.router)


@app.exception_handler(BillingError)
async def billing_exception_handler(request: Request, exc: BillingError):
    """Map domain errors to their HTTP status with a structured body."""
    log = logger.warning if exc.http_status < 500 else logger.error
    log(
        "Billing error",
        extra={
            "error_code": exc.code,
            "error": exc.message,
            "path": request.url.path,
        },
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unhandled exceptions with proper logging."""
    logger.error(
        "Unhandled exception",
        extra={
            "error": str(exc),
            "error_type": type(exc).__name__,
            "path": request.url.path
        },
        exc_info=True
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"}
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=os.getenv("ENV", "development") == "development",
    )
