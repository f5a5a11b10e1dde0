"""
Impact Ledger - Environmental Impact Claim Registry

Main application entry point.

Run with:
    uvicorn impactledger.main:app
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api.routes import register_error_handlers, router
from .config import LedgerConfig
from .core import ImpactLedger, create_ledger
from .observability import (
    RequestContextMiddleware,
    check_health,
    get_logger,
    get_metrics,
    setup_logging,
)

logger = get_logger(__name__)


def create_app(ledger: Optional[ImpactLedger] = None) -> FastAPI:
    """
    Build the HTTP application.

    Args:
        ledger: Ledger to serve. Built from IMPACTLEDGER_* settings at
            startup when not given.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if ledger is None:
            app.state.ledger = create_ledger(LedgerConfig.from_env())
        else:
            app.state.ledger = ledger

        current = app.state.ledger
        if current.event_count > 0:
            if current.verify_chain_integrity():
                logger.info("Chain integrity verified OK", event_count=current.event_count)
            else:
                logger.error("Chain integrity check FAILED!")

        logger.info(
            "Application startup complete",
            event_count=current.event_count,
            categories=len(current.list_policies()),
        )

        yield

        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Impact Ledger",
        description="""
## Environmental Impact Claim Registry

Records claims of measurable environmental impact, validates each against
its category policy, and lets authorized validators confirm them once.

### Claim Lifecycle

```
Submitted → Verified
```

### Identity

Send the caller identity in the `X-Actor-Id` header. Roles (Admin,
Validator) are looked up in the ledger's role table.

### Verification

Every mutation appends a hash-chained, signed audit event. `GET /events`
returns the stream; it can be replayed to rebuild the ledger.
        """,
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(RequestContextMiddleware)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:5173",
            "http://127.0.0.1:5173",
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)
    app.include_router(router)

    @app.get("/health", tags=["System"])
    async def health():
        """Returns 200 if the service is running."""
        return {"status": "healthy", "service": "impactledger"}

    @app.get("/health/ledger", tags=["System"])
    async def health_ledger(request: Request):
        """
        Ledger health: audit head and full chain verification.

        Returns 200 if healthy, 503 if unhealthy.
        """
        health_status = check_health(ledger=request.app.state.ledger)
        return JSONResponse(
            status_code=200 if health_status.healthy else 503,
            content={
                "status": "healthy" if health_status.healthy else "unhealthy",
                "checks": health_status.checks,
                "duration_ms": health_status.duration_ms,
            },
        )

    @app.get("/metrics", tags=["System"])
    async def metrics():
        """Counters, rejection codes and append latencies."""
        return get_metrics().get_summary()

    return app


setup_logging()
app = create_app()
