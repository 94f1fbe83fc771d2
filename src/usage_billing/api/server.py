"""
Usage Billing Rail - FastAPI Server

HTTP trigger surface for the daily billing job.

Endpoints:
- GET /health - Liveness
- POST /billing/run - Run billing for a date (scheduled or on demand)
- POST /billing/preview - Dry run: aggregate and price without charging
- GET /billing/records - Audit read of the ledger for a date
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional
import os
import structlog

from fastapi import FastAPI, HTTPException, Depends, Header
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .. import __version__
from ..bootstrap import build_orchestrator, configure_logging
from ..config import BillingConfig, ConfigError, parse_billing_date
from ..core.orchestrator import BillingOrchestrator
from ..core.report import RunReport
from ..persistence.database import Database, get_database
from ..persistence.repository import LedgerRepository, LedgerStore, latest_per_tenant

logger = structlog.get_logger()

SCHEDULER_JOB_HEADER = "X-CloudScheduler-JobName"
SCHEDULER_USER_AGENT = "Google-Cloud-Scheduler"
PREVIEW_SAMPLE_SIZE = 5


# ============================================================================
# Pydantic Models
# ============================================================================

class RunRequest(BaseModel):
    """Optional body for POST /billing/run."""
    date: Optional[str] = Field(None, description="Billing date (YYYY-MM-DD), defaults to yesterday")


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    database: str
    uptime_seconds: float


# ============================================================================
# Application State
# ============================================================================

class AppState:
    """Application state container."""

    def __init__(self):
        self.config = BillingConfig.from_env()
        self.db: Database = get_database(self.config.database_url)
        self.orchestrator: BillingOrchestrator = build_orchestrator(self.config, self.db)
        self.ledger: LedgerStore = LedgerRepository(self.db)
        self.start_time = datetime.now(timezone.utc)

    async def aclose(self) -> None:
        await self.orchestrator.aclose()


app_state: Optional[AppState] = None


# ============================================================================
# Application Factory
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    global app_state
    configure_logging()
    logger.info("usage_billing_starting", version=__version__)
    app_state = AppState()
    yield
    logger.info("usage_billing_stopping")
    await app_state.aclose()
    app_state = None


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="Usage Billing Rail",
        description="""
# Daily Usage Billing

Aggregates each tenant's daily usage, records a pending ledger, charges every
tenant through its usage subscription and reconciles the outcomes.

## Features
- **Append-only ledger**: pending and reconciliation rows per tenant and date
- **Bounded dispatch**: per-tenant isolation with retry on transient errors
- **Run reports**: delivered to Slack or the structured log
        """,
        version=__version__,
        lifespan=lifespan,
    )

    # CORS middleware
    application.add_middleware(
        CORSMiddleware,
        allow_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    return application


app = create_app()


# ============================================================================
# Dependencies
# ============================================================================

def get_state() -> AppState:
    """Get application state."""
    if app_state is None:
        raise HTTPException(status_code=503, detail="Application not initialized")
    return app_state


def get_orchestrator(state: AppState = Depends(get_state)) -> BillingOrchestrator:
    return state.orchestrator


def get_ledger(state: AppState = Depends(get_state)) -> LedgerStore:
    return state.ledger


def verify_api_key(x_api_key: str = Header(..., alias="X-API-Key")) -> str:
    """Verify API key."""
    expected = os.environ.get("API_KEY", "dev-key-change-in-production")
    if x_api_key != expected:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


def _parse_date(value: Optional[str]):
    if not value:
        return None
    try:
        return parse_billing_date(value)
    except ConfigError as e:
        raise HTTPException(status_code=400, detail=str(e))


def _report_response(report: RunReport, body: Optional[dict] = None) -> JSONResponse:
    return JSONResponse(
        status_code=200 if report.success else 500,
        content=body if body is not None else report.to_dict(),
    )


def is_scheduler_request(job_name: Optional[str], user_agent: Optional[str]) -> bool:
    """Whether a request came from Cloud Scheduler."""
    return bool(job_name) or SCHEDULER_USER_AGENT in (user_agent or "")


# ============================================================================
# Endpoints
# ============================================================================

@app.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check(state: AppState = Depends(get_state)):
    """Health check endpoint."""
    uptime = (datetime.now(timezone.utc) - state.start_time).total_seconds()
    return HealthResponse(
        status="healthy",
        version=__version__,
        database="postgres" if state.db.is_postgres else "sqlite",
        uptime_seconds=uptime,
    )


@app.post("/billing/run", tags=["Billing"])
async def run_billing(
    request: Optional[RunRequest] = None,
    job_name: Optional[str] = Header(None, alias=SCHEDULER_JOB_HEADER),
    user_agent: Optional[str] = Header(None, alias="User-Agent"),
    orchestrator: BillingOrchestrator = Depends(get_orchestrator),
    api_key: str = Depends(verify_api_key),
):
    """
    Run the daily billing job.

    Bills the given date, or yesterday in the billing timezone when no date
    is given. Responds 200 when the run completed or was skipped and 500 when
    it failed; individual tenant failures do not fail the run.
    """
    target_date = _parse_date(request.date if request else None)
    scheduled = is_scheduler_request(job_name, user_agent)

    logger.info(
        "billing_run_requested",
        scheduled=scheduled,
        job_name=job_name,
        target_date=target_date.isoformat() if target_date else None,
    )

    report = await orchestrator.run(target_date, scheduled=scheduled)
    return _report_response(report)


@app.post("/billing/preview", tags=["Billing"])
async def preview_billing(
    date: Optional[str] = None,
    orchestrator: BillingOrchestrator = Depends(get_orchestrator),
    api_key: str = Depends(verify_api_key),
):
    """
    Dry run for a date.

    Aggregates and prices usage without writing the ledger or charging anyone.
    The preview report is still sent to the notification channel.
    """
    report = await orchestrator.preview(_parse_date(date))

    body = report.to_dict()
    body["sampleRecords"] = [r.to_dict() for r in report.records[:PREVIEW_SAMPLE_SIZE]]
    return _report_response(report, body)


@app.get("/billing/records", tags=["Audit"])
async def get_billing_records(
    date: str,
    latest: bool = False,
    ledger: LedgerStore = Depends(get_ledger),
    api_key: str = Depends(verify_api_key),
):
    """
    Ledger rows for a date, oldest first.

    With latest=true only the most recent row per tenant is returned.
    """
    billing_date = _parse_date(date)
    if billing_date is None:
        raise HTTPException(status_code=400, detail="date is required")
    records = await ledger.read_by_date(billing_date)
    if latest:
        records = latest_per_tenant(records)

    return {
        "date": billing_date.isoformat(),
        "total": len(records),
        "records": [r.to_dict() for r in records],
    }


# ============================================================================
# Run
# ============================================================================

def run():
    """Run the server."""
    import uvicorn
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run(
        "usage_billing.api.server:app",
        host="0.0.0.0",
        port=port,
        reload=os.environ.get("DEBUG", "false").lower() == "true",
    )


if __name__ == "__main__":
    run()
