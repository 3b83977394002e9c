import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from jobs.base import JobRunResult
from jobs.clearing import BalanceClearingJob
from jobs.payouts import PayoutExecutionJob
from jobs.scheduler import JobScheduler
from jobs.tracker import ExecutionRecord, ExecutionSummary, JobExecutionTracker, JobStats, TrackerDashboard
from payouts.engine import PayoutEngine
from payouts.models import (
    CancelPayoutRequest,
    NextPayoutResponse,
    Payout,
    PayoutDestinationRequest,
    PayoutListResponse,
    PayoutRequest,
    PayoutStatus,
    ResolveFailedPayoutRequest,
)
from payouts.processor import (
    HttpPaymentProcessor,
    PaymentProcessor,
    ProcessorError,
    ProcessorTimeout,
    ProcessorUnavailableError,
)

from .clock import Clock, SystemClock
from .config import Settings, get_settings
from .errors import (
    BalanceNotFoundError,
    ConsistencyError,
    DuplicateIdempotencyKeyError,
    InsufficientFundsError,
    InvalidPayoutStateError,
    JobNotFoundError,
    LedgerServiceError,
    PayoutNotDueError,
    PayoutNotFoundError,
    TransactionConflictError,
    TransactionScopeError,
    ValidationError,
)
from .logging_config import configure_logging
from .models import (
    AccountBalance,
    AdjustmentRequest,
    ClearingPeriodUpdate,
    DonationCreditRequest,
    LedgerCategory,
    LedgerEntry,
    LedgerHistoryResponse,
    ReconciliationReport,
    RefundRequest,
    TransactionFilters,
)
from .service import BalanceService
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)

# Looked up along the exception's MRO, so the most specific class wins.
STATUS_BY_ERROR: dict[type, int] = {
    LedgerServiceError: status.HTTP_400_BAD_REQUEST,
    ValidationError: status.HTTP_400_BAD_REQUEST,
    InsufficientFundsError: status.HTTP_400_BAD_REQUEST,
    BalanceNotFoundError: status.HTTP_404_NOT_FOUND,
    PayoutNotFoundError: status.HTTP_404_NOT_FOUND,
    JobNotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidPayoutStateError: status.HTTP_409_CONFLICT,
    PayoutNotDueError: status.HTTP_409_CONFLICT,
    DuplicateIdempotencyKeyError: status.HTTP_409_CONFLICT,
    TransactionConflictError: status.HTTP_409_CONFLICT,
    TransactionScopeError: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ConsistencyError: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ProcessorError: status.HTTP_502_BAD_GATEWAY,
    ProcessorUnavailableError: status.HTTP_503_SERVICE_UNAVAILABLE,
    ProcessorTimeout: status.HTTP_504_GATEWAY_TIMEOUT,
}

OPAQUE_MESSAGES = {
    status.HTTP_500_INTERNAL_SERVER_ERROR: "An internal error occurred",
    status.HTTP_502_BAD_GATEWAY: "The payment processor returned an error",
    status.HTTP_503_SERVICE_UNAVAILABLE: "The payment processor is temporarily unavailable",
    status.HTTP_504_GATEWAY_TIMEOUT: "The payment processor did not respond in time",
}


class ErrorDetail(BaseModel):
    code: str
    message: str


class ErrorResponse(BaseModel):
    success: bool = False
    error: ErrorDetail


class JobStatusUpdate(BaseModel):
    is_active: bool


def error_response(status_code: int, code: str, message: str) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message))
    return JSONResponse(status_code=status_code, content=body.model_dump())


def status_for(exc: Exception) -> int:
    for cls in type(exc).__mro__:
        if cls in STATUS_BY_ERROR:
            return STATUS_BY_ERROR[cls]
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def add_error_handlers(app: FastAPI) -> None:
    async def domain_error_handler(request: Request, exc: Exception) -> JSONResponse:
        status_code = status_for(exc)
        code = getattr(exc, "code", "INTERNAL_ERROR")
        if status_code >= 500:
            logger.error(
                f"{code} on {request.method} {request.url.path}: {exc}",
                exc_info=exc,
                extra={"error_code": code},
            )
            return error_response(status_code, code, OPAQUE_MESSAGES.get(status_code, OPAQUE_MESSAGES[500]))
        logger.warning(f"{code} on {request.method} {request.url.path}: {exc}", extra={"error_code": code})
        return error_response(status_code, code, str(exc))

    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", []))
        return error_response(
            status.HTTP_422_UNPROCESSABLE_ENTITY, "VALIDATION_ERROR", f"Invalid field '{field}': {first.get('msg')}"
        )

    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "INTERNAL_ERROR", OPAQUE_MESSAGES[500])

    app.add_exception_handler(LedgerServiceError, domain_error_handler)
    app.add_exception_handler(ProcessorError, domain_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)


def create_app(
    settings: Optional[Settings] = None,
    storage: Optional[InMemoryStorage] = None,
    processor: Optional[PaymentProcessor] = None,
    clock: Optional[Clock] = None,
    tracker: Optional[JobExecutionTracker] = None,
    configure_logs: bool = True,
    root_path: str = "",
) -> FastAPI:
    settings = settings or get_settings()
    clock = clock or SystemClock()
    if configure_logs:
        configure_logging(settings.log_level, settings.log_json)

    balance_service = BalanceService(storage or InMemoryStorage(), clock, settings)
    processor = processor or HttpPaymentProcessor(
        settings.processor_base_url, settings.processor_api_key, settings.processor_timeout_seconds
    )
    engine = PayoutEngine(balance_service, processor, settings, clock)
    tracker = tracker or JobExecutionTracker(clock, settings.tracker_history_size)
    clearing_job = BalanceClearingJob(balance_service, tracker, settings.clearing_schedule, clock)
    payout_job = PayoutExecutionJob(
        engine, tracker, settings.payout_schedule, settings.payout_execution_delay_seconds, clock
    )
    scheduler = JobScheduler([clearing_job, payout_job], clock, settings.scheduler_tick_seconds)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.scheduler_enabled:
            scheduler.start()
        yield
        scheduler.stop()

    app = FastAPI(
        title="Donation Ledger API",
        description="Organization balances, donation clearing and payout settlement",
        version="1.0.0",
        root_path=root_path,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    add_error_handlers(app)

    app.state.settings = settings
    app.state.balance_service = balance_service
    app.state.payout_engine = engine
    app.state.tracker = tracker
    app.state.scheduler = scheduler

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "donation-ledger"}

    # Balances and ledger

    @app.get("/organizations/{organization_id}/balance", response_model=AccountBalance, tags=["Balances"])
    def get_balance(organization_id: str) -> AccountBalance:
        return balance_service.get_balance_summary(organization_id)

    @app.get("/organizations/{organization_id}/transactions", response_model=LedgerHistoryResponse, tags=["Balances"])
    def get_transactions(
        organization_id: str,
        category: Optional[LedgerCategory] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        page: int = Query(1, ge=1),
        limit: int = Query(10, ge=1, le=100),
    ) -> LedgerHistoryResponse:
        filters = TransactionFilters(
            category=category, start_date=start_date, end_date=end_date, page=page, limit=limit
        )
        return balance_service.get_transaction_history(organization_id, filters)

    @app.post(
        "/organizations/{organization_id}/donations",
        response_model=LedgerEntry,
        status_code=status.HTTP_201_CREATED,
        tags=["Balances"],
    )
    def record_donation(organization_id: str, request: DonationCreditRequest) -> LedgerEntry:
        return balance_service.record_donation(organization_id, request)

    @app.post(
        "/organizations/{organization_id}/refunds",
        response_model=LedgerEntry,
        status_code=status.HTTP_201_CREATED,
        tags=["Balances"],
    )
    def record_refund(organization_id: str, request: RefundRequest) -> LedgerEntry:
        return balance_service.debit_for_refund(
            organization_id,
            request.amount,
            request.donation_created_at,
            donation_id=request.donation_id,
            refund_id=request.refund_id,
            processed_by=request.performed_by,
        )

    @app.post(
        "/organizations/{organization_id}/adjustments",
        response_model=LedgerEntry,
        status_code=status.HTTP_201_CREATED,
        tags=["Balances"],
    )
    def adjust_balance(organization_id: str, request: AdjustmentRequest) -> LedgerEntry:
        return balance_service.adjust(
            organization_id,
            request.amount,
            request.direction,
            reason=request.reason,
            performed_by=request.performed_by,
        )

    @app.put("/organizations/{organization_id}/clearing-period", response_model=AccountBalance, tags=["Balances"])
    def update_clearing_period(organization_id: str, request: ClearingPeriodUpdate) -> AccountBalance:
        return balance_service.set_clearing_period(organization_id, request.clearing_period_days)

    @app.get(
        "/organizations/{organization_id}/reconciliation", response_model=ReconciliationReport, tags=["Balances"]
    )
    def reconcile(organization_id: str) -> ReconciliationReport:
        return balance_service.reconcile(organization_id)

    # Payouts

    @app.put("/organizations/{organization_id}/payout-destination", tags=["Payouts"])
    def set_payout_destination(organization_id: str, request: PayoutDestinationRequest):
        engine.register_destination(organization_id, request.account_id)
        return {"organization_id": organization_id, "account_id": request.account_id}

    @app.post(
        "/organizations/{organization_id}/payouts",
        response_model=Payout,
        status_code=status.HTTP_201_CREATED,
        tags=["Payouts"],
    )
    def request_payout(organization_id: str, request: PayoutRequest) -> Payout:
        return engine.request_payout(organization_id, request.requested_by, request.amount, request.scheduled_date)

    @app.get("/organizations/{organization_id}/payouts", response_model=PayoutListResponse, tags=["Payouts"])
    def list_payouts(
        organization_id: str,
        status: Optional[PayoutStatus] = None,
        page: int = Query(1, ge=1),
        limit: int = Query(10, ge=1, le=100),
    ) -> PayoutListResponse:
        return engine.list_payouts(organization_id, status, page, limit)

    @app.get("/organizations/{organization_id}/payouts/next", response_model=NextPayoutResponse, tags=["Payouts"])
    def next_payout(organization_id: str) -> NextPayoutResponse:
        return engine.next_payout_date(organization_id)

    @app.get("/payouts/{payout_id}", response_model=Payout, tags=["Payouts"])
    def get_payout(payout_id: UUID) -> Payout:
        return engine.get_payout(payout_id)

    @app.post("/payouts/{payout_id}/cancel", response_model=Payout, tags=["Payouts"])
    def cancel_payout(payout_id: UUID, request: CancelPayoutRequest) -> Payout:
        return engine.cancel_payout(payout_id, request.actor_id, request.reason)

    @app.post("/payouts/{payout_id}/resubmit", response_model=Payout, tags=["Payouts"])
    def resubmit_payout(payout_id: UUID, request: ResolveFailedPayoutRequest) -> Payout:
        return engine.resubmit_payout(payout_id, request.actor_id, request.confirm_not_settled)

    @app.post("/payouts/{payout_id}/release", response_model=Payout, tags=["Payouts"])
    def release_failed_payout(payout_id: UUID, request: ResolveFailedPayoutRequest) -> Payout:
        return engine.release_failed_payout(payout_id, request.actor_id, request.confirm_not_settled, request.reason)

    @app.get("/processor/circuit", tags=["Payouts"])
    def processor_circuit():
        return engine.breaker.get_state()

    # Jobs

    @app.get("/jobs", response_model=TrackerDashboard, tags=["Jobs"])
    def jobs_dashboard(hours: int = Query(24, ge=1)) -> TrackerDashboard:
        return tracker.get_dashboard(hours)

    @app.get("/jobs/{job_name}", response_model=JobStats, tags=["Jobs"])
    def job_stats(job_name: str) -> JobStats:
        return tracker.get_job_stats(job_name)

    @app.get("/jobs/{job_name}/executions", response_model=list[ExecutionRecord], tags=["Jobs"])
    def job_executions(job_name: str, limit: int = Query(10, ge=1, le=100)) -> list[ExecutionRecord]:
        return tracker.get_recent_executions(job_name, limit)

    @app.get("/jobs/{job_name}/summary", response_model=ExecutionSummary, tags=["Jobs"])
    def job_summary(job_name: str, hours: int = Query(24, ge=1)) -> ExecutionSummary:
        return tracker.get_execution_summary(job_name, hours)

    @app.post("/jobs/{job_name}/run", response_model=JobRunResult, tags=["Jobs"])
    def run_job(job_name: str) -> JobRunResult:
        job = scheduler.get_job(job_name)
        if job is None:
            raise JobNotFoundError(f"Job '{job_name}' is not registered")
        return job.run(force=True)

    @app.put("/jobs/{job_name}/status", response_model=JobStats, tags=["Jobs"])
    def set_job_status(job_name: str, request: JobStatusUpdate) -> JobStats:
        tracker.set_job_status(job_name, request.is_active)
        return tracker.get_job_stats(job_name)

    @app.delete("/jobs/{job_name}/history", status_code=status.HTTP_204_NO_CONTENT, tags=["Jobs"])
    def clear_job_history(job_name: str) -> None:
        tracker.clear_job_history(job_name)

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
