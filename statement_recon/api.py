"""
FastAPI request layer over the reconciliation service.

Authentication happens upstream; the acting user arrives in the ``X-Actor``
header and is recorded on every mutation.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from fastapi import BackgroundTasks, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import structlog

from . import __version__
from .errors import (
    AlreadyMatchedError,
    ConcurrentModificationError,
    InvalidTransitionError,
    IssueNotOpenError,
    NotFoundError,
    OpenIssuesRemainError,
    ReconciliationError,
    StatementLockedError,
    ValidationError,
    VarianceNotZeroError,
)
from .service import ReconciliationService

logger = structlog.get_logger()

# Finished recompute jobs kept for polling; older ones are evicted
MAX_FINISHED_JOBS = 100

FINISHED_JOB_STATUSES = ("completed", "failed")

STATUS_CODES = {
    ValidationError: 400,
    NotFoundError: 404,
    AlreadyMatchedError: 409,
    IssueNotOpenError: 409,
    InvalidTransitionError: 409,
    StatementLockedError: 409,
    ConcurrentModificationError: 409,
    VarianceNotZeroError: 422,
    OpenIssuesRemainError: 422,
}


def status_code_for(error: ReconciliationError) -> int:
    for error_type, status_code in STATUS_CODES.items():
        if isinstance(error, error_type):
            return status_code
    return 400


# Request models
class StatementCreateRequest(BaseModel):
    vendor_ref: str
    company_ref: Optional[str] = None
    tenant_ref: Optional[str] = None
    period_start: Optional[str] = None
    period_end: Optional[str] = None
    opening_balance: str = "0"
    currency: str = "USD"


class LinesIngestRequest(BaseModel):
    rows: List[Dict[str, Any]] = Field(default_factory=list)


class ManualMatchRequest(BaseModel):
    record_ids: List[str]


class DisputeRequest(BaseModel):
    issue_type: str
    description: str = ""


class RejectMatchRequest(BaseModel):
    reason: str = ""
    issue_type: Optional[str] = None


class ResolveIssueRequest(BaseModel):
    notes: str
    close_line: bool = False


class SignOffRequest(BaseModel):
    acknowledgement_type: str = "full"
    notes: Optional[str] = None


def _require_actor(actor: Optional[str]) -> str:
    if not actor or not actor.strip():
        raise ValidationError("X-Actor header is required", field="actor")
    return actor.strip()


def create_app(
    service: Optional[ReconciliationService] = None,
    max_finished_jobs: int = MAX_FINISHED_JOBS,
) -> FastAPI:
    """Build the API around a service instance (a fresh in-memory one by default)."""
    service = service or ReconciliationService()
    recompute_jobs: Dict[str, Dict[str, Any]] = {}

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Starting statement reconciliation API",
            version=__version__,
            environment=service.settings.app_env,
        )
        yield
        logger.info("Shutting down statement reconciliation API")

    app = FastAPI(
        title="Statement Reconciliation",
        description="Vendor statement of account reconciliation",
        version=__version__,
        debug=service.settings.app_debug,
        lifespan=lifespan,
    )
    app.state.service = service

    @app.exception_handler(ReconciliationError)
    async def reconciliation_error_handler(request: Request, exc: ReconciliationError):
        status_code = status_code_for(exc)
        logger.info(
            "Request failed",
            path=request.url.path,
            code=exc.code,
            status_code=status_code,
        )
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    def run_recompute_job(job_id: str, statement_id: str) -> None:
        job = recompute_jobs[job_id]
        job["status"] = "running"
        try:
            job["result"] = service.recompute(statement_id).to_dict()
            job["status"] = "completed"
        except ReconciliationError as e:
            logger.warning("Background recompute failed", job_id=job_id, code=e.code)
            job["status"] = "failed"
            job["error"] = e.to_dict()["error"]
        except Exception as e:
            logger.exception("Background recompute crashed", job_id=job_id, statement_id=statement_id)
            job["status"] = "failed"
            job["error"] = {"message": str(e), "code": "INTERNAL_ERROR", "retryable": False}
        job["completed_at"] = datetime.now(timezone.utc).isoformat()
        evict_finished_jobs()

    def evict_finished_jobs() -> None:
        finished = [
            finished_id for finished_id, job in list(recompute_jobs.items())
            if job["status"] in FINISHED_JOB_STATUSES
        ]
        for finished_id in finished[: max(len(finished) - max_finished_jobs, 0)]:
            recompute_jobs.pop(finished_id, None)

    # API Endpoints
    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}

    @app.post("/api/statements", status_code=201)
    def create_statement(request: StatementCreateRequest):
        statement = service.register_statement(**request.model_dump())
        return statement.to_dict()

    @app.get("/api/statements")
    def list_statements(vendor_ref: Optional[str] = None):
        return {"statements": [s.to_dict() for s in service.list_statements(vendor_ref)]}

    @app.get("/api/statements/{statement_id}")
    def get_statement(statement_id: str):
        return service.get_statement(statement_id).to_dict()

    @app.post("/api/statements/{statement_id}/lines", status_code=201)
    def ingest_lines(statement_id: str, request: LinesIngestRequest):
        lines = service.ingest_lines(statement_id, request.rows)
        return {"lines": [line.to_dict() for line in lines]}

    @app.post("/api/statements/{statement_id}/recompute")
    def recompute(statement_id: str, background_tasks: BackgroundTasks, background: bool = False):
        """Run the matching passes, inline or as a background job."""
        if not background:
            return service.recompute(statement_id).to_dict()

        service.get_statement(statement_id)
        job_id = str(uuid4())
        recompute_jobs[job_id] = {
            "id": job_id,
            "statement_id": statement_id,
            "status": "queued",
            "result": None,
            "error": None,
            "completed_at": None,
        }
        background_tasks.add_task(run_recompute_job, job_id, statement_id)
        logger.info("Recompute job queued", job_id=job_id, statement_id=statement_id)
        return JSONResponse(status_code=202, content=recompute_jobs[job_id])

    @app.get("/api/recompute-jobs/{job_id}")
    def get_recompute_job(job_id: str):
        job = recompute_jobs.get(job_id)
        if job is None:
            raise NotFoundError("RecomputeJob", job_id)
        return job

    @app.get("/api/statements/{statement_id}/variance")
    def get_variance(statement_id: str):
        return service.compute_variance(statement_id).to_dict()

    @app.get("/api/statements/{statement_id}/export")
    def export_reconciliation(statement_id: str):
        return service.export_reconciliation(statement_id)

    @app.get("/api/statements/{statement_id}/audit")
    def get_audit_trail(statement_id: str, action: Optional[str] = None, entity_id: Optional[str] = None):
        entries = service.audit_trail(statement_id, action=action, entity_id=entity_id)
        return {"entries": [e.to_dict() for e in entries]}

    @app.post("/api/statements/{statement_id}/signoff", status_code=201)
    def sign_off(
        statement_id: str,
        request: SignOffRequest,
        x_actor: Optional[str] = Header(default=None),
    ):
        acknowledgement = service.sign_off(
            statement_id,
            _require_actor(x_actor),
            request.acknowledgement_type,
            request.notes,
        )
        return acknowledgement.to_dict()

    @app.post("/api/lines/{line_id}/manual-match", status_code=201)
    def create_manual_match(
        line_id: str,
        request: ManualMatchRequest,
        x_actor: Optional[str] = Header(default=None),
    ):
        match = service.create_manual_match(line_id, request.record_ids, _require_actor(x_actor))
        return match.to_dict()

    @app.post("/api/lines/{line_id}/dispute", status_code=201)
    def dispute_line(
        line_id: str,
        request: DisputeRequest,
        x_actor: Optional[str] = Header(default=None),
    ):
        issue = service.dispute_line(
            line_id, request.issue_type, request.description, _require_actor(x_actor),
        )
        return issue.to_dict()

    @app.post("/api/matches/{match_id}/confirm")
    def confirm_match(match_id: str, x_actor: Optional[str] = Header(default=None)):
        return service.confirm_match(match_id, _require_actor(x_actor)).to_dict()

    @app.post("/api/matches/{match_id}/reject")
    def reject_match(
        match_id: str,
        request: RejectMatchRequest,
        x_actor: Optional[str] = Header(default=None),
    ):
        match = service.reject_match(
            match_id, request.reason, _require_actor(x_actor), request.issue_type,
        )
        return match.to_dict()

    @app.post("/api/issues/{issue_id}/resolve")
    def resolve_issue(
        issue_id: str,
        request: ResolveIssueRequest,
        x_actor: Optional[str] = Header(default=None),
    ):
        issue = service.resolve_issue(
            issue_id, request.notes, _require_actor(x_actor), request.close_line,
        )
        return issue.to_dict()

    return app
