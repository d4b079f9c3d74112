"""Reconciliation HTTP routes."""

from dataclasses import dataclass
from datetime import date

from fastapi import APIRouter, Depends, Header, Query, Request
from sqlalchemy.orm import Session

from salesrecon.db.dependencies import get_db
from salesrecon.errors import AuthorizationError, ValidationError
from salesrecon.schemas.analysis import DuplicatesData, MatchingData, OrphansData, OverviewData, StatisticsData
from salesrecon.schemas.audit_log import AuditLogPage
from salesrecon.schemas.common import ApiResponse
from salesrecon.schemas.execution import (
    BatchRunResult,
    ExecuteRequest,
    ExecutionCounters,
    ExecuteResponse,
    ManualActionRequest,
    ManualActionResult,
    ProgressData,
    RollbackResponse,
)
from salesrecon.services.analysis import AnalysisFilters
from salesrecon.services.container import ReconciliationServices
from salesrecon.services.progress import get_progress, list_audit_entries
from salesrecon.timeutils import utcnow

router = APIRouter(prefix="/reconcile")

AnalysisResult = OverviewData | OrphansData | DuplicatesData | MatchingData | StatisticsData


@dataclass(frozen=True)
class Principal:
    owner_id: str
    is_admin: bool = False

    def resolve_owner(self, requested_owner_id: str | None) -> str:
        """Owner the request acts on; only admins may act on someone else."""

        if not requested_owner_id or requested_owner_id == self.owner_id:
            return self.owner_id
        if not self.is_admin:
            raise AuthorizationError("Not authorized to act on another owner's records")
        return requested_owner_id


def get_services(request: Request) -> ReconciliationServices:
    return request.app.state.services


def get_principal(
    x_owner_id: str | None = Header(default=None, alias="X-Owner-Id"),
    services: ReconciliationServices = Depends(get_services),
) -> Principal:
    owner_id = (x_owner_id or "").strip()
    if not owner_id:
        raise AuthorizationError("Authentication required")
    return Principal(owner_id=owner_id, is_admin=owner_id in services.settings.admin_owner_ids)


def get_origin(request: Request) -> str | None:
    return request.client.host if request.client else None


def _parse_date(value: str | None, field_name: str) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise ValidationError(f"Invalid {field_name}; expected YYYY-MM-DD") from exc


@router.get("/analysis", response_model=ApiResponse[AnalysisResult])
def get_analysis(
    analysis_type: str = Query("overview", alias="analysisType"),
    owner_id: str | None = Query(default=None, alias="ownerId"),
    start_date: str | None = Query(default=None, alias="startDate"),
    end_date: str | None = Query(default=None, alias="endDate"),
    confidence_threshold: int | None = Query(default=None, alias="confidenceThreshold"),
    principal: Principal = Depends(get_principal),
    services: ReconciliationServices = Depends(get_services),
    origin: str | None = Depends(get_origin),
    db: Session = Depends(get_db),
) -> ApiResponse[AnalysisResult]:
    """Run one read-only analysis; admins may omit ownerId to cover every owner."""

    if origin:
        services.rate_limiter.check_origin(origin)
    scope = None if principal.is_admin and not owner_id else principal.resolve_owner(owner_id)
    filters = AnalysisFilters(
        owner_id=scope,
        start_date=_parse_date(start_date, "startDate"),
        end_date=_parse_date(end_date, "endDate"),
    )
    result = services.analysis.run(db, analysis_type, filters, confidence_threshold=confidence_threshold)
    return ApiResponse(data=result)


@router.post("/execute", response_model=ExecuteResponse | BatchRunResult | RollbackResponse)
def post_execute(
    payload: ExecuteRequest,
    principal: Principal = Depends(get_principal),
    services: ReconciliationServices = Depends(get_services),
    origin: str | None = Depends(get_origin),
    db: Session = Depends(get_db),
) -> ExecuteResponse | BatchRunResult | RollbackResponse:
    """Execute one batch, a multi-batch run, or a rollback."""

    owner_id = principal.resolve_owner(payload.owner_id)

    if payload.action == "rollback":
        summary = services.rollback.rollback(
            db,
            owner_id,
            audit_log_ids=payload.audit_log_ids,
            time_threshold=payload.time_threshold,
            confirm=payload.confirm_rollback,
            is_admin=principal.is_admin,
            origin=origin,
        )
        return RollbackResponse(success=summary.errors == 0, rollback=summary)

    if payload.action == "batch":
        delay_seconds = None
        if payload.delay_between_batches is not None:
            delay_seconds = payload.delay_between_batches / 1000.0
        return services.batch_runner.run(
            db,
            owner_id,
            payload.mode,
            payload.batch_size,
            max_batches=payload.max_batches,
            delay_seconds=delay_seconds,
            origin=origin,
        )

    execution = services.engine.execute(db, owner_id, payload.mode, payload.batch_size, origin=origin)
    overview = services.analysis.overview(db, AnalysisFilters(owner_id=owner_id))
    return ExecuteResponse(
        success=True,
        mode=payload.mode,
        owner_id=owner_id,
        execution=execution,
        summary=ExecutionCounters.from_execution(execution),
        linkage=overview,
        executed_at=execution.completed_at or utcnow(),
    )


@router.get("/execute", response_model=ApiResponse[ProgressData])
def get_execution_progress(
    owner_id: str | None = Query(default=None, alias="ownerId"),
    principal: Principal = Depends(get_principal),
    services: ReconciliationServices = Depends(get_services),
    origin: str | None = Depends(get_origin),
    db: Session = Depends(get_db),
) -> ApiResponse[ProgressData]:
    """Latest run and recent audit entries for one owner."""

    if origin:
        services.rate_limiter.check_origin(origin)
    target = principal.resolve_owner(owner_id)
    progress = get_progress(
        db,
        target,
        analysis=services.analysis,
        audit_log=services.audit_log,
        recent_limit=services.settings.recent_audit_entries_limit,
    )
    return ApiResponse(data=progress)


@router.post("/actions", response_model=ApiResponse[ManualActionResult])
def post_manual_action(
    payload: ManualActionRequest,
    principal: Principal = Depends(get_principal),
    services: ReconciliationServices = Depends(get_services),
    origin: str | None = Depends(get_origin),
    db: Session = Depends(get_db),
) -> ApiResponse[ManualActionResult]:
    owner_id = principal.resolve_owner(payload.owner_id)
    result = services.manual_actions.perform(
        db,
        owner_id,
        payload,
        origin=origin,
        is_admin=principal.is_admin,
    )
    return ApiResponse(data=result)


@router.get("/audit-log", response_model=ApiResponse[AuditLogPage])
def get_audit_log(
    owner_id: str | None = Query(default=None, alias="ownerId"),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    principal: Principal = Depends(get_principal),
    services: ReconciliationServices = Depends(get_services),
    origin: str | None = Depends(get_origin),
    db: Session = Depends(get_db),
) -> ApiResponse[AuditLogPage]:
    """Newest-first audit entries for one owner."""

    if origin:
        services.rate_limiter.check_origin(origin)
    target = principal.resolve_owner(owner_id)
    page = list_audit_entries(db, target, audit_log=services.audit_log, limit=limit, offset=offset)
    return ApiResponse(data=page)
