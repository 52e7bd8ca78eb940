"""Supervisor routes for blind counting sessions."""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse

from app.core.rate_limit import limiter
from app.core.rbac import RequireManager
from app.core.responses import paginated_response
from app.db.session import DbSession
from app.models.counting import CountingStatus
from app.schemas.counting import (
    CancelRequest,
    CounterPerformanceSummary,
    CountingDashboard,
    CountingEventsResponse,
    CountingSessionCreate,
    CountingSessionListResponse,
    CountingSessionResponse,
    DiscrepancyReport,
    ManualOverrideRequest,
    ReconciliationItem,
    ReconciliationResponse,
    ScheduleRequest,
    ThirdCountRequest,
)
from app.services.counting_audit_service import CountingAuditService
from app.services.counting_export_service import CountingExportService
from app.services.counting_reconciliation_service import (
    CountingReconciliationService,
    serialize_reconciliation_item,
)
from app.services.counting_session_service import CountingSessionService
from app.services.discrepancy_report_service import DiscrepancyReportService

logger = logging.getLogger("counting")

router = APIRouter()


# ==================== SESSIONS ====================

@router.post("/sessions", response_model=CountingSessionResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
def create_counting_session(
    request: Request,
    body: CountingSessionCreate,
    db: DbSession,
    current_user: RequireManager,
):
    """Create a draft counting session with its counter assignments."""
    service = CountingSessionService(db)
    session = service.create_session(
        **body.model_dump(),
        created_by_user_id=current_user.user_id,
    )
    return service.serialize_session(session)


@router.get("/sessions", response_model=CountingSessionListResponse)
@limiter.limit("60/minute")
def list_counting_sessions(
    request: Request,
    db: DbSession,
    current_user: RequireManager,
    status_filter: Optional[CountingStatus] = Query(None, alias="status"),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
):
    """List counting sessions, newest first."""
    sessions, total = CountingSessionService(db).list_sessions(status_filter, skip, limit)
    return paginated_response(sessions, total, skip, limit)


@router.get("/sessions/{session_id}", response_model=CountingSessionResponse)
@limiter.limit("60/minute")
def get_counting_session(
    request: Request,
    session_id: int,
    db: DbSession,
    current_user: RequireManager,
):
    """Supervisor detail of a session, with assignments and progress."""
    service = CountingSessionService(db)
    return service.serialize_session(service.get_session(session_id))


@router.post("/sessions/{session_id}/schedule", response_model=CountingSessionResponse)
@limiter.limit("30/minute")
def schedule_counting_session(
    request: Request,
    session_id: int,
    db: DbSession,
    current_user: RequireManager,
    body: Optional[ScheduleRequest] = None,
):
    service = CountingSessionService(db)
    body = body or ScheduleRequest()
    session = service.schedule_session(
        session_id,
        user_id=current_user.user_id,
        scheduled_start=body.scheduled_start,
        scheduled_end=body.scheduled_end,
    )
    return service.serialize_session(session)


@router.post("/sessions/{session_id}/activate", response_model=CountingSessionResponse)
@limiter.limit("30/minute")
def activate_counting_session(
    request: Request,
    session_id: int,
    db: DbSession,
    current_user: RequireManager,
):
    """Freeze the item set and open the first count."""
    service = CountingSessionService(db)
    session = service.activate_session(session_id, user_id=current_user.user_id)
    return service.serialize_session(session)


@router.post("/sessions/{session_id}/cancel", response_model=CountingSessionResponse)
@limiter.limit("30/minute")
def cancel_counting_session(
    request: Request,
    session_id: int,
    body: CancelRequest,
    db: DbSession,
    current_user: RequireManager,
):
    service = CountingSessionService(db)
    session = service.cancel_session(session_id, body.reason, user_id=current_user.user_id)
    return service.serialize_session(session)


@router.post("/sessions/{session_id}/finalize", response_model=CountingSessionResponse)
@limiter.limit("30/minute")
def finalize_counting_session(
    request: Request,
    session_id: int,
    db: DbSession,
    current_user: RequireManager,
):
    """Close a reviewed session; every item must be resolved."""
    service = CountingSessionService(db)
    session = service.finalize_session(session_id, user_id=current_user.user_id)
    return service.serialize_session(session)


# ==================== RECONCILIATION ====================

@router.get("/sessions/{session_id}/reconciliation", response_model=ReconciliationResponse)
@limiter.limit("60/minute")
def get_reconciliation(
    request: Request,
    session_id: int,
    db: DbSession,
    current_user: RequireManager,
):
    """Every item with theoretical quantity, all counts and its resolution."""
    session = CountingSessionService(db).get_session(session_id)
    return CountingReconciliationService(db).get_reconciliation(session)


@router.post("/sessions/{session_id}/third-count", response_model=CountingSessionResponse)
@limiter.limit("30/minute")
def trigger_third_count(
    request: Request,
    session_id: int,
    body: ThirdCountRequest,
    db: DbSession,
    current_user: RequireManager,
):
    """Send disputed items to the third counter."""
    session = CountingReconciliationService(db).trigger_third_count(
        session_id, body.item_ids, current_user.user_id
    )
    return CountingSessionService(db).serialize_session(session)


@router.post("/items/{item_id}/override", response_model=ReconciliationItem)
@limiter.limit("30/minute")
def override_item(
    request: Request,
    item_id: int,
    body: ManualOverrideRequest,
    db: DbSession,
    current_user: RequireManager,
):
    """Set an item's final quantity by hand, with a written justification."""
    item = CountingReconciliationService(db).manual_override(
        item_id, body.quantity, body.notes, current_user.user_id
    )
    return serialize_reconciliation_item(item)


# ==================== REPORTS ====================

@router.get("/sessions/{session_id}/discrepancy-report", response_model=DiscrepancyReport)
@limiter.limit("30/minute")
def get_discrepancy_report(
    request: Request,
    session_id: int,
    db: DbSession,
    current_user: RequireManager,
):
    session = CountingSessionService(db).get_session(session_id)
    return DiscrepancyReportService(db).build_report(session)


@router.get("/sessions/{session_id}/export")
@limiter.limit("10/minute")
def export_discrepancy_report(
    request: Request,
    session_id: int,
    db: DbSession,
    current_user: RequireManager,
    export_format: str = Query("csv", alias="format"),
):
    """Download the discrepancy report as csv, xlsx or pdf."""
    session = CountingSessionService(db).get_session(session_id)
    try:
        output, media_type, filename = CountingExportService(db).export(session, export_format)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    logger.info(f"User {current_user.user_id} exported counting session {session_id} as {export_format}")
    return StreamingResponse(
        output,
        media_type=media_type,
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@router.get("/sessions/{session_id}/events", response_model=CountingEventsResponse)
@limiter.limit("30/minute")
def get_counting_events(
    request: Request,
    session_id: int,
    db: DbSession,
    current_user: RequireManager,
):
    """Audit events of the session and the result of re-verifying their hash chain."""
    CountingSessionService(db).get_session(session_id)
    audit = CountingAuditService(db)
    return {
        "session_id": session_id,
        "events": audit.list_events(session_id),
        "verification": audit.verify_chain(session_id),
    }


@router.get("/dashboard", response_model=CountingDashboard)
@limiter.limit("60/minute")
def get_counting_dashboard(
    request: Request,
    db: DbSession,
    current_user: RequireManager,
):
    return CountingSessionService(db).dashboard()


@router.get("/counters/{user_id}/performance", response_model=CounterPerformanceSummary)
@limiter.limit("30/minute")
def get_counter_performance(
    request: Request,
    user_id: int,
    db: DbSession,
    current_user: RequireManager,
):
    """Accuracy figures of one counter over all finalized sessions."""
    return DiscrepancyReportService(db).counter_performance(user_id)
