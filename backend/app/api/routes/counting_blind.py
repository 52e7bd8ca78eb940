"""Counter-facing (blind) counting routes.

Responses here never carry theoretical quantities or other counters' values.
"""

from fastapi import APIRouter, Query, Request

from app.core.rate_limit import counter_limiter
from app.core.rbac import CurrentUser
from app.core.responses import list_response
from app.db.session import DbSession
from app.schemas.counting import (
    BarcodeLookupResponse,
    CounterItemView,
    CounterTaskList,
    CounterView,
    CountSubmission,
)
from app.services.blind_count_service import BlindCountService


router = APIRouter()


@router.get("/my-tasks", response_model=CounterTaskList)
@counter_limiter.limit("60/minute")
def get_my_tasks(request: Request, db: DbSession, current_user: CurrentUser):
    """Counting assignments of the current user on open sessions."""
    tasks = BlindCountService(db).my_tasks(current_user.user_id)
    return list_response(tasks)


@router.get("/sessions/{session_id}/counter-view", response_model=CounterView)
@counter_limiter.limit("120/minute")
def get_counter_view(
    request: Request,
    session_id: int,
    db: DbSession,
    current_user: CurrentUser,
):
    return BlindCountService(db).counter_view(session_id, current_user.user_id)


@router.get("/sessions/{session_id}/counter-items/{item_id}", response_model=CounterItemView)
@counter_limiter.limit("300/minute")
def get_counter_item(
    request: Request,
    session_id: int,
    item_id: int,
    db: DbSession,
    current_user: CurrentUser,
):
    return BlindCountService(db).counter_item(session_id, item_id, current_user.user_id)


@router.post("/sessions/{session_id}/items/{item_id}/count", response_model=CounterItemView)
@counter_limiter.limit("300/minute")
def submit_count(
    request: Request,
    session_id: int,
    item_id: int,
    body: CountSubmission,
    db: DbSession,
    current_user: CurrentUser,
):
    """Submit (or correct) the current user's count of one item."""
    return BlindCountService(db).submit_count(
        session_id, item_id, current_user.user_id, body.quantity, body.notes
    )


@router.get("/sessions/{session_id}/lookup", response_model=BarcodeLookupResponse)
@counter_limiter.limit("300/minute")
def lookup_item(
    request: Request,
    session_id: int,
    db: DbSession,
    current_user: CurrentUser,
    code: str = Query(..., min_length=1, max_length=100),
):
    """Find an item of the user's own count by barcode or SKU."""
    return BlindCountService(db).lookup_by_barcode(session_id, current_user.user_id, code)
