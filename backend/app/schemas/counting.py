"""Counting session, blind count and reconciliation schemas.

Counter-facing payloads (``Counter*``) and supervisor payloads
(``Reconciliation*``, ``CountingSessionResponse``) are separate types; the
counter types carry no theoretical quantity and no other counter's values.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from app.models.counting import (
    AssignmentStatus,
    CountingScopeType,
    CountingStatus,
    ExecutionMode,
    ResolutionMethod,
)


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class CountingSessionCreate(BaseModel):
    """Counting session creation schema."""

    scope_type: CountingScopeType
    scope_filters: Dict[str, Any] = Field(default_factory=dict)
    execution_mode: ExecutionMode = ExecutionMode.PARALLEL
    requires_count_2: bool = True
    requires_count_3: bool = False
    allow_unexpected_items: bool = False
    count_1_user_id: int
    count_2_user_id: Optional[int] = None
    count_3_user_id: Optional[int] = None
    scheduled_start: Optional[datetime] = None
    scheduled_end: Optional[datetime] = None
    instructions: Optional[str] = Field(default=None, max_length=2000)


class ScheduleRequest(BaseModel):
    scheduled_start: Optional[datetime] = None
    scheduled_end: Optional[datetime] = None


class CancelRequest(BaseModel):
    reason: str = Field(..., max_length=1000)


class ThirdCountRequest(BaseModel):
    item_ids: List[int] = Field(..., min_length=1)


class ManualOverrideRequest(BaseModel):
    quantity: Decimal
    notes: str = Field(..., max_length=2000)


class CountSubmission(BaseModel):
    """A counter's measurement of one item."""

    quantity: Decimal
    notes: Optional[str] = Field(default=None, max_length=500)


# ---------------------------------------------------------------------------
# Shared references
# ---------------------------------------------------------------------------

class ProductRef(BaseModel):
    id: int
    name: str
    sku: Optional[str] = None
    barcode: Optional[str] = None


class VariantRef(BaseModel):
    id: int
    name: str
    sku: Optional[str] = None
    barcode: Optional[str] = None


class LocationRef(BaseModel):
    id: int
    name: str
    code: Optional[str] = None


class WarehouseRef(BaseModel):
    id: int
    name: str
    code: Optional[str] = None


class PhaseProgress(BaseModel):
    counted: int
    total: int
    percentage: float


class AssignmentResponse(BaseModel):
    id: int
    user_id: int
    count_number: int
    round: int
    status: AssignmentStatus
    assigned_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    deadline: Optional[datetime] = None
    total_items: int
    counted_items: int
    progress_percentage: float


# ---------------------------------------------------------------------------
# Supervisor views
# ---------------------------------------------------------------------------

class CountingSessionResponse(BaseModel):
    """Supervisor detail of a counting session."""

    id: int
    uuid: str
    scope_type: CountingScopeType
    scope_filters: Dict[str, Any]
    execution_mode: ExecutionMode
    requires_count_2: bool
    requires_count_3: bool
    allow_unexpected_items: bool
    count_1_user_id: Optional[int] = None
    count_2_user_id: Optional[int] = None
    count_3_user_id: Optional[int] = None
    status: CountingStatus
    scheduled_start: Optional[datetime] = None
    scheduled_end: Optional[datetime] = None
    instructions: Optional[str] = None
    activated_at: Optional[datetime] = None
    finalized_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    created_by_user_id: Optional[int] = None
    third_count_round: int = 0
    version: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    total_items: int = 0
    assignments: List[AssignmentResponse] = []
    progress: Dict[str, Any] = {}


class CountingSessionListItem(BaseModel):
    id: int
    uuid: str
    scope_type: CountingScopeType
    execution_mode: ExecutionMode
    status: CountingStatus
    scheduled_start: Optional[datetime] = None
    activated_at: Optional[datetime] = None
    finalized_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class CountingSessionListResponse(BaseModel):
    items: List[CountingSessionListItem]
    total: int
    skip: int
    limit: int
    has_more: bool


class CountEntryResponse(BaseModel):
    count_number: int
    round: int
    quantity: Decimal
    notes: Optional[str] = None
    submitted_by_user_id: int
    submitted_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class ItemResolutionResponse(BaseModel):
    method: ResolutionMethod
    final_qty: Decimal
    variance: Decimal
    notes: Optional[str] = None
    resolved_by_user_id: Optional[int] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class ReconciliationItem(BaseModel):
    """Supervisor view of one countable item."""

    id: int
    product: ProductRef
    variant: Optional[VariantRef] = None
    location: LocationRef
    warehouse: WarehouseRef
    unit_of_measure: str
    theoretical_qty: Decimal
    count_1_qty: Optional[Decimal] = None
    count_2_qty: Optional[Decimal] = None
    count_3_qty: Optional[Decimal] = None
    entries: List[CountEntryResponse] = []
    final_qty: Optional[Decimal] = None
    variance: Optional[Decimal] = None
    variance_percentage: Optional[Decimal] = None
    resolution_method: ResolutionMethod
    resolution_notes: Optional[str] = None
    resolved_by_user_id: Optional[int] = None
    resolved_at: Optional[datetime] = None
    is_flagged: bool
    flag_reason: Optional[str] = None
    third_count_round: Optional[int] = None
    resolution_history: List[ItemResolutionResponse] = []


class ReconciliationSummary(BaseModel):
    total_items: int
    by_resolution_method: Dict[str, int]
    pending: int
    flagged: int
    third_count_candidates: List[int]


class ReconciliationResponse(BaseModel):
    session_id: int
    status: CountingStatus
    third_count_round: int
    summary: ReconciliationSummary
    items: List[ReconciliationItem]


class VarianceSummary(BaseModel):
    positive: Decimal
    negative: Decimal
    net: Decimal


class CounterPerformance(BaseModel):
    user_id: int
    name: Optional[str] = None
    count_numbers: List[int] = []
    items_counted: int
    matched_other_counter: int
    matched_theoretical: int
    overruled_by_third_count: int
    confirmed_by_third_count: int
    matched_final: int
    accuracy_rate: Optional[Decimal] = None
    reliability_score: Optional[Decimal] = None


class CounterPerformanceSummary(CounterPerformance):
    sessions_counted: int


class DiscrepancyReport(BaseModel):
    session_id: int
    session_uuid: str
    status: CountingStatus
    generated_at: datetime
    total_items: int
    by_resolution_method: Dict[str, int]
    flagged_count: int
    flagged_items: List[ReconciliationItem]
    needs_attention: List[ReconciliationItem]
    variance: VarianceSummary
    counters: List[CounterPerformance]


class CountingEventResponse(BaseModel):
    id: int
    event_type: str
    event_data: Dict[str, Any]
    user_id: Optional[int] = None
    item_id: Optional[int] = None
    previous_hash: str
    event_hash: str
    created_at: datetime

    model_config = {"from_attributes": True}


class ChainVerification(BaseModel):
    valid: bool
    events_checked: int
    broken_at_event_id: Optional[int] = None


class CountingEventsResponse(BaseModel):
    session_id: int
    events: List[CountingEventResponse]
    verification: ChainVerification


class CountingDashboard(BaseModel):
    active_sessions: int
    pending_review: int
    completed_this_month: int
    overdue_assignments: int
    by_status: Dict[str, int]
    recent_sessions: List[CountingSessionListItem]


# ---------------------------------------------------------------------------
# Counter (blind) views
# ---------------------------------------------------------------------------

class CounterSessionInfo(BaseModel):
    id: int
    uuid: str
    status: CountingStatus
    scope_type: CountingScopeType
    instructions: Optional[str] = None
    scheduled_start: Optional[datetime] = None
    scheduled_end: Optional[datetime] = None


class CounterItemView(BaseModel):
    """What a counter sees of one item: identity and their own count only."""

    id: int
    product: ProductRef
    variant: Optional[VariantRef] = None
    location: LocationRef
    warehouse: WarehouseRef
    unit_of_measure: str
    is_counted: bool
    my_count: Optional[Decimal] = None
    my_count_at: Optional[datetime] = None


class CounterView(BaseModel):
    session: CounterSessionInfo
    my_count_number: int
    round: int
    can_count: bool
    items: List[CounterItemView]
    progress: PhaseProgress


class BarcodeLookupResponse(BaseModel):
    found: bool
    item: Optional[CounterItemView] = None


class CounterTask(BaseModel):
    session_id: int
    session_uuid: str
    session_status: CountingStatus
    instructions: Optional[str] = None
    count_number: int
    round: int
    assignment_status: AssignmentStatus
    can_count: bool
    deadline: Optional[datetime] = None
    total_items: int
    counted_items: int
    progress_percentage: float


class CounterTaskList(BaseModel):
    items: List[CounterTask]
    total: int
