"""Blind inventory counting models.

A ``CountingSession`` owns a frozen set of ``CountableItem`` rows, one
``CountingAssignment`` per counter and count number, the ``CountEntry``
cells written by those assignments, the append-only ``ItemResolution``
trail and the hash-chained ``CountingEvent`` log.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    JSON, Boolean, DateTime, Enum as SQLEnum, ForeignKey, Integer, Numeric, String, Text,
    UniqueConstraint, func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base, TimestampMixin, VersionMixin


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return *value* as an aware UTC datetime (SQLite hands back naive ones)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class CountingScopeType(str, Enum):
    """Declarative selection of what a session counts."""

    PRODUCT_LOCATION = "product_location"
    PRODUCT = "product"
    LOCATION = "location"
    CATEGORY = "category"
    FULL_INVENTORY = "full_inventory"


class ExecutionMode(str, Enum):
    """Whether counters work at the same time or one phase after another."""

    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"


class CountingStatus(str, Enum):
    """Lifecycle of a counting session."""

    DRAFT = "draft"
    SCHEDULED = "scheduled"
    COUNT_1_IN_PROGRESS = "count_1_in_progress"
    COUNT_1_COMPLETED = "count_1_completed"
    COUNT_2_IN_PROGRESS = "count_2_in_progress"
    COUNT_2_COMPLETED = "count_2_completed"
    COUNT_3_IN_PROGRESS = "count_3_in_progress"
    COUNT_3_COMPLETED = "count_3_completed"
    PENDING_REVIEW = "pending_review"
    FINALIZED = "finalized"
    CANCELLED = "cancelled"

    def allowed_transitions(self) -> frozenset["CountingStatus"]:
        return ALLOWED_TRANSITIONS[self]

    def can_transition_to(self, target: "CountingStatus") -> bool:
        return target in ALLOWED_TRANSITIONS[self]

    @property
    def is_terminal(self) -> bool:
        return self in (CountingStatus.FINALIZED, CountingStatus.CANCELLED)

    @property
    def is_activated(self) -> bool:
        return self not in (CountingStatus.DRAFT, CountingStatus.SCHEDULED)


ALLOWED_TRANSITIONS: dict[CountingStatus, frozenset[CountingStatus]] = {
    CountingStatus.DRAFT: frozenset({
        CountingStatus.SCHEDULED, CountingStatus.COUNT_1_IN_PROGRESS, CountingStatus.CANCELLED,
    }),
    CountingStatus.SCHEDULED: frozenset({
        CountingStatus.COUNT_1_IN_PROGRESS, CountingStatus.CANCELLED,
    }),
    CountingStatus.COUNT_1_IN_PROGRESS: frozenset({
        CountingStatus.COUNT_1_COMPLETED, CountingStatus.CANCELLED,
    }),
    CountingStatus.COUNT_1_COMPLETED: frozenset({
        CountingStatus.COUNT_2_IN_PROGRESS, CountingStatus.PENDING_REVIEW,
    }),
    CountingStatus.COUNT_2_IN_PROGRESS: frozenset({
        CountingStatus.COUNT_2_COMPLETED, CountingStatus.CANCELLED,
    }),
    CountingStatus.COUNT_2_COMPLETED: frozenset({
        CountingStatus.COUNT_3_IN_PROGRESS, CountingStatus.PENDING_REVIEW,
    }),
    CountingStatus.COUNT_3_IN_PROGRESS: frozenset({
        CountingStatus.COUNT_3_COMPLETED, CountingStatus.CANCELLED,
    }),
    CountingStatus.COUNT_3_COMPLETED: frozenset({CountingStatus.PENDING_REVIEW}),
    CountingStatus.PENDING_REVIEW: frozenset({
        CountingStatus.FINALIZED, CountingStatus.COUNT_3_IN_PROGRESS,
    }),
    CountingStatus.FINALIZED: frozenset(),
    CountingStatus.CANCELLED: frozenset(),
}

# Status a session moves to when all assignments of a count number are done
PHASE_IN_PROGRESS = {
    1: CountingStatus.COUNT_1_IN_PROGRESS,
    2: CountingStatus.COUNT_2_IN_PROGRESS,
    3: CountingStatus.COUNT_3_IN_PROGRESS,
}
PHASE_COMPLETED = {
    1: CountingStatus.COUNT_1_COMPLETED,
    2: CountingStatus.COUNT_2_COMPLETED,
    3: CountingStatus.COUNT_3_COMPLETED,
}


class ResolutionMethod(str, Enum):
    """Rule (or manual act) that produced an item's final quantity."""

    PENDING = "pending"
    AUTO_ALL_MATCH = "auto_all_match"
    AUTO_COUNTERS_AGREE = "auto_counters_agree"
    THIRD_COUNT_DECISIVE = "third_count_decisive"
    MANUAL_OVERRIDE = "manual_override"


class AssignmentStatus(str, Enum):
    """Progress of one counter on one count number."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    OVERDUE = "overdue"  # derived at read time, never stored


class CountingSession(Base, TimestampMixin, VersionMixin):
    """Aggregate root of a blind counting exercise."""

    __tablename__ = "counting_sessions"

    id: Mapped[int] = mapped_column(primary_key=True)
    uuid: Mapped[str] = mapped_column(
        String(36), unique=True, index=True, nullable=False, default=lambda: str(uuid4())
    )
    scope_type: Mapped[CountingScopeType] = mapped_column(SQLEnum(CountingScopeType), nullable=False)
    scope_filters: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    execution_mode: Mapped[ExecutionMode] = mapped_column(
        SQLEnum(ExecutionMode), default=ExecutionMode.PARALLEL, nullable=False
    )
    requires_count_2: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    requires_count_3: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    allow_unexpected_items: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    count_1_user_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    count_2_user_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    count_3_user_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )

    status: Mapped[CountingStatus] = mapped_column(
        SQLEnum(CountingStatus), default=CountingStatus.DRAFT, nullable=False, index=True
    )
    scheduled_start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    scheduled_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    instructions: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    activated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    finalized_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    created_by_user_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    third_count_round: Mapped[int] = mapped_column(Integer, default=0, server_default="0", nullable=False)

    # Relationships
    items: Mapped[list["CountableItem"]] = relationship(
        "CountableItem", back_populates="session", cascade="all, delete-orphan",
        order_by="CountableItem.id",
    )
    assignments: Mapped[list["CountingAssignment"]] = relationship(
        "CountingAssignment", back_populates="session", cascade="all, delete-orphan",
        order_by="CountingAssignment.id",
    )
    events: Mapped[list["CountingEvent"]] = relationship(
        "CountingEvent", back_populates="session", cascade="all, delete-orphan",
        order_by="CountingEvent.id",
    )


class CountableItem(Base, TimestampMixin):
    """One (product, variant, location) cell under count in a session."""

    __tablename__ = "countable_items"
    __table_args__ = (
        UniqueConstraint(
            "session_id", "product_id", "variant_id", "location_id", name="uq_countable_item_cell"
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    session_id: Mapped[int] = mapped_column(
        ForeignKey("counting_sessions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"), nullable=False, index=True)
    variant_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("product_variants.id"), nullable=True
    )
    location_id: Mapped[int] = mapped_column(ForeignKey("locations.id"), nullable=False, index=True)
    warehouse_id: Mapped[int] = mapped_column(ForeignKey("warehouses.id"), nullable=False)

    # Snapshot of the ledger at scope resolution. Supervisor-only.
    theoretical_qty: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)

    final_qty: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 4), nullable=True)
    variance: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 4), nullable=True)
    variance_percentage: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    resolution_method: Mapped[ResolutionMethod] = mapped_column(
        SQLEnum(ResolutionMethod), default=ResolutionMethod.PENDING, nullable=False, index=True
    )
    resolution_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resolved_by_user_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    is_flagged: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    flag_reason: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    third_count_round: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Relationships
    session: Mapped["CountingSession"] = relationship("CountingSession", back_populates="items")
    product: Mapped["Product"] = relationship("Product")
    variant: Mapped[Optional["ProductVariant"]] = relationship("ProductVariant")
    location: Mapped["Location"] = relationship("Location")
    warehouse: Mapped["Warehouse"] = relationship("Warehouse")
    entries: Mapped[list["CountEntry"]] = relationship(
        "CountEntry", back_populates="item", cascade="all, delete-orphan",
        order_by="CountEntry.id",
    )
    resolutions: Mapped[list["ItemResolution"]] = relationship(
        "ItemResolution", back_populates="item", cascade="all, delete-orphan",
        order_by="ItemResolution.id",
    )

    def entry_for(self, count_number: int, round: Optional[int] = None) -> Optional["CountEntry"]:
        """Entry in the given slot; count 3 defaults to the item's current round."""
        if round is None:
            round = (self.third_count_round or 0) if count_number == 3 else 1
        for entry in self.entries:
            if entry.count_number == count_number and entry.round == round:
                return entry
        return None

    def count_value(self, count_number: int) -> Optional[Decimal]:
        entry = self.entry_for(count_number)
        return entry.quantity if entry is not None else None


class CountEntry(Base):
    """A single counter's measurement of one item in one count slot."""

    __tablename__ = "count_entries"
    __table_args__ = (
        UniqueConstraint("item_id", "count_number", "round", name="uq_count_entry_cell"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    item_id: Mapped[int] = mapped_column(
        ForeignKey("countable_items.id", ondelete="CASCADE"), nullable=False, index=True
    )
    count_number: Mapped[int] = mapped_column(Integer, nullable=False)
    round: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    submitted_by_user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    submitted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    item: Mapped["CountableItem"] = relationship("CountableItem", back_populates="entries")


class CountingAssignment(Base):
    """Write authority of one counter over one count number (and round)."""

    __tablename__ = "counting_assignments"
    __table_args__ = (
        UniqueConstraint("session_id", "count_number", "round", name="uq_counting_assignment"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    session_id: Mapped[int] = mapped_column(
        ForeignKey("counting_sessions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    count_number: Mapped[int] = mapped_column(Integer, nullable=False)
    round: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    status: Mapped[AssignmentStatus] = mapped_column(
        SQLEnum(AssignmentStatus), default=AssignmentStatus.PENDING, nullable=False
    )
    assigned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    deadline: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    total_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    counted_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    session: Mapped["CountingSession"] = relationship("CountingSession", back_populates="assignments")

    def effective_status(self, now: Optional[datetime] = None) -> AssignmentStatus:
        """Stored status, or ``overdue`` once the deadline passed unfinished."""
        if self.status == AssignmentStatus.COMPLETED or self.deadline is None:
            return self.status
        now = now or datetime.now(timezone.utc)
        if as_utc(self.deadline) < now:
            return AssignmentStatus.OVERDUE
        return self.status

    @property
    def progress_percentage(self) -> float:
        if not self.total_items:
            return 0.0
        return round(self.counted_items / self.total_items * 100, 1)


class ItemResolution(Base):
    """Append-only record of each resolution applied to an item."""

    __tablename__ = "countable_item_resolutions"

    id: Mapped[int] = mapped_column(primary_key=True)
    item_id: Mapped[int] = mapped_column(
        ForeignKey("countable_items.id", ondelete="CASCADE"), nullable=False, index=True
    )
    method: Mapped[ResolutionMethod] = mapped_column(SQLEnum(ResolutionMethod), nullable=False)
    final_qty: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    variance: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resolved_by_user_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    item: Mapped["CountableItem"] = relationship("CountableItem", back_populates="resolutions")


class CountingEvent(Base):
    """Hash-chained audit event of a counting session."""

    __tablename__ = "counting_events"

    id: Mapped[int] = mapped_column(primary_key=True)
    session_id: Mapped[int] = mapped_column(
        ForeignKey("counting_sessions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    item_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("countable_items.id", ondelete="SET NULL"), nullable=True
    )
    event_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    event_data: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    user_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    previous_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    event_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    session: Mapped["CountingSession"] = relationship("CountingSession", back_populates="events")
