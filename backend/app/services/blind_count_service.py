"""Blind count intake and the counter-facing read models.

Counters only ever receive ``CounterItemView`` projections: item identity
plus their own entry. Theoretical quantities and other counters' entries
never leave this module.
"""

import logging
from datetime import datetime, timezone
from typing import Any, List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.models.counting import (
    CountableItem,
    CountEntry,
    CountingAssignment,
    CountingSession,
    CountingStatus,
    ResolutionMethod,
)
from app.models.product import Product, ProductVariant
from app.schemas.counting import (
    BarcodeLookupResponse,
    CounterItemView,
    CounterSessionInfo,
    CounterTask,
    CounterView,
    PhaseProgress,
)
from app.services.counting_audit_service import CountingAuditService, CountingEventType
from app.services.counting_errors import (
    CountingUnauthorizedError,
    InvalidQuantityError,
    ItemAlreadyResolvedError,
    ItemNotInScopeError,
    SessionCancelledError,
    SessionNotFoundError,
)
from app.services.counting_locks import session_critical_section
from app.services.counting_reconciliation_service import (
    CountingReconciliationService,
    item_identity,
    quantize_qty,
)
from app.services.counting_session_service import (
    CountingSessionService,
    assignment_items,
    phase_open,
)

logger = logging.getLogger(__name__)


class BlindCountService:
    """Accepts counts from assigned counters and serves their blind views."""

    def __init__(self, db: Session):
        self.db = db
        self.audit = CountingAuditService(db)
        self.sessions = CountingSessionService(db)
        self.reconciliation = CountingReconciliationService(db)

    # ------------------------------------------------------------------
    # Assignment tracking
    # ------------------------------------------------------------------
    def _get_session(self, session_id: int) -> CountingSession:
        session = self.db.query(CountingSession).filter(CountingSession.id == session_id).first()
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    @staticmethod
    def _user_assignments(session: CountingSession, user_id: int) -> List[CountingAssignment]:
        return [a for a in session.assignments if a.user_id == user_id]

    def active_assignment(self, session: CountingSession, user_id: int) -> Optional[CountingAssignment]:
        """The counter's started assignment whose phase is currently open."""
        for assignment in self._user_assignments(session, user_id):
            if assignment.started_at is None:
                continue
            if phase_open(session, assignment.count_number, assignment.round):
                return assignment
        return None

    def _view_assignment(self, session: CountingSession, user_id: int) -> CountingAssignment:
        """Assignment a counter's views are based on: the open one, else the latest."""
        active = self.active_assignment(session, user_id)
        if active is not None:
            return active
        assignments = self._user_assignments(session, user_id)
        if not assignments:
            raise CountingUnauthorizedError(
                f"User {user_id} is not assigned to counting session {session.id}"
            )
        started = [a for a in assignments if a.started_at is not None]
        return max(started or assignments, key=lambda a: (a.count_number, a.round))

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------
    def submit_count(
        self,
        session_id: int,
        item_id: int,
        user_id: int,
        quantity: Any,
        notes: Optional[str] = None,
    ) -> CounterItemView:
        """Record a counter's measurement; last value wins within an open phase.

        The whole write runs in the session's critical section: the entry,
        its audit event, the item's resolution and any phase change.

        Raises:
            SessionNotFoundError: Unknown session.
            SessionCancelledError: Session was cancelled.
            CountingUnauthorizedError: The user holds no open assignment here.
            InvalidQuantityError: Negative quantity.
            ItemNotInScopeError: Item outside the session or the assignment scope.
            ItemAlreadyResolvedError: A different value for an already resolved item.
        """
        try:
            with session_critical_section(self.db, session_id) as session:
                item, assignment = self._record_entry(session, item_id, user_id, quantity, notes)
                self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(item)
        return self._item_view(item, assignment)

    def _record_entry(
        self,
        session: CountingSession,
        item_id: int,
        user_id: int,
        quantity: Any,
        notes: Optional[str],
    ) -> Tuple[CountableItem, CountingAssignment]:
        if session.status == CountingStatus.CANCELLED:
            logger.warning(f"Rejected count on cancelled session {session.id} from user {user_id}")
            raise SessionCancelledError(session.id)

        assignment = self.active_assignment(session, user_id)
        if assignment is None:
            logger.warning(
                f"Rejected count on session {session.id} item {item_id}: "
                f"user {user_id} has no open assignment"
            )
            raise CountingUnauthorizedError(
                f"User {user_id} has no open count assignment on session {session.id}"
            )

        try:
            quantity = quantize_qty(quantity)
        except ArithmeticError:
            raise InvalidQuantityError("Quantity must be a number")
        if not quantity.is_finite() or quantity < 0:
            raise InvalidQuantityError("Quantity must be a non-negative number")

        item = next((i for i in assignment_items(session, assignment) if i.id == item_id), None)
        if item is None:
            logger.warning(
                f"Rejected count on session {session.id}: item {item_id} outside the scope "
                f"of count {assignment.count_number}"
            )
            raise ItemNotInScopeError(item_id)

        entry = item.entry_for(assignment.count_number, assignment.round)
        if item.resolution_method != ResolutionMethod.PENDING:
            if entry is not None and entry.quantity == quantity:
                return item, assignment
            logger.warning(
                f"Rejected count on session {session.id}: item {item_id} already resolved "
                f"as {item.resolution_method.value}"
            )
            raise ItemAlreadyResolvedError(item_id)

        now = datetime.now(timezone.utc)
        previous = entry.quantity if entry is not None else None
        if entry is None:
            entry = CountEntry(
                count_number=assignment.count_number,
                round=assignment.round,
                quantity=quantity,
                notes=notes,
                submitted_by_user_id=user_id,
                submitted_at=now,
            )
            item.entries.append(entry)
        else:
            entry.quantity = quantity
            entry.notes = notes
            entry.updated_at = now

        self.audit.record(
            session,
            CountingEventType.COUNT_SUBMITTED,
            {
                "count_number": assignment.count_number,
                "round": assignment.round,
                "quantity": quantity,
                "previous_quantity": previous,
            },
            user_id=user_id,
            item_id=item.id,
        )
        self.reconciliation.reconcile_item(session, item)
        self.sessions.advance_phase(session, user_id=user_id)
        logger.info(
            f"Count {assignment.count_number} (round {assignment.round}) recorded for item "
            f"{item_id} of session {session.id} by user {user_id}"
        )
        return item, assignment

    # ------------------------------------------------------------------
    # Counter views
    # ------------------------------------------------------------------
    @staticmethod
    def _item_view(item: CountableItem, assignment: CountingAssignment) -> CounterItemView:
        entry = item.entry_for(assignment.count_number, assignment.round)
        return CounterItemView(
            **item_identity(item),
            is_counted=entry is not None,
            my_count=entry.quantity if entry is not None else None,
            my_count_at=(entry.updated_at or entry.submitted_at) if entry is not None else None,
        )

    @staticmethod
    def _session_info(session: CountingSession) -> CounterSessionInfo:
        return CounterSessionInfo(
            id=session.id,
            uuid=session.uuid,
            status=session.status,
            scope_type=session.scope_type,
            instructions=session.instructions,
            scheduled_start=session.scheduled_start,
            scheduled_end=session.scheduled_end,
        )

    def counter_view(self, session_id: int, user_id: int) -> CounterView:
        session = self._get_session(session_id)
        assignment = self._view_assignment(session, user_id)
        items = [self._item_view(i, assignment) for i in assignment_items(session, assignment)]
        counted = sum(1 for i in items if i.is_counted)
        return CounterView(
            session=self._session_info(session),
            my_count_number=assignment.count_number,
            round=assignment.round,
            can_count=self.active_assignment(session, user_id) is assignment,
            items=items,
            progress=PhaseProgress(
                counted=counted,
                total=len(items),
                percentage=round(counted / len(items) * 100, 1) if items else 0.0,
            ),
        )

    def counter_item(self, session_id: int, item_id: int, user_id: int) -> CounterItemView:
        session = self._get_session(session_id)
        assignment = self._view_assignment(session, user_id)
        item = next((i for i in assignment_items(session, assignment) if i.id == item_id), None)
        if item is None:
            raise ItemNotInScopeError(item_id)
        return self._item_view(item, assignment)

    def lookup_by_barcode(self, session_id: int, user_id: int, code: str) -> BarcodeLookupResponse:
        """Find an item of the counter's scope by product/variant barcode or SKU."""
        session = self._get_session(session_id)
        assignment = self._view_assignment(session, user_id)
        code = (code or "").strip()
        if not code:
            return BarcodeLookupResponse(found=False)

        product_ids = {
            row[0]
            for row in self.db.query(Product.id)
            .filter(or_(Product.barcode == code, Product.sku == code))
            .all()
        }
        variant_ids = {
            row[0]
            for row in self.db.query(ProductVariant.id)
            .filter(or_(ProductVariant.barcode == code, ProductVariant.sku == code))
            .all()
        }

        matches = [
            i for i in assignment_items(session, assignment)
            if (i.variant_id is not None and i.variant_id in variant_ids)
            or (i.product_id in product_ids and (i.variant_id is None or not variant_ids))
        ]
        if not matches:
            return BarcodeLookupResponse(found=False)

        views = [self._item_view(i, assignment) for i in matches]
        uncounted = [v for v in views if not v.is_counted]
        return BarcodeLookupResponse(found=True, item=(uncounted or views)[0])

    def my_tasks(self, user_id: int) -> List[CounterTask]:
        """Assignments of the user on sessions that are not terminal."""
        assignments = (
            self.db.query(CountingAssignment)
            .join(CountingSession, CountingSession.id == CountingAssignment.session_id)
            .filter(
                CountingAssignment.user_id == user_id,
                CountingSession.status.notin_([CountingStatus.FINALIZED, CountingStatus.CANCELLED]),
            )
            .order_by(CountingSession.id, CountingAssignment.count_number, CountingAssignment.round)
            .all()
        )
        now = datetime.now(timezone.utc)
        tasks = []
        for assignment in assignments:
            session = assignment.session
            tasks.append(
                CounterTask(
                    session_id=session.id,
                    session_uuid=session.uuid,
                    session_status=session.status,
                    instructions=session.instructions,
                    count_number=assignment.count_number,
                    round=assignment.round,
                    assignment_status=assignment.effective_status(now),
                    can_count=(
                        assignment.started_at is not None
                        and phase_open(session, assignment.count_number, assignment.round)
                    ),
                    deadline=assignment.deadline,
                    total_items=assignment.total_items,
                    counted_items=assignment.counted_items,
                    progress_percentage=assignment.progress_percentage,
                )
            )
        return tasks
