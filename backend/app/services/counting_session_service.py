"""Counting session lifecycle: creation, scheduling, activation, phases, cancel, finalize."""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models.counting import (
    PHASE_COMPLETED,
    PHASE_IN_PROGRESS,
    AssignmentStatus,
    CountableItem,
    CountEntry,
    CountingAssignment,
    CountingScopeType,
    CountingSession,
    CountingStatus,
    ExecutionMode,
    ResolutionMethod,
    as_utc,
)
from app.models.user import User
from app.services.counting_audit_service import CountingAuditService, CountingEventType
from app.services.counting_errors import (
    InvalidCountingConfigurationError,
    InvalidStateTransitionError,
    SequentialModeRequiredError,
    SessionNotFoundError,
    UnresolvedItemsError,
)
from app.services.counting_locks import session_critical_section, session_locks
from app.services.scope_resolver import ScopeResolver, normalize_scope

logger = logging.getLogger(__name__)


def transition_session(session: CountingSession, target: CountingStatus) -> CountingStatus:
    """Move *session* to *target* if the transition table allows it.

    Cancellation is accepted from every non-terminal state. Returns the
    previous status.

    Raises:
        InvalidStateTransitionError: The transition is not allowed.
    """
    current = session.status
    allowed = current.can_transition_to(target) or (
        target == CountingStatus.CANCELLED and not current.is_terminal
    )
    if not allowed:
        raise InvalidStateTransitionError(current.value, target.value)
    session.status = target
    session.increment_version()
    logger.info(f"Counting session {session.id}: {current.value} -> {target.value}")
    return current


def phase_open(session: CountingSession, count_number: int, round: int = 1) -> bool:
    """Whether entries for this count number (and round) are accepted right now."""
    status = session.status
    if count_number == 1:
        return status == CountingStatus.COUNT_1_IN_PROGRESS
    if count_number == 2:
        if status == CountingStatus.COUNT_2_IN_PROGRESS:
            return True
        return (
            session.execution_mode == ExecutionMode.PARALLEL
            and status == CountingStatus.COUNT_1_IN_PROGRESS
        )
    if count_number == 3:
        return status == CountingStatus.COUNT_3_IN_PROGRESS and round == session.third_count_round
    return False


def assignment_items(session: CountingSession, assignment: CountingAssignment) -> List[CountableItem]:
    """Items an assignment covers: the whole set, or the items of its third-count round."""
    if assignment.count_number == 3:
        return [i for i in session.items if i.third_count_round == assignment.round]
    return list(session.items)


def _percentage(counted: int, total: int) -> float:
    return round(counted / total * 100, 1) if total else 0.0


class CountingSessionService:
    """Service for the counting session lifecycle."""

    def __init__(self, db: Session):
        self.db = db
        self.audit = CountingAuditService(db)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------
    def get_session(self, session_id: int) -> CountingSession:
        session = self.db.query(CountingSession).filter(CountingSession.id == session_id).first()
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def list_sessions(
        self,
        status: Optional[CountingStatus] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> Tuple[List[CountingSession], int]:
        query = self.db.query(CountingSession)
        if status is not None:
            query = query.filter(CountingSession.status == status)
        total = query.count()
        sessions = (
            query.order_by(CountingSession.created_at.desc(), CountingSession.id.desc())
            .offset(skip)
            .limit(limit)
            .all()
        )
        return sessions, total

    # ------------------------------------------------------------------
    # Creation & scheduling
    # ------------------------------------------------------------------
    def _validate_counters(
        self,
        requires_count_2: bool,
        requires_count_3: bool,
        counters: Dict[int, Optional[int]],
    ) -> None:
        if counters.get(1) is None:
            raise InvalidCountingConfigurationError("count_1_user_id is required")
        if requires_count_2 and counters.get(2) is None:
            raise InvalidCountingConfigurationError(
                "count_2_user_id is required when a second count is required"
            )
        if not requires_count_2 and counters.get(2) is not None:
            raise InvalidCountingConfigurationError(
                "count_2_user_id given but no second count is required"
            )
        if requires_count_3 and not requires_count_2:
            raise InvalidCountingConfigurationError("A third count requires a second count")
        if requires_count_3 and counters.get(3) is None:
            raise InvalidCountingConfigurationError(
                "count_3_user_id is required when a third count is allowed"
            )
        if not requires_count_3 and counters.get(3) is not None:
            raise InvalidCountingConfigurationError(
                "count_3_user_id given but no third count is allowed"
            )

        user_ids = {uid for uid in counters.values() if uid is not None}
        found = {
            row[0]
            for row in self.db.query(User.id)
            .filter(User.id.in_(user_ids), User.is_active.is_(True))
            .all()
        }
        missing = sorted(user_ids - found)
        if missing:
            raise InvalidCountingConfigurationError(
                f"Unknown or inactive counter(s): {missing}", user_ids=missing
            )

    @staticmethod
    def _validate_schedule(start: Optional[datetime], end: Optional[datetime]) -> None:
        if start is not None and end is not None and as_utc(end) <= as_utc(start):
            raise InvalidCountingConfigurationError("scheduled_end must be after scheduled_start")

    def create_session(
        self,
        *,
        scope_type: CountingScopeType,
        scope_filters: Optional[Dict[str, Any]] = None,
        execution_mode: ExecutionMode = ExecutionMode.PARALLEL,
        requires_count_2: bool = True,
        requires_count_3: bool = False,
        allow_unexpected_items: bool = False,
        count_1_user_id: Optional[int] = None,
        count_2_user_id: Optional[int] = None,
        count_3_user_id: Optional[int] = None,
        scheduled_start: Optional[datetime] = None,
        scheduled_end: Optional[datetime] = None,
        instructions: Optional[str] = None,
        created_by_user_id: Optional[int] = None,
    ) -> CountingSession:
        """Create a draft session with one pending assignment per required count.

        Raises:
            InvalidScopeError: Scope filters do not fit the scope type.
            InvalidCountingConfigurationError: Counters or schedule are invalid.
            SequentialModeRequiredError: A counter holds several counts in parallel mode.
        """
        filters, allow_unexpected_items = normalize_scope(
            scope_type, scope_filters, allow_unexpected_items
        )
        counters = {1: count_1_user_id, 2: count_2_user_id, 3: count_3_user_id}
        self._validate_counters(requires_count_2, requires_count_3, counters)
        self._validate_schedule(scheduled_start, scheduled_end)

        if execution_mode == ExecutionMode.PARALLEL:
            seen: Dict[int, int] = {}
            for count_number, user_id in counters.items():
                if user_id is None:
                    continue
                if user_id in seen:
                    raise SequentialModeRequiredError(user_id)
                seen[user_id] = count_number

        session = CountingSession(
            scope_type=scope_type,
            scope_filters=filters,
            execution_mode=execution_mode,
            requires_count_2=requires_count_2,
            requires_count_3=requires_count_3,
            allow_unexpected_items=allow_unexpected_items,
            count_1_user_id=count_1_user_id,
            count_2_user_id=count_2_user_id,
            count_3_user_id=count_3_user_id,
            status=CountingStatus.DRAFT,
            scheduled_start=scheduled_start,
            scheduled_end=scheduled_end,
            instructions=instructions,
            created_by_user_id=created_by_user_id,
            third_count_round=0,
        )
        try:
            self.db.add(session)
            self.db.flush()
            for count_number in (1, 2) if requires_count_2 else (1,):
                self.db.add(
                    CountingAssignment(
                        session_id=session.id,
                        user_id=counters[count_number],
                        count_number=count_number,
                        round=1,
                        status=AssignmentStatus.PENDING,
                        deadline=scheduled_end,
                        total_items=0,
                        counted_items=0,
                    )
                )
            self.audit.record(
                session,
                CountingEventType.CREATED,
                {
                    "scope_type": scope_type.value,
                    "scope_filters": filters,
                    "execution_mode": execution_mode.value,
                    "requires_count_2": requires_count_2,
                    "requires_count_3": requires_count_3,
                    "counters": {str(n): uid for n, uid in counters.items() if uid is not None},
                },
                user_id=created_by_user_id,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(session)
        logger.info(
            f"Counting session {session.id} created ({scope_type.value}, {execution_mode.value}) "
            f"by user {created_by_user_id}"
        )
        return session

    def schedule_session(
        self,
        session_id: int,
        user_id: Optional[int] = None,
        scheduled_start: Optional[datetime] = None,
        scheduled_end: Optional[datetime] = None,
    ) -> CountingSession:
        """Move a draft session to scheduled; a start time must be known."""
        try:
            with session_critical_section(self.db, session_id) as session:
                if not session.status.can_transition_to(CountingStatus.SCHEDULED):
                    raise InvalidStateTransitionError(
                        session.status.value, CountingStatus.SCHEDULED.value
                    )
                start = scheduled_start or session.scheduled_start
                end = scheduled_end or session.scheduled_end
                if start is None:
                    raise InvalidCountingConfigurationError(
                        "scheduled_start is required to schedule a session"
                    )
                self._validate_schedule(start, end)
                session.scheduled_start = start
                session.scheduled_end = end
                for assignment in session.assignments:
                    assignment.deadline = end
                transition_session(session, CountingStatus.SCHEDULED)
                self.audit.record(
                    session,
                    CountingEventType.SCHEDULED,
                    {"scheduled_start": start, "scheduled_end": end},
                    user_id=user_id,
                )
                self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(session)
        return session

    # ------------------------------------------------------------------
    # Activation
    # ------------------------------------------------------------------
    def activate_session(self, session_id: int, user_id: Optional[int] = None) -> CountingSession:
        """Freeze the item set and open count 1 (and count 2 in parallel mode).

        Raises:
            InvalidStateTransitionError: Session is not draft or scheduled.
            InvalidScopeError: The scope resolves to no items.
        """
        try:
            with session_critical_section(self.db, session_id) as session:
                if not session.status.can_transition_to(CountingStatus.COUNT_1_IN_PROGRESS):
                    raise InvalidStateTransitionError(
                        session.status.value, CountingStatus.COUNT_1_IN_PROGRESS.value
                    )

                resolved = ScopeResolver(self.db).resolve(
                    session.scope_type, session.scope_filters, session.allow_unexpected_items
                )
                for entry in resolved:
                    self.db.add(
                        CountableItem(
                            session_id=session.id,
                            product_id=entry.product_id,
                            variant_id=entry.variant_id,
                            location_id=entry.location_id,
                            warehouse_id=entry.warehouse_id,
                            theoretical_qty=entry.theoretical_qty,
                            resolution_method=ResolutionMethod.PENDING,
                            is_flagged=False,
                        )
                    )

                now = datetime.now(timezone.utc)
                for assignment in session.assignments:
                    assignment.total_items = len(resolved)
                    if assignment.count_number == 1 or (
                        assignment.count_number == 2
                        and session.execution_mode == ExecutionMode.PARALLEL
                    ):
                        self._start_assignment(assignment, now)

                transition_session(session, CountingStatus.COUNT_1_IN_PROGRESS)
                session.activated_at = now
                self.audit.record(
                    session,
                    CountingEventType.ACTIVATED,
                    {"total_items": len(resolved)},
                    user_id=user_id,
                )
                self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(session)
        logger.info(f"Counting session {session.id} activated with {len(resolved)} item(s)")
        return session

    @staticmethod
    def _start_assignment(assignment: CountingAssignment, now: datetime) -> None:
        if assignment.started_at is None:
            assignment.started_at = now
        if assignment.status == AssignmentStatus.PENDING:
            assignment.status = AssignmentStatus.IN_PROGRESS

    # ------------------------------------------------------------------
    # Phase advancement
    # ------------------------------------------------------------------
    def _current_assignments(
        self, session: CountingSession, count_number: int
    ) -> List[CountingAssignment]:
        round = session.third_count_round if count_number == 3 else 1
        return [
            a for a in session.assignments
            if a.count_number == count_number and a.round == round
        ]

    def refresh_assignment(self, session: CountingSession, assignment: CountingAssignment) -> None:
        """Recount an assignment; items already resolved count as done."""
        items = assignment_items(session, assignment)
        assignment.total_items = len(items)
        assignment.counted_items = sum(
            1 for i in items
            if i.entry_for(assignment.count_number, assignment.round) is not None
            or i.resolution_method != ResolutionMethod.PENDING
        )
        if (
            assignment.counted_items >= assignment.total_items
            and assignment.status != AssignmentStatus.COMPLETED
        ):
            assignment.status = AssignmentStatus.COMPLETED
            assignment.completed_at = datetime.now(timezone.utc)
            logger.info(
                f"Assignment {assignment.id} (count {assignment.count_number}, round "
                f"{assignment.round}) of counting session {session.id} completed"
            )

    def _phase_complete(self, session: CountingSession, count_number: int) -> bool:
        assignments = self._current_assignments(session, count_number)
        for assignment in assignments:
            self.refresh_assignment(session, assignment)
        return bool(assignments) and all(
            a.status == AssignmentStatus.COMPLETED for a in assignments
        )

    def advance_phase(self, session: CountingSession, user_id: Optional[int] = None) -> List[CountingStatus]:
        """Advance through completed phases; caller holds the session critical section.

        Returns the statuses entered, in order. Count 3 is never started here.
        """
        from app.services.counting_reconciliation_service import CountingReconciliationService

        entered: List[CountingStatus] = []
        for assignment in session.assignments:
            if assignment.started_at is not None and phase_open(
                session, assignment.count_number, assignment.round
            ):
                self.refresh_assignment(session, assignment)

        def move(target: CountingStatus) -> None:
            transition_session(session, target)
            entered.append(target)

        while True:
            status = session.status
            phase = next((n for n, s in PHASE_IN_PROGRESS.items() if s == status), None)
            if phase is not None:
                if not self._phase_complete(session, phase):
                    break
                move(PHASE_COMPLETED[phase])
                self.audit.record(
                    session,
                    CountingEventType.PHASE_COMPLETED,
                    {"count_number": phase, "round": session.third_count_round if phase == 3 else 1},
                    user_id=user_id,
                )
                continue

            if status == CountingStatus.COUNT_1_COMPLETED and session.requires_count_2:
                move(CountingStatus.COUNT_2_IN_PROGRESS)
                now = datetime.now(timezone.utc)
                for assignment in self._current_assignments(session, 2):
                    self._start_assignment(assignment, now)
                continue

            if status in (
                CountingStatus.COUNT_1_COMPLETED,
                CountingStatus.COUNT_2_COMPLETED,
                CountingStatus.COUNT_3_COMPLETED,
            ):
                move(CountingStatus.PENDING_REVIEW)
                CountingReconciliationService(self.db).reconcile_session(session)
            break

        return entered

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------
    def cancel_session(self, session_id: int, reason: Optional[str], user_id: Optional[int] = None) -> CountingSession:
        """Cancel a non-terminal session; counted data is kept.

        Raises:
            InvalidCountingConfigurationError: Blank reason.
            InvalidStateTransitionError: Session already finalized or cancelled.
        """
        reason = (reason or "").strip()
        if not reason:
            raise InvalidCountingConfigurationError("A cancellation reason is required")
        try:
            with session_critical_section(self.db, session_id) as session:
                previous = transition_session(session, CountingStatus.CANCELLED)
                session.cancelled_at = datetime.now(timezone.utc)
                session.cancellation_reason = reason
                self.audit.record(
                    session,
                    CountingEventType.CANCELLED,
                    {"reason": reason, "previous_status": previous.value},
                    user_id=user_id,
                )
                self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        session_locks.discard(session_id)
        self.db.refresh(session)
        logger.info(f"Counting session {session_id} cancelled by user {user_id}: {reason}")
        return session

    def finalize_session(self, session_id: int, user_id: Optional[int] = None) -> CountingSession:
        """Close a reviewed session once no item is pending.

        Raises:
            InvalidStateTransitionError: Session is not pending review.
            UnresolvedItemsError: Items are still pending.
        """
        try:
            with session_critical_section(self.db, session_id) as session:
                if not session.status.can_transition_to(CountingStatus.FINALIZED):
                    raise InvalidStateTransitionError(
                        session.status.value, CountingStatus.FINALIZED.value
                    )
                unresolved = [
                    i.id for i in session.items if i.resolution_method == ResolutionMethod.PENDING
                ]
                if unresolved:
                    raise UnresolvedItemsError(unresolved)
                transition_session(session, CountingStatus.FINALIZED)
                session.finalized_at = datetime.now(timezone.utc)
                self.audit.record(
                    session,
                    CountingEventType.FINALIZED,
                    {"total_items": len(session.items)},
                    user_id=user_id,
                )
                self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        session_locks.discard(session_id)
        self.db.refresh(session)
        logger.info(f"Counting session {session_id} finalized by user {user_id}")
        return session

    # ------------------------------------------------------------------
    # Read models
    # ------------------------------------------------------------------
    def progress(self, session: CountingSession) -> Dict[str, Any]:
        """Per count number ``{counted, total, percentage}`` plus an overall percentage."""
        counted_rows = (
            self.db.query(CountEntry.count_number, CountEntry.round, func.count(CountEntry.id))
            .join(CountableItem, CountableItem.id == CountEntry.item_id)
            .filter(CountableItem.session_id == session.id)
            .group_by(CountEntry.count_number, CountEntry.round)
            .all()
        )
        counted = {(n, r): c for n, r, c in counted_rows}
        total_items = len(session.items)

        phases: Dict[str, Any] = {}
        required = [1, 2] if session.requires_count_2 else [1]
        for n in required:
            phases[f"count_{n}"] = {
                "counted": counted.get((n, 1), 0),
                "total": total_items,
                "percentage": _percentage(counted.get((n, 1), 0), total_items),
            }
        if session.third_count_round:
            round_total = sum(
                1 for i in session.items if i.third_count_round == session.third_count_round
            )
            round_counted = counted.get((3, session.third_count_round), 0)
            phases["count_3"] = {
                "counted": round_counted,
                "total": round_total,
                "percentage": _percentage(round_counted, round_total),
            }

        all_counted = sum(p["counted"] for p in phases.values())
        all_total = sum(p["total"] for p in phases.values())
        phases["overall_percentage"] = _percentage(all_counted, all_total)
        return phases

    def serialize_session(self, session: CountingSession) -> Dict[str, Any]:
        """Supervisor detail payload."""
        now = datetime.now(timezone.utc)
        return {
            "id": session.id,
            "uuid": session.uuid,
            "scope_type": session.scope_type,
            "scope_filters": session.scope_filters,
            "execution_mode": session.execution_mode,
            "requires_count_2": session.requires_count_2,
            "requires_count_3": session.requires_count_3,
            "allow_unexpected_items": session.allow_unexpected_items,
            "count_1_user_id": session.count_1_user_id,
            "count_2_user_id": session.count_2_user_id,
            "count_3_user_id": session.count_3_user_id,
            "status": session.status,
            "scheduled_start": session.scheduled_start,
            "scheduled_end": session.scheduled_end,
            "instructions": session.instructions,
            "activated_at": session.activated_at,
            "finalized_at": session.finalized_at,
            "cancelled_at": session.cancelled_at,
            "cancellation_reason": session.cancellation_reason,
            "created_by_user_id": session.created_by_user_id,
            "third_count_round": session.third_count_round,
            "version": session.version,
            "created_at": session.created_at,
            "updated_at": session.updated_at,
            "total_items": len(session.items),
            "assignments": [
                {
                    "id": a.id,
                    "user_id": a.user_id,
                    "count_number": a.count_number,
                    "round": a.round,
                    "status": a.effective_status(now),
                    "assigned_at": a.assigned_at,
                    "started_at": a.started_at,
                    "completed_at": a.completed_at,
                    "deadline": a.deadline,
                    "total_items": a.total_items,
                    "counted_items": a.counted_items,
                    "progress_percentage": a.progress_percentage,
                }
                for a in session.assignments
            ],
            "progress": self.progress(session),
        }

    def dashboard(self) -> Dict[str, Any]:
        """Counts of sessions per status plus overdue assignments."""
        now = datetime.now(timezone.utc)
        by_status = {s.value: 0 for s in CountingStatus}
        for status, count in (
            self.db.query(CountingSession.status, func.count(CountingSession.id))
            .group_by(CountingSession.status)
            .all()
        ):
            by_status[status.value] = count

        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        completed_this_month = sum(
            1
            for (finalized_at,) in self.db.query(CountingSession.finalized_at)
            .filter(CountingSession.status == CountingStatus.FINALIZED)
            .all()
            if finalized_at is not None and as_utc(finalized_at) >= month_start
        )

        open_assignments = (
            self.db.query(CountingAssignment)
            .join(CountingSession, CountingSession.id == CountingAssignment.session_id)
            .filter(
                CountingAssignment.status != AssignmentStatus.COMPLETED,
                CountingAssignment.deadline.isnot(None),
                CountingSession.status.notin_([CountingStatus.FINALIZED, CountingStatus.CANCELLED]),
            )
            .all()
        )
        overdue = sum(
            1 for a in open_assignments if a.effective_status(now) == AssignmentStatus.OVERDUE
        )

        active_statuses = {
            s.value for s in CountingStatus
            if s.is_activated and not s.is_terminal and s != CountingStatus.PENDING_REVIEW
        }
        recent, _ = self.list_sessions(limit=10)
        return {
            "active_sessions": sum(by_status[s] for s in active_statuses),
            "pending_review": by_status[CountingStatus.PENDING_REVIEW.value],
            "completed_this_month": completed_this_month,
            "overdue_assignments": overdue,
            "by_status": by_status,
            "recent_sessions": recent,
        }
