"""Reconciliation engine: turn count entries into an audited final quantity."""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.counting import (
    AssignmentStatus,
    CountableItem,
    CountingAssignment,
    CountingSession,
    CountingStatus,
    ResolutionMethod,
    ItemResolution,
)
from app.services.counting_audit_service import CountingAuditService, CountingEventType
from app.services.counting_errors import (
    InvalidQuantityError,
    InvalidStateTransitionError,
    ItemNotInScopeError,
    ManualOverrideRequiresNotesError,
    ThirdCountNotAvailableError,
)
from app.services.counting_locks import session_critical_section
from app.services.counting_session_service import CountingSessionService, transition_session

logger = logging.getLogger(__name__)

QTY_PLACES = Decimal("0.0001")
PCT_PLACES = Decimal("0.01")


class CountingReconciliationConfig:
    """Thresholds used when resolving and flagging items."""

    def __init__(
        self,
        flag_threshold_percent: Optional[Decimal] = None,
        override_min_notes: Optional[int] = None,
        minor_variance_percent: Decimal = Decimal("2"),
        significant_variance_percent: Decimal = Decimal("5"),
        critical_variance_percent: Decimal = Decimal("10"),
    ):
        self.flag_threshold_percent = (
            flag_threshold_percent
            if flag_threshold_percent is not None
            else settings.counting_flag_threshold_percent
        )
        self.override_min_notes = (
            override_min_notes if override_min_notes is not None else settings.counting_override_min_notes
        )
        self.minor_variance_percent = minor_variance_percent
        self.significant_variance_percent = significant_variance_percent
        self.critical_variance_percent = critical_variance_percent


@dataclass
class ResolutionOutcome:
    """Result of applying the resolution rules to one item's counts."""
    method: ResolutionMethod
    final_qty: Optional[Decimal] = None
    is_flagged: bool = False
    flag_reason: Optional[str] = None
    notes: Optional[str] = None

    @property
    def resolved(self) -> bool:
        return self.method != ResolutionMethod.PENDING


def quantize_qty(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(QTY_PLACES)


def variance_percentage(variance: Decimal, theoretical: Decimal) -> Optional[Decimal]:
    """Variance as a percentage of theoretical, 2 dp; ``None`` when theoretical is 0."""
    if theoretical == 0:
        return None
    return (variance / theoretical * 100).quantize(PCT_PLACES, rounding=ROUND_HALF_UP)


def variance_flag_reason(
    counted: Decimal, theoretical: Decimal, config: CountingReconciliationConfig
) -> str:
    """Band the variance of a count against theoretical."""
    if theoretical == 0:
        return "variance_from_zero_theoretical"
    percent = abs((counted - theoretical) / theoretical * 100)
    if percent >= config.critical_variance_percent:
        return "critical_variance"
    if percent >= config.significant_variance_percent:
        return "significant_variance"
    if percent >= config.minor_variance_percent:
        return "minor_variance"
    return "variance_from_theoretical"


def decide_resolution(
    theoretical: Decimal,
    count_1: Optional[Decimal],
    count_2: Optional[Decimal],
    count_3: Optional[Decimal],
    requires_count_2: bool,
    config: CountingReconciliationConfig,
) -> Optional[ResolutionOutcome]:
    """Apply the resolution rules; ``None`` while the required counts are incomplete.

    Only the set of submitted values matters, never the order they arrived in.
    """
    if count_1 is None:
        return None
    t = quantize_qty(theoretical)
    c1 = quantize_qty(count_1)

    if not requires_count_2:
        if c1 == t:
            return ResolutionOutcome(ResolutionMethod.AUTO_ALL_MATCH, final_qty=c1)
        return ResolutionOutcome(
            ResolutionMethod.AUTO_COUNTERS_AGREE,
            final_qty=c1,
            is_flagged=True,
            flag_reason=variance_flag_reason(c1, t, config),
        )

    if count_2 is None:
        return None
    c2 = quantize_qty(count_2)

    if c1 == c2:
        if c1 == t:
            return ResolutionOutcome(ResolutionMethod.AUTO_ALL_MATCH, final_qty=c1)
        variance = c1 - t
        pct = variance_percentage(variance, t)
        flagged = (pct is None and variance != 0) or (
            pct is not None and abs(pct) > config.flag_threshold_percent
        )
        return ResolutionOutcome(
            ResolutionMethod.AUTO_COUNTERS_AGREE,
            final_qty=c1,
            is_flagged=flagged,
            flag_reason=variance_flag_reason(c1, t, config) if flagged else None,
        )

    if count_3 is None:
        reason = "counter_disagreement"
        if t in (c1, c2):
            reason = "counter_disagreement_one_matches_theoretical"
        return ResolutionOutcome(ResolutionMethod.PENDING, is_flagged=True, flag_reason=reason)

    c3 = quantize_qty(count_3)
    values = {1: c1, 2: c2, 3: c3}
    for majority in (c1, c2, c3):
        agreeing = [n for n, v in values.items() if v == majority]
        if len(agreeing) >= 2:
            outlier = next(n for n, v in values.items() if v != majority)
            if majority == t:
                reason = f"counter_{outlier}_proven_wrong"
            else:
                reason = "variance_confirmed_by_third_count"
            return ResolutionOutcome(
                ResolutionMethod.THIRD_COUNT_DECISIVE,
                final_qty=majority,
                is_flagged=True,
                flag_reason=reason,
                notes=(
                    f"Counts {agreeing[0]} and {agreeing[1]} agree on {majority}; "
                    f"count {outlier} ({values[outlier]}) was the outlier"
                ),
            )

    return ResolutionOutcome(ResolutionMethod.PENDING, is_flagged=True, flag_reason="no_consensus")


def _product_ref(item: CountableItem) -> Dict[str, Any]:
    product = item.product
    return {"id": product.id, "name": product.name, "sku": product.sku, "barcode": product.barcode}


def item_identity(item: CountableItem) -> Dict[str, Any]:
    """Identity fields shared by the counter and supervisor item views."""
    variant = item.variant
    return {
        "id": item.id,
        "product": _product_ref(item),
        "variant": (
            {"id": variant.id, "name": variant.name, "sku": variant.sku, "barcode": variant.barcode}
            if variant is not None else None
        ),
        "location": {"id": item.location.id, "name": item.location.name, "code": item.location.code},
        "warehouse": {"id": item.warehouse.id, "name": item.warehouse.name, "code": item.warehouse.code},
        "unit_of_measure": item.product.unit,
    }


def serialize_reconciliation_item(item: CountableItem) -> Dict[str, Any]:
    """Full supervisor view of an item, theoretical quantity included."""
    data = item_identity(item)
    data.update({
        "theoretical_qty": item.theoretical_qty,
        "count_1_qty": item.count_value(1),
        "count_2_qty": item.count_value(2),
        "count_3_qty": item.count_value(3) if item.third_count_round else None,
        "entries": item.entries,
        "final_qty": item.final_qty,
        "variance": item.variance,
        "variance_percentage": item.variance_percentage,
        "resolution_method": item.resolution_method,
        "resolution_notes": item.resolution_notes,
        "resolved_by_user_id": item.resolved_by_user_id,
        "resolved_at": item.resolved_at,
        "is_flagged": item.is_flagged,
        "flag_reason": item.flag_reason,
        "third_count_round": item.third_count_round,
        "resolution_history": item.resolutions,
    })
    return data


def is_third_count_candidate(item: CountableItem) -> bool:
    return (
        item.resolution_method == ResolutionMethod.PENDING
        and item.count_value(1) is not None
        and item.count_value(2) is not None
    )


class CountingReconciliationService:
    """Resolves countable items and handles supervisor interventions."""

    def __init__(self, db: Session, config: Optional[CountingReconciliationConfig] = None):
        self.db = db
        self.config = config or CountingReconciliationConfig()
        self.audit = CountingAuditService(db)

    # ------------------------------------------------------------------
    # Automatic resolution
    # ------------------------------------------------------------------
    def reconcile_item(self, session: CountingSession, item: CountableItem) -> bool:
        """Resolve a pending item once its required counts are in.

        Returns True when the item was resolved by this call. Items that are
        already resolved are never touched.
        """
        if item.resolution_method != ResolutionMethod.PENDING:
            return False

        count_3 = item.count_value(3) if item.third_count_round else None
        outcome = decide_resolution(
            item.theoretical_qty,
            item.count_value(1),
            item.count_value(2),
            count_3,
            session.requires_count_2,
            self.config,
        )
        if outcome is None:
            return False

        item.is_flagged = outcome.is_flagged
        item.flag_reason = outcome.flag_reason
        if not outcome.resolved:
            return False

        self._apply_resolution(item, outcome.method, outcome.final_qty, outcome.notes, None)
        self.audit.record(
            session,
            CountingEventType.ITEM_AUTO_RESOLVED,
            {
                "method": outcome.method.value,
                "final_qty": item.final_qty,
                "variance": item.variance,
                "flag_reason": item.flag_reason,
            },
            item_id=item.id,
        )
        logger.info(
            f"Item {item.id} of counting session {session.id} resolved as "
            f"{outcome.method.value} (final={item.final_qty}, variance={item.variance})"
        )
        return True

    def reconcile_session(self, session: CountingSession) -> Dict[str, int]:
        """Run the rules over every item of the session."""
        resolved = 0
        for item in session.items:
            if self.reconcile_item(session, item):
                resolved += 1
        pending = sum(1 for i in session.items if i.resolution_method == ResolutionMethod.PENDING)
        logger.info(
            f"Bulk reconciliation of counting session {session.id}: "
            f"{resolved} resolved, {pending} pending"
        )
        return {"resolved": resolved, "pending": pending}

    def _apply_resolution(
        self,
        item: CountableItem,
        method: ResolutionMethod,
        final_qty: Decimal,
        notes: Optional[str],
        user_id: Optional[int],
    ) -> None:
        final_qty = quantize_qty(final_qty)
        theoretical = quantize_qty(item.theoretical_qty)
        variance = final_qty - theoretical
        item.final_qty = final_qty
        item.variance = variance
        item.variance_percentage = variance_percentage(variance, theoretical)
        item.resolution_method = method
        item.resolution_notes = notes
        item.resolved_by_user_id = user_id
        item.resolved_at = datetime.now(timezone.utc)
        item.resolutions.append(
            ItemResolution(
                method=method,
                final_qty=final_qty,
                variance=variance,
                notes=notes,
                resolved_by_user_id=user_id,
            )
        )

    # ------------------------------------------------------------------
    # Supervisor interventions
    # ------------------------------------------------------------------
    def manual_override(
        self, item_id: int, quantity: Any, notes: Optional[str], user_id: int
    ) -> CountableItem:
        """Set an item's final quantity by hand, superseding any prior resolution.

        The item is flagged ``manual_override``. When it was the last open item
        of the running phase, the session advances as after a final count.

        Raises:
            ItemNotInScopeError: Unknown item.
            ManualOverrideRequiresNotesError: Notes shorter than the configured minimum.
            InvalidQuantityError: Negative quantity.
            InvalidStateTransitionError: Session not activated, or already terminal.
        """
        item = self.db.query(CountableItem).filter(CountableItem.id == item_id).first()
        if item is None:
            raise ItemNotInScopeError(item_id, f"Countable item {item_id} not found")

        stripped = (notes or "").strip()
        if len(stripped) < self.config.override_min_notes:
            raise ManualOverrideRequiresNotesError(self.config.override_min_notes)

        quantity = quantize_qty(quantity)
        if quantity < 0:
            raise InvalidQuantityError("Quantity cannot be negative")

        try:
            with session_critical_section(self.db, item.session_id) as session:
                if not session.status.is_activated or session.status.is_terminal:
                    raise InvalidStateTransitionError(
                        session.status.value,
                        ResolutionMethod.MANUAL_OVERRIDE.value,
                        f"Cannot override items of a session in status '{session.status.value}'",
                    )
                previous = item.resolution_method
                previous_flag = item.flag_reason
                self._apply_resolution(
                    item, ResolutionMethod.MANUAL_OVERRIDE, quantity, stripped, user_id
                )
                item.is_flagged = True
                item.flag_reason = ResolutionMethod.MANUAL_OVERRIDE.value
                session.increment_version()
                self.audit.record(
                    session,
                    CountingEventType.ITEM_MANUALLY_OVERRIDDEN,
                    {
                        "previous_method": previous.value,
                        "previous_flag_reason": previous_flag,
                        "final_qty": item.final_qty,
                        "variance": item.variance,
                        "notes": stripped,
                    },
                    user_id=user_id,
                    item_id=item.id,
                )
                # An override can be the last open item of the running phase
                CountingSessionService(self.db).advance_phase(session, user_id=user_id)
                self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(item)
        logger.info(
            f"Item {item.id} manually overridden to {item.final_qty} by user {user_id} "
            f"(previous method {previous.value})"
        )
        return item

    def trigger_third_count(
        self, session_id: int, item_ids: Sequence[int], user_id: int
    ) -> CountingSession:
        """Open a new third-count round over the given disputed items.

        Raises:
            InvalidStateTransitionError: Session is not pending review.
            ThirdCountNotAvailableError: No third count configured, or an item
                is not a disputed pending item with counts 1 and 2.
            ItemNotInScopeError: An item does not belong to the session.
        """
        try:
            with session_critical_section(self.db, session_id) as session:
                if session.status != CountingStatus.PENDING_REVIEW:
                    raise InvalidStateTransitionError(
                        session.status.value, CountingStatus.COUNT_3_IN_PROGRESS.value
                    )
                if not session.requires_count_3 or session.count_3_user_id is None:
                    raise ThirdCountNotAvailableError(
                        "This session has no third count configured"
                    )

                items_by_id = {i.id: i for i in session.items}
                selected: List[CountableItem] = []
                for item_id in dict.fromkeys(item_ids):
                    item = items_by_id.get(item_id)
                    if item is None:
                        raise ItemNotInScopeError(item_id)
                    if not is_third_count_candidate(item):
                        raise ThirdCountNotAvailableError(
                            f"Item {item_id} is not a pending item with counts 1 and 2",
                            item_id=item_id,
                        )
                    selected.append(item)

                new_round = (session.third_count_round or 0) + 1
                transition_session(session, CountingStatus.COUNT_3_IN_PROGRESS)
                session.third_count_round = new_round
                for item in selected:
                    item.third_count_round = new_round

                now = datetime.now(timezone.utc)
                self.db.add(
                    CountingAssignment(
                        session_id=session.id,
                        user_id=session.count_3_user_id,
                        count_number=3,
                        round=new_round,
                        status=AssignmentStatus.IN_PROGRESS,
                        assigned_at=now,
                        started_at=now,
                        deadline=session.scheduled_end,
                        total_items=len(selected),
                        counted_items=0,
                    )
                )
                self.audit.record(
                    session,
                    CountingEventType.THIRD_COUNT_TRIGGERED,
                    {"round": new_round, "item_ids": [i.id for i in selected]},
                    user_id=user_id,
                )
                self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(session)
        logger.info(
            f"Third count round {new_round} opened on counting session {session_id} "
            f"for {len(selected)} item(s)"
        )
        return session

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------
    def get_reconciliation(self, session: CountingSession) -> Dict[str, Any]:
        """Supervisor view: summary plus every item with all its counts."""
        items = list(session.items)
        by_method = {m.value: 0 for m in ResolutionMethod}
        for item in items:
            by_method[item.resolution_method.value] += 1

        return {
            "session_id": session.id,
            "status": session.status,
            "third_count_round": session.third_count_round,
            "summary": {
                "total_items": len(items),
                "by_resolution_method": by_method,
                "pending": by_method[ResolutionMethod.PENDING.value],
                "flagged": sum(1 for i in items if i.is_flagged),
                "third_count_candidates": [i.id for i in items if is_third_count_candidate(i)],
            },
            "items": [serialize_reconciliation_item(i) for i in items],
        }
