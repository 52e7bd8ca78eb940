"""Discrepancy reporting over reconciled counting sessions (read-only)."""

import logging
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from app.models.counting import (
    CountableItem,
    CountEntry,
    CountingSession,
    CountingStatus,
    ResolutionMethod,
)
from app.models.user import User
from app.services.counting_reconciliation_service import serialize_reconciliation_item

logger = logging.getLogger(__name__)

_ZERO = Decimal("0")


def _new_tally(user_id: int) -> Dict[str, Any]:
    return {
        "user_id": user_id,
        "name": None,
        "count_numbers": set(),
        "items_counted": 0,
        "matched_other_counter": 0,
        "matched_theoretical": 0,
        "overruled_by_third_count": 0,
        "confirmed_by_third_count": 0,
        "matched_final": 0,
    }


def _rate(part: int, whole: int) -> Optional[Decimal]:
    if not whole:
        return None
    return (Decimal(part) / Decimal(whole) * 100).quantize(
        Decimal("0.01"), rounding=ROUND_HALF_UP
    )


def _tally_item(tallies: Dict[int, Dict[str, Any]], item: CountableItem) -> None:
    """Add one item's entries to the per-counter tallies."""
    first_round = {
        e.count_number: e.quantity for e in item.entries if e.count_number in (1, 2)
    }
    for entry in item.entries:
        tally = tallies.setdefault(entry.submitted_by_user_id, _new_tally(entry.submitted_by_user_id))
        tally["count_numbers"].add(entry.count_number)
        tally["items_counted"] += 1

        if entry.count_number in (1, 2):
            others = [q for n, q in first_round.items() if n != entry.count_number]
        else:
            others = list(first_round.values())
        if any(q == entry.quantity for q in others):
            tally["matched_other_counter"] += 1
        if entry.quantity == item.theoretical_qty:
            tally["matched_theoretical"] += 1
        if item.final_qty is not None and entry.quantity == item.final_qty:
            tally["matched_final"] += 1
        if (
            entry.count_number in (1, 2)
            and item.resolution_method == ResolutionMethod.THIRD_COUNT_DECISIVE
        ):
            if entry.quantity == item.final_qty:
                tally["confirmed_by_third_count"] += 1
            else:
                tally["overruled_by_third_count"] += 1


class DiscrepancyReportService:
    """Builds discrepancy reports and counter performance figures."""

    def __init__(self, db: Session):
        self.db = db

    def _finish_tallies(self, tallies: Dict[int, Dict[str, Any]]) -> List[Dict[str, Any]]:
        if not tallies:
            return []
        names = dict(
            self.db.query(User.id, User.name).filter(User.id.in_(list(tallies))).all()
        )
        result = []
        for user_id in sorted(tallies):
            tally = tallies[user_id]
            tally["name"] = names.get(user_id)
            tally["count_numbers"] = sorted(tally["count_numbers"])
            tally["accuracy_rate"] = _rate(tally["matched_final"], tally["items_counted"])
            # How often the counter was right when a third count settled a disagreement
            tally["reliability_score"] = _rate(
                tally["confirmed_by_third_count"],
                tally["confirmed_by_third_count"] + tally["overruled_by_third_count"],
            )
            result.append(tally)
        return result

    def counter_statistics(self, items: Iterable[CountableItem]) -> List[Dict[str, Any]]:
        tallies: Dict[int, Dict[str, Any]] = {}
        for item in items:
            _tally_item(tallies, item)
        return self._finish_tallies(tallies)

    def build_report(self, session: CountingSession) -> Dict[str, Any]:
        """Summary, flagged and needs-attention items, variance and counter figures."""
        items = list(session.items)
        by_method = {m.value: 0 for m in ResolutionMethod}
        positive = negative = _ZERO
        for item in items:
            by_method[item.resolution_method.value] += 1
            if item.variance is not None and item.resolution_method != ResolutionMethod.PENDING:
                if item.variance > 0:
                    positive += item.variance
                elif item.variance < 0:
                    negative += item.variance

        flagged = [i for i in items if i.is_flagged]
        needs_attention = [
            i for i in items
            if i.resolution_method == ResolutionMethod.PENDING
            or (i.is_flagged and i.resolution_method != ResolutionMethod.MANUAL_OVERRIDE)
        ]

        logger.debug(
            f"Discrepancy report for session {session.id}: {len(flagged)} flagged, "
            f"{len(needs_attention)} need attention"
        )
        return {
            "session_id": session.id,
            "session_uuid": session.uuid,
            "status": session.status,
            "generated_at": datetime.now(timezone.utc),
            "total_items": len(items),
            "by_resolution_method": by_method,
            "flagged_count": len(flagged),
            "flagged_items": [serialize_reconciliation_item(i) for i in flagged],
            "needs_attention": [serialize_reconciliation_item(i) for i in needs_attention],
            "variance": {"positive": positive, "negative": negative, "net": positive + negative},
            "counters": self.counter_statistics(items),
        }

    def counter_performance(self, user_id: int) -> Dict[str, Any]:
        """The counter's figures aggregated over every finalized session."""
        items = (
            self.db.query(CountableItem)
            .join(CountingSession, CountingSession.id == CountableItem.session_id)
            .join(CountEntry, CountEntry.item_id == CountableItem.id)
            .filter(
                CountingSession.status == CountingStatus.FINALIZED,
                CountEntry.submitted_by_user_id == user_id,
            )
            .distinct()
            .all()
        )
        tallies: Dict[int, Dict[str, Any]] = {}
        for item in items:
            _tally_item(tallies, item)
        rows = self._finish_tallies(tallies)
        mine = next((r for r in rows if r["user_id"] == user_id), None)
        if mine is None:
            mine = self._finish_tallies({user_id: _new_tally(user_id)})[0]
        mine["sessions_counted"] = len({i.session_id for i in items})
        return mine
