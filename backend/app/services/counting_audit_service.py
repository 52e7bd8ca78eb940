"""Hash-chained audit log for counting sessions.

Every event stores the hash of the previous event of the same session
(``GENESIS`` for the first one) and its own sha256 over the canonical JSON
of its content, so any later edit or deletion breaks the chain.
"""

import hashlib
import json
import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from app.models.counting import CountingEvent, CountingSession, as_utc

logger = logging.getLogger(__name__)

GENESIS_HASH = "GENESIS"


class CountingEventType:
    CREATED = "counting.created"
    SCHEDULED = "counting.scheduled"
    ACTIVATED = "counting.activated"
    COUNT_SUBMITTED = "count.submitted"
    ITEM_AUTO_RESOLVED = "item.auto_resolved"
    ITEM_MANUALLY_OVERRIDDEN = "item.manually_overridden"
    THIRD_COUNT_TRIGGERED = "third_count.triggered"
    PHASE_COMPLETED = "phase.completed"
    FINALIZED = "counting.finalized"
    CANCELLED = "counting.cancelled"


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(v) for v in value]
    return value


def compute_event_hash(
    session_id: int,
    event_type: str,
    event_data: Dict[str, Any],
    user_id: Optional[int],
    item_id: Optional[int],
    created_at: datetime,
    previous_hash: str,
) -> str:
    payload = json.dumps(
        {
            "session_id": session_id,
            "event_type": event_type,
            "event_data": event_data,
            "user_id": user_id,
            "item_id": item_id,
            "created_at": as_utc(created_at).isoformat(),
            "previous_hash": previous_hash,
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class CountingAuditService:
    """Appends and verifies counting events."""

    def __init__(self, db: Session):
        self.db = db

    def _last_hash(self, session_id: int) -> str:
        last = (
            self.db.query(CountingEvent.event_hash)
            .filter(CountingEvent.session_id == session_id)
            .order_by(CountingEvent.id.desc())
            .first()
        )
        return last[0] if last else GENESIS_HASH

    def record(
        self,
        session: CountingSession,
        event_type: str,
        event_data: Optional[Dict[str, Any]] = None,
        user_id: Optional[int] = None,
        item_id: Optional[int] = None,
    ) -> CountingEvent:
        """Append an event to the session's chain (flushed, not committed)."""
        self.db.flush()
        data = _jsonable(event_data or {})
        created_at = datetime.now(timezone.utc)
        previous_hash = self._last_hash(session.id)
        event = CountingEvent(
            session_id=session.id,
            item_id=item_id,
            event_type=event_type,
            event_data=data,
            user_id=user_id,
            previous_hash=previous_hash,
            event_hash=compute_event_hash(
                session.id, event_type, data, user_id, item_id, created_at, previous_hash
            ),
            created_at=created_at,
        )
        self.db.add(event)
        self.db.flush()
        logger.debug(f"Counting event {event_type} recorded for session {session.id}")
        return event

    def list_events(self, session_id: int) -> List[CountingEvent]:
        return (
            self.db.query(CountingEvent)
            .filter(CountingEvent.session_id == session_id)
            .order_by(CountingEvent.id)
            .all()
        )

    def verify_chain(self, session_id: int) -> Dict[str, Any]:
        """Recompute the chain; report the first broken event if any."""
        previous_hash = GENESIS_HASH
        events = self.list_events(session_id)
        for event in events:
            expected = compute_event_hash(
                event.session_id,
                event.event_type,
                event.event_data,
                event.user_id,
                event.item_id,
                event.created_at,
                previous_hash,
            )
            if event.previous_hash != previous_hash or event.event_hash != expected:
                logger.warning(
                    f"Counting audit chain broken for session {session_id} at event {event.id}"
                )
                return {"valid": False, "events_checked": len(events), "broken_at_event_id": event.id}
            previous_hash = event.event_hash
        return {"valid": True, "events_checked": len(events), "broken_at_event_id": None}
