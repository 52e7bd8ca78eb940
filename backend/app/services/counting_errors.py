"""Domain errors raised by the counting services.

Each error carries the HTTP status it maps to and a stable machine code;
``app.main`` turns them into ``{"detail", "code", ...}`` JSON responses.
"""

from typing import Any, Dict, Iterable, List, Optional


class CountingError(Exception):
    """Base class for every counting domain error."""

    status_code = 400
    code = "counting_error"

    def __init__(self, message: str, **extra: Any):
        self.message = message
        self.extra = extra
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "code": self.code, **self.extra}


class InvalidScopeError(CountingError):
    """Scope filters are malformed or resolve to no items."""

    status_code = 422
    code = "invalid_scope"


class SequentialModeRequiredError(CountingError):
    """One user was named for more than one count in a parallel session."""

    status_code = 422
    code = "sequential_mode_required"

    def __init__(self, user_id: int):
        self.user_id = user_id
        super().__init__(
            f"User {user_id} is assigned to more than one count; "
            "this requires sequential execution mode",
            user_id=user_id,
        )


class InvalidCountingConfigurationError(CountingError):
    """The counter assignment does not match the required counts."""

    status_code = 422
    code = "invalid_counting_configuration"


class InvalidStateTransitionError(CountingError):
    """The requested status change is not in the transition table."""

    status_code = 409
    code = "invalid_state_transition"

    def __init__(self, current: str, target: str, message: Optional[str] = None):
        self.current = current
        self.target = target
        super().__init__(
            message or f"Cannot transition session from '{current}' to '{target}'",
            current_status=current,
            target_status=target,
        )


class SessionCancelledError(CountingError):
    """The session was cancelled; no further writes are accepted."""

    status_code = 409
    code = "session_cancelled"

    def __init__(self, session_id: int):
        self.session_id = session_id
        super().__init__(f"Counting session {session_id} has been cancelled")


class SessionNotFoundError(CountingError):
    status_code = 404
    code = "session_not_found"

    def __init__(self, session_id: Any):
        self.session_id = session_id
        super().__init__(f"Counting session {session_id} not found")


class CountingUnauthorizedError(CountingError):
    """The user holds no open assignment allowing this action."""

    status_code = 403
    code = "unauthorized"


class InvalidQuantityError(CountingError):
    status_code = 422
    code = "invalid_quantity"


class ItemNotInScopeError(CountingError):
    status_code = 404
    code = "item_not_in_scope"

    def __init__(self, item_id: Any, message: Optional[str] = None):
        self.item_id = item_id
        super().__init__(message or f"Item {item_id} is not part of this counting session")


class ItemAlreadyResolvedError(CountingError):
    """A different value was submitted for an item that is already resolved."""

    status_code = 409
    code = "item_already_resolved"

    def __init__(self, item_id: int):
        self.item_id = item_id
        super().__init__(f"Item {item_id} is already resolved", item_id=item_id)


class UnresolvedItemsError(CountingError):
    """Finalization was attempted while items remain pending."""

    status_code = 409
    code = "unresolved_items"

    def __init__(self, item_ids: Iterable[int]):
        self.item_ids: List[int] = sorted(item_ids)
        super().__init__(
            f"{len(self.item_ids)} item(s) are still unresolved",
            item_ids=self.item_ids,
        )


class ManualOverrideRequiresNotesError(CountingError):
    status_code = 422
    code = "manual_override_requires_notes"

    def __init__(self, min_length: int):
        self.min_length = min_length
        super().__init__(
            f"A manual override requires notes of at least {min_length} characters",
            min_length=min_length,
        )


class ThirdCountNotAvailableError(CountingError):
    status_code = 409
    code = "third_count_not_available"
