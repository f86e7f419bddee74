"""Error taxonomy for judgment operations."""

from __future__ import annotations

from .models import NoWinnerReason


class CCRError(Exception):
    """Base class; ``entity`` identifies the offending record."""

    def __init__(self, message: str, entity: str | None = None):
        super().__init__(message)
        self.message = message
        self.entity = entity


class ValidationError(CCRError):
    """Raised when a required field is missing or malformed."""


class NotFoundError(CCRError):
    """Raised when a referenced voting, resource or member does not exist."""


class ConflictError(CCRError):
    """Raised when a write collides with existing state."""


class DuplicateDistributionError(ConflictError):
    pass


class ConcludedConcurrentlyError(ConflictError):
    pass


class StateError(CCRError):
    """Raised when an operation is invalid for the current state."""


class IncompleteAgendaError(StateError):
    def __init__(self, message: str, entity: str | None = None,
                 session_resource_id: str | None = None):
        super().__init__(message, entity)
        self.session_resource_id = session_resource_id


class AuthorizationError(CCRError):
    pass


_NO_WINNER_MESSAGES = {
    NoWinnerReason.INCOMPLETE: "not all members have voted yet",
    NoWinnerReason.QUALITY_VOTE_PENDING: "voting is tied and the presiding member has not cast the quality vote",
    NoWinnerReason.TIED_AFTER_QUALITY_VOTE: "voting is still tied after the quality vote; a new vote is required",
    NoWinnerReason.NO_VOTES: "no position received any vote",
}


class NoWinnerError(CCRError):
    """Raised when a voting cannot be concluded."""

    def __init__(self, reason: NoWinnerReason, entity: str | None = None,
                 pending_member_ids: list[str] | None = None):
        message = _NO_WINNER_MESSAGES[reason]
        pending = pending_member_ids or []
        if pending:
            message = f"{message} (pending: {', '.join(pending)})"
        super().__init__(message, entity)
        self.reason = reason
        self.pending_member_ids = pending
