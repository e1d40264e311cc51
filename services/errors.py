"""
Engine error taxonomy.

Every error carries an internal message (for logs), a friendly
user_message (for notices) and a stable code.
"""

from typing import Optional


class EngineError(Exception):
    """Base exception for engine errors."""

    def __init__(self, message: str, user_message: str, code: str):
        super().__init__(message)
        self.user_message = user_message
        self.code = code


# -----------------------------------------------------------------------------
# Constraint violations (recovered locally, shown as friendly rejections)
# -----------------------------------------------------------------------------

class ConstraintViolation(EngineError):
    """Raised when a store uniqueness constraint rejects a write."""

    def __init__(
        self,
        message: str = "Uniqueness constraint violated",
        user_message: str = "That already exists.",
        code: str = "CONSTRAINT_VIOLATION",
        constraint: Optional[str] = None,
    ):
        super().__init__(message, user_message, code)
        self.constraint = constraint


class DuplicateVoteError(ConstraintViolation):
    """Raised when a user votes twice for the same request."""

    def __init__(self, request_id: str, user_id: str):
        super().__init__(
            f"User {user_id} already voted for request {request_id}",
            "You have already voted for this request",
            "ALREADY_VOTED",
            constraint="user_votes_request_id_user_id_key",
        )
        self.request_id = request_id
        self.user_id = user_id


class DuplicateRequesterError(ConstraintViolation):
    """Raised when the same person attaches to a request twice."""

    def __init__(self, request_id: str, name: str):
        super().__init__(
            f"Requester '{name}' already attached to request {request_id}",
            "You have already requested this song!",
            "DUPLICATE_REQUESTER",
            constraint="requesters_request_id_name_key",
        )
        self.request_id = request_id
        self.name = name


# -----------------------------------------------------------------------------
# Network / store failures
# -----------------------------------------------------------------------------

class NetworkFailure(EngineError):
    """Raised on transport errors. The only retried class."""

    def __init__(self, message: str = "Network request failed"):
        super().__init__(
            message,
            "Network error. Please check your connection and try again.",
            "NETWORK_FAILURE",
        )


class StoreError(EngineError):
    """Raised for any other store-level failure. Never retried."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(
            message,
            "Something went wrong. Please try again.",
            "STORE_ERROR",
        )
        self.status_code = status_code


# -----------------------------------------------------------------------------
# Rejections before any store call
# -----------------------------------------------------------------------------

class ValidationFailure(EngineError):
    """Raised when input is missing or malformed."""

    def __init__(self, field: str, message: str):
        super().__init__(
            f"Invalid {field}: {message}",
            message,
            "VALIDATION_FAILED",
        )
        self.field = field


class NotFoundError(EngineError):
    """Raised when an addressed entity does not exist."""

    def __init__(self, kind: str, entity_id: str):
        super().__init__(
            f"{kind} {entity_id} not found",
            f"That {kind.lower()} no longer exists.",
            "NOT_FOUND",
        )
        self.kind = kind
        self.entity_id = entity_id


class InvariantViolation(EngineError):
    """Raised when an action would break a queue or set-list invariant."""

    def __init__(self, message: str, user_message: str, code: str = "INVARIANT_VIOLATION"):
        super().__init__(message, user_message, code)


class RequestPlayedError(InvariantViolation):
    """Raised when acting on a request that has already been played."""

    def __init__(self, request_id: str):
        super().__init__(
            f"Request {request_id} is already played",
            "That song has already been played.",
            "REQUEST_PLAYED",
        )
        self.request_id = request_id


class ActiveSetListError(InvariantViolation):
    """Raised when deleting the active set list."""

    def __init__(self, set_list_id: str):
        super().__init__(
            f"Set list {set_list_id} is active",
            "Deactivate this set list before deleting it.",
            "SET_LIST_ACTIVE",
        )
        self.set_list_id = set_list_id


class MutationInFlightError(EngineError):
    """Raised when an entity already has an unconfirmed local change."""

    def __init__(self, entity_id: str):
        super().__init__(
            f"Mutation already in flight for {entity_id}",
            "Still working on your last change. Please wait a moment.",
            "MUTATION_IN_FLIGHT",
        )
        self.entity_id = entity_id
