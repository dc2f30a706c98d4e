from __future__ import annotations

from typing import Any, Literal

DenialReason = Literal["terminal", "no-such-edge", "role-not-permitted", "stale-state"]
ErrorKind = Literal["validation", "authorization", "conflict"]


class LifecycleError(Exception):
    """Base error for application lifecycle and admission rules."""

    code = "lifecycle_error"
    kind: ErrorKind = "conflict"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_detail(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


class InvalidPayloadError(LifecycleError):
    """Raised when a transition payload is missing or malformed."""

    code = "invalid_payload"
    kind: ErrorKind = "validation"


class DeadlinePassedError(LifecycleError):
    """Raised when a posting's application deadline has passed."""

    code = "deadline_passed"
    kind: ErrorKind = "validation"


class TransitionDeniedError(LifecycleError):
    """Raised when a status transition is refused."""

    code = "transition_denied"
    kind: ErrorKind = "authorization"

    def __init__(self, reason: DenialReason, message: str) -> None:
        super().__init__(message)
        self.reason = reason
        if reason == "stale-state":
            self.kind = "conflict"

    def to_detail(self) -> dict[str, Any]:
        return {"code": self.code, "reason": self.reason, "message": self.message}


class VerificationRequiredError(LifecycleError):
    """Raised when an employer without approved KYC tries to publish."""

    code = "verification_required"
    kind: ErrorKind = "authorization"


class ActorNotPermittedError(LifecycleError):
    code = "actor_not_permitted"
    kind: ErrorKind = "authorization"


class DuplicateApplicationError(LifecycleError):
    code = "duplicate_application"
    kind: ErrorKind = "conflict"


class PostingNotOpenError(LifecycleError):
    code = "posting_not_open"
    kind: ErrorKind = "conflict"
