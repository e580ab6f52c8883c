from dataclasses import dataclass, field
from typing import ClassVar, List

PROBLEM_BASE = "https://example.com/problems"


@dataclass
class DomainError(Exception):
    detail: str
    title: str = "Domain Error"
    type: str = f"{PROBLEM_BASE}/domain-error"
    errors: List[dict] | None = None

    status_code: ClassVar[int] = 400

    def __str__(self) -> str:
        return self.detail


@dataclass
class ValidationError(DomainError):
    title: str = "Validation Error"
    type: str = f"{PROBLEM_BASE}/validation-error"

    status_code: ClassVar[int] = 422


@dataclass
class NotFoundError(DomainError):
    title: str = "Not Found"
    type: str = f"{PROBLEM_BASE}/not-found"

    status_code: ClassVar[int] = 404


@dataclass
class ConflictError(DomainError):
    title: str = "Conflict"
    type: str = f"{PROBLEM_BASE}/conflict"

    status_code: ClassVar[int] = 409


@dataclass
class CapacityExceededError(ConflictError):
    title: str = "Capacity Exceeded"
    type: str = f"{PROBLEM_BASE}/capacity-exceeded"


@dataclass
class AlreadyEnrolledError(ConflictError):
    title: str = "Already Enrolled"
    type: str = f"{PROBLEM_BASE}/already-enrolled"


@dataclass
class NotEnrolledError(ConflictError):
    title: str = "Not Enrolled"
    type: str = f"{PROBLEM_BASE}/not-enrolled"


@dataclass
class DuplicateWaitlistError(ConflictError):
    title: str = "Already On Waitlist"
    type: str = f"{PROBLEM_BASE}/duplicate-waitlist"


@dataclass
class DuplicateSubscriptionError(ConflictError):
    title: str = "Duplicate Subscription"
    type: str = f"{PROBLEM_BASE}/duplicate-subscription"


@dataclass
class SlotUnavailableError(ConflictError):
    title: str = "Slot Unavailable"
    type: str = f"{PROBLEM_BASE}/slot-unavailable"


@dataclass
class CascadeConflictError(ConflictError):
    title: str = "Cascade Conflict"
    type: str = f"{PROBLEM_BASE}/cascade-conflict"
    instance_id: int | None = None

    def __post_init__(self) -> None:
        if self.errors is None and self.instance_id is not None:
            self.errors = [{"instance_id": self.instance_id, "message": self.detail}]


@dataclass
class TokenNotFoundError(NotFoundError):
    title: str = "Token Not Found"
    type: str = f"{PROBLEM_BASE}/token-not-found"


@dataclass
class TokenExpiredError(DomainError):
    title: str = "Token Expired"
    type: str = f"{PROBLEM_BASE}/token-expired"

    status_code: ClassVar[int] = 410


@dataclass
class TokenAlreadyUsedError(ConflictError):
    title: str = "Token Already Used"
    type: str = f"{PROBLEM_BASE}/token-already-used"


@dataclass
class UnavailableError(DomainError):
    detail: str = "Storage temporarily unavailable"
    title: str = "Service Unavailable"
    type: str = f"{PROBLEM_BASE}/unavailable"
    retry_after_seconds: int = field(default=1)

    status_code: ClassVar[int] = 503
