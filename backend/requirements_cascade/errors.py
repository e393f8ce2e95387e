"""Error taxonomy for the requirements cascade subsystem."""
from __future__ import annotations

from typing import List, Optional


class RequirementsError(Exception):
    """Base error. `kind` is the machine-readable code surfaced to callers."""

    kind = "requirements_error"

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": str(self), "action": "retry"}


class TransientStoreError(RequirementsError):
    """Network failure or timeout talking to the store. Retryable at request level."""

    kind = "store_unavailable"


class UniqueConstraintViolation(RequirementsError):
    """An insert collided with an existing unique key."""

    kind = "unique_violation"

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.key = key


class AllocationExhausted(RequirementsError):
    """The optimistic allocator spent its attempt budget without a successful insert."""

    kind = "allocation_exhausted"

    def __init__(self, attempts: int, last_candidate: Optional[str] = None):
        super().__init__(
            f"Could not allocate a unique order number after {attempts} attempts"
            + (f" (last candidate {last_candidate})" if last_candidate else "")
        )
        self.attempts = attempts
        self.last_candidate = last_candidate


class PartialUpdateFailure(RequirementsError):
    """Some raw material rows failed to persist. Succeeded rows are kept."""

    kind = "partial_update"

    def __init__(self, failed_ids: List[str], total: int):
        super().__init__(f"Failed to update {len(failed_ids)} of {total} raw materials")
        self.failed_ids = list(failed_ids)
        self.total = total

    @property
    def failed_count(self) -> int:
        return len(self.failed_ids)


class ConfigurationMissing(RequirementsError):
    """A step name has no entry in the tenant's step sequence."""

    kind = "configuration_missing"

    def __init__(self, step_name: str):
        super().__init__(f"No step order configured for step '{step_name}'")
        self.step_name = step_name


class RecordNotFound(RequirementsError):
    kind = "not_found"


class InvalidRequest(RequirementsError):
    """Caller input that breaks a domain rule."""

    kind = "invalid_request"


class InvalidReworkRequest(InvalidRequest):
    kind = "invalid_rework"
