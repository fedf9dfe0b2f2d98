"""
school_progression/exceptions.py
Typed exceptions for the stage progression engine

Provides typed exceptions for:
- Requirement catalog guards
- Evidence review transitions
- Progression persistence failures
- Conflicts resolved internally (never surfaced to callers)
"""
from typing import Optional


class ProgressionException(Exception):
    """Base exception for the progression engine"""
    status_code: int = 500
    code: str = "PROGRESSION_ERROR"

    def __init__(self, message: str, status_code: int = None):
        self.message = message
        if status_code:
            self.status_code = status_code
        super().__init__(self.message)


class SchoolNotFound(ProgressionException):
    status_code = 404
    code = "SCHOOL_NOT_FOUND"

    def __init__(self, school_id: str):
        self.school_id = school_id
        super().__init__(f"School {school_id} not found", self.status_code)


class RequirementNotFound(ProgressionException):
    status_code = 404
    code = "REQUIREMENT_NOT_FOUND"

    def __init__(self, requirement_id: str):
        self.requirement_id = requirement_id
        super().__init__(f"Evidence requirement {requirement_id} not found", self.status_code)


class RequirementInUse(ProgressionException):
    """
    Raised when a requirement is still referenced by evidence or overrides.

    Deleting it would rewrite history for every school that relied on it.
    """
    status_code = 409
    code = "REQUIREMENT_IN_USE"

    def __init__(self, requirement_id: str, evidence_count: int = 0, override_count: int = 0):
        self.requirement_id = requirement_id
        self.evidence_count = evidence_count
        self.override_count = override_count
        super().__init__(
            f"Evidence requirement {requirement_id} is referenced by "
            f"{evidence_count} evidence record(s) and {override_count} override(s)",
            self.status_code,
        )


class EvidenceNotFound(ProgressionException):
    status_code = 404
    code = "EVIDENCE_NOT_FOUND"

    def __init__(self, evidence_id: str):
        self.evidence_id = evidence_id
        super().__init__(f"Evidence {evidence_id} not found", self.status_code)


class EvidenceValidationError(ProgressionException):
    """
    Raised when a submission or edit carries inconsistent data.

    Examples:
    - Requirement belongs to a different stage
    - Round number below 1
    """
    status_code = 400
    code = "EVIDENCE_INVALID"


class InvalidReviewTransition(ProgressionException):
    status_code = 400
    code = "STATE_TRANSITION_INVALID"

    def __init__(self, evidence_id: str, from_status: str, to_status: str):
        self.evidence_id = evidence_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Cannot move evidence {evidence_id} from {from_status} to {to_status}",
            self.status_code,
        )


class EvidenceNotDeletable(ProgressionException):
    status_code = 409
    code = "EVIDENCE_NOT_DELETABLE"

    def __init__(self, evidence_id: str, status: str):
        self.evidence_id = evidence_id
        self.status = status
        super().__init__(
            f"Evidence {evidence_id} is {status}; only pending evidence can be deleted",
            self.status_code,
        )


class RoundNotComplete(ProgressionException):
    status_code = 409
    code = "PREREQUISITE_NOT_MET"

    def __init__(self, school_id: str, round_number: int):
        self.school_id = school_id
        self.round_number = round_number
        super().__init__(
            f"School {school_id} has not completed round {round_number}",
            self.status_code,
        )


class PersistenceFailure(ProgressionException):
    """
    Raised when the derived progression record cannot be written.

    The enclosing transaction is rolled back, so the triggering evidence
    change is not applied either.
    """
    status_code = 503
    code = "PERSISTENCE_FAILURE"

    def __init__(self, message: str, school_id: Optional[str] = None):
        self.school_id = school_id
        super().__init__(message, self.status_code)


class InvalidRoundTransition(ProgressionException):
    """Recompute requested for a round the school has not reached. Handled internally."""
    code = "ROUND_MISMATCH"

    def __init__(self, school_id: str, requested_round: int, current_round: int):
        self.school_id = school_id
        self.requested_round = requested_round
        self.current_round = current_round
        super().__init__(
            f"School {school_id} is in round {current_round}, recompute asked for round {requested_round}"
        )


class ConcurrentOverrideConflict(ProgressionException):
    """A concurrent toggle removed the override between insert and delete. Retried internally."""
    code = "OVERRIDE_CONFLICT"

    def __init__(self, school_id: str, requirement_id: str, round_number: int):
        self.school_id = school_id
        self.requirement_id = requirement_id
        self.round_number = round_number
        super().__init__(
            f"Override toggle raced for school {school_id}, requirement {requirement_id}, round {round_number}"
        )


class UnflushedChanges(ProgressionException):
    """
    Raised when a progression transaction is opened on a session that
    still holds pending writes. Those writes would otherwise be committed
    without the school lock.
    """
    status_code = 500
    code = "UNFLUSHED_CHANGES"

    def __init__(self, pending: int):
        self.pending = pending
        super().__init__(
            f"Session has {pending} pending change(s); commit or roll back before a progression write",
            self.status_code,
        )
