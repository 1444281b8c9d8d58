"""Exception hierarchy for caseflow."""

from __future__ import annotations


class CaseflowError(Exception):
    """Base class for all caseflow errors."""


class InvalidInputError(CaseflowError, ValueError):
    """Input rejected before any computation took place."""


class InvalidTransitionError(InvalidInputError):
    """A step status change not permitted by the step state machine."""

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(f"Cannot move step from {current} to {requested}")
        self.current = current
        self.requested = requested


class NotFoundError(CaseflowError, LookupError):
    """A referenced record does not exist in the caller's organization."""


class CaseNotFoundError(NotFoundError):
    pass


class StepNotFoundError(NotFoundError):
    pass


class TemplateNotFoundError(NotFoundError):
    pass


class ConflictError(CaseflowError):
    """The request collides with existing state."""


class CaseNumberConflictError(ConflictError):
    """Every allocation attempt produced a case number already in use."""

    def __init__(self, attempts: int, last_candidate: str) -> None:
        super().__init__(
            f"Could not allocate a unique case number after {attempts} attempts "
            f"(last candidate {last_candidate})"
        )
        self.attempts = attempts
        self.last_candidate = last_candidate


class DuplicateStepNumberError(ConflictError):
    """A template with the same step number already exists."""
