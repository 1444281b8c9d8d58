"""Step generation and cascading deadline computation.

Everything here is pure: functions take records and return new records,
never touching a store. :mod:`caseflow.service` loads the inputs and
persists the results.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import date, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from .contracts import (
    StepCompleted,
    StepEvent,
    StepInstance,
    StepReset,
    StepStatus,
    StepTemplate,
)
from .errors import InvalidInputError, InvalidTransitionError, StepNotFoundError

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[StepStatus, frozenset] = {
    StepStatus.PENDING: frozenset(
        {StepStatus.IN_PROGRESS, StepStatus.COMPLETED, StepStatus.SKIPPED}
    ),
    StepStatus.IN_PROGRESS: frozenset({StepStatus.COMPLETED, StepStatus.SKIPPED}),
    StepStatus.COMPLETED: frozenset({StepStatus.PENDING, StepStatus.SKIPPED}),
    StepStatus.SKIPPED: frozenset(),
}


def transition(current: StepStatus, requested: StepStatus) -> StepStatus:
    """Validate a status change and return the new status.

    Re-asserting the current status is always allowed.
    """
    current, requested = StepStatus(current), StepStatus(requested)
    if requested == current or requested in ALLOWED_TRANSITIONS[current]:
        return requested
    raise InvalidTransitionError(current.value, requested.value)


def _ensure_unique_step_numbers(items: Iterable, kind: str) -> None:
    counts = Counter(item.step_number for item in items)
    duplicates = sorted(number for number, count in counts.items() if count > 1)
    if duplicates:
        raise InvalidInputError(f"Duplicate {kind} step numbers: {duplicates}")


def _validate_templates(templates: Sequence[StepTemplate]) -> None:
    for template in templates:
        if template.step_number <= 0:
            raise InvalidInputError(
                f"Template step number must be positive, got {template.step_number}"
            )
        if template.default_days is not None and template.default_days < 0:
            raise InvalidInputError(
                f"Template step {template.step_number} has negative default_days"
            )
    _ensure_unique_step_numbers(templates, "template")


def generate_steps(
    templates: Sequence[StepTemplate],
    filing_date: date,
    case_id: Optional[str] = None,
) -> List[StepInstance]:
    """Create one pending step per active template with cascading deadlines.

    Each deadline is measured from the previous step's deadline (the filing
    date for the first). A template without ``default_days`` gets no deadline
    and does not move the cursor.
    """
    _validate_templates(templates)
    active = sorted((t for t in templates if t.is_active), key=lambda t: t.step_number)

    cursor = filing_date
    steps: List[StepInstance] = []
    for template in active:
        deadline: Optional[date] = None
        if template.default_days is not None:
            cursor = cursor + timedelta(days=template.default_days)
            deadline = cursor
        steps.append(
            StepInstance(
                case_id=case_id,
                step_number=template.step_number,
                name=template.name,
                description=template.description,
                default_days=template.default_days,
                status=StepStatus.PENDING,
                deadline=deadline,
            )
        )
    return steps


def _days_resolver(
    templates: Optional[Sequence[StepTemplate]],
) -> Callable[[StepInstance], Optional[int]]:
    if templates is None:
        return lambda step: step.default_days

    _validate_templates(templates)
    by_number = {t.step_number: t.default_days for t in templates if t.is_active}

    def resolve(step: StepInstance) -> Optional[int]:
        if step.step_number not in by_number:
            logger.warning(
                f"No active template for step {step.step_number}; "
                "its deadline is left unchanged"
            )
            return None
        return by_number[step.step_number]

    return resolve


def _cascade(
    steps: Iterable[StepInstance],
    base: date,
    days_for: Callable[[StepInstance], Optional[int]],
) -> None:
    cumulative = 0
    for step in steps:
        if step.is_settled:
            continue
        days = days_for(step)
        if days is None:
            continue
        cumulative += days
        deadline = base + timedelta(days=cumulative)
        if step.deadline != deadline:
            logger.debug(f"Step {step.step_number} deadline {step.deadline} -> {deadline}")
        step.deadline = deadline


def recalculate_deadlines(
    steps: Sequence[StepInstance],
    templates: Optional[Sequence[StepTemplate]],
    event: StepEvent,
    filing_date: date,
) -> List[StepInstance]:
    """Return the case's steps with deadlines recomputed after ``event``.

    The event's own status change is applied to its step in the result, so
    ``steps`` may reflect the case before or after the edit. Inputs are not
    mutated.

    Args:
        steps: Every step of one case.
        templates: The organization's templates, matched by step number, or
            ``None`` to use the days each step captured when it was generated.
        event: ``StepCompleted`` or ``StepReset``.
        filing_date: The case's filing date, the base when a reset finds no
            earlier completed step.

    Raises:
        StepNotFoundError: ``event.step_id`` is not one of ``steps``.
        InvalidInputError: duplicate step numbers or bad template values.
    """
    _ensure_unique_step_numbers(steps, "case")
    days_for = _days_resolver(templates)
    ordered = sorted((s.model_copy() for s in steps), key=lambda s: s.step_number)

    target = next((s for s in ordered if s.id == event.step_id), None)
    if target is None:
        raise StepNotFoundError(f"Step {event.step_id} not found")

    if isinstance(event, StepCompleted):
        target.status = StepStatus.COMPLETED
        target.completed_at = event.completed_at
        base = event.completed_at
        anchor_number = target.step_number
    elif isinstance(event, StepReset):
        target.status = StepStatus.PENDING
        target.completed_at = None
        target.completed_by_id = None
        anchor = next(
            (
                s
                for s in reversed(ordered)
                if s.step_number < target.step_number
                and s.status == StepStatus.COMPLETED
                and s.completed_at is not None
            ),
            None,
        )
        base = anchor.completed_at if anchor else filing_date
        anchor_number = anchor.step_number if anchor else 0
    else:
        raise InvalidInputError(f"Unsupported step event: {event!r}")

    _cascade((s for s in ordered if s.step_number > anchor_number), base, days_for)
    logger.info(
        f"Recalculated deadlines after {event.kind} of step {target.step_number} "
        f"from {base}"
    )
    return ordered
