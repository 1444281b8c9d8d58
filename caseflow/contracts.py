"""Core records exchanged between the deadline engine, the stores and callers."""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, Field

from .constants import DEFAULT_CASE_PREFIXES


def new_id() -> str:
    return str(uuid.uuid4())


class WorkflowType(str, Enum):
    """The two case workflows an organization configures steps for."""

    GRIEVANCE = "GRIEVANCE"
    DISCIPLINARY = "DISCIPLINARY"


class StepStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    SKIPPED = "SKIPPED"


SETTLED_STATUSES = (StepStatus.COMPLETED, StepStatus.SKIPPED)
OPEN_STATUSES = (StepStatus.PENDING, StepStatus.IN_PROGRESS)


class StepTemplate(BaseModel):
    """Organization-level definition of one canonical workflow step."""

    id: str = Field(default_factory=new_id)
    organization_id: str
    workflow_type: WorkflowType = WorkflowType.GRIEVANCE
    step_number: int = Field(gt=0)
    name: str = Field(min_length=1)
    description: Optional[str] = None
    default_days: Optional[int] = Field(
        default=None, ge=0, description="Turnaround in calendar days"
    )
    is_active: bool = True


class StepInstance(BaseModel):
    """A concrete step attached to one case.

    ``step_number``, ``name``, ``description`` and ``default_days`` are copied
    from the template when the case is created so later template edits never
    rewrite a past case. ``id`` is assigned by the store on insert.
    """

    id: Optional[str] = None
    case_id: Optional[str] = None
    step_number: int = Field(gt=0)
    name: str
    description: Optional[str] = None
    default_days: Optional[int] = Field(default=None, ge=0)
    status: StepStatus = StepStatus.PENDING
    deadline: Optional[date] = None
    completed_at: Optional[date] = None
    completed_by_id: Optional[str] = None
    notes: Optional[str] = None

    @property
    def is_settled(self) -> bool:
        """Completed and skipped steps keep their history untouched."""
        return self.status in SETTLED_STATUSES

    def is_overdue(self, today: date) -> bool:
        return (
            self.status in OPEN_STATUSES
            and self.deadline is not None
            and self.deadline < today
        )


class CaseRecord(BaseModel):
    """A grievance or disciplinary case and its ordered steps."""

    id: str = Field(default_factory=new_id)
    organization_id: str
    workflow_type: WorkflowType = WorkflowType.GRIEVANCE
    case_number: str
    filing_date: date
    description: Optional[str] = None
    created_by_id: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    steps: List[StepInstance] = Field(default_factory=list)

    def step(self, step_id: str) -> Optional[StepInstance]:
        return next((s for s in self.steps if s.id == step_id), None)


class CaseCreate(BaseModel):
    """Caller-supplied fields for a new case."""

    filing_date: date
    description: Optional[str] = None


class StepUpdate(BaseModel):
    """Partial edit of a step.

    Only fields present in ``model_fields_set`` are applied, so an explicit
    ``None`` clears a value while an omitted field leaves it alone.
    """

    status: Optional[StepStatus] = None
    notes: Optional[str] = None
    completed_at: Optional[date] = None
    deadline: Optional[date] = None


class CaseNumberSettings(BaseModel):
    """Per-organization format and counter for case numbers."""

    prefix: str = Field(default="GR", min_length=1, max_length=10)
    include_year: bool = True
    separator: str = Field(default="-", min_length=1, max_length=3)
    next_number: int = Field(default=1, ge=1)
    padding: int = Field(default=4, ge=1, le=10)

    @classmethod
    def defaults_for(cls, workflow_type: WorkflowType) -> "CaseNumberSettings":
        return cls(prefix=DEFAULT_CASE_PREFIXES[WorkflowType(workflow_type).value])


class StepCompleted(BaseModel):
    """A step was completed, or the completion date of a completed step changed."""

    kind: Literal["completed"] = "completed"
    step_id: str
    completed_at: date


class StepReset(BaseModel):
    """A completed step was moved back to pending."""

    kind: Literal["reset"] = "reset"
    step_id: str


StepEvent = Union[StepCompleted, StepReset]


class StepFilter(BaseModel):
    """Criteria for ``find_step_instances``. Step number bounds are exclusive."""

    after_step_number: Optional[int] = None
    before_step_number: Optional[int] = None
    statuses: Optional[List[StepStatus]] = None
    exclude_statuses: Optional[List[StepStatus]] = None

    def matches(self, step: StepInstance) -> bool:
        if self.after_step_number is not None and step.step_number <= self.after_step_number:
            return False
        if self.before_step_number is not None and step.step_number >= self.before_step_number:
            return False
        if self.statuses is not None and step.status not in self.statuses:
            return False
        if self.exclude_statuses is not None and step.status in self.exclude_statuses:
            return False
        return True
