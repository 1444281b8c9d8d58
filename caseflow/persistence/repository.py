"""Repository abstraction for case, step and template persistence."""

from __future__ import annotations

from typing import Any, Mapping, Protocol, Sequence

from ..contracts import (
    CaseNumberSettings,
    CaseRecord,
    StepFilter,
    StepInstance,
    StepTemplate,
    WorkflowType,
)

# step id -> field name -> new value
StepChanges = Mapping[str, Mapping[str, Any]]

STEP_FIELDS = frozenset(
    {"status", "deadline", "completed_at", "completed_by_id", "notes"}
)


class CaseRepository(Protocol):
    """Protocol for case persistence backends.

    Every lookup is scoped by ``organization_id``; a record belonging to a
    different organization is reported as missing.
    """

    # Template store
    async def list_templates(
        self,
        organization_id: str,
        workflow_type: WorkflowType,
        active_only: bool = True,
    ) -> list[StepTemplate]:
        """Return templates ordered by ascending step number."""

    async def get_template(
        self, organization_id: str, template_id: str
    ) -> StepTemplate | None:
        """Retrieve one template."""

    async def create_template(self, template: StepTemplate) -> StepTemplate:
        """Persist a new template."""

    async def update_template(self, template: StepTemplate) -> StepTemplate:
        """Overwrite an existing template."""

    async def delete_template(self, organization_id: str, template_id: str) -> bool:
        """Delete a template, returning whether it existed."""

    # Case store
    async def create_case_with_steps(
        self, case: CaseRecord, steps: Sequence[StepInstance]
    ) -> CaseRecord:
        """Persist a case and its steps atomically."""

    async def get_case(self, case_id: str, organization_id: str) -> CaseRecord | None:
        """Retrieve a case with its steps ordered by step number."""

    async def list_cases(
        self, organization_id: str, workflow_type: WorkflowType | None = None
    ) -> list[CaseRecord]:
        """Return the organization's cases, newest first, without steps."""

    async def find_case_by_number(
        self, organization_id: str, workflow_type: WorkflowType, case_number: str
    ) -> CaseRecord | None:
        """Look up a case by its human-readable number."""

    async def delete_case(self, case_id: str, organization_id: str) -> bool:
        """Delete a case and its steps, returning whether it existed."""

    async def find_step_instances(
        self, case_id: str, filters: StepFilter | None = None
    ) -> list[StepInstance]:
        """Return a case's steps matching ``filters`` by ascending step number."""

    async def update_step_instance(
        self, step_id: str, fields: Mapping[str, Any]
    ) -> StepInstance:
        """Apply ``fields`` to one step and return it."""

    async def update_step_instances(self, changes: StepChanges) -> list[StepInstance]:
        """Apply several step updates in a single transaction."""

    async def list_upcoming_deadlines(
        self,
        organization_id: str,
        workflow_type: WorkflowType | None = None,
        limit: int = 5,
    ) -> list[tuple[CaseRecord, StepInstance]]:
        """Open steps with a deadline, soonest first."""

    # Counter store
    async def get_case_number_settings(
        self, organization_id: str, workflow_type: WorkflowType
    ) -> CaseNumberSettings:
        """Return stored settings or the workflow's defaults."""

    async def save_case_number_settings(
        self,
        organization_id: str,
        workflow_type: WorkflowType,
        settings: CaseNumberSettings,
    ) -> None:
        """Persist numbering settings."""

    async def increment_next_number(
        self, organization_id: str, workflow_type: WorkflowType
    ) -> int:
        """Atomically take the next number and advance the stored counter."""


def check_step_fields(fields: Mapping[str, Any]) -> None:
    unknown = set(fields) - STEP_FIELDS
    if unknown:
        raise ValueError(f"Unsupported step fields: {sorted(unknown)}")
