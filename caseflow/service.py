"""Case service: the operations API handlers call.

Loads records from the repository, runs the deadline engine and the
case-number allocator, and writes the results back.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import CaseflowConfig, load_config
from .constants import DEFAULT_UPCOMING_LIMIT
from .contracts import (
    CaseCreate,
    CaseNumberSettings,
    CaseRecord,
    StepCompleted,
    StepEvent,
    StepInstance,
    StepReset,
    StepStatus,
    StepTemplate,
    StepUpdate,
    WorkflowType,
)
from .engine import generate_steps, recalculate_deadlines, transition
from .errors import (
    CaseNotFoundError,
    DuplicateStepNumberError,
    InvalidInputError,
    StepNotFoundError,
    TemplateNotFoundError,
)
from .numbering import CaseNumberAllocator
from .persistence import CaseRepository, get_repository

logger = logging.getLogger(__name__)

# statuses that record who acted on the step
_ACTOR_STATUSES = (StepStatus.IN_PROGRESS, StepStatus.COMPLETED, StepStatus.SKIPPED)


class CaseService:
    """Creates cases and applies step edits for one repository."""

    def __init__(
        self,
        repository: CaseRepository | None = None,
        config: CaseflowConfig | None = None,
        today: Optional[Callable[[], date]] = None,
    ) -> None:
        self._config = config or load_config()
        self._repository = repository or get_repository()
        self._today = today or date.today
        self._allocator = CaseNumberAllocator(
            self._repository,
            max_attempts=self._config.numbering.max_attempts,
            today=self._today,
        )

    @property
    def repository(self) -> CaseRepository:
        return self._repository

    # ------------------------------------------------------------------
    # Cases
    async def create_case(
        self,
        organization_id: str,
        workflow_type: WorkflowType,
        data: CaseCreate,
        created_by_id: Optional[str] = None,
    ) -> CaseRecord:
        """Create a case with its steps generated from the active templates.

        Raises:
            CaseNumberConflictError: no unique case number could be allocated;
                nothing is written.
        """
        workflow_type = WorkflowType(workflow_type)
        templates = await self._repository.list_templates(organization_id, workflow_type)
        # generate before allocating so bad templates never burn a number
        steps = generate_steps(templates, data.filing_date)

        case_number = await self._allocator.allocate(organization_id, workflow_type)
        case = CaseRecord(
            organization_id=organization_id,
            workflow_type=workflow_type,
            case_number=case_number,
            filing_date=data.filing_date,
            description=data.description,
            created_by_id=created_by_id,
        )
        created = await self._repository.create_case_with_steps(case, steps)
        logger.info(
            f"Created {workflow_type.value.lower()} case {created.case_number} "
            f"with {len(created.steps)} steps for organization={organization_id}"
        )
        return created

    async def get_case(self, organization_id: str, case_id: str) -> CaseRecord:
        case = await self._repository.get_case(case_id, organization_id)
        if case is None:
            raise CaseNotFoundError(f"Case {case_id} not found")
        return case

    async def list_cases(
        self, organization_id: str, workflow_type: WorkflowType | None = None
    ) -> List[CaseRecord]:
        return await self._repository.list_cases(organization_id, workflow_type)

    async def delete_case(self, organization_id: str, case_id: str) -> None:
        if not await self._repository.delete_case(case_id, organization_id):
            raise CaseNotFoundError(f"Case {case_id} not found")
        logger.info(f"Deleted case {case_id} for organization={organization_id}")

    # ------------------------------------------------------------------
    # Steps
    async def update_step(
        self,
        organization_id: str,
        case_id: str,
        step_id: str,
        update: StepUpdate,
        actor_id: Optional[str] = None,
    ) -> CaseRecord:
        """Apply a partial step edit and cascade deadlines when required.

        Completing a step or changing a completed step's date recomputes the
        later steps from the completion date. Resetting a completed step to
        pending recomputes from the nearest earlier completion, or the filing
        date. The edit and all recomputed deadlines are written together.
        """
        case = await self.get_case(organization_id, case_id)
        step = case.step(step_id)
        if step is None:
            raise StepNotFoundError(f"Step {step_id} not found in case {case_id}")

        fields, event = self._resolve_edit(step, update, actor_id)
        changes: Dict[str, Dict[str, Any]] = {step.id: fields}

        moved = 0
        if event is not None:
            templates = await self._templates_for_recalculation(case)
            # recalculate over the edited steps so walked steps override a manual deadline
            edited = [
                s.model_copy(update=fields) if s.id == step.id else s for s in case.steps
            ]
            recalculated = recalculate_deadlines(
                edited, templates, event, case.filing_date
            )
            previous = {s.id: s.deadline for s in edited}
            for new in recalculated:
                if new.deadline != previous[new.id]:
                    changes.setdefault(new.id, {})["deadline"] = new.deadline
                    moved += 1

        changes = {sid: f for sid, f in changes.items() if f}
        if not changes:
            return case

        await self._repository.update_step_instances(changes)
        logger.info(
            f"Updated step {step.step_number} of case {case.case_number}"
            + (f" ({event.kind}, {moved} deadlines moved)" if event else "")
        )
        return await self.get_case(organization_id, case_id)

    def _resolve_edit(
        self, step: StepInstance, update: StepUpdate, actor_id: Optional[str]
    ) -> Tuple[Dict[str, Any], Optional[StepEvent]]:
        requested = update.model_fields_set
        fields: Dict[str, Any] = {}

        status = step.status
        if "status" in requested:
            if update.status is None:
                raise InvalidInputError("Step status cannot be cleared")
            status = transition(step.status, update.status)
            fields["status"] = status
            if status in _ACTOR_STATUSES:
                fields["completed_by_id"] = actor_id
            elif status == StepStatus.PENDING:
                fields["completed_by_id"] = None
        if "notes" in requested:
            fields["notes"] = update.notes
        if "deadline" in requested:
            fields["deadline"] = update.deadline

        event: Optional[StepEvent] = None
        if status == StepStatus.COMPLETED:
            completed_at = None
            if "completed_at" in requested:
                if update.completed_at is None:
                    raise InvalidInputError("A completed step needs a completion date")
                completed_at = update.completed_at
            elif step.status != StepStatus.COMPLETED:
                completed_at = self._today()
            if completed_at is not None:
                fields["completed_at"] = completed_at
                event = StepCompleted(step_id=step.id, completed_at=completed_at)
        else:
            if "completed_at" in requested and update.completed_at is not None:
                raise InvalidInputError(
                    "completed_at can only be set on a completed step"
                )
            # skipping a completed step keeps its completion history
            if step.completed_at is not None and status == StepStatus.PENDING:
                fields["completed_at"] = None
            if status == StepStatus.PENDING and step.status == StepStatus.COMPLETED:
                event = StepReset(step_id=step.id)
        return fields, event

    async def _templates_for_recalculation(
        self, case: CaseRecord
    ) -> Optional[List[StepTemplate]]:
        if self._config.engine.template_binding == "snapshot":
            return None
        return await self._repository.list_templates(
            case.organization_id, case.workflow_type
        )

    async def upcoming_deadlines(
        self,
        organization_id: str,
        workflow_type: WorkflowType | None = None,
        limit: int = DEFAULT_UPCOMING_LIMIT,
    ) -> List[Tuple[CaseRecord, StepInstance]]:
        """Open steps with deadlines across the organization, soonest first."""
        return await self._repository.list_upcoming_deadlines(
            organization_id, workflow_type, limit
        )

    # ------------------------------------------------------------------
    # Templates
    async def list_templates(
        self,
        organization_id: str,
        workflow_type: WorkflowType,
        include_inactive: bool = False,
    ) -> List[StepTemplate]:
        return await self._repository.list_templates(
            organization_id, workflow_type, active_only=not include_inactive
        )

    async def _ensure_step_number_free(self, template: StepTemplate) -> None:
        existing = await self._repository.list_templates(
            template.organization_id, template.workflow_type, active_only=False
        )
        for other in existing:
            if other.step_number == template.step_number and other.id != template.id:
                raise DuplicateStepNumberError(
                    f"Step {template.step_number} already exists for "
                    f"{template.workflow_type.value.lower()} templates"
                )

    async def add_template(self, template: StepTemplate) -> StepTemplate:
        await self._ensure_step_number_free(template)
        return await self._repository.create_template(template)

    async def update_template(self, template: StepTemplate) -> StepTemplate:
        """Overwrite a template. Steps already generated from it keep their copies."""
        existing = await self._repository.get_template(
            template.organization_id, template.id
        )
        if existing is None:
            raise TemplateNotFoundError(f"Step template {template.id} not found")
        template = template.model_copy(update={"workflow_type": existing.workflow_type})
        await self._ensure_step_number_free(template)
        return await self._repository.update_template(template)

    async def remove_template(self, organization_id: str, template_id: str) -> None:
        if not await self._repository.delete_template(organization_id, template_id):
            raise TemplateNotFoundError(f"Step template {template_id} not found")

    # ------------------------------------------------------------------
    # Case numbering
    async def get_case_number_settings(
        self, organization_id: str, workflow_type: WorkflowType
    ) -> CaseNumberSettings:
        return await self._repository.get_case_number_settings(
            organization_id, WorkflowType(workflow_type)
        )

    async def save_case_number_settings(
        self,
        organization_id: str,
        workflow_type: WorkflowType,
        settings: CaseNumberSettings,
    ) -> None:
        await self._repository.save_case_number_settings(
            organization_id, WorkflowType(workflow_type), settings
        )

    async def preview_case_number(
        self, organization_id: str, workflow_type: WorkflowType
    ) -> str:
        return await self._allocator.preview(organization_id, WorkflowType(workflow_type))
