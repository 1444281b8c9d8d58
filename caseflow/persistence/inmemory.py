"""In-memory implementation of the case repository."""

from __future__ import annotations

from typing import Any, Dict, Mapping, Sequence, Tuple

from ..contracts import (
    OPEN_STATUSES,
    CaseNumberSettings,
    CaseRecord,
    StepFilter,
    StepInstance,
    StepTemplate,
    WorkflowType,
    new_id,
)
from ..errors import StepNotFoundError
from .repository import CaseRepository, StepChanges, check_step_fields


class InMemoryCaseRepository(CaseRepository):
    """Store cases in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never share state with the store.
    """

    def __init__(self) -> None:
        self._templates: Dict[str, StepTemplate] = {}
        self._cases: Dict[str, CaseRecord] = {}
        self._steps: Dict[str, StepInstance] = {}
        self._settings: Dict[Tuple[str, str], CaseNumberSettings] = {}

    # ------------------------------------------------------------------
    # Templates
    async def list_templates(
        self,
        organization_id: str,
        workflow_type: WorkflowType,
        active_only: bool = True,
    ) -> list[StepTemplate]:
        templates = [
            t.model_copy()
            for t in self._templates.values()
            if t.organization_id == organization_id
            and t.workflow_type == workflow_type
            and (t.is_active or not active_only)
        ]
        return sorted(templates, key=lambda t: t.step_number)

    async def get_template(
        self, organization_id: str, template_id: str
    ) -> StepTemplate | None:
        template = self._templates.get(template_id)
        if template is None or template.organization_id != organization_id:
            return None
        return template.model_copy()

    async def create_template(self, template: StepTemplate) -> StepTemplate:
        self._templates[template.id] = template.model_copy()
        return template.model_copy()

    async def update_template(self, template: StepTemplate) -> StepTemplate:
        return await self.create_template(template)

    async def delete_template(self, organization_id: str, template_id: str) -> bool:
        if await self.get_template(organization_id, template_id) is None:
            return False
        del self._templates[template_id]
        return True

    # ------------------------------------------------------------------
    # Cases and steps
    def _case_steps(self, case_id: str) -> list[StepInstance]:
        steps = [s for s in self._steps.values() if s.case_id == case_id]
        return sorted(steps, key=lambda s: s.step_number)

    def _load_case(self, case: CaseRecord, with_steps: bool = True) -> CaseRecord:
        steps = [s.model_copy() for s in self._case_steps(case.id)] if with_steps else []
        return case.model_copy(update={"steps": steps})

    async def create_case_with_steps(
        self, case: CaseRecord, steps: Sequence[StepInstance]
    ) -> CaseRecord:
        stored_steps = [
            s.model_copy(update={"id": s.id or new_id(), "case_id": case.id})
            for s in steps
        ]
        self._cases[case.id] = case.model_copy(update={"steps": []})
        for step in stored_steps:
            self._steps[step.id] = step
        return self._load_case(self._cases[case.id])

    async def get_case(self, case_id: str, organization_id: str) -> CaseRecord | None:
        case = self._cases.get(case_id)
        if case is None or case.organization_id != organization_id:
            return None
        return self._load_case(case)

    async def list_cases(
        self, organization_id: str, workflow_type: WorkflowType | None = None
    ) -> list[CaseRecord]:
        cases = [
            self._load_case(c, with_steps=False)
            for c in self._cases.values()
            if c.organization_id == organization_id
            and (workflow_type is None or c.workflow_type == workflow_type)
        ]
        return sorted(cases, key=lambda c: c.created_at, reverse=True)

    async def find_case_by_number(
        self, organization_id: str, workflow_type: WorkflowType, case_number: str
    ) -> CaseRecord | None:
        for case in self._cases.values():
            if (
                case.organization_id == organization_id
                and case.workflow_type == workflow_type
                and case.case_number == case_number
            ):
                return self._load_case(case)
        return None

    async def delete_case(self, case_id: str, organization_id: str) -> bool:
        if await self.get_case(case_id, organization_id) is None:
            return False
        for step in self._case_steps(case_id):
            del self._steps[step.id]
        del self._cases[case_id]
        return True

    async def find_step_instances(
        self, case_id: str, filters: StepFilter | None = None
    ) -> list[StepInstance]:
        filters = filters or StepFilter()
        return [s.model_copy() for s in self._case_steps(case_id) if filters.matches(s)]

    async def update_step_instance(
        self, step_id: str, fields: Mapping[str, Any]
    ) -> StepInstance:
        updated = await self.update_step_instances({step_id: fields})
        return updated[0]

    async def update_step_instances(self, changes: StepChanges) -> list[StepInstance]:
        # validate the whole batch before touching anything
        for step_id, fields in changes.items():
            if step_id not in self._steps:
                raise StepNotFoundError(f"Step {step_id} not found")
            check_step_fields(fields)
        updated = []
        for step_id, fields in changes.items():
            step = self._steps[step_id].model_copy(update=dict(fields))
            self._steps[step_id] = step
            updated.append(step.model_copy())
        return updated

    async def list_upcoming_deadlines(
        self,
        organization_id: str,
        workflow_type: WorkflowType | None = None,
        limit: int = 5,
    ) -> list[tuple[CaseRecord, StepInstance]]:
        rows = []
        for step in self._steps.values():
            case = self._cases[step.case_id]
            if case.organization_id != organization_id:
                continue
            if workflow_type is not None and case.workflow_type != workflow_type:
                continue
            if step.status in OPEN_STATUSES and step.deadline is not None:
                rows.append((self._load_case(case, with_steps=False), step.model_copy()))
        rows.sort(key=lambda row: (row[1].deadline, row[1].step_number))
        return rows[:limit]

    # ------------------------------------------------------------------
    # Case-number counter
    async def get_case_number_settings(
        self, organization_id: str, workflow_type: WorkflowType
    ) -> CaseNumberSettings:
        stored = self._settings.get((organization_id, WorkflowType(workflow_type).value))
        if stored is None:
            return CaseNumberSettings.defaults_for(workflow_type)
        return stored.model_copy()

    async def save_case_number_settings(
        self,
        organization_id: str,
        workflow_type: WorkflowType,
        settings: CaseNumberSettings,
    ) -> None:
        key = (organization_id, WorkflowType(workflow_type).value)
        self._settings[key] = settings.model_copy()

    async def increment_next_number(
        self, organization_id: str, workflow_type: WorkflowType
    ) -> int:
        key = (organization_id, WorkflowType(workflow_type).value)
        settings = self._settings.get(key) or CaseNumberSettings.defaults_for(
            workflow_type
        )
        number = settings.next_number
        self._settings[key] = settings.model_copy(update={"next_number": number + 1})
        return number
