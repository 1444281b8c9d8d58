from datetime import date

import pytest

from caseflow.config import CaseflowConfig, EngineConfig, NumberingConfig
from caseflow.contracts import (
    CaseCreate,
    CaseNumberSettings,
    StepStatus,
    StepTemplate,
    StepUpdate,
    WorkflowType,
)
from caseflow.errors import (
    CaseNotFoundError,
    CaseNumberConflictError,
    DuplicateStepNumberError,
    InvalidInputError,
    InvalidTransitionError,
    StepNotFoundError,
    TemplateNotFoundError,
)
from caseflow.persistence import InMemoryCaseRepository
from caseflow.service import CaseService

ORG = "org-1"
TODAY = date(2024, 1, 15)


async def _service(days=(5, 3, None), config=None):
    repo = InMemoryCaseRepository()
    service = CaseService(repo, config=config or CaseflowConfig(), today=lambda: TODAY)
    for number, d in enumerate(days, start=1):
        await service.add_template(
            StepTemplate(organization_id=ORG, step_number=number, name=f"Step {number}", default_days=d)
        )
    return service


async def _new_case(service, filing=date(2024, 1, 1)):
    return await service.create_case(
        ORG, WorkflowType.GRIEVANCE, CaseCreate(filing_date=filing), created_by_id="rep-1"
    )


@pytest.mark.asyncio
async def test_create_case_generates_steps_and_number():
    service = await _service()

    case = await _new_case(service)

    assert case.case_number == "GR-24-0001"
    assert case.created_by_id == "rep-1"
    assert [s.deadline for s in case.steps] == [date(2024, 1, 6), date(2024, 1, 9), None]
    assert all(s.id for s in case.steps)
    assert all(s.case_id == case.id for s in case.steps)

    again = await _new_case(service)
    assert again.case_number == "GR-24-0002"


@pytest.mark.asyncio
async def test_create_case_without_templates_has_no_steps():
    service = await _service(days=())

    case = await _new_case(service)

    assert case.steps == []


@pytest.mark.asyncio
async def test_create_case_ignores_inactive_templates():
    service = await _service(days=(5,))
    await service.add_template(
        StepTemplate(
            organization_id=ORG, step_number=2, name="Old", default_days=9, is_active=False
        )
    )

    case = await _new_case(service)

    assert [s.name for s in case.steps] == ["Step 1"]


@pytest.mark.asyncio
async def test_create_case_conflict_writes_nothing():
    config = CaseflowConfig(numbering=NumberingConfig(max_attempts=1))
    service = await _service(config=config)
    first = await _new_case(service)
    await service.save_case_number_settings(
        ORG, WorkflowType.GRIEVANCE, CaseNumberSettings(prefix="GR", next_number=1)
    )

    with pytest.raises(CaseNumberConflictError):
        await _new_case(service)

    cases = await service.list_cases(ORG)
    assert [c.id for c in cases] == [first.id]


@pytest.mark.asyncio
async def test_complete_step_cascades_and_records_actor():
    service = await _service()
    case = await _new_case(service)
    step1 = case.steps[0]

    updated = await service.update_step(
        ORG,
        case.id,
        step1.id,
        StepUpdate(status=StepStatus.COMPLETED, completed_at=date(2024, 1, 10)),
        actor_id="rep-2",
    )

    first, second, third = updated.steps
    assert first.status == StepStatus.COMPLETED
    assert first.completed_at == date(2024, 1, 10)
    assert first.completed_by_id == "rep-2"
    assert first.deadline == date(2024, 1, 6)
    assert second.deadline == date(2024, 1, 13)
    assert third.deadline is None


@pytest.mark.asyncio
async def test_complete_without_date_defaults_to_today():
    service = await _service()
    case = await _new_case(service)

    updated = await service.update_step(
        ORG, case.id, case.steps[0].id, StepUpdate(status=StepStatus.COMPLETED)
    )

    assert updated.steps[0].completed_at == TODAY
    assert updated.steps[1].deadline == date(2024, 1, 18)


@pytest.mark.asyncio
async def test_changing_completion_date_moves_later_deadlines():
    service = await _service()
    case = await _new_case(service)
    step_id = case.steps[0].id
    await service.update_step(
        ORG, case.id, step_id, StepUpdate(status=StepStatus.COMPLETED, completed_at=date(2024, 1, 10))
    )

    updated = await service.update_step(
        ORG, case.id, step_id, StepUpdate(completed_at=date(2024, 1, 4))
    )

    assert updated.steps[0].completed_at == date(2024, 1, 4)
    assert updated.steps[1].deadline == date(2024, 1, 7)


@pytest.mark.asyncio
async def test_reset_completed_step_recomputes_from_filing_date():
    service = await _service()
    case = await _new_case(service)
    step_id = case.steps[0].id
    await service.update_step(
        ORG,
        case.id,
        step_id,
        StepUpdate(status=StepStatus.COMPLETED, completed_at=date(2024, 1, 20)),
        actor_id="rep-2",
    )

    updated = await service.update_step(
        ORG, case.id, step_id, StepUpdate(status=StepStatus.PENDING)
    )

    first, second, _ = updated.steps
    assert first.status == StepStatus.PENDING
    assert first.completed_at is None
    assert first.completed_by_id is None
    assert first.deadline == date(2024, 1, 6)
    assert second.deadline == date(2024, 1, 9)


@pytest.mark.asyncio
async def test_in_progress_records_actor_without_recalculating():
    service = await _service()
    case = await _new_case(service)

    updated = await service.update_step(
        ORG,
        case.id,
        case.steps[0].id,
        StepUpdate(status=StepStatus.IN_PROGRESS, notes="Meeting booked"),
        actor_id="rep-3",
    )

    assert updated.steps[0].status == StepStatus.IN_PROGRESS
    assert updated.steps[0].completed_by_id == "rep-3"
    assert updated.steps[0].notes == "Meeting booked"
    assert [s.deadline for s in updated.steps] == [s.deadline for s in case.steps]


@pytest.mark.asyncio
async def test_skipped_step_keeps_its_deadline_during_cascade():
    service = await _service(days=(5, 3, 4))
    case = await _new_case(service)
    await service.update_step(
        ORG, case.id, case.steps[1].id, StepUpdate(status=StepStatus.SKIPPED)
    )

    updated = await service.update_step(
        ORG,
        case.id,
        case.steps[0].id,
        StepUpdate(status=StepStatus.COMPLETED, completed_at=date(2024, 1, 10)),
    )

    assert updated.steps[1].deadline == date(2024, 1, 9)
    assert updated.steps[2].deadline == date(2024, 1, 14)


@pytest.mark.asyncio
async def test_manual_deadline_edit():
    service = await _service()
    case = await _new_case(service)

    updated = await service.update_step(
        ORG, case.id, case.steps[2].id, StepUpdate(deadline=date(2024, 2, 1))
    )

    assert updated.steps[2].deadline == date(2024, 2, 1)
    assert updated.steps[1].deadline == date(2024, 1, 9)


@pytest.mark.asyncio
async def test_reset_with_deadline_uses_recalculated_deadline():
    service = await _service()
    case = await _new_case(service)
    step_id = case.steps[0].id
    await service.update_step(
        ORG, case.id, step_id, StepUpdate(status=StepStatus.COMPLETED, completed_at=date(2024, 1, 20))
    )

    updated = await service.update_step(
        ORG,
        case.id,
        step_id,
        StepUpdate(status=StepStatus.PENDING, deadline=date(2024, 2, 1)),
    )

    assert updated.steps[0].status == StepStatus.PENDING
    assert updated.steps[0].deadline == date(2024, 1, 6)
    assert updated.steps[1].deadline == date(2024, 1, 9)


@pytest.mark.asyncio
async def test_complete_with_deadline_keeps_it_on_the_completed_step():
    service = await _service()
    case = await _new_case(service)

    updated = await service.update_step(
        ORG,
        case.id,
        case.steps[0].id,
        StepUpdate(
            status=StepStatus.COMPLETED,
            completed_at=date(2024, 1, 10),
            deadline=date(2024, 1, 8),
        ),
    )

    assert updated.steps[0].deadline == date(2024, 1, 8)
    assert updated.steps[1].deadline == date(2024, 1, 13)


@pytest.mark.asyncio
async def test_skipping_completed_step_keeps_completion_date():
    service = await _service()
    case = await _new_case(service)
    step_id = case.steps[0].id
    await service.update_step(
        ORG, case.id, step_id, StepUpdate(status=StepStatus.COMPLETED, completed_at=date(2024, 1, 5))
    )

    updated = await service.update_step(
        ORG, case.id, step_id, StepUpdate(status=StepStatus.SKIPPED), actor_id="rep-4"
    )

    assert updated.steps[0].status == StepStatus.SKIPPED
    assert updated.steps[0].completed_at == date(2024, 1, 5)
    assert updated.steps[0].completed_by_id == "rep-4"
    assert updated.steps[1].deadline == date(2024, 1, 8)


@pytest.mark.asyncio
async def test_snapshot_binding_ignores_template_edits():
    config = CaseflowConfig(engine=EngineConfig(template_binding="snapshot"))
    service = await _service(config=config)
    case = await _new_case(service)
    template = (await service.list_templates(ORG, WorkflowType.GRIEVANCE))[1]
    await service.update_template(template.model_copy(update={"default_days": 30}))

    updated = await service.update_step(
        ORG,
        case.id,
        case.steps[0].id,
        StepUpdate(status=StepStatus.COMPLETED, completed_at=date(2024, 1, 10)),
    )

    assert updated.steps[1].deadline == date(2024, 1, 13)


@pytest.mark.asyncio
async def test_current_binding_follows_template_edits():
    service = await _service()
    case = await _new_case(service)
    template = (await service.list_templates(ORG, WorkflowType.GRIEVANCE))[1]
    await service.update_template(template.model_copy(update={"default_days": 30}))

    updated = await service.update_step(
        ORG,
        case.id,
        case.steps[0].id,
        StepUpdate(status=StepStatus.COMPLETED, completed_at=date(2024, 1, 10)),
    )

    assert updated.steps[1].deadline == date(2024, 2, 9)


@pytest.mark.asyncio
async def test_invalid_transition_is_rejected():
    service = await _service()
    case = await _new_case(service)
    step_id = case.steps[0].id
    await service.update_step(ORG, case.id, step_id, StepUpdate(status=StepStatus.SKIPPED))

    with pytest.raises(InvalidTransitionError):
        await service.update_step(
            ORG, case.id, step_id, StepUpdate(status=StepStatus.PENDING)
        )


@pytest.mark.asyncio
async def test_completion_date_rules():
    service = await _service()
    case = await _new_case(service)
    step_id = case.steps[0].id

    with pytest.raises(InvalidInputError):
        await service.update_step(
            ORG, case.id, step_id, StepUpdate(completed_at=date(2024, 1, 3))
        )

    await service.update_step(ORG, case.id, step_id, StepUpdate(status=StepStatus.COMPLETED))
    with pytest.raises(InvalidInputError):
        await service.update_step(ORG, case.id, step_id, StepUpdate(completed_at=None))


@pytest.mark.asyncio
async def test_update_step_missing_records():
    service = await _service()
    case = await _new_case(service)

    with pytest.raises(CaseNotFoundError):
        await service.update_step(ORG, "missing", case.steps[0].id, StepUpdate(notes="x"))
    with pytest.raises(StepNotFoundError):
        await service.update_step(ORG, case.id, "missing", StepUpdate(notes="x"))
    with pytest.raises(CaseNotFoundError):
        await service.update_step("other-org", case.id, case.steps[0].id, StepUpdate(notes="x"))


@pytest.mark.asyncio
async def test_empty_update_returns_case_unchanged():
    service = await _service()
    case = await _new_case(service)

    result = await service.update_step(ORG, case.id, case.steps[0].id, StepUpdate())

    assert result == case


@pytest.mark.asyncio
async def test_upcoming_deadlines_sorted_and_limited():
    service = await _service(days=(5, 3, 4))
    early = await _new_case(service, filing=date(2024, 1, 1))
    late = await _new_case(service, filing=date(2024, 3, 1))
    await service.update_step(
        ORG, early.id, early.steps[0].id, StepUpdate(status=StepStatus.SKIPPED)
    )

    rows = await service.upcoming_deadlines(ORG, limit=3)

    assert [(c.case_number, s.step_number) for c, s in rows] == [
        (early.case_number, 2),
        (early.case_number, 3),
        (late.case_number, 1),
    ]
    assert await service.upcoming_deadlines("other-org") == []


@pytest.mark.asyncio
async def test_delete_case():
    service = await _service()
    case = await _new_case(service)

    await service.delete_case(ORG, case.id)

    with pytest.raises(CaseNotFoundError):
        await service.get_case(ORG, case.id)
    with pytest.raises(CaseNotFoundError):
        await service.delete_case(ORG, case.id)


@pytest.mark.asyncio
async def test_template_step_numbers_are_unique():
    service = await _service(days=(5, 3))

    with pytest.raises(DuplicateStepNumberError):
        await service.add_template(
            StepTemplate(organization_id=ORG, step_number=2, name="Again", default_days=1)
        )

    # the other workflow has its own numbering
    await service.add_template(
        StepTemplate(
            organization_id=ORG,
            workflow_type=WorkflowType.DISCIPLINARY,
            step_number=2,
            name="Hearing",
        )
    )


@pytest.mark.asyncio
async def test_template_update_and_remove():
    service = await _service(days=(5, 3))
    first, second = await service.list_templates(ORG, WorkflowType.GRIEVANCE)

    with pytest.raises(DuplicateStepNumberError):
        await service.update_template(second.model_copy(update={"step_number": 1}))

    await service.update_template(second.model_copy(update={"is_active": False}))
    assert len(await service.list_templates(ORG, WorkflowType.GRIEVANCE)) == 1
    assert (
        len(await service.list_templates(ORG, WorkflowType.GRIEVANCE, include_inactive=True))
        == 2
    )

    await service.remove_template(ORG, first.id)
    with pytest.raises(TemplateNotFoundError):
        await service.remove_template(ORG, first.id)
    with pytest.raises(TemplateNotFoundError):
        await service.update_template(first)


@pytest.mark.asyncio
async def test_template_removal_keeps_existing_case_steps():
    service = await _service(days=(5,))
    case = await _new_case(service)
    (template,) = await service.list_templates(ORG, WorkflowType.GRIEVANCE)

    await service.remove_template(ORG, template.id)

    reloaded = await service.get_case(ORG, case.id)
    assert [s.name for s in reloaded.steps] == ["Step 1"]


@pytest.mark.asyncio
async def test_case_number_settings_round_trip():
    service = await _service()
    settings = CaseNumberSettings(
        prefix="GRV", include_year=False, separator="/", next_number=50, padding=5
    )

    await service.save_case_number_settings(ORG, WorkflowType.GRIEVANCE, settings)

    assert await service.get_case_number_settings(ORG, WorkflowType.GRIEVANCE) == settings
    assert await service.preview_case_number(ORG, WorkflowType.GRIEVANCE) == "GRV/00050"
    case = await _new_case(service)
    assert case.case_number == "GRV/00050"
