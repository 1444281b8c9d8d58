"""Command line interface for caseflow."""

from __future__ import annotations

import asyncio
import logging
from datetime import date
from typing import Any, Awaitable, Optional, TypeVar

import typer
from pydantic import ValidationError

from caseflow import CaseService, get_repository, load_config
from caseflow.contracts import (
    CaseCreate,
    CaseNumberSettings,
    CaseRecord,
    StepStatus,
    StepTemplate,
    StepUpdate,
    WorkflowType,
)
from caseflow.errors import CaseflowError

T = TypeVar("T")

app = typer.Typer(help="CLI for caseflow grievance and disciplinary cases")

# Command groups
template_app = typer.Typer(help="Commands for managing step templates")
case_app = typer.Typer(help="Commands for managing cases")
step_app = typer.Typer(help="Commands for editing case steps")
numbering_app = typer.Typer(help="Commands for case-number settings")

app.add_typer(template_app, name="template")
app.add_typer(case_app, name="case")
app.add_typer(step_app, name="step")
app.add_typer(numbering_app, name="numbering")

ORG_OPTION = typer.Option(..., "--org", help="Organization id")
WORKFLOW_OPTION = typer.Option(
    WorkflowType.GRIEVANCE, "--workflow", "-w", case_sensitive=False
)


@app.callback()
def main() -> None:
    """caseflow CLI entry point."""
    config = load_config()
    logging.basicConfig(level=config.log_level.upper())


def _service() -> CaseService:
    return CaseService(get_repository(), config=load_config())


def _run(coro: Awaitable[T]) -> T:
    """Run ``coro`` and turn domain and validation errors into exit code 1."""
    try:
        return asyncio.run(coro)
    except (CaseflowError, ValidationError) as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _format_date(value: Optional[date]) -> str:
    return value.isoformat() if value else "-"


def _echo_case(case: CaseRecord) -> None:
    typer.echo(
        f"Case {case.case_number} ({case.workflow_type.value}) "
        f"filed {case.filing_date.isoformat()} [{case.id}]"
    )
    if case.description:
        typer.echo(f"Description: {case.description}")
    today = date.today()
    for step in case.steps:
        line = (
            f"- {step.step_number}. {step.name}: {step.status.value}, "
            f"due {_format_date(step.deadline)}"
        )
        if step.completed_at:
            line += f", completed {step.completed_at.isoformat()}"
        if step.is_overdue(today):
            line += " OVERDUE"
        typer.echo(f"{line} [{step.id}]")


# ----------------------------------------------------------------------
# Templates
@template_app.command("list")
def template_list(
    org: str = ORG_OPTION,
    workflow: WorkflowType = WORKFLOW_OPTION,
    include_inactive: bool = typer.Option(False, "--all", help="Include inactive templates"),
) -> None:
    """List step templates in step order."""
    templates = _run(_service().list_templates(org, workflow, include_inactive))
    if not templates:
        typer.echo("No step templates found")
        return
    for t in templates:
        days = f"{t.default_days}d" if t.default_days is not None else "-"
        state = "active" if t.is_active else "inactive"
        typer.echo(f"{t.step_number}\t{t.name}\t{days}\t{state}\t{t.id}")


@template_app.command("add")
def template_add(
    step_number: int = typer.Option(..., "--step", help="Position in the workflow"),
    name: str = typer.Option(..., "--name"),
    org: str = ORG_OPTION,
    workflow: WorkflowType = WORKFLOW_OPTION,
    days: Optional[int] = typer.Option(None, "--days", help="Default turnaround in days"),
    description: Optional[str] = typer.Option(None, "--description"),
    inactive: bool = typer.Option(False, "--inactive"),
) -> None:
    """
    Add a step template.

    Example:
        caseflow template add --org acme --step 1 --name "Informal meeting" --days 5
    """

    def build() -> StepTemplate:
        return StepTemplate(
            organization_id=org,
            workflow_type=workflow,
            step_number=step_number,
            name=name,
            description=description,
            default_days=days,
            is_active=not inactive,
        )

    async def add() -> StepTemplate:
        return await _service().add_template(build())

    template = _run(add())
    typer.echo(f"Added step {template.step_number}: {template.name} [{template.id}]")


@template_app.command("remove")
def template_remove(template_id: str, org: str = ORG_OPTION) -> None:
    """Delete a step template. Existing cases keep their steps."""
    _run(_service().remove_template(org, template_id))
    typer.echo(f"Removed template {template_id}")


# ----------------------------------------------------------------------
# Cases
@case_app.command("create")
def case_create(
    filing_date: str = typer.Option(..., "--filing-date", help="YYYY-MM-DD"),
    org: str = ORG_OPTION,
    workflow: WorkflowType = WORKFLOW_OPTION,
    description: Optional[str] = typer.Option(None, "--description"),
    actor: Optional[str] = typer.Option(None, "--actor", help="Id of the creating user"),
) -> None:
    """
    Create a case and generate its steps from the active templates.

    Example:
        caseflow case create --org acme --filing-date 2024-01-01
        # Output: Case GR-24-0001 (GRIEVANCE) filed 2024-01-01 [...]
        #         - 1. Informal meeting: PENDING, due 2024-01-06 [...]
    """

    async def create() -> CaseRecord:
        data = CaseCreate(filing_date=filing_date, description=description)
        return await _service().create_case(org, workflow, data, created_by_id=actor)

    _echo_case(_run(create()))


@case_app.command("list")
def case_list(
    org: str = ORG_OPTION,
    workflow: Optional[WorkflowType] = typer.Option(
        None, "--workflow", "-w", case_sensitive=False
    ),
) -> None:
    """List cases, newest first."""
    cases = _run(_service().list_cases(org, workflow))
    if not cases:
        typer.echo("No cases found")
        return
    for case in cases:
        typer.echo(
            f"{case.case_number}\t{case.workflow_type.value}\t"
            f"{case.filing_date.isoformat()}\t{case.id}"
        )


@case_app.command("show")
def case_show(case_id: str, org: str = ORG_OPTION) -> None:
    """Show a case with its steps and deadlines."""
    _echo_case(_run(_service().get_case(org, case_id)))


@case_app.command("delete")
def case_delete(case_id: str, org: str = ORG_OPTION) -> None:
    """Delete a case and all of its steps."""
    _run(_service().delete_case(org, case_id))
    typer.echo(f"Deleted case {case_id}")


# ----------------------------------------------------------------------
# Steps
@step_app.command("update")
def step_update(
    case_id: str,
    step_id: str,
    org: str = ORG_OPTION,
    status: Optional[StepStatus] = typer.Option(None, "--status", case_sensitive=False),
    completed_at: Optional[str] = typer.Option(None, "--completed-at", help="YYYY-MM-DD"),
    deadline: Optional[str] = typer.Option(None, "--deadline", help="YYYY-MM-DD"),
    notes: Optional[str] = typer.Option(None, "--notes"),
    clear_deadline: bool = typer.Option(False, "--clear-deadline", help="Remove the deadline"),
    clear_notes: bool = typer.Option(False, "--clear-notes", help="Remove the notes"),
    actor: Optional[str] = typer.Option(None, "--actor", help="Id of the acting user"),
) -> None:
    """
    Edit a step; completing or resetting it moves later deadlines.

    Example:
        caseflow step update <case-id> <step-id> --org acme --status completed --completed-at 2024-01-10
    """
    if clear_deadline and deadline is not None:
        raise typer.BadParameter("use either --deadline or --clear-deadline")
    if clear_notes and notes is not None:
        raise typer.BadParameter("use either --notes or --clear-notes")

    values: dict[str, Any] = {
        "status": status,
        "completed_at": completed_at,
        "deadline": deadline,
        "notes": notes,
    }
    values = {k: v for k, v in values.items() if v is not None}
    # an explicit None clears the field
    if clear_deadline:
        values["deadline"] = None
    if clear_notes:
        values["notes"] = None

    async def update() -> CaseRecord:
        edit = StepUpdate(**values)
        return await _service().update_step(org, case_id, step_id, edit, actor_id=actor)

    _echo_case(_run(update()))


# ----------------------------------------------------------------------
# Case numbering
@numbering_app.command("show")
def numbering_show(org: str = ORG_OPTION, workflow: WorkflowType = WORKFLOW_OPTION) -> None:
    """Show case-number settings and the next number."""

    async def show() -> tuple:
        service = _service()
        settings = await service.get_case_number_settings(org, workflow)
        return settings, await service.preview_case_number(org, workflow)

    settings, preview = _run(show())
    typer.echo(f"Prefix: {settings.prefix}")
    typer.echo(f"Include year: {settings.include_year}")
    typer.echo(f"Separator: {settings.separator}")
    typer.echo(f"Padding: {settings.padding}")
    typer.echo(f"Next number: {settings.next_number}")
    typer.echo(f"Next case number: {preview}")


@numbering_app.command("set")
def numbering_set(
    org: str = ORG_OPTION,
    workflow: WorkflowType = WORKFLOW_OPTION,
    prefix: Optional[str] = typer.Option(None, "--prefix"),
    include_year: Optional[bool] = typer.Option(None, "--include-year/--no-include-year"),
    separator: Optional[str] = typer.Option(None, "--separator"),
    next_number: Optional[int] = typer.Option(None, "--next-number"),
    padding: Optional[int] = typer.Option(None, "--padding"),
) -> None:
    """Change case-number settings; omitted options keep their current value."""
    changes = {
        "prefix": prefix,
        "include_year": include_year,
        "separator": separator,
        "next_number": next_number,
        "padding": padding,
    }

    async def save() -> str:
        service = _service()
        current = await service.get_case_number_settings(org, workflow)
        settings = CaseNumberSettings.model_validate(
            {**current.model_dump(), **{k: v for k, v in changes.items() if v is not None}}
        )
        await service.save_case_number_settings(org, workflow, settings)
        return await service.preview_case_number(org, workflow)

    typer.echo(f"Saved. Next case number: {_run(save())}")


# ----------------------------------------------------------------------
@app.command("deadlines")
def deadlines(
    org: str = ORG_OPTION,
    workflow: Optional[WorkflowType] = typer.Option(
        None, "--workflow", "-w", case_sensitive=False
    ),
    limit: int = typer.Option(5, "--limit"),
) -> None:
    """List the soonest open step deadlines across the organization."""
    rows = _run(_service().upcoming_deadlines(org, workflow, limit))
    if not rows:
        typer.echo("No upcoming deadlines")
        return
    today = date.today()
    for case, step in rows:
        flag = "\tOVERDUE" if step.is_overdue(today) else ""
        typer.echo(
            f"{step.deadline.isoformat()}\t{case.case_number}\t"
            f"{step.step_number}. {step.name}{flag}"
        )


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
