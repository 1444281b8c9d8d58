import asyncio

import pytest
from typer.testing import CliRunner

import caseflow.persistence as persistence
from caseflow.cli import app
from caseflow.contracts import CaseNumberSettings, StepTemplate, WorkflowType
from caseflow.persistence import InMemoryCaseRepository

ORG = "acme"


@pytest.fixture(autouse=True)
def _isolated(tmp_path, monkeypatch):
    monkeypatch.setenv("CASEFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("CASEFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    yield
    persistence.reset_repository()


def _setup_repo(days=(5, 3, None)) -> InMemoryCaseRepository:
    repo = InMemoryCaseRepository()
    for number, d in enumerate(days, start=1):
        asyncio.run(
            repo.create_template(
                StepTemplate(organization_id=ORG, step_number=number, name=f"Step {number}", default_days=d)
            )
        )
    persistence._repository_instance = repo
    return repo


def _only_case(repo):
    (case,) = asyncio.run(repo.list_cases(ORG))
    return asyncio.run(repo.get_case(case.id, ORG))


def test_case_create_prints_steps():
    _setup_repo()

    runner = CliRunner()
    result = runner.invoke(app, ["case", "create", "--org", ORG, "--filing-date", "2024-01-01"])
    assert result.exit_code == 0, f"Command failed with exit code {result.exit_code}. Output: {result.output}"
    output = result.output
    assert "(GRIEVANCE) filed 2024-01-01" in output
    assert "- 1. Step 1: PENDING, due 2024-01-06" in output
    assert "- 2. Step 2: PENDING, due 2024-01-09" in output
    assert "- 3. Step 3: PENDING, due -" in output


def test_step_update_completes_and_cascades():
    repo = _setup_repo()
    runner = CliRunner()
    runner.invoke(app, ["case", "create", "--org", ORG, "--filing-date", "2024-01-01"])
    case = _only_case(repo)

    result = runner.invoke(
        app,
        [
            "step",
            "update",
            case.id,
            case.steps[0].id,
            "--org",
            ORG,
            "--status",
            "completed",
            "--completed-at",
            "2024-01-10",
            "--actor",
            "rep-1",
        ],
    )
    assert result.exit_code == 0, f"Command failed with exit code {result.exit_code}. Output: {result.output}"
    assert "- 1. Step 1: COMPLETED, due 2024-01-06, completed 2024-01-10" in result.output
    assert "- 2. Step 2: PENDING, due 2024-01-13" in result.output

    stored = _only_case(repo)
    assert stored.steps[0].completed_by_id == "rep-1"


def test_step_update_invalid_transition_exits_with_error():
    repo = _setup_repo()
    runner = CliRunner()
    runner.invoke(app, ["case", "create", "--org", ORG, "--filing-date", "2024-01-01"])
    case = _only_case(repo)
    step_id = case.steps[0].id
    runner.invoke(app, ["step", "update", case.id, step_id, "--org", ORG, "--status", "skipped"])

    result = runner.invoke(
        app, ["step", "update", case.id, step_id, "--org", ORG, "--status", "pending"]
    )
    assert result.exit_code == 1
    assert "Cannot move step from SKIPPED to PENDING" in result.output


def test_case_show_missing_and_list_empty():
    _setup_repo()
    runner = CliRunner()

    result = runner.invoke(app, ["case", "list", "--org", ORG])
    assert result.exit_code == 0
    assert "No cases found" in result.output

    missing = runner.invoke(app, ["case", "show", "missing-id", "--org", ORG])
    assert missing.exit_code == 1
    assert "Case missing-id not found" in missing.output


def test_case_list_and_delete():
    repo = _setup_repo()
    runner = CliRunner()
    runner.invoke(app, ["case", "create", "--org", ORG, "--filing-date", "2024-01-01"])
    case = _only_case(repo)

    listed = runner.invoke(app, ["case", "list", "--org", ORG])
    assert case.case_number in listed.output
    assert case.id in listed.output

    deleted = runner.invoke(app, ["case", "delete", case.id, "--org", ORG])
    assert deleted.exit_code == 0
    assert asyncio.run(repo.list_cases(ORG)) == []


def test_template_commands():
    repo = _setup_repo(days=())
    runner = CliRunner()

    added = runner.invoke(
        app, ["template", "add", "--org", ORG, "--step", "1", "--name", "Informal", "--days", "5"]
    )
    assert added.exit_code == 0, added.output
    assert "Added step 1: Informal" in added.output

    duplicate = runner.invoke(
        app, ["template", "add", "--org", ORG, "--step", "1", "--name", "Again"]
    )
    assert duplicate.exit_code == 1
    assert "Step 1 already exists" in duplicate.output

    listed = runner.invoke(app, ["template", "list", "--org", ORG])
    assert "1\tInformal\t5d\tactive" in listed.output

    (template,) = asyncio.run(repo.list_templates(ORG, WorkflowType.GRIEVANCE))
    removed = runner.invoke(app, ["template", "remove", template.id, "--org", ORG])
    assert removed.exit_code == 0
    assert "No step templates found" in runner.invoke(app, ["template", "list", "--org", ORG]).output


def test_numbering_show_and_set():
    repo = _setup_repo()
    runner = CliRunner()

    shown = runner.invoke(app, ["numbering", "show", "--org", ORG, "--workflow", "disciplinary"])
    assert shown.exit_code == 0, shown.output
    assert "Prefix: DC" in shown.output
    assert "Next number: 1" in shown.output

    saved = runner.invoke(
        app,
        ["numbering", "set", "--org", ORG, "--prefix", "GRV", "--no-include-year", "--next-number", "12"],
    )
    assert saved.exit_code == 0, saved.output
    assert "Next case number: GRV-0012" in saved.output
    settings = asyncio.run(repo.get_case_number_settings(ORG, WorkflowType.GRIEVANCE))
    assert settings == CaseNumberSettings(prefix="GRV", include_year=False, next_number=12)

    invalid = runner.invoke(app, ["numbering", "set", "--org", ORG, "--padding", "0"])
    assert invalid.exit_code == 1
    assert "Error:" in invalid.output


def test_deadlines_command():
    repo = _setup_repo()
    runner = CliRunner()

    assert "No upcoming deadlines" in runner.invoke(app, ["deadlines", "--org", ORG]).output

    runner.invoke(app, ["case", "create", "--org", ORG, "--filing-date", "2024-01-01"])
    case = _only_case(repo)
    result = runner.invoke(app, ["deadlines", "--org", ORG, "--limit", "1"])
    assert result.exit_code == 0
    lines = [line for line in result.output.splitlines() if line]
    assert lines == [f"2024-01-06\t{case.case_number}\t1. Step 1\tOVERDUE"]


def test_case_create_rejects_bad_date():
    _setup_repo()
    runner = CliRunner()

    result = runner.invoke(app, ["case", "create", "--org", ORG, "--filing-date", "not-a-date"])
    assert result.exit_code == 1
    assert "Error:" in result.output


def test_step_update_clears_deadline_and_notes():
    repo = _setup_repo()
    runner = CliRunner()
    runner.invoke(app, ["case", "create", "--org", ORG, "--filing-date", "2024-01-01"])
    case = _only_case(repo)
    step_id = case.steps[1].id
    runner.invoke(app, ["step", "update", case.id, step_id, "--org", ORG, "--notes", "Call HR"])

    result = runner.invoke(
        app,
        ["step", "update", case.id, step_id, "--org", ORG, "--clear-deadline", "--clear-notes"],
    )
    assert result.exit_code == 0, result.output
    assert "- 2. Step 2: PENDING, due -" in result.output

    stored = _only_case(repo)
    assert stored.steps[1].deadline is None
    assert stored.steps[1].notes is None
    assert stored.steps[0].deadline is not None

    conflicting = runner.invoke(
        app,
        [
            "step",
            "update",
            case.id,
            step_id,
            "--org",
            ORG,
            "--deadline",
            "2024-03-01",
            "--clear-deadline",
        ],
    )
    assert conflicting.exit_code != 0
    assert asyncio.run(repo.get_case(case.id, ORG)).steps[1].deadline is None
