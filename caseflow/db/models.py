from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import Column, DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel


class StepTemplateRow(SQLModel, table=True):
    """Organization-level step definition for one workflow type."""

    __tablename__ = "step_templates"
    __table_args__ = (
        UniqueConstraint("organization_id", "workflow_type", "step_number"),
    )

    id: str = Field(primary_key=True)
    organization_id: str = Field(index=True)
    workflow_type: str
    step_number: int
    name: str
    description: Optional[str] = None
    default_days: Optional[int] = None
    is_active: bool = True


class CaseRow(SQLModel, table=True):
    """A grievance or disciplinary case."""

    __tablename__ = "cases"
    __table_args__ = (
        UniqueConstraint("organization_id", "workflow_type", "case_number"),
    )

    id: str = Field(primary_key=True)
    organization_id: str = Field(index=True)
    workflow_type: str
    case_number: str
    filing_date: date
    description: Optional[str] = None
    created_by_id: Optional[str] = None
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


class CaseStepRow(SQLModel, table=True):
    """One step of a case."""

    __tablename__ = "case_steps"
    __table_args__ = (UniqueConstraint("case_id", "step_number"),)

    id: str = Field(primary_key=True)
    case_id: str = Field(foreign_key="cases.id", index=True)
    step_number: int
    name: str
    description: Optional[str] = None
    default_days: Optional[int] = None
    status: str = Field(default="PENDING")
    deadline: Optional[date] = None
    completed_at: Optional[date] = None
    completed_by_id: Optional[str] = None
    notes: Optional[str] = None


class CaseNumberSettingRow(SQLModel, table=True):
    """Case-number format and counter per organization and workflow."""

    __tablename__ = "case_number_settings"

    organization_id: str = Field(primary_key=True)
    workflow_type: str = Field(primary_key=True)
    prefix: str
    include_year: bool = True
    separator: str = "-"
    next_number: int = 1
    padding: int = 4
