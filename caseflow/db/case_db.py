from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncIterator, Mapping, Sequence

from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlmodel import SQLModel, select

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
from ..persistence.repository import CaseRepository, StepChanges, check_step_fields
from .models import CaseNumberSettingRow, CaseRow, CaseStepRow, StepTemplateRow

logger = logging.getLogger(__name__)


def normalize_database_url(database_url: str) -> str:
    """Point plain PostgreSQL URLs at the asyncpg driver."""
    for scheme in ("postgres://", "postgresql://"):
        if database_url.startswith(scheme):
            return "postgresql+asyncpg://" + database_url[len(scheme):]
    return database_url


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _row_values(model: Any, exclude: set[str] | None = None) -> dict[str, Any]:
    return {k: _plain(v) for k, v in model.model_dump(exclude=exclude).items()}


def _to_template(row: StepTemplateRow) -> StepTemplate:
    return StepTemplate.model_validate(row.model_dump())


def _to_step(row: CaseStepRow) -> StepInstance:
    return StepInstance.model_validate(row.model_dump())


def _to_case(row: CaseRow, steps: Sequence[CaseStepRow] = ()) -> CaseRecord:
    return CaseRecord.model_validate(
        {**row.model_dump(), "steps": [_to_step(s) for s in steps]}
    )


class OrmCaseRepository(CaseRepository):
    """Case repository on SQLModel tables over an async SQLAlchemy engine.

    Works with ``sqlite+aiosqlite`` and ``postgresql+asyncpg`` URLs. Tables are
    created on first use.
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = normalize_database_url(database_url)
        connect_args = (
            {"check_same_thread": False} if self.database_url.startswith("sqlite") else {}
        )
        self.engine = create_async_engine(
            self.database_url, echo=False, future=True, connect_args=connect_args
        )
        self._initialized = False

    async def init_db(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        self._initialized = True

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        if not self._initialized:
            await self.init_db()
        async with AsyncSession(self.engine, expire_on_commit=False) as session:
            yield session

    async def dispose(self) -> None:
        await self.engine.dispose()

    # ------------------------------------------------------------------
    # Templates
    async def list_templates(
        self,
        organization_id: str,
        workflow_type: WorkflowType,
        active_only: bool = True,
    ) -> list[StepTemplate]:
        stmt = select(StepTemplateRow).where(
            StepTemplateRow.organization_id == organization_id,
            StepTemplateRow.workflow_type == _plain(workflow_type),
        )
        if active_only:
            stmt = stmt.where(StepTemplateRow.is_active == True)  # noqa: E712
        async with self.session() as session:
            result = await session.execute(stmt.order_by(StepTemplateRow.step_number))
            return [_to_template(r) for r in result.scalars().all()]

    async def get_template(
        self, organization_id: str, template_id: str
    ) -> StepTemplate | None:
        async with self.session() as session:
            row = await session.get(StepTemplateRow, template_id)
            if row is None or row.organization_id != organization_id:
                return None
            return _to_template(row)

    async def create_template(self, template: StepTemplate) -> StepTemplate:
        async with self.session() as session:
            session.add(StepTemplateRow(**_row_values(template)))
            await session.commit()
        return template

    async def update_template(self, template: StepTemplate) -> StepTemplate:
        async with self.session() as session:
            await session.merge(StepTemplateRow(**_row_values(template)))
            await session.commit()
        return template

    async def delete_template(self, organization_id: str, template_id: str) -> bool:
        async with self.session() as session:
            row = await session.get(StepTemplateRow, template_id)
            if row is None or row.organization_id != organization_id:
                return False
            await session.delete(row)
            await session.commit()
            return True

    # ------------------------------------------------------------------
    # Cases and steps
    async def _step_rows(self, session: AsyncSession, case_id: str) -> list[CaseStepRow]:
        result = await session.execute(
            select(CaseStepRow)
            .where(CaseStepRow.case_id == case_id)
            .order_by(CaseStepRow.step_number)
        )
        return list(result.scalars().all())

    async def create_case_with_steps(
        self, case: CaseRecord, steps: Sequence[StepInstance]
    ) -> CaseRecord:
        stored_steps = [
            s.model_copy(update={"id": s.id or new_id(), "case_id": case.id})
            for s in steps
        ]
        async with self.session() as session:
            async with session.begin():
                session.add(CaseRow(**_row_values(case, exclude={"steps"})))
                # the case row must exist before its steps reference it
                await session.flush()
                session.add_all(CaseStepRow(**_row_values(s)) for s in stored_steps)
        return case.model_copy(update={"steps": stored_steps})

    async def get_case(self, case_id: str, organization_id: str) -> CaseRecord | None:
        async with self.session() as session:
            row = await session.get(CaseRow, case_id)
            if row is None or row.organization_id != organization_id:
                return None
            return _to_case(row, await self._step_rows(session, case_id))

    async def list_cases(
        self, organization_id: str, workflow_type: WorkflowType | None = None
    ) -> list[CaseRecord]:
        stmt = select(CaseRow).where(CaseRow.organization_id == organization_id)
        if workflow_type is not None:
            stmt = stmt.where(CaseRow.workflow_type == _plain(workflow_type))
        async with self.session() as session:
            result = await session.execute(stmt.order_by(CaseRow.created_at.desc()))
            return [_to_case(r) for r in result.scalars().all()]

    async def find_case_by_number(
        self, organization_id: str, workflow_type: WorkflowType, case_number: str
    ) -> CaseRecord | None:
        async with self.session() as session:
            result = await session.execute(
                select(CaseRow).where(
                    CaseRow.organization_id == organization_id,
                    CaseRow.workflow_type == _plain(workflow_type),
                    CaseRow.case_number == case_number,
                )
            )
            row = result.scalars().first()
            return _to_case(row) if row else None

    async def delete_case(self, case_id: str, organization_id: str) -> bool:
        async with self.session() as session:
            async with session.begin():
                row = await session.get(CaseRow, case_id)
                if row is None or row.organization_id != organization_id:
                    return False
                await session.execute(
                    delete(CaseStepRow).where(CaseStepRow.case_id == case_id)
                )
                await session.delete(row)
        return True

    async def find_step_instances(
        self, case_id: str, filters: StepFilter | None = None
    ) -> list[StepInstance]:
        filters = filters or StepFilter()
        stmt = select(CaseStepRow).where(CaseStepRow.case_id == case_id)
        if filters.after_step_number is not None:
            stmt = stmt.where(CaseStepRow.step_number > filters.after_step_number)
        if filters.before_step_number is not None:
            stmt = stmt.where(CaseStepRow.step_number < filters.before_step_number)
        if filters.statuses is not None:
            stmt = stmt.where(CaseStepRow.status.in_([s.value for s in filters.statuses]))
        if filters.exclude_statuses:
            stmt = stmt.where(
                CaseStepRow.status.not_in([s.value for s in filters.exclude_statuses])
            )
        async with self.session() as session:
            result = await session.execute(stmt.order_by(CaseStepRow.step_number))
            return [_to_step(r) for r in result.scalars().all()]

    async def update_step_instance(
        self, step_id: str, fields: Mapping[str, Any]
    ) -> StepInstance:
        updated = await self.update_step_instances({step_id: fields})
        return updated[0]

    async def update_step_instances(self, changes: StepChanges) -> list[StepInstance]:
        for fields in changes.values():
            check_step_fields(fields)
        updated = []
        async with self.session() as session:
            async with session.begin():
                for step_id, fields in changes.items():
                    row = await session.get(CaseStepRow, step_id)
                    if row is None:
                        raise StepNotFoundError(f"Step {step_id} not found")
                    for name, value in fields.items():
                        setattr(row, name, _plain(value))
                    updated.append(row)
            return [_to_step(r) for r in updated]

    async def list_upcoming_deadlines(
        self,
        organization_id: str,
        workflow_type: WorkflowType | None = None,
        limit: int = 5,
    ) -> list[tuple[CaseRecord, StepInstance]]:
        stmt = (
            select(CaseRow, CaseStepRow)
            .join(CaseStepRow, CaseStepRow.case_id == CaseRow.id)
            .where(
                CaseRow.organization_id == organization_id,
                CaseStepRow.deadline.is_not(None),
                CaseStepRow.status.in_([s.value for s in OPEN_STATUSES]),
            )
        )
        if workflow_type is not None:
            stmt = stmt.where(CaseRow.workflow_type == _plain(workflow_type))
        stmt = stmt.order_by(CaseStepRow.deadline, CaseStepRow.step_number).limit(limit)
        async with self.session() as session:
            result = await session.execute(stmt)
            return [(_to_case(case), _to_step(step)) for case, step in result.all()]

    # ------------------------------------------------------------------
    # Case-number counter
    async def get_case_number_settings(
        self, organization_id: str, workflow_type: WorkflowType
    ) -> CaseNumberSettings:
        async with self.session() as session:
            row = await session.get(
                CaseNumberSettingRow, (organization_id, _plain(workflow_type))
            )
            if row is None:
                return CaseNumberSettings.defaults_for(workflow_type)
            return CaseNumberSettings.model_validate(row.model_dump())

    async def save_case_number_settings(
        self,
        organization_id: str,
        workflow_type: WorkflowType,
        settings: CaseNumberSettings,
    ) -> None:
        async with self.session() as session:
            await session.merge(
                CaseNumberSettingRow(
                    organization_id=organization_id,
                    workflow_type=_plain(workflow_type),
                    **settings.model_dump(),
                )
            )
            await session.commit()

    async def increment_next_number(
        self, organization_id: str, workflow_type: WorkflowType
    ) -> int:
        key = (organization_id, _plain(workflow_type))
        async with self.session() as session:
            async with session.begin():
                if await session.get(CaseNumberSettingRow, key) is None:
                    session.add(
                        CaseNumberSettingRow(
                            organization_id=organization_id,
                            workflow_type=_plain(workflow_type),
                            **CaseNumberSettings.defaults_for(workflow_type).model_dump(),
                        )
                    )
                    await session.flush()
                result = await session.execute(
                    update(CaseNumberSettingRow)
                    .where(
                        CaseNumberSettingRow.organization_id == organization_id,
                        CaseNumberSettingRow.workflow_type == _plain(workflow_type),
                    )
                    .values(next_number=CaseNumberSettingRow.next_number + 1)
                    .returning(CaseNumberSettingRow.next_number)
                    .execution_options(synchronize_session=False)
                )
                allocated = result.scalar_one() - 1
        logger.debug(f"Counter for organization={organization_id} advanced past {allocated}")
        return allocated
