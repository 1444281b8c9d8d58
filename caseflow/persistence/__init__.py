"""Persistence layer for caseflow cases, steps and templates."""

from __future__ import annotations

import os
from typing import Optional

from ..config import CaseflowConfig, load_config
from .inmemory import InMemoryCaseRepository
from .repository import STEP_FIELDS, CaseRepository, StepChanges
from .sqlite import SQLiteCaseRepository

_repository_instance: CaseRepository | None = None

_ORM_PREFIXES = ("sqlite+", "postgres://", "postgresql://", "postgresql+")


def get_repository(
    database_url: Optional[str] = None, config: Optional[CaseflowConfig] = None
) -> CaseRepository:
    """Factory function to obtain a case repository.

    The repository backend is selected based on ``database_url`` which can be
    provided explicitly, via environment variable ``CASEFLOW_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned.

    ``sqlite://<path>`` uses the stdlib SQLite backend; URLs naming an async
    driver (``sqlite+aiosqlite://``) and PostgreSQL URLs use the SQLModel
    backend.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("CASEFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        _repository_instance = InMemoryCaseRepository()
        return _repository_instance

    if database_url.startswith(_ORM_PREFIXES):
        from ..db import OrmCaseRepository

        _repository_instance = OrmCaseRepository(database_url)
    elif database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _repository_instance = SQLiteCaseRepository(path)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repository_instance


def reset_repository() -> None:
    """Forget the cached repository so the next call builds a fresh one."""
    global _repository_instance
    _repository_instance = None


__all__ = [
    "CaseRepository",
    "StepChanges",
    "STEP_FIELDS",
    "InMemoryCaseRepository",
    "SQLiteCaseRepository",
    "get_repository",
    "reset_repository",
]
