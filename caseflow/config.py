from __future__ import annotations

import os
from typing import Optional, Literal

import yaml
from pydantic import BaseModel, Field

from .constants import DEFAULT_CASE_NUMBER_ATTEMPTS


class NumberingConfig(BaseModel):
    """Settings for the case-number allocator."""

    max_attempts: int = Field(default=DEFAULT_CASE_NUMBER_ATTEMPTS, ge=1)


class EngineConfig(BaseModel):
    """Deadline engine settings.

    ``template_binding`` selects where recalculation reads turnaround days
    from: ``current`` looks up the organization's active templates by step
    number, ``snapshot`` uses the days each step captured when generated.
    """

    template_binding: Literal["current", "snapshot"] = "current"


class CaseflowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    log_level: str = "WARNING"
    numbering: NumberingConfig = NumberingConfig()
    engine: EngineConfig = EngineConfig()


def load_config(path: Optional[str] = None) -> CaseflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to CASEFLOW_CONFIG env
            variable or 'caseflow.yaml' in the current directory.
    """

    config_path = path or os.getenv("CASEFLOW_CONFIG", "caseflow.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = CaseflowConfig(**data)
    else:
        config = CaseflowConfig()

    env_db_url = os.getenv("CASEFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
