"""caseflow: step deadlines and case numbering for grievance and disciplinary cases."""

from .config import CaseflowConfig, load_config
from .contracts import (
    CaseCreate,
    CaseNumberSettings,
    CaseRecord,
    StepCompleted,
    StepFilter,
    StepInstance,
    StepReset,
    StepStatus,
    StepTemplate,
    StepUpdate,
    WorkflowType,
)
from .engine import generate_steps, recalculate_deadlines, transition
from .numbering import CaseNumberAllocator, compose_case_number
from .persistence import get_repository
from .service import CaseService

__version__ = "0.1.0"
__all__ = [
    "CaseflowConfig",
    "load_config",
    "CaseCreate",
    "CaseNumberSettings",
    "CaseRecord",
    "StepCompleted",
    "StepFilter",
    "StepInstance",
    "StepReset",
    "StepStatus",
    "StepTemplate",
    "StepUpdate",
    "WorkflowType",
    "generate_steps",
    "recalculate_deadlines",
    "transition",
    "CaseNumberAllocator",
    "compose_case_number",
    "get_repository",
    "CaseService",
]
