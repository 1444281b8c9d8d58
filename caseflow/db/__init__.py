from .case_db import OrmCaseRepository, normalize_database_url
from .models import CaseNumberSettingRow, CaseRow, CaseStepRow, StepTemplateRow

__all__ = [
    "CaseRow",
    "CaseStepRow",
    "StepTemplateRow",
    "CaseNumberSettingRow",
    "OrmCaseRepository",
    "normalize_database_url",
]
