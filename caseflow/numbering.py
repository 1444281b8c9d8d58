"""Human-readable case numbers such as ``GR-24-0007``."""

from __future__ import annotations

import logging
from datetime import date
from typing import TYPE_CHECKING, Callable, Optional

from .constants import DEFAULT_CASE_NUMBER_ATTEMPTS
from .contracts import CaseNumberSettings, WorkflowType
from .errors import CaseNumberConflictError

if TYPE_CHECKING:
    from .persistence import CaseRepository

logger = logging.getLogger(__name__)


def compose_case_number(settings: CaseNumberSettings, number: int, year: int) -> str:
    """Join prefix, optional two-digit year and padded number with the separator."""
    parts = [settings.prefix]
    if settings.include_year:
        parts.append(f"{year % 100:02d}")
    parts.append(str(number).zfill(settings.padding))
    return settings.separator.join(parts)


class CaseNumberAllocator:
    """Allocates unique case numbers from the organization's counter."""

    def __init__(
        self,
        repository: CaseRepository,
        max_attempts: int = DEFAULT_CASE_NUMBER_ATTEMPTS,
        today: Optional[Callable[[], date]] = None,
    ) -> None:
        self._repository = repository
        self._max_attempts = max_attempts
        self._today = today or date.today

    async def preview(self, organization_id: str, workflow_type: WorkflowType) -> str:
        """Return the number the next allocation would try, without consuming it."""
        settings = await self._repository.get_case_number_settings(
            organization_id, workflow_type
        )
        return compose_case_number(settings, settings.next_number, self._today().year)

    async def allocate(self, organization_id: str, workflow_type: WorkflowType) -> str:
        """Consume counter values until a number unused in the organization is found.

        Raises:
            CaseNumberConflictError: every attempt collided with an existing case.
        """
        settings = await self._repository.get_case_number_settings(
            organization_id, workflow_type
        )
        year = self._today().year
        candidate = ""
        for attempt in range(1, self._max_attempts + 1):
            number = await self._repository.increment_next_number(
                organization_id, workflow_type
            )
            candidate = compose_case_number(settings, number, year)
            existing = await self._repository.find_case_by_number(
                organization_id, workflow_type, candidate
            )
            if existing is None:
                logger.info(
                    f"Allocated case number {candidate} for organization={organization_id}"
                )
                return candidate
            logger.warning(
                f"Case number {candidate} already used in organization={organization_id} "
                f"(attempt {attempt}/{self._max_attempts})"
            )
        raise CaseNumberConflictError(self._max_attempts, candidate)
