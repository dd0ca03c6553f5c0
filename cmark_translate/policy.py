"""Error handling policy implementation."""

from __future__ import annotations

import logging
from typing import List, Literal, Optional

from .errors import AbortRequested, ErrorCategory, ErrorRecord

logger = logging.getLogger(__name__)

Action = Literal["fallback", "abort"]


class ErrorPolicy:
    """Decides whether a unit-level failure falls back or aborts the document.

    A fallback keeps the unit's original text and lets sibling units continue.
    Every handled error is recorded so the run can report partial success.
    """

    def __init__(
        self,
        *,
        on_malformed: Action = "fallback",
        on_unsupported: Literal["skip", "abort"] = "skip",
    ) -> None:
        self.on_malformed = on_malformed
        self.on_unsupported = on_unsupported
        self.records: List[ErrorRecord] = []
        self._fallbacks: List[ErrorRecord] = []

    def _action_for(self, category: ErrorCategory) -> Action:
        if category is ErrorCategory.ENCODING:
            return "fallback" if self.on_unsupported == "skip" else "abort"
        if category is ErrorCategory.REINSERTION:
            return self.on_malformed
        if category is ErrorCategory.BATCHING:
            return "fallback"
        return "abort"

    def handle_error(
        self,
        category: ErrorCategory,
        message: str,
        *,
        location: Optional[str] = None,
        unit_id: Optional[int] = None,
    ) -> Action:
        """Record an error and return the action, raising when it must abort."""

        record = ErrorRecord(
            category=category,
            message=message,
            location=location,
            unit_id=unit_id,
        )
        self.records.append(record)
        action = self._action_for(category)

        where = f" ({location})" if location else ""
        if action == "abort":
            logger.error("%s%s", message, where)
            raise AbortRequested(f"{message}{where}")

        self._fallbacks.append(record)
        logger.warning("%s%s Keeping the original text.", message, where)
        return action

    @property
    def fallbacks(self) -> List[ErrorRecord]:
        return list(self._fallbacks)
