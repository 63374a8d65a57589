"""Shared issue representation for pipeline operations."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Literal, Optional

from ..errors import ErrorCategory

IssueSeverity = Literal["error", "warning", "info"]


@dataclass(slots=True)
class PipelineIssue:
    """Lightweight issue representation for planning, build and verification."""

    code: str
    message: str
    severity: IssueSeverity = "error"
    category: Optional[ErrorCategory] = None
    step: Optional[str] = None
    details: Optional[str] = None

    def is_error(self) -> bool:
        """Return True when the issue is considered an error."""
        return self.severity == "error"

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "category": self.category.value if self.category else None,
            "step": self.step,
            "details": self.details,
        }


def has_errors(issues: Iterable[PipelineIssue]) -> bool:
    return any(issue.is_error() for issue in issues)


def first_error(issues: Iterable[PipelineIssue]) -> Optional[PipelineIssue]:
    return next((issue for issue in issues if issue.is_error()), None)
