"""Verdicts reported by validators and pipeline stages."""

from enum import StrEnum
from dataclasses import dataclass, field

__all__ = [
    "Status",
    "Verdict",
]


class Status(StrEnum):
    """Outcome of a check or a pipeline stage."""

    PASS = "Pass"
    FAIL = "Fail"


@dataclass(frozen=True)
class Verdict:
    """Result of a validation: valid, or invalid with every error found."""

    errors: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        """Return True when no errors were found."""
        return not self.errors

    @property
    def status(self) -> Status:
        """Return the verdict as a pass/fail status."""
        return Status.PASS if self.valid else Status.FAIL

    def __str__(self) -> str:
        """Return a string representation of the verdict."""
        if self.errors:
            return f"{self.status}: {'; '.join(self.errors)}"
        return str(self.status)
