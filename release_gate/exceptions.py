"""Exceptions related to release-gate."""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .health import HealthReport

__all__ = [
    "ReleaseGateException",
    "StructuralError",
    "PackageError",
    "RenderError",
    "HealthTimeoutError",
    "CommandException",
    "ComposeException",
    "TransferError",
]


class ReleaseGateException(Exception):
    """Generic base exception used for this library."""


class StructuralError(ReleaseGateException):
    """Raised when a topology or template is not formatted as expected."""

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        self.errors = list(errors or [])
        if self.errors:
            message = "\n  - ".join([message, *self.errors])
        super().__init__(message)


class PackageError(StructuralError):
    """Raised when a manifest set cannot be packaged into an archive."""


class RenderError(ReleaseGateException):
    """Raised when a secret or template binding needed for rendering is missing."""

    def __init__(self, message: str, missing: list[str] | None = None) -> None:
        self.missing = sorted(missing or [])
        if self.missing:
            message = f"{message}: {', '.join(self.missing)}"
        super().__init__(message)


class HealthTimeoutError(ReleaseGateException):
    """Raised when the topology never became healthy within the polling budget."""

    def __init__(self, report: "HealthReport") -> None:
        self.report = report
        unhealthy = ", ".join(report.unhealthy_services) or "unknown"
        super().__init__(
            f"Topology not healthy after {report.attempts} attempt(s); "
            f"unhealthy services: {unhealthy}"
        )


class CommandException(ReleaseGateException):
    """Raised when there is a failure running a subcommand."""


class ComposeException(CommandException):
    """Raised when there is a failure running a docker compose command."""


class TransferError(CommandException):
    """Raised when the remote store is unreachable or rejects the upload."""
