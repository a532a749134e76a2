"""Custom exceptions for vmbuilder."""

from __future__ import annotations

from typing import Iterable, List


class BuilderError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class DriverConnectionError(BuilderError):
    """The libvirt daemon could not be reached."""


class VerificationError(BuilderError):
    """No active libvirt network is bound to the configured bridge."""


class StartError(BuilderError):
    pass


class StopError(BuilderError):
    pass


class ExternalToolError(BuilderError):
    """An external command (qemu-img, ssh) exited non-zero."""


class DomainAddressNotFoundError(BuilderError):
    pass


class TemplateError(BuilderError):
    """A user supplied domain XML template could not be rendered."""


class StepError(BuilderError):
    pass


class BuildCancelledError(BuilderError):
    pass


class BuildHaltedError(BuilderError):
    pass


class ConfigValidationError(BuilderError):
    """Every problem found while validating a build configuration."""

    def __init__(self, errors: Iterable[str]) -> None:
        self.errors: List[str] = list(errors)
        super().__init__(self._format())

    def _format(self) -> str:
        if len(self.errors) == 1:
            return self.errors[0]
        lines = [f"{len(self.errors)} configuration errors:"]
        lines.extend(f"  * {error}" for error in self.errors)
        return "\n".join(lines)


class StateError(RuntimeError):
    """A step read build state that no earlier step has written."""
