"""Error taxonomy for a provisioning run."""
from __future__ import annotations

from typing import Optional

from .models import ConsentFailureReason


class ProvisioningRunError(RuntimeError):
    """Base class for errors that halt a provisioning run."""

    def __init__(self, message: str, step: Optional[str] = None) -> None:
        super().__init__(message)
        self.step = step

    def with_step(self, step: str) -> "ProvisioningRunError":
        if self.step is None:
            self.step = step
        return self


class ProvisioningError(ProvisioningRunError):
    """Raised when the directory rejects creating or updating an application."""


class PropagationTimeout(ProvisioningRunError):
    """Raised when a freshly created resource never becomes visible."""

    def __init__(self, resource: str, attempts: int, step: Optional[str] = None) -> None:
        super().__init__(
            f"{resource} was not visible in the directory after {attempts} attempts.", step
        )
        self.resource = resource
        self.attempts = attempts


class GrantError(ProvisioningRunError):
    """Raised when a permission request is rejected or issued out of order."""


class RunAborted(ProvisioningRunError):
    """Raised when the operator declines a destructive step."""


class ConsentFailure(RuntimeError):
    """Admin consent did not go through. Never aborts a run."""

    def __init__(self, reason: ConsentFailureReason, message: str) -> None:
        super().__init__(message)
        self.reason = reason


__all__ = [
    "ConsentFailure",
    "GrantError",
    "PropagationTimeout",
    "ProvisioningError",
    "ProvisioningRunError",
    "RunAborted",
]
