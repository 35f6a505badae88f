"""Custom exceptions for bhyve-vm-manager."""

from __future__ import annotations

from typing import Dict, Iterable, List


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class NonexistentError(ManagerError):
    """A machine, device or boot configuration does not exist."""


class DuplicateError(ManagerError):
    """A slot or boot configuration name is already in use."""


class DeviceSlotsExhaustedError(ManagerError):
    """No free slot remains on bus 0."""


class ReferencedByBootConfigurationError(ManagerError):
    """One or more devices cannot be deleted because boot configurations use them."""

    def __init__(self, message: str, references: Dict[str, List[str]]):
        super().__init__(message)
        self.references = references


class ValidationError(ManagerError):
    """A value or a machine failed validation."""


class UnimplementedError(ManagerError):
    """The requested feature is not implemented."""


class ProcessFailureError(ManagerError):
    """An external tool could not be run or exited unsuccessfully."""


class NoSingleConsoleError(ManagerError):
    """A machine has zero or several console-capable devices."""


def combine(errors: Iterable[ManagerError], error_type: type = ManagerError) -> ManagerError:
    """Fold several errors into one, keeping the single error as-is."""
    errors = list(errors)
    if len(errors) == 1:
        return errors[0]
    lines = "\n  ".join(str(error) for error in errors)
    return error_type(f"{len(errors)} errors occurred:\n  {lines}")
