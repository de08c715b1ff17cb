"""Exception hierarchy for the incident worker.

Decode errors never leave the decoder's soft entry point; they turn into an
``ignored`` outcome. Collaborator errors are wrapped by the controller into
``DependencyFailure`` so the failure reason always names the command and the
identifiers involved.
"""

from __future__ import annotations

from typing import Mapping, Optional


class IncidentWorkerError(Exception):
    """Base class for all errors raised by this service."""


class DecodeError(IncidentWorkerError):
    """Raised when a payload cannot be turned into a command."""


class MalformedMessage(DecodeError):
    """Payload is not parsable or lacks a required discriminator."""


class UnknownSchemaVersion(DecodeError):
    """Payload carries a ``msg_version`` this worker does not understand."""

    def __init__(self, version: int):
        super().__init__(f"unknown msg_version {version}")
        self.version = version


class WorkflowEngineError(IncidentWorkerError):
    """A call to the workflow engine failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class StoreError(IncidentWorkerError):
    """A call to the incident store failed."""


class DependencyFailure(IncidentWorkerError):
    """A workflow engine or store call failed while executing a valid command."""

    def __init__(
        self,
        command: str,
        operation: str,
        identifiers: Mapping[str, str],
        cause: BaseException,
    ):
        self.command = command
        self.operation = operation
        self.identifiers = dict(identifiers)
        self.cause = cause
        super().__init__(self.describe())

    def describe(self) -> str:
        ids = " ".join(f"{k}={v}" for k, v in self.identifiers.items())
        cause = str(self.cause) or self.cause.__class__.__name__
        return f"{self.command} {ids}: {self.operation} failed: {cause}"


class OperationCancelled(IncidentWorkerError):
    """Processing was cancelled or ran past its deadline."""
