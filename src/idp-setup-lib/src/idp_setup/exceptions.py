"""
idp_setup.exceptions — Error taxonomy for the provisioning and cleanup workflows.

Every failure surfaced to the operator is a SetupError subclass. The CLIs catch
SetupError at the top level, log the message, and exit 1.
"""

from __future__ import annotations


class SetupError(RuntimeError):
    """Base class for all provisioning/cleanup failures."""


class PreconditionError(SetupError):
    """Raised before any external mutation when a prerequisite is not met."""


class ToolUnavailable(PreconditionError):
    """Raised when a required command-line tool is not on PATH."""

    def __init__(self, capability: str, missing: tuple[str, ...]) -> None:
        self.capability = capability
        self.missing = missing
        super().__init__(f"Missing required tools for {capability}: {', '.join(missing)}")


class AuthenticationError(PreconditionError):
    """Raised when a CLI tool is installed but not authenticated."""


class StackNotFound(SetupError):
    """Raised when the named CloudFormation stack does not exist."""

    def __init__(self, stack_name: str) -> None:
        self.stack_name = stack_name
        super().__init__(f"CloudFormation stack '{stack_name}' not found")


class StackNotReady(SetupError):
    """Raised when a stack is not in a usable state or lacks a required output."""

    def __init__(self, stack_name: str, message: str, *, status: str | None = None) -> None:
        self.stack_name = stack_name
        self.status = status
        super().__init__(message)


class StackUnreachable(SetupError):
    """Raised on transport or authorization failures talking to CloudFormation."""


class CommandError(SetupError):
    """Raised when an external command exits non-zero."""

    def __init__(
        self,
        *,
        command: str,
        returncode: int,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        self.command = command
        self.returncode = returncode
        self.stdout = stdout[-8000:]
        self.stderr = stderr[-8000:]
        message = f"Command failed ({returncode}): {command}"
        if self.stderr.strip():
            message = f"{message}\n{self.stderr.strip()}"
        super().__init__(message)


class StepFailed(SetupError):
    """Raised when a pipeline stage cannot complete."""

    def __init__(self, step: str, message: str, *, resource: str | None = None) -> None:
        self.step = step
        self.resource = resource
        super().__init__(f"{step}: {message}")


class StackDeletionFailed(SetupError):
    """Raised when the stack could not be deleted, with the failing resource and reason."""

    def __init__(self, stack_name: str, *, resource: str | None, reason: str | None) -> None:
        self.stack_name = stack_name
        self.resource = resource
        self.reason = reason
        detail = f"{resource}: {reason}" if resource else (reason or "unknown cause")
        super().__init__(f"Stack deletion failed for {stack_name} ({detail})")
