"""
idp_setup — Provisioning and cleanup of the Backstage internal developer platform.
"""

from idp_setup.exceptions import (
    AuthenticationError,
    CommandError,
    PreconditionError,
    SetupError,
    StackDeletionFailed,
    StackNotFound,
    StackNotReady,
    StackUnreachable,
    StepFailed,
    ToolUnavailable,
)
from idp_setup.models import OutputKey, ParameterKey, StackInfo, StackOutputs
from idp_setup.settings import Settings, load_settings

__all__ = [
    "AuthenticationError",
    "CommandError",
    "OutputKey",
    "ParameterKey",
    "PreconditionError",
    "SetupError",
    "Settings",
    "StackDeletionFailed",
    "StackInfo",
    "StackNotFound",
    "StackNotReady",
    "StackOutputs",
    "StackUnreachable",
    "StepFailed",
    "ToolUnavailable",
    "load_settings",
]
