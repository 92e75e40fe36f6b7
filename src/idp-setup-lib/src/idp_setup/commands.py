"""
idp_setup.commands — Subprocess runner and tool-capability probing.

Every external CLI call (git, gh, docker, yarn, kubectl, helm, aws) goes through
CommandRunner so tests can substitute a scripted runner. Values that are secret
are passed on stdin, never on argv, because argv is logged.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from idp_setup.exceptions import CommandError, ToolUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Unavailable:
    """A capability whose tools are not installed."""

    capability: str
    missing: tuple[str, ...]

    @property
    def reason(self) -> str:
        return f"{self.capability} unavailable: missing {', '.join(self.missing)}"

    def require(self) -> None:
        raise ToolUnavailable(self.capability, self.missing)


class CommandRunner:
    def which(self, binary: str) -> str | None:
        return shutil.which(binary)

    def missing(self, binaries: Sequence[str]) -> tuple[str, ...]:
        return tuple(binary for binary in binaries if self.which(binary) is None)

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        input_text: str | None = None,
        env: Mapping[str, str] | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        """Run a command, capturing output. Raises CommandError on non-zero exit when check."""
        cmd_display = " ".join(command)
        logger.info("Running: %s", cmd_display)
        merged_env = None
        if env is not None:
            merged_env = {**os.environ, **env}
        result = subprocess.run(
            list(command),
            cwd=str(cwd) if cwd else None,
            input=input_text,
            env=merged_env,
            check=False,
            capture_output=True,
            text=True,
        )
        if check and result.returncode != 0:
            raise CommandError(
                command=cmd_display,
                returncode=result.returncode,
                stdout=result.stdout or "",
                stderr=result.stderr or "",
            )
        return result
