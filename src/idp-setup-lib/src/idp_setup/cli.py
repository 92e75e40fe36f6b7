"""
idp_setup.cli — Shared plumbing for the quickstart and cleanup scripts.
"""

from __future__ import annotations

import argparse
import logging
import os
from collections.abc import Callable, Mapping
from typing import NoReturn

from botocore.exceptions import BotoCoreError, ClientError

from idp_setup.exceptions import SetupError

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
CONFIRM_PROMPT = "Are you sure you want to continue? (yes/no): "

# Errors main() turns into exit code 1.
FATAL_ERRORS: tuple[type[Exception], ...] = (SetupError, ClientError, BotoCoreError)


class ArgumentParser(argparse.ArgumentParser):
    """argparse with usage errors mapped to exit code 1."""

    def error(self, message: str) -> NoReturn:
        self.print_usage()
        self.exit(1, f"{self.prog}: error: {message}\n")


def configure_logging(environ: Mapping[str, str] | None = None) -> None:
    env = os.environ if environ is None else environ
    level_name = env.get("IDP_LOG_LEVEL", "").strip().upper() or "INFO"
    level = getattr(logging, level_name, None)
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT)


def confirm(read: Callable[[str], str] = input) -> bool:
    """True only for the literal answer 'yes'. EOF and Ctrl-C count as no."""
    try:
        answer = read(CONFIRM_PROMPT)
    except (EOFError, KeyboardInterrupt):
        print()
        return False
    return answer.strip() == "yes"
