"""
idp_setup.source_control — GitHub fork management via the gh and git CLIs.
"""

from __future__ import annotations

import logging
from pathlib import Path

from idp_setup.commands import CommandRunner, Unavailable
from idp_setup.exceptions import AuthenticationError, CommandError, PreconditionError

logger = logging.getLogger(__name__)

REQUIRED_TOOLS = ("gh", "git")


def github_slug_from_url(url: str) -> str:
    url = url.strip()
    if url.startswith("git@") and "github.com:" in url:
        path = url.split("github.com:", 1)[1]
    elif "github.com/" in url:
        path = url.split("github.com/", 1)[1]
    else:
        raise PreconditionError(f"Not a GitHub remote: {url}")
    return path.removesuffix(".git").strip("/")


class SourceControl:
    def __init__(self, runner: CommandRunner) -> None:
        self._runner = runner

    @classmethod
    def probe(cls, runner: CommandRunner) -> SourceControl | Unavailable:
        missing = runner.missing(REQUIRED_TOOLS)
        if missing:
            return Unavailable("source control", missing)
        return cls(runner)

    def ensure_authenticated(self) -> None:
        try:
            self._runner.run(["gh", "auth", "status"])
        except CommandError as exc:
            raise AuthenticationError(
                "GitHub CLI is not authenticated (run: gh auth login)"
            ) from exc

    def origin_slug(self, root: Path) -> str:
        try:
            url = self._runner.run(["git", "remote", "get-url", "origin"], cwd=root).stdout
        except CommandError as exc:
            raise PreconditionError(
                "Could not read git remote 'origin'; set IDP_TEMPLATE_REPOSITORY"
            ) from exc
        return github_slug_from_url(url)

    def repository_exists(self, slug: str) -> bool:
        result = self._runner.run(["gh", "repo", "view", slug, "--json", "name"], check=False)
        return result.returncode == 0

    def fork(self, template: str, *, org: str, name: str) -> None:
        self._runner.run(
            [
                "gh",
                "repo",
                "fork",
                template,
                "--org",
                org,
                "--fork-name",
                name,
                "--clone=false",
                "--remote=false",
            ]
        )

    def clone(self, slug: str, destination: Path) -> None:
        self._runner.run(["gh", "repo", "clone", slug, str(destination)])

    def configure_identity(self, workdir: Path, *, name: str, email: str) -> None:
        git = ["git", "-C", str(workdir), "config", "--local"]
        self._runner.run([*git, "credential.helper", ""])
        self._runner.run([*git, "--add", "credential.helper", "!gh auth git-credential"])
        self._runner.run([*git, "user.name", name])
        self._runner.run([*git, "user.email", email])

    def commit_all(self, workdir: Path, message: str) -> bool:
        """Stage everything and commit. False when the staged tree has no changes."""
        self._runner.run(["git", "-C", str(workdir), "add", "."])
        diff = self._runner.run(
            ["git", "-C", str(workdir), "diff", "--staged", "--quiet"], check=False
        )
        if diff.returncode == 0:
            return False
        self._runner.run(["git", "-C", str(workdir), "commit", "-m", message])
        return True

    def push(self, workdir: Path, branch: str = "main") -> None:
        self._runner.run(["git", "-C", str(workdir), "push", "origin", branch])

    def set_secret(self, slug: str, name: str, value: str) -> None:
        self._runner.run(["gh", "secret", "set", name, "--repo", slug], input_text=value)
