"""
idp_setup.image — Backstage application scaffolding and container image build.

Uses the host-build method: dependencies and the backend bundle are built on the
host with yarn, then packaged with the scaffolded packages/backend/Dockerfile.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from idp_setup.commands import CommandRunner, Unavailable
from idp_setup.exceptions import CommandError, PreconditionError, StepFailed
from idp_setup.models import ImageReference, RegistryCredentials

logger = logging.getLogger(__name__)

REQUIRED_TOOLS = ("docker", "node", "yarn", "npx")
SUPPORTED_NODE_MAJORS = frozenset({18, 20, 22})
DOCKERFILE = Path("packages/backend/Dockerfile")
LOCKFILE_MARKER = "yarn.lock.bak"

DEFAULT_DOCKERIGNORE = """\
.git
.yarn/cache
.yarn/install-state.gz
node_modules
packages/*/src
packages/*/node_modules
plugins
*.local.yaml
"""


def parse_node_major(version: str) -> int | None:
    head = version.strip().removeprefix("v").split(".", 1)[0]
    return int(head) if head.isdigit() else None


class ImageBuilder:
    def __init__(self, runner: CommandRunner) -> None:
        self._runner = runner

    @classmethod
    def probe(cls, runner: CommandRunner) -> ImageBuilder | Unavailable:
        missing = runner.missing(REQUIRED_TOOLS)
        if missing:
            return Unavailable("image build", missing)
        return cls(runner)

    def check_runtime(self) -> dict[str, str]:
        """Verify Node.js LTS and a running Docker daemon."""
        node_version = self._runner.run(["node", "--version"]).stdout.strip()
        major = parse_node_major(node_version)
        if major not in SUPPORTED_NODE_MAJORS:
            raise PreconditionError(
                f"Node.js version must be 18.x, 20.x, or 22.x (LTS). Current: {node_version}"
            )
        try:
            self._runner.run(["docker", "info"])
        except CommandError as exc:
            raise PreconditionError("Docker is not running") from exc
        yarn_version = self._runner.run(["yarn", "--version"]).stdout.strip()
        return {"node": node_version, "yarn": yarn_version}

    def scaffold(self, app_dir: Path) -> bool:
        """Create the Backstage app unless the directory already exists."""
        if app_dir.is_dir():
            logger.info("Backstage app directory already exists: %s", app_dir)
            return False
        app_dir.parent.mkdir(parents=True, exist_ok=True)
        self._runner.run(
            ["npx", "@backstage/create-app@latest", "--skip-install"],
            cwd=app_dir.parent,
            input_text=f"{app_dir.name}\n",
        )
        if not app_dir.is_dir():
            raise StepFailed(
                "build-image", "Failed to create Backstage app directory", resource=str(app_dir)
            )
        return True

    def verify_build_files(self, app_dir: Path) -> list[str]:
        """Check scaffolded artifacts. Returns files synthesized because they were missing."""
        for required in (DOCKERFILE, Path("app-config.yaml"), Path("app-config.production.yaml")):
            if not (app_dir / required).is_file():
                raise StepFailed(
                    "build-image",
                    f"{required} not found; it should have been created by @backstage/create-app",
                    resource=str(app_dir / required),
                )
        created: list[str] = []
        dockerignore = app_dir / ".dockerignore"
        if not dockerignore.exists():
            logger.warning(".dockerignore not found, creating one")
            dockerignore.write_text(DEFAULT_DOCKERIGNORE, encoding="utf-8")
            created.append(".dockerignore")
        return created

    def install_dependencies(self, app_dir: Path) -> bool:
        """Resolve dependencies; the first run generates the lockfile. True on first run."""
        first_run = not (app_dir / LOCKFILE_MARKER).exists()
        if first_run:
            logger.info("First-time setup: resolving dependencies and generating lockfile")
            self._runner.run(["yarn", "install"], cwd=app_dir)
            lockfile = app_dir / "yarn.lock"
            if not lockfile.is_file():
                raise StepFailed(
                    "build-image", "yarn install did not produce yarn.lock", resource=str(app_dir)
                )
            shutil.copyfile(lockfile, app_dir / LOCKFILE_MARKER)
        self._runner.run(["yarn", "install", "--immutable"], cwd=app_dir)
        return first_run

    def compile(self, app_dir: Path) -> None:
        self._runner.run(["yarn", "tsc"], cwd=app_dir)
        self._runner.run(["yarn", "build:backend"], cwd=app_dir)

    def build(self, app_dir: Path, image: ImageReference, platform: str) -> None:
        self._runner.run(
            [
                "docker",
                "image",
                "build",
                "--platform",
                platform,
                ".",
                "-f",
                str(DOCKERFILE),
                "--tag",
                image.versioned,
                "--tag",
                image.latest,
            ],
            cwd=app_dir,
            env={"DOCKER_BUILDKIT": "1"},
        )

    def login(self, credentials: RegistryCredentials) -> None:
        self._runner.run(
            [
                "docker",
                "login",
                "--username",
                credentials.username,
                "--password-stdin",
                credentials.hostname,
            ],
            input_text=credentials.password,
        )

    def push(self, image: ImageReference) -> None:
        self._runner.run(["docker", "push", image.versioned])
        self._runner.run(["docker", "push", image.latest])
