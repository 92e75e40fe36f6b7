"""Pipeline tests for provisioning: ordering, preconditions and re-run idempotence."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from fakes import (
    STACK_NAME,
    FakeRegistry,
    FakeRunner,
    FakeSecrets,
    FakeStacks,
)
from idp_setup.commands import Unavailable
from idp_setup.exceptions import PreconditionError, StackNotReady, StepFailed, ToolUnavailable
from idp_setup.image import ImageBuilder
from idp_setup.provision import ProvisionDependencies, run_provisioning
from idp_setup.release import ReleaseManager
from idp_setup.report import PipelineReport, StepStatus
from idp_setup.settings import Settings
from idp_setup.source_control import SourceControl

TEMPLATE_REPOSITORY = "aws-samples/backstage-idp"

FORK_FILES: dict[str, str] = {
    "terraform/eks/backend.tf": 'bucket = "YOUR_ORG-terraform-state"\nregion = "us-east-1"\n',
    "backstage-templates/s3-bucket/skeleton/backend.config": (
        'bucket = "YOUR_TERRAFORM_STATE_BUCKET"\n# dynamodb_table = "terraform-state-lock"\n'
    ),
    "backstage-templates/s3-bucket/template.yaml": "owner: ${GITHUB_ORG}\n",
    ".github/workflows/terraform-apply.yml": "account: YOUR_ACCOUNT_ID\n",
}


class FakeGitHub:
    """Remote repository state shared by clone, diff and push."""

    def __init__(self) -> None:
        self.remote = dict(FORK_FILES)
        self.checkout: Path | None = None
        self.pushes = 0

    def _snapshot(self) -> dict[str, str]:
        assert self.checkout is not None
        return {
            path.relative_to(self.checkout).as_posix(): path.read_text(encoding="utf-8")
            for path in self.checkout.rglob("*")
            if path.is_file()
        }

    def clone(self, cmd: list[str], cwd: Path | None) -> None:
        self.checkout = Path(cmd[4])
        for relative, text in self.remote.items():
            target = self.checkout / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(text, encoding="utf-8")

    def git(self, cmd: list[str], cwd: Path | None) -> int | None:
        if cmd[3] == "diff":
            return 0 if self._snapshot() == self.remote else 1
        if cmd[3] == "push":
            self.remote = self._snapshot()
            self.pushes += 1
        return None


def _scaffold_app(app_dir: Path) -> None:
    (app_dir / "packages" / "backend").mkdir(parents=True)
    (app_dir / "packages" / "backend" / "Dockerfile").write_text("FROM node:20\n")
    (app_dir / "app-config.yaml").write_text("app: {}\n")
    (app_dir / "app-config.production.yaml").write_text("app: {}\n")
    (app_dir / "yarn.lock").write_text("# lockfile\n")


@pytest.fixture
def settings() -> Settings:
    return Settings(template_repository=TEMPLATE_REPOSITORY, stack_poll_interval=1)


@pytest.fixture
def github(runner: FakeRunner, tmp_path: Path) -> FakeGitHub:
    github = FakeGitHub()
    runner.respond("gh", "repo", "clone", effect=github.clone)
    runner.respond("git", effect=github.git)
    runner.respond("node", "--version", stdout="v20.11.1\n")
    runner.respond("npx", effect=lambda cmd, cwd: _scaffold_app(tmp_path / "backstage-app"))
    return github


def _deps(
    runner: FakeRunner,
    settings: Settings,
    journal: list[str],
    *,
    stacks: FakeStacks | None = None,
    secrets: FakeSecrets | None = None,
) -> ProvisionDependencies:
    return ProvisionDependencies(
        stacks=stacks or FakeStacks(journal),
        registry=FakeRegistry(journal),
        secrets=secrets or FakeSecrets(),
        source_control=SourceControl(runner),
        image_builder=ImageBuilder(runner),
        release=ReleaseManager(runner, settings),
        sleep=lambda _: None,
    )


def _run(
    deps: ProvisionDependencies,
    settings: Settings,
    workdir: Path,
    *,
    step: str = "all",
    report: PipelineReport | None = None,
):
    return run_provisioning(
        STACK_NAME,
        platform="linux/amd64",
        step=step,
        settings=settings,
        deps=deps,
        report=report or PipelineReport(workflow="provisioning", stack_name=STACK_NAME),
        workdir=workdir,
    )


# ---------------------------------------------------------------------------
# Full run and re-run
# ---------------------------------------------------------------------------


def test_full_run_configures_builds_and_deploys(
    runner: FakeRunner,
    github: FakeGitHub,
    settings: Settings,
    journal: list[str],
    tmp_path: Path,
) -> None:
    report = PipelineReport(workflow="provisioning", stack_name=STACK_NAME)

    ctx = _run(_deps(runner, settings, journal), settings, tmp_path, report=report)

    assert ctx.region == "eu-west-2"
    assert ctx.account_id == "123456789012"
    assert [entry["step"] for entry in report.steps] == [
        "prerequisites",
        "await-infrastructure",
        "configure-repository",
        "build-image",
        "deploy-release",
    ]
    assert all(entry["status"] == "passed" for entry in report.steps)
    assert github.remote["terraform/eks/backend.tf"] == (
        'bucket = "acme-terraform-state"\nregion = "eu-west-2"\n'
    )
    assert github.remote["backstage-templates/s3-bucket/skeleton/backend.config"] == (
        'bucket = "acme-terraform-state"\ndynamodb_table = "terraform-state-lock"\n'
    )
    secrets = {call["command"][3]: call["input"] for call in runner.ran("gh", "secret", "set")}
    assert secrets == {
        "AWS_ROLE_ARN": "arn:aws:iam::123456789012:role/github-actions",
        "AWS_REGION": "eu-west-2",
        "AWS_ACCOUNT_ID": "123456789012",
    }
    assert not runner.ran("gh", "repo", "fork")
    assert len(runner.ran("helm", "upgrade", "--install")) == 1


def test_rerun_without_changes_does_not_commit_or_reinstall(
    runner: FakeRunner,
    github: FakeGitHub,
    settings: Settings,
    journal: list[str],
    tmp_path: Path,
) -> None:
    deps = _deps(runner, settings, journal)

    _run(deps, settings, tmp_path)
    _run(deps, settings, tmp_path)

    assert github.pushes == 1
    assert len([c for c in runner.commands() if c[3:4] == ["commit"]]) == 1
    assert len(runner.ran("npx")) == 1
    assert runner.commands().count(["yarn", "install"]) == 1
    assert len(runner.ran("helm", "upgrade", "--install")) == 2
    assert not runner.ran("helm", "install")
    assert len(runner.ran("gh", "secret", "set")) == 6


def test_secrets_never_reach_argv(
    runner: FakeRunner,
    github: FakeGitHub,
    settings: Settings,
    journal: list[str],
    tmp_path: Path,
) -> None:
    _run(_deps(runner, settings, journal), settings, tmp_path)

    argv = " ".join(" ".join(command) for command in runner.commands())
    for secret in ("ghp_test", "s3cret", "ecr-password"):
        assert secret not in argv


# ---------------------------------------------------------------------------
# Preconditions and stage failures
# ---------------------------------------------------------------------------


def test_missing_tool_fails_before_any_call(
    runner: FakeRunner, settings: Settings, journal: list[str], tmp_path: Path
) -> None:
    stacks = FakeStacks(journal)
    deps = _deps(runner, settings, journal, stacks=stacks)
    deps.release = Unavailable("release management", ("helm",))
    report = PipelineReport(workflow="provisioning", stack_name=STACK_NAME)

    with pytest.raises(ToolUnavailable, match="helm"):
        _run(deps, settings, tmp_path, report=report)

    assert runner.calls == []
    assert stacks.describe_calls == 0
    assert report.status_of("prerequisites") is StepStatus.FAILED


def test_unsupported_node_is_a_precondition_failure(
    runner: FakeRunner, settings: Settings, journal: list[str], tmp_path: Path
) -> None:
    runner.respond("node", "--version", stdout="v16.20.2\n")

    with pytest.raises(PreconditionError, match="Node.js"):
        _run(_deps(runner, settings, journal), settings, tmp_path, step="build-image")

    assert not runner.ran("docker", "image", "build")


def test_failed_stack_aborts_before_any_stage(
    runner: FakeRunner, settings: Settings, journal: list[str], tmp_path: Path
) -> None:
    stacks = FakeStacks(journal, statuses=["CREATE_IN_PROGRESS", "ROLLBACK_COMPLETE"])
    report = PipelineReport(workflow="provisioning", stack_name=STACK_NAME)

    with pytest.raises(StackNotReady, match="ROLLBACK_COMPLETE"):
        _run(
            _deps(runner, settings, journal, stacks=stacks),
            settings,
            tmp_path,
            step="deploy-release",
            report=report,
        )

    assert report.status_of("await-infrastructure") is StepStatus.FAILED
    assert report.status_of("deploy-release") is None
    assert not runner.ran("helm")


def test_step_selection_runs_only_the_selected_stage(
    runner: FakeRunner, settings: Settings, journal: list[str], tmp_path: Path
) -> None:
    report = PipelineReport(workflow="provisioning", stack_name=STACK_NAME)

    deps = _deps(runner, settings, journal)
    _run(deps, settings, tmp_path, step="deploy-release", report=report)

    assert [entry["step"] for entry in report.steps] == [
        "prerequisites",
        "await-infrastructure",
        "deploy-release",
    ]
    assert not runner.ran("gh")
    assert not runner.ran("docker")


def test_missing_fork_is_created_from_template(
    runner: FakeRunner,
    github: FakeGitHub,
    settings: Settings,
    journal: list[str],
    tmp_path: Path,
) -> None:
    runner.respond("gh", "repo", "view", returncode=1)

    _run(_deps(runner, settings, journal), settings, tmp_path, step="configure-repository")

    (fork,) = runner.ran("gh", "repo", "fork")
    assert fork["command"][3:9] == [
        TEMPLATE_REPOSITORY,
        "--org",
        "acme",
        "--fork-name",
        "platform-templates",
        "--clone=false",
    ]


def test_fork_failure_is_fatal(
    runner: FakeRunner,
    github: FakeGitHub,
    settings: Settings,
    journal: list[str],
    tmp_path: Path,
) -> None:
    runner.respond("gh", "repo", "view", returncode=1)
    runner.respond("gh", "repo", "fork", returncode=1, stderr="HTTP 403")

    with pytest.raises(StepFailed, match="Failed to fork") as exc_info:
        _run(_deps(runner, settings, journal), settings, tmp_path, step="configure-repository")

    assert exc_info.value.resource == "acme/platform-templates"
    assert not runner.ran("gh", "repo", "clone")


def test_unauthenticated_gh_aborts_repository_stage(
    runner: FakeRunner, settings: Settings, journal: list[str], tmp_path: Path
) -> None:
    runner.respond("gh", "auth", "status", returncode=1)

    with pytest.raises(PreconditionError, match="gh auth login"):
        _run(_deps(runner, settings, journal), settings, tmp_path, step="configure-repository")

    assert not runner.ran("gh", "repo")


# ---------------------------------------------------------------------------
# Release deployment
# ---------------------------------------------------------------------------


def test_deploy_release_applies_secrets_and_removes_values_file(
    runner: FakeRunner, settings: Settings, journal: list[str], tmp_path: Path
) -> None:
    rendered: dict[str, str] = {}

    def _capture(cmd: list[str], cwd: Path | None) -> None:
        values_file = Path(cmd[cmd.index("--values") + 1])
        rendered["path"] = str(values_file)
        rendered["text"] = values_file.read_text(encoding="utf-8")

    runner.respond("helm", "upgrade", effect=_capture)

    _run(_deps(runner, settings, journal), settings, tmp_path, step="deploy-release")

    assert runner.commands()[:2] == [
        ["aws", "eks", "update-kubeconfig", "--name", "platform-cluster", "--region", "eu-west-2"],
        ["kubectl", "cluster-info"],
    ]
    manifests = [json.loads(call["input"]) for call in runner.ran("kubectl", "apply")]
    assert [m["kind"] for m in manifests] == ["Namespace", "Secret", "Secret"]
    assert manifests[1]["stringData"] == {
        "postgres-host": "backstage-db.internal",
        "postgres-port": "5432",
        "postgres-user": "backstage",
        "postgres-password": "s3cret",
    }
    assert manifests[2]["stringData"] == {"github-token": "ghp_test"}
    assert Path(rendered["path"]).name == "backstage-values.yaml"
    assert not Path(rendered["path"]).exists()
    assert "repository: backstage" in rendered["text"]
    assert "${POSTGRES_PASSWORD}" in rendered["text"]


def test_missing_bundle_key_fails_deploy(
    runner: FakeRunner, settings: Settings, journal: list[str], tmp_path: Path
) -> None:
    secrets = FakeSecrets()
    bundle_arn = next(iter(secrets.documents))
    del secrets.documents[bundle_arn]["GITHUB_TOKEN"]

    with pytest.raises(StepFailed, match="GITHUB_TOKEN"):
        _run(
            _deps(runner, settings, journal, secrets=secrets),
            settings,
            tmp_path,
            step="deploy-release",
        )

    assert not runner.ran("helm", "upgrade")
