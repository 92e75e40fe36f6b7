"""
idp_setup.provision — Backstage provisioning pipeline.

Stages run strictly in order and a failed stage aborts the rest:

    await-infrastructure   wait for the platform stack and build the context
    configure-repository   fork + configure the Terraform template repository
    build-image            scaffold, build and push the Backstage image
    deploy-release         Kubernetes secrets + helm upgrade --install

await-infrastructure always runs because it produces the context every other
stage reads. Every stage is safe to re-run against the state it left behind.
"""

from __future__ import annotations

import logging
import tempfile
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from idp_setup.aws_clients import RegistryClient, SecretStoreClient
from idp_setup.commands import Unavailable
from idp_setup.exceptions import CommandError, PreconditionError, StackNotReady, StepFailed
from idp_setup.image import ImageBuilder
from idp_setup.models import (
    DatabaseCredentials,
    GitHubCredentials,
    ImageReference,
    OutputKey,
    ParameterKey,
    StackInfo,
)
from idp_setup.release import ReleaseManager
from idp_setup.report import PipelineReport, StepOutcome, passed, run_step
from idp_setup.settings import Settings, describe_platform
from idp_setup.source_control import SourceControl
from idp_setup.stack import StackClient, wait_until_ready
from idp_setup.templating import apply_rewrites, fork_rewrite_rules, render_values

logger = logging.getLogger(__name__)

AWAIT_STEP = "await-infrastructure"
STEP_ORDER: tuple[str, ...] = (
    "configure-repository",
    "build-image",
    "deploy-release",
)
STEP_CHOICES: tuple[str, ...] = ("all", *STEP_ORDER)

POSTGRES_SECRET = "backstage-postgres-secret"
GITHUB_SECRET = "backstage-github-secret"
VALUES_FILENAME = "backstage-values.yaml"


@dataclass(frozen=True)
class ProvisionContext:
    stack: StackInfo
    region: str
    account_id: str
    platform: str
    settings: Settings
    workdir: Path

    @property
    def app_dir(self) -> Path:
        return self.workdir / self.settings.app_dir

    @property
    def image(self) -> ImageReference:
        return ImageReference(
            repository_uri=self.stack.outputs.require(OutputKey.REGISTRY_URI),
            tag=self.stack.outputs.require(OutputKey.IMAGE_TAG),
        )


@dataclass
class ProvisionDependencies:
    stacks: StackClient
    registry: RegistryClient
    secrets: SecretStoreClient
    source_control: SourceControl | Unavailable
    image_builder: ImageBuilder | Unavailable
    release: ReleaseManager | Unavailable
    sleep: Callable[[float], None] = time.sleep
    clock: Callable[[], float] = time.monotonic


def _available(capability: Any) -> Any:
    if isinstance(capability, Unavailable):
        capability.require()
    return capability


def selected_steps(step: str) -> tuple[str, ...]:
    if step == "all":
        return STEP_ORDER
    if step not in STEP_ORDER:
        raise PreconditionError(f"Unknown step {step!r}; choose from {', '.join(STEP_CHOICES)}")
    return (step,)


# ---------------------------------------------------------------------------
# Preconditions
# ---------------------------------------------------------------------------


def check_prerequisites(
    steps: tuple[str, ...],
    deps: ProvisionDependencies,
    settings: Settings,
) -> dict[str, Any]:
    """Fail before any mutation when a selected stage cannot run."""
    needed = {
        "configure-repository": deps.source_control,
        "build-image": deps.image_builder,
        "deploy-release": deps.release,
    }
    for step in steps:
        _available(needed[step])

    details: dict[str, Any] = {"steps": list(steps)}
    if "deploy-release" in steps and not settings.values_template.is_file():
        raise PreconditionError(f"Values template not found: {settings.values_template}")
    if "build-image" in steps:
        builder: ImageBuilder = _available(deps.image_builder)
        details["runtime"] = builder.check_runtime()
    return details


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------


def await_infrastructure(
    stack_name: str,
    *,
    platform: str,
    settings: Settings,
    deps: ProvisionDependencies,
    workdir: Path,
) -> ProvisionContext:
    logger.info("Waiting for CloudFormation stack %s to be ready", stack_name)
    stack = wait_until_ready(
        deps.stacks,
        stack_name,
        timeout=settings.stack_wait_timeout,
        interval=settings.stack_poll_interval,
        sleep=deps.sleep,
        clock=deps.clock,
    )
    if not stack.region or not stack.account_id:
        raise StackNotReady(stack_name, f"Could not parse stack id {stack.stack_id!r}")
    logger.info("Stack %s is %s", stack_name, stack.status)
    logger.info("Target platform: %s", describe_platform(platform, settings))
    return ProvisionContext(
        stack=stack,
        region=stack.region,
        account_id=stack.account_id,
        platform=platform,
        settings=settings,
        workdir=workdir,
    )


def configure_repository(ctx: ProvisionContext, deps: ProvisionDependencies) -> StepOutcome:
    source_control: SourceControl = _available(deps.source_control)
    outputs = ctx.stack.outputs
    org = ctx.stack.require_parameter(ParameterKey.GITHUB_ORG)
    repo = ctx.stack.require_parameter(ParameterKey.GITHUB_REPO)
    state_bucket = outputs.require(OutputKey.STATE_BUCKET)
    lock_table = outputs.optional(OutputKey.LOCK_TABLE)
    role_arn = outputs.require(OutputKey.ROLE_ARN)
    slug = f"{org}/{repo}"

    source_control.ensure_authenticated()

    forked = False
    if source_control.repository_exists(slug):
        logger.info("Repository %s already exists", slug)
    else:
        template = ctx.settings.template_repository or source_control.origin_slug(ctx.workdir)
        logger.info("Forking %s to %s", template, slug)
        try:
            source_control.fork(template, org=org, name=repo)
        except CommandError as exc:
            raise StepFailed(
                "configure-repository", f"Failed to fork {template}", resource=slug
            ) from exc
        forked = True

    with tempfile.TemporaryDirectory(prefix="idp-setup-") as tmp:
        checkout = Path(tmp) / repo
        source_control.clone(slug, checkout)
        changed = apply_rewrites(
            checkout,
            fork_rewrite_rules(
                org=org,
                repo=repo,
                state_bucket=state_bucket,
                region=ctx.region,
                account_id=ctx.account_id,
                lock_table=lock_table,
            ),
        )
        for path, count in changed.items():
            logger.info("Updated %s (%d replacement(s))", path, count)
        source_control.configure_identity(
            checkout,
            name=ctx.settings.git_user_name,
            email=ctx.settings.git_user_email,
        )
        committed = source_control.commit_all(
            checkout,
            f"Configure repository for {org}\n\n"
            f"State bucket: {state_bucket}\nRegion: {ctx.region}",
        )
        if committed:
            source_control.push(checkout)
        else:
            logger.info("No changes to commit in %s", slug)

    for name, value in (
        ("AWS_ROLE_ARN", role_arn),
        ("AWS_REGION", ctx.region),
        ("AWS_ACCOUNT_ID", ctx.account_id),
    ):
        source_control.set_secret(slug, name, value)

    return passed(
        repository=slug,
        forked=forked,
        changedFiles=changed,
        committed=committed,
        lockTable=lock_table,
    )


def build_and_publish_image(ctx: ProvisionContext, deps: ProvisionDependencies) -> StepOutcome:
    builder: ImageBuilder = _available(deps.image_builder)
    image = ctx.image
    app_dir = ctx.app_dir

    scaffolded = builder.scaffold(app_dir)
    synthesized = builder.verify_build_files(app_dir)
    lockfile_generated = builder.install_dependencies(app_dir)
    builder.compile(app_dir)

    logger.info("Building image %s for %s", image.versioned, ctx.platform)
    builder.build(app_dir, image, ctx.platform)
    builder.login(deps.registry.credentials())
    builder.push(image)

    return passed(
        image=image.versioned,
        platform=ctx.platform,
        scaffolded=scaffolded,
        synthesized=synthesized,
        lockfileGenerated=lockfile_generated,
    )


def _bundle_value(bundle: dict[str, Any], key: str, secret_arn: str) -> str:
    value = str(bundle.get(key, "") or "").strip()
    if not value:
        raise StepFailed("deploy-release", f"Secret is missing {key}", resource=secret_arn)
    return value


def load_credentials(
    secrets: SecretStoreClient, secrets_arn: str
) -> tuple[DatabaseCredentials, GitHubCredentials]:
    """Resolve database and GitHub credentials from the stack's secret bundle."""
    bundle = secrets.get_json(secrets_arn)
    rds_secret_arn = _bundle_value(bundle, "RDS_SECRET_ARN", secrets_arn)
    rds_secret = secrets.get_json(rds_secret_arn)
    database = DatabaseCredentials(
        host=_bundle_value(bundle, "POSTGRES_HOST", secrets_arn),
        port=_bundle_value(bundle, "POSTGRES_PORT", secrets_arn),
        user=_bundle_value(bundle, "POSTGRES_USER", secrets_arn),
        password=_bundle_value(rds_secret, "password", rds_secret_arn),
    )
    github = GitHubCredentials(
        org=_bundle_value(bundle, "GITHUB_ORG", secrets_arn),
        token=_bundle_value(bundle, "GITHUB_TOKEN", secrets_arn),
    )
    return database, github


def deployment_values(ctx: ProvisionContext, github: GitHubCredentials) -> dict[str, str]:
    image = ctx.image
    return {
        "ECR_REGISTRY": image.registry,
        "ECR_REPOSITORY": image.repository,
        "BACKSTAGE_TAG": image.tag,
        "GITHUB_ORG": github.org,
        "ORGANIZATION_NAME": ctx.settings.organization_name,
        "SCAFFOLDER_EMAIL": ctx.settings.scaffolder_email,
        "BASE_URL": ctx.settings.base_url,
    }


def deploy_release(ctx: ProvisionContext, deps: ProvisionDependencies) -> StepOutcome:
    release: ReleaseManager = _available(deps.release)
    cluster_name = ctx.stack.outputs.require(OutputKey.CLUSTER_NAME)
    secrets_arn = ctx.stack.outputs.require(OutputKey.SECRETS_ARN)

    release.update_kubeconfig(cluster_name, ctx.region)
    release.cluster_info()

    database, github = load_credentials(deps.secrets, secrets_arn)
    release.apply_namespace()
    release.apply_secret(
        POSTGRES_SECRET,
        {
            "postgres-host": database.host,
            "postgres-port": database.port,
            "postgres-user": database.user,
            "postgres-password": database.password,
        },
    )
    release.apply_secret(GITHUB_SECRET, {"github-token": github.token})
    release.add_chart_repository()

    with tempfile.TemporaryDirectory(prefix="idp-setup-") as tmp:
        values_file = render_values(
            ctx.settings.values_template,
            deployment_values(ctx, github),
            Path(tmp) / VALUES_FILENAME,
        )
        release.upgrade_install(values_file)

    return passed(
        cluster=cluster_name,
        release=release.release_name,
        namespace=release.namespace,
        image=ctx.image.versioned,
    )


STEP_HANDLERS: dict[str, Callable[[ProvisionContext, ProvisionDependencies], StepOutcome]] = {
    "configure-repository": configure_repository,
    "build-image": build_and_publish_image,
    "deploy-release": deploy_release,
}


def run_provisioning(
    stack_name: str,
    *,
    platform: str,
    step: str,
    settings: Settings,
    deps: ProvisionDependencies,
    report: PipelineReport,
    workdir: Path,
) -> ProvisionContext:
    steps = selected_steps(step)
    run_step(report, "prerequisites", lambda: passed(**check_prerequisites(steps, deps, settings)))

    holder: dict[str, ProvisionContext] = {}

    def _await() -> StepOutcome:
        holder["ctx"] = await_infrastructure(
            stack_name, platform=platform, settings=settings, deps=deps, workdir=workdir
        )
        return passed(status=holder["ctx"].stack.status, region=holder["ctx"].region)

    run_step(report, AWAIT_STEP, _await)
    ctx = holder["ctx"]

    for step_name in steps:
        handler = STEP_HANDLERS[step_name]
        run_step(report, step_name, lambda handler=handler: handler(ctx, deps))
    return ctx
