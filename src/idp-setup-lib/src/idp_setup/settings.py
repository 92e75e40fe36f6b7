"""
idp_setup.settings — Environment-driven configuration.

Defaults match the published quickstart. Every field can be overridden with an
IDP_* environment variable; no configuration file is read.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

import boto3

from idp_setup.exceptions import PreconditionError

PACKAGE_DIR = Path(__file__).resolve().parent
DEFAULT_VALUES_TEMPLATE = PACKAGE_DIR / "templates" / "helm-values.yaml"

DEFAULT_PLATFORM = "linux/amd64"
ALTERNATE_PLATFORM = "linux/arm64"


@dataclass(frozen=True)
class Settings:
    release_name: str = "backstage"
    namespace: str = "backstage"
    chart_repo_name: str = "backstage"
    chart_repo_url: str = "https://backstage.github.io/charts"
    chart: str = "backstage/backstage"
    helm_timeout: str = "10m"

    lb_name_prefix: str = "k8s-backstag"
    lb_poll_attempts: int = 24
    lb_poll_interval: float = 5.0

    stack_wait_timeout: float = 1800.0
    stack_poll_interval: float = 30.0
    stack_delete_delay: int = 15
    stack_delete_max_attempts: int = 80
    resource_wait_delay: int = 10
    resource_wait_max_attempts: int = 60
    registry_grace_seconds: float = 2.0

    app_dir: Path = Path("backstage-app")
    template_repository: str | None = None
    values_template: Path = DEFAULT_VALUES_TEMPLATE

    organization_name: str = "My Organization"
    scaffolder_email: str = "backstage@example.com"
    base_url: str = "http://backstage.local"

    git_user_name: str = "Backstage Setup"
    git_user_email: str = "setup@backstage.local"

    default_platform: str = DEFAULT_PLATFORM
    alternate_platform: str = ALTERNATE_PLATFORM


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise PreconditionError(f"{name} must be an integer, got {raw!r}") from exc


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise PreconditionError(f"{name} must be a number, got {raw!r}") from exc


def _str(env: Mapping[str, str], name: str, default: str) -> str:
    return env.get(name, "").strip() or default


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """Build Settings from the process environment (or an explicit mapping)."""
    env = os.environ if environ is None else environ
    defaults = Settings()
    template_repository = env.get("IDP_TEMPLATE_REPOSITORY", "").strip() or None
    return Settings(
        release_name=_str(env, "IDP_RELEASE_NAME", defaults.release_name),
        namespace=_str(env, "IDP_NAMESPACE", defaults.namespace),
        chart_repo_name=_str(env, "IDP_CHART_REPO_NAME", defaults.chart_repo_name),
        chart_repo_url=_str(env, "IDP_CHART_REPO_URL", defaults.chart_repo_url),
        chart=_str(env, "IDP_CHART", defaults.chart),
        helm_timeout=_str(env, "IDP_HELM_TIMEOUT", defaults.helm_timeout),
        lb_name_prefix=_str(env, "IDP_LB_NAME_PREFIX", defaults.lb_name_prefix),
        lb_poll_attempts=_int(env, "IDP_LB_POLL_ATTEMPTS", defaults.lb_poll_attempts),
        lb_poll_interval=_float(env, "IDP_LB_POLL_INTERVAL", defaults.lb_poll_interval),
        stack_wait_timeout=_float(env, "IDP_STACK_WAIT_TIMEOUT", defaults.stack_wait_timeout),
        stack_poll_interval=_float(env, "IDP_STACK_POLL_INTERVAL", defaults.stack_poll_interval),
        stack_delete_delay=_int(env, "IDP_STACK_DELETE_DELAY", defaults.stack_delete_delay),
        stack_delete_max_attempts=_int(
            env, "IDP_STACK_DELETE_MAX_ATTEMPTS", defaults.stack_delete_max_attempts
        ),
        resource_wait_delay=_int(env, "IDP_RESOURCE_WAIT_DELAY", defaults.resource_wait_delay),
        resource_wait_max_attempts=_int(
            env, "IDP_RESOURCE_WAIT_MAX_ATTEMPTS", defaults.resource_wait_max_attempts
        ),
        registry_grace_seconds=_float(
            env, "IDP_REGISTRY_GRACE_SECONDS", defaults.registry_grace_seconds
        ),
        app_dir=Path(_str(env, "IDP_APP_DIR", str(defaults.app_dir))),
        template_repository=template_repository,
        values_template=Path(_str(env, "IDP_VALUES_TEMPLATE", str(defaults.values_template))),
        organization_name=_str(
            env,
            "IDP_ORGANIZATION_NAME",
            _str(env, "ORGANIZATION_NAME", defaults.organization_name),
        ),
        scaffolder_email=_str(
            env,
            "IDP_SCAFFOLDER_EMAIL",
            _str(env, "SCAFFOLDER_EMAIL", defaults.scaffolder_email),
        ),
        base_url=_str(env, "IDP_BASE_URL", defaults.base_url),
        git_user_name=_str(env, "IDP_GIT_USER_NAME", defaults.git_user_name),
        git_user_email=_str(env, "IDP_GIT_USER_EMAIL", defaults.git_user_email),
    )


def resolve_region(environ: Mapping[str, str] | None = None) -> str:
    """AWS_REGION, then AWS_DEFAULT_REGION, then the boto3 session default."""
    env = os.environ if environ is None else environ
    for name in ("AWS_REGION", "AWS_DEFAULT_REGION"):
        region = env.get(name, "").strip()
        if region:
            return region
    region = boto3.session.Session().region_name
    if not region:
        raise PreconditionError("AWS region not configured; set AWS_REGION")
    return region


def describe_platform(platform: str, settings: Settings) -> str:
    if platform == settings.default_platform:
        return f"{platform} (x86_64 - standard EKS nodes)"
    if platform == settings.alternate_platform:
        return f"{platform} (aarch64 - Graviton EKS nodes)"
    return platform
