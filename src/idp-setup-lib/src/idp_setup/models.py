"""
idp_setup.models — Typed views of externally-owned resources.

Nothing here is persisted. Every value is re-resolved from the infrastructure
stack at the start of each run and carried explicitly through the pipelines.

Stack contract (output/parameter keys emitted by the platform CloudFormation template):
    Outputs     EKSClusterName, RDSEndpoint, RDSPort, BackstageSecretsArn,
                ECRRepositoryName, ECRRepositoryUri, BackstageImageTag,
                TerraformStateBucket, TerraformStateLockTable (optional),
                GitHubActionsRoleArn, GitHubOIDCProviderArn
    Parameters  GitHubOrg, GitHubRepo
    Resources   RDSInstance, ECRRepository
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from enum import StrEnum

from idp_setup.exceptions import StackNotReady

# ---------------------------------------------------------------------------
# Stack contract
# ---------------------------------------------------------------------------


class OutputKey(StrEnum):
    CLUSTER_NAME = "EKSClusterName"
    DATABASE_ENDPOINT = "RDSEndpoint"
    DATABASE_PORT = "RDSPort"
    SECRETS_ARN = "BackstageSecretsArn"
    REGISTRY_NAME = "ECRRepositoryName"
    REGISTRY_URI = "ECRRepositoryUri"
    IMAGE_TAG = "BackstageImageTag"
    STATE_BUCKET = "TerraformStateBucket"
    LOCK_TABLE = "TerraformStateLockTable"
    ROLE_ARN = "GitHubActionsRoleArn"
    OIDC_PROVIDER_ARN = "GitHubOIDCProviderArn"


class ParameterKey(StrEnum):
    GITHUB_ORG = "GitHubOrg"
    GITHUB_REPO = "GitHubRepo"


DATABASE_LOGICAL_ID = "RDSInstance"
REGISTRY_LOGICAL_ID = "ECRRepository"

READY_STATUSES = frozenset({"CREATE_COMPLETE", "UPDATE_COMPLETE"})
# Terminal states that can never transition to a ready status without operator action.
DEAD_STATUSES = frozenset({"ROLLBACK_COMPLETE", "UPDATE_ROLLBACK_COMPLETE", "DELETE_COMPLETE"})


# ---------------------------------------------------------------------------
# Stack views
# ---------------------------------------------------------------------------


class StackOutputs(Mapping[str, str]):
    """Read-only OutputKey -> OutputValue mapping.

    An absent key and a key present with an empty value are distinct states:
    get() returns None for the former and "" for the latter.
    """

    def __init__(self, stack_name: str, values: Mapping[str, str]) -> None:
        self._stack_name = stack_name
        self._values = dict(values)

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"StackOutputs({self._stack_name!r}, {self._values!r})"

    def require(self, key: str) -> str:
        value = self._values.get(key)
        if value is None:
            raise StackNotReady(
                self._stack_name,
                f"Stack {self._stack_name} has no output {key} "
                "(still creating, or output not defined)",
            )
        if not value.strip():
            raise StackNotReady(self._stack_name, f"Stack {self._stack_name} output {key} is empty")
        return value

    def optional(self, key: str) -> str | None:
        """Return a non-empty value, or None when the key is absent or blank."""
        value = self._values.get(key)
        if value is None or not value.strip():
            return None
        return value


@dataclass(frozen=True)
class StackInfo:
    name: str
    stack_id: str
    status: str
    outputs: StackOutputs
    parameters: dict[str, str] = field(default_factory=dict)

    @property
    def region(self) -> str:
        # arn:aws:cloudformation:<region>:<account>:stack/<name>/<uuid>
        parts = self.stack_id.split(":")
        return parts[3] if len(parts) > 3 else ""

    @property
    def account_id(self) -> str:
        parts = self.stack_id.split(":")
        return parts[4] if len(parts) > 4 else ""

    @property
    def is_ready(self) -> bool:
        return self.status in READY_STATUSES

    def require_parameter(self, key: str) -> str:
        value = self.parameters.get(key, "").strip()
        if not value:
            raise StackNotReady(self.name, f"Stack {self.name} has no parameter {key}")
        return value


@dataclass(frozen=True)
class StackEvent:
    logical_id: str
    status: str
    reason: str
    physical_id: str = ""


# ---------------------------------------------------------------------------
# Registry / secrets views
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RegistryCredentials:
    endpoint: str
    username: str
    password: str = field(repr=False)

    @property
    def hostname(self) -> str:
        return self.endpoint.removeprefix("https://").removeprefix("http://").rstrip("/")


@dataclass(frozen=True)
class ImageReference:
    repository_uri: str
    tag: str

    @property
    def registry(self) -> str:
        return self.repository_uri.split("/", 1)[0]

    @property
    def repository(self) -> str:
        return self.repository_uri.split("/", 1)[1] if "/" in self.repository_uri else ""

    @property
    def versioned(self) -> str:
        return f"{self.repository_uri}:{self.tag}"

    @property
    def latest(self) -> str:
        return f"{self.repository_uri}:latest"


@dataclass(frozen=True)
class DatabaseCredentials:
    host: str
    port: str
    user: str
    password: str = field(repr=False)


@dataclass(frozen=True)
class GitHubCredentials:
    org: str
    token: str = field(repr=False)
