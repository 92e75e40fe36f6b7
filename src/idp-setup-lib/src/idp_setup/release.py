"""
idp_setup.release — Helm release and Kubernetes secret management.

Namespace and Secret objects are applied server-side under a single field
manager, so a re-run replaces the previous object rather than merging into it.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from idp_setup.commands import CommandRunner, Unavailable
from idp_setup.exceptions import CommandError
from idp_setup.settings import Settings

logger = logging.getLogger(__name__)

REQUIRED_TOOLS = ("aws", "kubectl", "helm")
FIELD_MANAGER = "idp-setup"


def secret_manifest(name: str, namespace: str, data: dict[str, str]) -> dict[str, object]:
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "type": "Opaque",
        "metadata": {"name": name, "namespace": namespace},
        "stringData": dict(data),
    }


def namespace_manifest(namespace: str) -> dict[str, object]:
    return {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": namespace}}


class ReleaseManager:
    def __init__(self, runner: CommandRunner, settings: Settings) -> None:
        self._runner = runner
        self._settings = settings

    @classmethod
    def probe(cls, runner: CommandRunner, settings: Settings) -> ReleaseManager | Unavailable:
        missing = runner.missing(REQUIRED_TOOLS)
        if missing:
            return Unavailable("release management", missing)
        return cls(runner, settings)

    @property
    def release_name(self) -> str:
        return self._settings.release_name

    @property
    def namespace(self) -> str:
        return self._settings.namespace

    def update_kubeconfig(self, cluster_name: str, region: str) -> None:
        self._runner.run(
            ["aws", "eks", "update-kubeconfig", "--name", cluster_name, "--region", region]
        )

    def cluster_info(self) -> None:
        self._runner.run(["kubectl", "cluster-info"])

    def _apply(self, manifest: dict[str, object]) -> None:
        self._runner.run(
            [
                "kubectl",
                "apply",
                "--server-side",
                "--force-conflicts",
                f"--field-manager={FIELD_MANAGER}",
                "-f",
                "-",
            ],
            input_text=json.dumps(manifest),
        )

    def apply_namespace(self) -> None:
        self._apply(namespace_manifest(self.namespace))

    def apply_secret(self, name: str, data: dict[str, str]) -> None:
        logger.info("Applying secret %s/%s (%d keys)", self.namespace, name, len(data))
        self._apply(secret_manifest(name, self.namespace, data))

    def add_chart_repository(self) -> None:
        self._runner.run(
            [
                "helm",
                "repo",
                "add",
                self._settings.chart_repo_name,
                self._settings.chart_repo_url,
                "--force-update",
            ]
        )
        self._runner.run(["helm", "repo", "update"])

    def upgrade_install(self, values_file: Path) -> None:
        self._runner.run(
            [
                "helm",
                "upgrade",
                "--install",
                self.release_name,
                self._settings.chart,
                "--namespace",
                self.namespace,
                "--values",
                str(values_file),
                "--wait",
                "--timeout",
                self._settings.helm_timeout,
            ]
        )

    def uninstall(self) -> bool:
        """Uninstall the release. False when it was not installed."""
        try:
            self._runner.run(["helm", "uninstall", self.release_name, "-n", self.namespace])
        except CommandError as exc:
            if "not found" in exc.stderr.lower():
                return False
            raise
        return True
