"""
cleanup.py — Remove the Backstage IDP resources and the platform stack.

The EKS cluster itself is not deleted. Asks for confirmation before any
mutation; only the literal answer "yes" proceeds.

Usage:
    python scripts/cleanup.py <stack-name> [--report <path>]
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

from idp_setup.aws_clients import (
    DatabaseClient,
    LoadBalancerClient,
    LockTableClient,
    ObjectStoreClient,
    RegistryClient,
)
from idp_setup.cleanup import CleanupContext, CleanupDependencies, run_cleanup
from idp_setup.cli import FATAL_ERRORS, ArgumentParser, configure_logging, confirm
from idp_setup.commands import CommandRunner
from idp_setup.models import OutputKey
from idp_setup.release import ReleaseManager
from idp_setup.report import PipelineReport, StepStatus
from idp_setup.settings import Settings, load_settings, resolve_region
from idp_setup.stack import StackClient

logger = logging.getLogger("cleanup")
configure_logging()

SUMMARY_LABELS: dict[str, str] = {
    "uninstall-release": "Backstage Helm release",
    "purge-registry": "ECR images",
    "empty-object-store": "Terraform state objects",
    "delete-lock-table": "Terraform lock table",
    "disable-deletion-protection": "RDS deletion protection",
    "delete-stack": "CloudFormation stack",
}


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = ArgumentParser(description="Backstage IDP cleanup")
    parser.add_argument("stack_name", help="Platform CloudFormation stack name")
    parser.add_argument("--report", type=Path, default=None, help="Write a JSON step report")
    args = parser.parse_args(argv)
    if not args.stack_name.strip():
        parser.error("stack name must not be empty")
    return args


def build_dependencies(region: str, settings: Settings) -> CleanupDependencies:
    return CleanupDependencies(
        stacks=StackClient(region=region),
        registry=RegistryClient(region=region),
        object_store=ObjectStoreClient(region=region),
        lock_tables=LockTableClient(region=region),
        databases=DatabaseClient(region=region),
        load_balancers=LoadBalancerClient(region=region),
        release=ReleaseManager.probe(CommandRunner(), settings),
    )


def read_confirmation() -> bool:
    return confirm(input)


def print_summary(report: PipelineReport) -> None:
    print()
    print("Cleanup complete. Results:")
    for entry in report.steps:
        label = SUMMARY_LABELS.get(entry["step"], entry["step"])
        print(f"  [{entry['status']}] {label}")
    remaining = report.details_of("purge-registry").get("remaining")
    if isinstance(remaining, int) and remaining > 0:
        print()
        print(
            f"Note: {remaining} image(s) remained after the batch delete; "
            "warnings about leftover images can be ignored once the repository is gone."
        )
    print()
    print("The EKS cluster was not deleted.")


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    report = PipelineReport(workflow="cleanup", stack_name=args.stack_name)

    try:
        settings = load_settings()
        region = resolve_region()
        deps = build_dependencies(region, settings)
        stack = deps.stacks.describe(args.stack_name)
        cluster_name = stack.outputs.require(OutputKey.CLUSTER_NAME)
    except FATAL_ERRORS as exc:
        logger.error("Cleanup failed: %s", exc)
        return 1

    print()
    print("WARNING: this will delete the following resources:")
    print(f"  - CloudFormation stack {stack.name} and everything it created")
    print(f"  - Helm release {settings.release_name} in namespace {settings.namespace}")
    print("  - ECR images, Terraform state objects and the Terraform lock table")
    print(f"The EKS cluster {cluster_name} will NOT be deleted.")
    print()
    if not read_confirmation():
        print("Cleanup cancelled")
        return 0

    ctx = CleanupContext(
        stack=stack,
        region=stack.region or region,
        cluster_name=cluster_name,
        settings=settings,
    )
    try:
        run_cleanup(ctx, deps, report)
    except FATAL_ERRORS as exc:
        logger.error("Cleanup failed: %s", exc)
        return 1
    finally:
        if args.report is not None and report.steps:
            report.write(args.report)

    print_summary(report)
    if report.status_of("delete-stack") is not StepStatus.PASSED:
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
