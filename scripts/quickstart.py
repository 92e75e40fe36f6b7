"""
quickstart.py — Provision Backstage onto the platform EKS cluster.

Waits for the platform CloudFormation stack, configures the Terraform template
fork, builds and pushes the Backstage image, and deploys the Helm release.
Idempotent and safe to re-run.

Usage:
    python scripts/quickstart.py <stack-name> [platform] [--step <step>] [--report <path>]

    platform defaults to linux/amd64; use linux/arm64 for Graviton node groups.
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

from idp_setup.aws_clients import RegistryClient, SecretStoreClient
from idp_setup.cli import FATAL_ERRORS, ArgumentParser, configure_logging
from idp_setup.commands import CommandRunner
from idp_setup.image import ImageBuilder
from idp_setup.models import OutputKey
from idp_setup.provision import (
    STEP_CHOICES,
    ProvisionContext,
    ProvisionDependencies,
    run_provisioning,
)
from idp_setup.release import ReleaseManager
from idp_setup.report import PipelineReport
from idp_setup.settings import Settings, describe_platform, load_settings, resolve_region
from idp_setup.source_control import SourceControl
from idp_setup.stack import StackClient

logger = logging.getLogger("quickstart")
configure_logging()


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = ArgumentParser(description="Backstage IDP quickstart")
    parser.add_argument("stack_name", help="Platform CloudFormation stack name")
    parser.add_argument(
        "platform",
        nargs="?",
        default=None,
        help="Container image platform (default linux/amd64, or linux/arm64)",
    )
    parser.add_argument(
        "--step",
        default="all",
        choices=STEP_CHOICES,
        help="Provisioning stage to run (default: all)",
    )
    parser.add_argument("--report", type=Path, default=None, help="Write a JSON step report")
    args = parser.parse_args(argv)
    if not args.stack_name.strip():
        parser.error("stack name must not be empty")
    return args


def build_dependencies(region: str, settings: Settings) -> ProvisionDependencies:
    runner = CommandRunner()
    return ProvisionDependencies(
        stacks=StackClient(region=region),
        registry=RegistryClient(region=region),
        secrets=SecretStoreClient(region=region),
        source_control=SourceControl.probe(runner),
        image_builder=ImageBuilder.probe(runner),
        release=ReleaseManager.probe(runner, settings),
    )


def print_summary(ctx: ProvisionContext, step: str) -> None:
    settings = ctx.settings
    outputs = ctx.stack.outputs
    print()
    print("=" * 60)
    print("Backstage IDP setup complete" if step == "all" else f"Step {step} complete")
    print("=" * 60)
    print(f"  Stack:           {ctx.stack.name}")
    print(f"  Region:          {ctx.region}")
    print(f"  EKS cluster:     {outputs.get(OutputKey.CLUSTER_NAME, '-')}")
    print(f"  ECR repository:  {outputs.get(OutputKey.REGISTRY_URI, '-')}")
    print(f"  Platform:        {describe_platform(ctx.platform, settings)}")
    print()
    print("Access Backstage:")
    print(
        f"  kubectl port-forward svc/{settings.release_name} 7007:7007 "
        f"-n {settings.namespace}"
    )
    print("  then open http://localhost:7007")
    print()
    print("Next steps:")
    print("  1. Register your software templates in the Backstage catalog")
    print("  2. Create a component from a template to open a Terraform pull request")
    print("  3. Merge the pull request to let GitHub Actions apply the Terraform")


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    report = PipelineReport(workflow="provisioning", stack_name=args.stack_name)

    try:
        settings = load_settings()
        platform = args.platform or settings.default_platform
        if platform not in {settings.default_platform, settings.alternate_platform}:
            logger.info("Using custom platform %s", platform)
        region = resolve_region()
        deps = build_dependencies(region, settings)
        ctx = run_provisioning(
            args.stack_name,
            platform=platform,
            step=args.step,
            settings=settings,
            deps=deps,
            report=report,
            workdir=Path.cwd(),
        )
    except FATAL_ERRORS as exc:
        logger.error("Provisioning failed: %s", exc)
        return 1
    finally:
        if args.report is not None:
            report.write(args.report)

    print_summary(ctx, args.step)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
