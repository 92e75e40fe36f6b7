"""
idp_setup.cleanup — Teardown pipeline for the Backstage platform stack.

Steps run in a fixed order. The first five are best-effort: a failure is
recorded as a warning and the next, coarser step supersedes it. Stack deletion
always surfaces its failure.

    uninstall-release             helm uninstall, then wait for the ALB to go
    purge-registry                batch delete images, force-delete on leftovers
    empty-object-store            objects, versions and delete markers
    delete-lock-table             optional Terraform lock table
    disable-deletion-protection   RDS DeletionProtection -> false
    delete-stack                  delete, remediate ECR once, retry once
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from botocore.exceptions import ClientError

from idp_setup.aws_clients import (
    DatabaseClient,
    LoadBalancerClient,
    LockTableClient,
    ObjectStoreClient,
    RegistryClient,
)
from idp_setup.commands import Unavailable
from idp_setup.exceptions import CommandError, StackDeletionFailed
from idp_setup.models import (
    DATABASE_LOGICAL_ID,
    REGISTRY_LOGICAL_ID,
    OutputKey,
    StackInfo,
)
from idp_setup.release import ReleaseManager
from idp_setup.report import PipelineReport, StepOutcome, passed, run_step, skipped, warning
from idp_setup.settings import Settings
from idp_setup.stack import StackClient

logger = logging.getLogger(__name__)

STEP_ORDER: tuple[str, ...] = (
    "uninstall-release",
    "purge-registry",
    "empty-object-store",
    "delete-lock-table",
    "disable-deletion-protection",
    "delete-stack",
)


@dataclass(frozen=True)
class CleanupContext:
    stack: StackInfo
    region: str
    cluster_name: str
    settings: Settings


@dataclass
class CleanupDependencies:
    stacks: StackClient
    registry: RegistryClient
    object_store: ObjectStoreClient
    lock_tables: LockTableClient
    databases: DatabaseClient
    load_balancers: LoadBalancerClient
    release: ReleaseManager | Unavailable
    sleep: Callable[[float], None] = time.sleep


def wait_for_load_balancers(
    load_balancers: LoadBalancerClient,
    *,
    prefix: str,
    attempts: int,
    interval: float,
    sleep: Callable[[float], None],
) -> list[str]:
    """Poll until no load balancer name starts with prefix. Returns the survivors."""
    remaining: list[str] = []
    for attempt in range(1, attempts + 1):
        remaining = load_balancers.find_by_prefix(prefix)
        if not remaining:
            return []
        logger.info(
            "Waiting for %d load balancer(s) to be deleted (%d/%d)",
            len(remaining),
            attempt,
            attempts,
        )
        if attempt < attempts:
            sleep(interval)
    return remaining


def uninstall_release(ctx: CleanupContext, deps: CleanupDependencies) -> StepOutcome:
    settings = ctx.settings
    uninstalled: bool | None = None
    problem: str | None = None

    if isinstance(deps.release, Unavailable):
        problem = (
            f"{deps.release.reason}; the load balancer may not be removed "
            "and stack deletion may fail"
        )
    else:
        try:
            deps.release.update_kubeconfig(ctx.cluster_name, ctx.region)
            uninstalled = deps.release.uninstall()
        except CommandError as exc:
            problem = f"Could not uninstall release {deps.release.release_name}: {exc}"
        else:
            if not uninstalled:
                logger.info("Release %s not installed", deps.release.release_name)

    remaining = wait_for_load_balancers(
        deps.load_balancers,
        prefix=settings.lb_name_prefix,
        attempts=settings.lb_poll_attempts,
        interval=settings.lb_poll_interval,
        sleep=deps.sleep,
    )
    if remaining:
        lb_problem = f"{len(remaining)} load balancer(s) still present; continuing"
        problem = f"{problem}; {lb_problem}" if problem else lb_problem
    if problem:
        return warning(problem, uninstalled=uninstalled, loadBalancers=remaining)
    return passed(uninstalled=uninstalled, loadBalancers=[])


def purge_registry(ctx: CleanupContext, deps: CleanupDependencies) -> StepOutcome:
    repository = ctx.stack.outputs.optional(OutputKey.REGISTRY_NAME)
    if repository is None:
        return skipped("No ECR repository output on the stack")
    image_ids = deps.registry.list_image_ids(repository)
    if image_ids is None:
        return skipped(f"ECR repository {repository} does not exist", repository=repository)

    failures = deps.registry.batch_delete(repository, image_ids) if image_ids else 0
    deps.sleep(ctx.settings.registry_grace_seconds)

    remaining: int | None
    try:
        leftover = deps.registry.list_image_ids(repository)
    except ClientError as exc:
        logger.warning("Could not count remaining images in %s: %s", repository, exc)
        remaining = None
    else:
        remaining = len(leftover) if leftover is not None else 0

    force_deleted = False
    if failures or remaining:
        logger.info("Force-deleting ECR repository %s", repository)
        force_deleted = deps.registry.force_delete_repository(repository)

    return passed(
        repository=repository,
        images=len(image_ids),
        failures=failures,
        remaining=remaining,
        forceDeleted=force_deleted,
    )


def empty_object_store(ctx: CleanupContext, deps: CleanupDependencies) -> StepOutcome:
    bucket = ctx.stack.outputs.optional(OutputKey.STATE_BUCKET)
    if bucket is None:
        return skipped("No Terraform state bucket output on the stack")
    if not deps.object_store.bucket_exists(bucket):
        return skipped(f"Bucket {bucket} does not exist", bucket=bucket)

    deleted = 0
    errors = 0
    if deps.object_store.count_objects(bucket):
        current = deps.object_store.delete_all_objects(bucket)
        deleted += current.deleted
        errors += current.errors
    versions = deps.object_store.delete_all_versions(bucket)
    deleted += versions.deleted
    errors += versions.errors

    if errors:
        return warning(
            f"{errors} object(s) could not be deleted from {bucket}",
            bucket=bucket,
            deleted=deleted,
            errors=errors,
        )
    return passed(bucket=bucket, deleted=deleted, errors=0)


def delete_lock_table(ctx: CleanupContext, deps: CleanupDependencies) -> StepOutcome:
    table = ctx.stack.outputs.optional(OutputKey.LOCK_TABLE)
    if table is None:
        return skipped("No Terraform lock table output on the stack")
    if not deps.lock_tables.exists(table):
        return skipped(f"Table {table} does not exist", table=table)

    deps.lock_tables.delete(table)
    if not deps.lock_tables.wait_deleted(
        table,
        delay=ctx.settings.resource_wait_delay,
        max_attempts=ctx.settings.resource_wait_max_attempts,
    ):
        return warning(f"Table {table} deletion still in progress", table=table)
    return passed(table=table)


def disable_deletion_protection(ctx: CleanupContext, deps: CleanupDependencies) -> StepOutcome:
    instance = deps.stacks.physical_resource_id(ctx.stack.name, DATABASE_LOGICAL_ID)
    if instance is None:
        return skipped("No RDS instance in the stack")
    protected = deps.databases.deletion_protection(instance)
    if protected is None:
        return skipped(f"RDS instance {instance} does not exist", instance=instance)
    if not protected:
        return passed(instance=instance, changed=False)

    deps.databases.disable_deletion_protection(instance)
    if not deps.databases.wait_available(
        instance,
        delay=ctx.settings.resource_wait_delay,
        max_attempts=ctx.settings.resource_wait_max_attempts,
    ):
        return warning(
            f"RDS instance {instance} not yet available after modification",
            instance=instance,
            changed=True,
        )
    return passed(instance=instance, changed=True)


def _delete_and_wait(ctx: CleanupContext, deps: CleanupDependencies) -> tuple[bool, datetime]:
    """Request deletion and wait. Returns the outcome and when the request was made."""
    requested_at = datetime.now(tz=UTC)
    deps.stacks.delete_stack(ctx.stack.name)
    deleted = deps.stacks.wait_for_delete(
        ctx.stack.name,
        delay=ctx.settings.stack_delete_delay,
        max_attempts=ctx.settings.stack_delete_max_attempts,
    )
    return deleted, requested_at


def _deletion_failure(
    ctx: CleanupContext, deps: CleanupDependencies, since: datetime
) -> StackDeletionFailed:
    event = deps.stacks.first_delete_failure(ctx.stack.name, since=since)
    if event is None:
        return StackDeletionFailed(
            ctx.stack.name, resource=None, reason="deletion did not complete in time"
        )
    return StackDeletionFailed(ctx.stack.name, resource=event.logical_id, reason=event.reason)


def delete_stack(ctx: CleanupContext, deps: CleanupDependencies) -> StepOutcome:
    name = ctx.stack.name
    logger.info("Deleting CloudFormation stack %s", name)
    deleted, requested_at = _delete_and_wait(ctx, deps)
    if deleted:
        return passed(stack=name, retried=False)

    failure = _deletion_failure(ctx, deps, requested_at)
    if failure.resource != REGISTRY_LOGICAL_ID:
        raise failure

    repository = deps.stacks.physical_resource_id(name, REGISTRY_LOGICAL_ID)
    logger.warning("Stack deletion blocked by ECR repository %s; force-deleting", repository)
    if repository:
        deps.registry.force_delete_repository(repository)
    deleted, requested_at = _delete_and_wait(ctx, deps)
    if deleted:
        return passed(stack=name, retried=True, remediated=repository)
    raise _deletion_failure(ctx, deps, requested_at)


STEP_HANDLERS: dict[str, Callable[[CleanupContext, CleanupDependencies], StepOutcome]] = {
    "uninstall-release": uninstall_release,
    "purge-registry": purge_registry,
    "empty-object-store": empty_object_store,
    "delete-lock-table": delete_lock_table,
    "disable-deletion-protection": disable_deletion_protection,
    "delete-stack": delete_stack,
}


def run_cleanup(
    ctx: CleanupContext,
    deps: CleanupDependencies,
    report: PipelineReport,
) -> None:
    for step_name in STEP_ORDER:
        handler = STEP_HANDLERS[step_name]
        run_step(
            report,
            step_name,
            lambda handler=handler: handler(ctx, deps),
            best_effort=step_name != "delete-stack",
        )
