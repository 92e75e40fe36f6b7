"""
idp_setup.stack — CloudFormation stack-output resolver and stack lifecycle calls.

The resolver is the only source of resource identifiers for both pipelines:
nothing is cached across invocations and nothing assumes a key is present.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError, WaiterError

from idp_setup.exceptions import StackNotFound, StackNotReady, StackUnreachable
from idp_setup.models import DEAD_STATUSES, StackEvent, StackInfo, StackOutputs

logger = logging.getLogger(__name__)


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def _is_missing_stack(exc: ClientError) -> bool:
    message = str(exc.response.get("Error", {}).get("Message", ""))
    return _error_code(exc) == "ValidationError" and "does not exist" in message


class StackClient:
    """Thin typed wrapper over the CloudFormation API."""

    def __init__(self, *, region: str, cloudformation_client: Any = None) -> None:
        self._cfn: Any = cloudformation_client or boto3.client(
            "cloudformation", region_name=region
        )

    def describe(self, stack_name: str) -> StackInfo:
        if not stack_name or not stack_name.strip():
            raise ValueError("stack name must be a non-empty string")
        try:
            response = self._cfn.describe_stacks(StackName=stack_name)
        except ClientError as exc:
            if _is_missing_stack(exc):
                raise StackNotFound(stack_name) from exc
            raise StackUnreachable(f"Could not describe stack {stack_name}: {exc}") from exc
        except BotoCoreError as exc:
            raise StackUnreachable(f"Could not describe stack {stack_name}: {exc}") from exc

        stacks = response.get("Stacks", [])
        if not stacks:
            raise StackNotFound(stack_name)
        stack = stacks[0]
        outputs = {
            str(item["OutputKey"]): str(item.get("OutputValue", ""))
            for item in stack.get("Outputs", [])
            if "OutputKey" in item
        }
        parameters = {
            str(item["ParameterKey"]): str(item.get("ParameterValue", ""))
            for item in stack.get("Parameters", [])
            if "ParameterKey" in item
        }
        return StackInfo(
            name=stack_name,
            stack_id=str(stack.get("StackId", "")),
            status=str(stack.get("StackStatus", "")),
            outputs=StackOutputs(stack_name, outputs),
            parameters=parameters,
        )

    def physical_resource_id(self, stack_name: str, logical_id: str) -> str | None:
        """Physical id of a stack resource, or None when the stack/resource is absent."""
        try:
            response = self._cfn.describe_stack_resource(
                StackName=stack_name, LogicalResourceId=logical_id
            )
        except ClientError as exc:
            if _error_code(exc) == "ValidationError":
                return None
            raise
        detail = response.get("StackResourceDetail", {})
        physical_id = str(detail.get("PhysicalResourceId", "")).strip()
        return physical_id or None

    def delete_stack(self, stack_name: str) -> None:
        self._cfn.delete_stack(StackName=stack_name)

    def wait_for_delete(self, stack_name: str, *, delay: int, max_attempts: int) -> bool:
        """Block until the stack is gone. False on waiter failure or timeout."""
        waiter = self._cfn.get_waiter("stack_delete_complete")
        try:
            waiter.wait(
                StackName=stack_name,
                WaiterConfig={"Delay": delay, "MaxAttempts": max_attempts},
            )
        except WaiterError as exc:
            logger.warning("Stack %s deletion did not complete: %s", stack_name, exc)
            return False
        return True

    def first_delete_failure(
        self, stack_name: str, *, since: datetime | None = None
    ) -> StackEvent | None:
        """Most recent DELETE_FAILED event, ignoring events older than since.

        Events are returned newest first, so the scan stops at the first older event.
        """
        paginator = self._cfn.get_paginator("describe_stack_events")
        for page in paginator.paginate(StackName=stack_name):
            for event in page.get("StackEvents", []):
                timestamp = event.get("Timestamp")
                if since is not None and isinstance(timestamp, datetime) and timestamp < since:
                    return None
                if event.get("ResourceStatus") == "DELETE_FAILED":
                    return StackEvent(
                        logical_id=str(event.get("LogicalResourceId", "")),
                        status="DELETE_FAILED",
                        reason=str(event.get("ResourceStatusReason", "")),
                        physical_id=str(event.get("PhysicalResourceId", "")),
                    )
        return None


def resolve_stack_outputs(
    client: StackClient,
    stack_name: str,
    required: Iterable[str] = (),
) -> StackInfo:
    """Describe the stack and fail with StackNotReady when a required output is absent."""
    info = client.describe(stack_name)
    for key in required:
        info.outputs.require(key)
    return info


def wait_until_ready(
    client: StackClient,
    stack_name: str,
    *,
    timeout: float,
    interval: float,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> StackInfo:
    """Poll until CREATE_COMPLETE/UPDATE_COMPLETE.

    Raises StackNotReady on *_FAILED, on a terminal rollback/delete state, or on
    timeout; the last observed status is carried on the exception.
    """
    deadline = clock() + timeout
    while True:
        info = client.describe(stack_name)
        if info.is_ready:
            return info
        if info.status.endswith("_FAILED") or info.status in DEAD_STATUSES:
            raise StackNotReady(
                stack_name,
                f"CloudFormation stack {stack_name} is not ready. Current status: {info.status}",
                status=info.status,
            )
        if clock() >= deadline:
            raise StackNotReady(
                stack_name,
                f"Timed out after {timeout:.0f}s waiting for stack {stack_name} "
                f"(last status: {info.status})",
                status=info.status,
            )
        logger.info("Stack %s is %s; waiting %.0fs", stack_name, info.status, interval)
        sleep(interval)
