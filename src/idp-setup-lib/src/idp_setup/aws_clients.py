"""
idp_setup.aws_clients — Typed wrappers for the AWS services the workflows touch.

Each wrapper returns plain Python values (lists, counts, booleans) rather than raw
responses so the pipelines never parse service output themselves. Absence of a
resource is reported as a value (None / False), not as an exception.
"""

from __future__ import annotations

import base64
import json
import logging
from dataclasses import dataclass
from typing import Any

import boto3
from botocore.exceptions import ClientError, WaiterError

from idp_setup.exceptions import SetupError
from idp_setup.models import RegistryCredentials

logger = logging.getLogger(__name__)

ECR_BATCH_LIMIT = 100
S3_DELETE_LIMIT = 1000


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def _chunks(items: list[Any], size: int) -> list[list[Any]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


# ---------------------------------------------------------------------------
# ECR
# ---------------------------------------------------------------------------


class RegistryClient:
    def __init__(self, *, region: str, ecr_client: Any = None) -> None:
        self._ecr: Any = ecr_client or boto3.client("ecr", region_name=region)

    def list_image_ids(self, repository: str) -> list[dict[str, str]] | None:
        """All image ids (tagged and untagged), one per digest. None if the repository is gone."""
        seen: dict[str, dict[str, str]] = {}
        paginator = self._ecr.get_paginator("list_images")
        try:
            for page in paginator.paginate(repositoryName=repository):
                for image in page.get("imageIds", []):
                    digest = image.get("imageDigest")
                    if digest:
                        seen.setdefault(str(digest), {"imageDigest": str(digest)})
        except ClientError as exc:
            if _error_code(exc) == "RepositoryNotFoundException":
                return None
            raise
        return list(seen.values())

    def batch_delete(self, repository: str, image_ids: list[dict[str, str]]) -> int:
        """Delete images in API-sized batches. Returns the number of images not deleted.

        A rejected batch call counts every image in that batch as a failure.
        """
        failures = 0
        for chunk in _chunks(image_ids, ECR_BATCH_LIMIT):
            try:
                response = self._ecr.batch_delete_image(repositoryName=repository, imageIds=chunk)
            except ClientError as exc:
                failures += len(chunk)
                logger.warning("Batch delete of %d images failed: %s", len(chunk), exc)
                continue
            for failure in response.get("failures", []):
                failures += 1
                logger.warning(
                    "Could not delete image %s: %s",
                    failure.get("imageId"),
                    failure.get("failureReason"),
                )
        return failures

    def force_delete_repository(self, repository: str) -> bool:
        """Delete the repository together with any remaining images. False if already gone."""
        try:
            self._ecr.delete_repository(repositoryName=repository, force=True)
        except ClientError as exc:
            if _error_code(exc) == "RepositoryNotFoundException":
                return False
            raise
        return True

    def credentials(self) -> RegistryCredentials:
        response = self._ecr.get_authorization_token()
        data = response.get("authorizationData", [])
        if not data:
            raise SetupError("ECR returned no authorization data")
        token = base64.b64decode(str(data[0]["authorizationToken"])).decode("utf-8")
        username, _, password = token.partition(":")
        return RegistryCredentials(
            endpoint=str(data[0].get("proxyEndpoint", "")),
            username=username,
            password=password,
        )


# ---------------------------------------------------------------------------
# S3
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PurgeResult:
    deleted: int
    errors: int


class ObjectStoreClient:
    def __init__(self, *, region: str, s3_client: Any = None) -> None:
        self._s3: Any = s3_client or boto3.client("s3", region_name=region)

    def bucket_exists(self, bucket: str) -> bool:
        try:
            self._s3.head_bucket(Bucket=bucket)
        except ClientError as exc:
            if _error_code(exc) in {"404", "NoSuchBucket", "NotFound"}:
                return False
            raise
        return True

    def count_objects(self, bucket: str) -> int:
        paginator = self._s3.get_paginator("list_objects_v2")
        return sum(page.get("KeyCount", 0) for page in paginator.paginate(Bucket=bucket))

    def _delete(self, bucket: str, objects: list[dict[str, str]]) -> PurgeResult:
        deleted = 0
        errors = 0
        for chunk in _chunks(objects, S3_DELETE_LIMIT):
            response = self._s3.delete_objects(
                Bucket=bucket, Delete={"Objects": chunk, "Quiet": False}
            )
            deleted += len(response.get("Deleted", []))
            for error in response.get("Errors", []):
                errors += 1
                logger.warning(
                    "Could not delete s3://%s/%s: %s",
                    bucket,
                    error.get("Key"),
                    error.get("Message"),
                )
        return PurgeResult(deleted=deleted, errors=errors)

    def delete_all_objects(self, bucket: str) -> PurgeResult:
        paginator = self._s3.get_paginator("list_objects_v2")
        keys = [
            {"Key": str(item["Key"])}
            for page in paginator.paginate(Bucket=bucket)
            for item in page.get("Contents", [])
        ]
        if not keys:
            return PurgeResult(deleted=0, errors=0)
        return self._delete(bucket, keys)

    def delete_all_versions(self, bucket: str) -> PurgeResult:
        """Delete every object version and delete marker (no-op if versioning never enabled)."""
        paginator = self._s3.get_paginator("list_object_versions")
        versions: list[dict[str, str]] = []
        for page in paginator.paginate(Bucket=bucket):
            for item in [*page.get("Versions", []), *page.get("DeleteMarkers", [])]:
                versions.append({"Key": str(item["Key"]), "VersionId": str(item["VersionId"])})
        if not versions:
            return PurgeResult(deleted=0, errors=0)
        return self._delete(bucket, versions)


# ---------------------------------------------------------------------------
# DynamoDB
# ---------------------------------------------------------------------------


class LockTableClient:
    def __init__(self, *, region: str, dynamodb_client: Any = None) -> None:
        self._ddb: Any = dynamodb_client or boto3.client("dynamodb", region_name=region)

    def exists(self, table_name: str) -> bool:
        try:
            self._ddb.describe_table(TableName=table_name)
        except ClientError as exc:
            if _error_code(exc) == "ResourceNotFoundException":
                return False
            raise
        return True

    def delete(self, table_name: str) -> None:
        self._ddb.delete_table(TableName=table_name)

    def wait_deleted(self, table_name: str, *, delay: int, max_attempts: int) -> bool:
        waiter = self._ddb.get_waiter("table_not_exists")
        try:
            waiter.wait(
                TableName=table_name,
                WaiterConfig={"Delay": delay, "MaxAttempts": max_attempts},
            )
        except WaiterError as exc:
            logger.warning("Table %s still present after waiting: %s", table_name, exc)
            return False
        return True


# ---------------------------------------------------------------------------
# RDS
# ---------------------------------------------------------------------------


class DatabaseClient:
    def __init__(self, *, region: str, rds_client: Any = None) -> None:
        self._rds: Any = rds_client or boto3.client("rds", region_name=region)

    def deletion_protection(self, instance_id: str) -> bool | None:
        """Current DeletionProtection flag, or None when the instance does not exist."""
        try:
            response = self._rds.describe_db_instances(DBInstanceIdentifier=instance_id)
        except ClientError as exc:
            if _error_code(exc) == "DBInstanceNotFound":
                return None
            raise
        instances = response.get("DBInstances", [])
        if not instances:
            return None
        return bool(instances[0].get("DeletionProtection", False))

    def disable_deletion_protection(self, instance_id: str) -> None:
        self._rds.modify_db_instance(
            DBInstanceIdentifier=instance_id,
            DeletionProtection=False,
            ApplyImmediately=True,
        )

    def wait_available(self, instance_id: str, *, delay: int, max_attempts: int) -> bool:
        waiter = self._rds.get_waiter("db_instance_available")
        try:
            waiter.wait(
                DBInstanceIdentifier=instance_id,
                WaiterConfig={"Delay": delay, "MaxAttempts": max_attempts},
            )
        except WaiterError as exc:
            logger.warning("Database %s not available after waiting: %s", instance_id, exc)
            return False
        return True


# ---------------------------------------------------------------------------
# ELBv2
# ---------------------------------------------------------------------------


class LoadBalancerClient:
    def __init__(self, *, region: str, elbv2_client: Any = None) -> None:
        self._elbv2: Any = elbv2_client or boto3.client("elbv2", region_name=region)

    def find_by_prefix(self, prefix: str) -> list[str]:
        """ARNs of load balancers whose name starts with prefix."""
        paginator = self._elbv2.get_paginator("describe_load_balancers")
        return [
            str(lb["LoadBalancerArn"])
            for page in paginator.paginate()
            for lb in page.get("LoadBalancers", [])
            if str(lb.get("LoadBalancerName", "")).startswith(prefix)
        ]


# ---------------------------------------------------------------------------
# Secrets Manager / STS
# ---------------------------------------------------------------------------


class SecretStoreClient:
    def __init__(self, *, region: str, secretsmanager_client: Any = None) -> None:
        self._secrets: Any = secretsmanager_client or boto3.client(
            "secretsmanager", region_name=region
        )

    def get_json(self, secret_id: str) -> dict[str, Any]:
        raw = self._secrets.get_secret_value(SecretId=secret_id).get("SecretString", "")
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise SetupError(f"Secret {secret_id} is not a JSON document") from exc
        if not isinstance(parsed, dict):
            raise SetupError(f"Secret {secret_id} is not a JSON object")
        return parsed


def caller_account_id(*, region: str, sts_client: Any = None) -> str:
    sts: Any = sts_client or boto3.client("sts", region_name=region)
    return str(sts.get_caller_identity()["Account"])
