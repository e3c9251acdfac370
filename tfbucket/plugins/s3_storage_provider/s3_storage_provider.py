import functools
import logging
import pathlib
from typing import Any, Callable, Optional, Self, TypeVar, override

import anyio.to_thread
import boto3
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel, SecretStr

from tfbucket.server.base_state_lock_provider import StateObject
from tfbucket.server.storage_provider_base import (
    ConditionalStorageProviderProtocol,
    LockableStorageProviderProtocol,
    PreconditionFailedError,
    dump_state_object,
    load_state_object,
    translate_storage_errors,
)

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = ("NoSuchKey", "404", "NotFound")
PRECONDITION_FAILED_CODES = ("PreconditionFailed", "412", "ConditionalRequestConflict")

T = TypeVar("T")


class S3StorageProviderInitConfig(BaseModel):
    """Initialization params of the S3 storage provider.

    Works with any S3 compatible object store (AWS S3, Backblaze B2 S3 API, MinIO...).
    Credentials fall back to the default boto3 chain (environment, profile, instance role) when not set.

    Attributes:
        bucket: Bucket holding the state objects.
        region_name: Region of the bucket.
        endpoint_url: Custom endpoint - required for S3 compatible stores other than AWS.
        aws_access_key_id: Static access key id.
        aws_secret_access_key: Static secret access key.
        conditional_writes: Use `If-Match` / `If-None-Match` preconditions on writes -
            disable for stores that reject them.

    Example:
        ```yaml
        type: s3
        bucket: my-states
        endpoint_url: https://s3.us-west-004.backblazeb2.com
        ```
    """

    bucket: str
    region_name: Optional[str] = None
    endpoint_url: Optional[str] = None
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[SecretStr] = None
    conditional_writes: bool = True


def _error_code(error: ClientError) -> str | None:
    return error.response.get("Error", {}).get("Code")


class S3StorageProvider(ConditionalStorageProviderProtocol, LockableStorageProviderProtocol):
    """S3 backed storage - one object per key, the object ETag is used as version token.

    Native locking uses object lock legal holds - the bucket must have object lock enabled.
    """

    def __init__(self, *, bucket: str, s3: Optional[Any] = None, conditional_writes: bool = True, **client_kwargs: Any) -> None:
        self.bucket = bucket
        self.conditional_writes = conditional_writes
        self._s3 = s3 or boto3.client("s3", **client_kwargs)

    @override
    @classmethod
    async def from_config(
        cls,
        raw_config: Any,
        *,
        workdir: pathlib.Path,
    ) -> Self:
        result = S3StorageProviderInitConfig.model_validate(raw_config)
        secret_key = result.aws_secret_access_key
        return cls(
            bucket=result.bucket,
            conditional_writes=result.conditional_writes,
            region_name=result.region_name,
            endpoint_url=result.endpoint_url,
            aws_access_key_id=result.aws_access_key_id,
            aws_secret_access_key=secret_key.get_secret_value() if secret_key is not None else None,
        )

    async def _call(self, func: Callable[..., T], **kwargs: Any) -> T:
        # boto3 is blocking - keep the event loop free while waiting on the network
        return await anyio.to_thread.run_sync(functools.partial(func, **kwargs))

    @override
    async def retrieve(self, key: str) -> StateObject:
        with translate_storage_errors("read", key, ClientError, BotoCoreError):
            try:
                resp = await self._call(self._s3.get_object, Bucket=self.bucket, Key=key)

            except ClientError as e:
                if _error_code(e) in NOT_FOUND_CODES:
                    raise FileNotFoundError(f"Object s3://{self.bucket}/{key} not found") from e

                raise

            body = await self._call(resp["Body"].read)
            return load_state_object(body, version=resp.get("ETag"))

    async def _put(self, key: str, obj: StateObject, **preconditions: str) -> None:
        await self._call(
            self._s3.put_object,
            Bucket=self.bucket,
            Key=key,
            Body=dump_state_object(obj),
            ContentType="application/json",
            **preconditions,
        )

    @override
    async def store(self, key: str, obj: StateObject) -> None:
        with translate_storage_errors("store", key, ClientError, BotoCoreError):
            await self._put(key, obj)

    @override
    async def store_conditionally(self, key: str, obj: StateObject, expected_version: Optional[str]) -> None:
        if not self.conditional_writes:
            return await self.store(key, obj)

        if expected_version is None:
            preconditions = {"IfNoneMatch": "*"}
        else:
            preconditions = {"IfMatch": expected_version}

        with translate_storage_errors("store", key, ClientError, BotoCoreError):
            try:
                await self._put(key, obj, **preconditions)

            except ClientError as e:
                if _error_code(e) in PRECONDITION_FAILED_CODES:
                    raise PreconditionFailedError(key) from e

                raise

    @override
    async def native_lock(self, key: str) -> None:
        with translate_storage_errors("place legal hold on", key, ClientError, BotoCoreError):
            head = await self._call(self._s3.head_object, Bucket=self.bucket, Key=key)
            hold_args: dict[str, Any] = {"Bucket": self.bucket, "Key": key, "LegalHold": {"Status": "ON"}}
            if head.get("VersionId"):
                hold_args["VersionId"] = head["VersionId"]

            await self._call(self._s3.put_object_legal_hold, **hold_args)

    @override
    async def native_unlock(self, key: str) -> None:
        # state writes create new versions while the lock is held - lift the hold from every version
        with translate_storage_errors("release legal hold on", key, ClientError, BotoCoreError):
            version_ids = await self._call(self._list_version_ids, key=key)
            for version_id in version_ids:
                await self._call(
                    self._s3.put_object_legal_hold,
                    Bucket=self.bucket,
                    Key=key,
                    VersionId=version_id,
                    LegalHold={"Status": "OFF"},
                )

            logger.debug("Released legal hold of %d versions of %s", len(version_ids), key)

    @override
    async def aclose(self) -> None:
        await self._call(self._s3.close)

    def _list_version_ids(self, key: str) -> list[str]:
        paginator = self._s3.get_paginator("list_object_versions")
        version_ids = []
        for page in paginator.paginate(Bucket=self.bucket, Prefix=key):
            for version in page.get("Versions", []):
                if version["Key"] == key:
                    version_ids.append(version["VersionId"])

        return version_ids
