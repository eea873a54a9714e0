"""Object-store access used by analysis and execution."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from boto3.session import Session
from botocore.exceptions import BotoCoreError, ClientError

from ..exceptions import ObjectStoreError, ObjectStoreUnavailableError
from ..utils.config import GlobalSettings, get_settings
from ..utils.retry import RetryConfig, call_with_retry, is_transient_error

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class StoredObject:
    """Listing entry for one object."""

    key: str
    size: int = 0
    last_modified: datetime | None = None


class ObjectStore(Protocol):
    """Operations the pipeline needs from an S3-compatible store."""

    def list_objects(self, bucket: str, prefix: str) -> list[StoredObject]: ...

    def copy_object(
        self, source_bucket: str, source_key: str, target_bucket: str, target_key: str
    ) -> None: ...

    def get_object(self, bucket: str, key: str) -> bytes: ...

    def put_object(self, bucket: str, key: str, body: bytes) -> None: ...

    def delete_object(self, bucket: str, key: str) -> None: ...


class S3ObjectStore:
    """boto3-backed store that retries transient failures before giving up."""

    def __init__(
        self,
        client: Any | None = None,
        *,
        retry_config: RetryConfig | None = None,
        region: str | None = None,
        profile: str | None = None,
        endpoint_url: str | None = None,
    ) -> None:
        if client is None:
            session_kwargs: dict[str, Any] = {}
            if region:
                session_kwargs["region_name"] = region
            if profile:
                session_kwargs["profile_name"] = profile
            client = Session(**session_kwargs).client("s3", endpoint_url=endpoint_url)
        self._client = client
        self._retry_config = retry_config or RetryConfig()

    def _call(self, description: str, key: str | None, operation: Any) -> Any:
        try:
            return call_with_retry(operation, retry_config=self._retry_config, log=logger)
        except (BotoCoreError, ClientError) as exc:
            if is_transient_error(exc, self._retry_config):
                raise ObjectStoreUnavailableError(
                    f"{description} failed after {self._retry_config.max_attempts} attempts: {exc}",
                    key=key,
                ) from exc
            raise ObjectStoreError(f"{description} failed: {exc}", key=key) from exc

    def list_objects(self, bucket: str, prefix: str) -> list[StoredObject]:
        """List every object under ``prefix`` following continuation tokens."""

        normalized = prefix.rstrip("/") + "/" if prefix else ""

        def _list() -> list[StoredObject]:
            paginator = self._client.get_paginator("list_objects_v2")
            objects: list[StoredObject] = []
            for page in paginator.paginate(Bucket=bucket, Prefix=normalized):
                for item in page.get("Contents", []):
                    key = item["Key"]
                    if key.endswith("/"):
                        continue
                    objects.append(
                        StoredObject(
                            key=key,
                            size=int(item.get("Size", 0)),
                            last_modified=item.get("LastModified"),
                        )
                    )
            return objects

        return self._call(f"Listing s3://{bucket}/{normalized}", normalized, _list)

    def copy_object(
        self, source_bucket: str, source_key: str, target_bucket: str, target_key: str
    ) -> None:
        if source_bucket == target_bucket and source_key == target_key:
            return

        def _copy() -> None:
            self._client.copy_object(
                Bucket=target_bucket,
                Key=target_key,
                CopySource={"Bucket": source_bucket, "Key": source_key},
                MetadataDirective="COPY",
            )

        self._call(f"Copying {source_key} to {target_key}", source_key, _copy)

    def get_object(self, bucket: str, key: str) -> bytes:
        """Download an object's body in full."""

        def _get() -> bytes:
            response = self._client.get_object(Bucket=bucket, Key=key)
            return response["Body"].read()

        return self._call(f"Downloading {key}", key, _get)

    def put_object(self, bucket: str, key: str, body: bytes) -> None:
        def _put() -> None:
            self._client.put_object(Bucket=bucket, Key=key, Body=body)

        self._call(f"Uploading {key}", key, _put)

    def delete_object(self, bucket: str, key: str) -> None:
        def _delete() -> None:
            self._client.delete_object(Bucket=bucket, Key=key)

        self._call(f"Deleting {key}", key, _delete)


def build_object_store(settings: GlobalSettings | None = None) -> S3ObjectStore:
    """Create the store configured for this deployment."""

    settings = settings or get_settings()
    return S3ObjectStore(
        retry_config=settings.object_store.retry,
        region=settings.aws.region,
        profile=settings.aws.profile,
        endpoint_url=settings.object_store.endpoint_url,
    )
