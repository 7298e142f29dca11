from __future__ import annotations
"""boto3-backed implementation of the remote object store calls."""
from contextlib import contextmanager
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
import logging
import re
from typing import Callable, Iterator, Optional

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from .models import (
    BucketInfo,
    ListingPage,
    ObjectEntry,
    RemoteRestoreState,
    RemoteStatus,
    StorageTier,
    utcnow,
)

LOGGER = logging.getLogger(__name__)

PAGE_SIZE = 200
MAX_PAGE_SIZE = 1000
DEFAULT_TIMEOUT = 30
DEFAULT_REGION = "us-east-1"

_ONGOING_RE = re.compile(r'ongoing-request\s*=\s*"(true|false)"', re.IGNORECASE)
_EXPIRY_RE = re.compile(r'expiry-date\s*=\s*"([^"]+)"', re.IGNORECASE)


class TransientRemoteError(RuntimeError):
    """A remote call failed; the session carries on and reports it."""

    def __init__(self, message: str, *, operation: str, key: str | None = None, code: str | None = None):
        super().__init__(message)
        self.operation = operation
        self.key = key
        self.code = code


def parse_restore_header(raw: str | None, *, now: datetime | None = None) -> Optional[RemoteStatus]:
    """Interpret the ``Restore`` header returned by ``HeadObject``."""

    if not raw:
        return None
    ongoing = _ONGOING_RE.search(raw)
    if ongoing and ongoing.group(1).lower() == "true":
        return RemoteStatus(RemoteRestoreState.IN_PROGRESS)
    expiry_match = _EXPIRY_RE.search(raw)
    if expiry_match:
        try:
            expiry = parsedate_to_datetime(expiry_match.group(1))
        except (TypeError, ValueError):
            return RemoteStatus(RemoteRestoreState.AVAILABLE)
        if expiry.tzinfo is None:
            expiry = expiry.replace(tzinfo=timezone.utc)
        if expiry <= (now or utcnow()):
            return RemoteStatus(RemoteRestoreState.EXPIRED, expiry=expiry)
        return RemoteStatus(RemoteRestoreState.AVAILABLE, expiry=expiry)
    if ongoing:
        return RemoteStatus(RemoteRestoreState.AVAILABLE)
    return RemoteStatus(RemoteRestoreState.EXPIRED)


@contextmanager
def _remote_call(operation: str, key: str | None = None) -> Iterator[None]:
    try:
        yield
    except ClientError as exc:
        code = exc.response.get("Error", {}).get("Code")
        raise TransientRemoteError(str(exc), operation=operation, key=key, code=code) from exc
    except BotoCoreError as exc:
        raise TransientRemoteError(str(exc), operation=operation, key=key) from exc


class S3Service:
    """Encapsulates the S3 calls the browser needs, independent of any UI."""

    def __init__(self, client_factory: Callable[..., object] | None = None, *, timeout: int = DEFAULT_TIMEOUT):
        self._client_factory = client_factory or boto3.client
        self._timeout = timeout

    def create_client(
        self,
        *,
        endpoint_url: str | None = None,
        region_name: str | None = None,
        access_key: str | None = None,
        secret_key: str | None = None,
    ):
        """Build a client; without explicit keys the default credential chain is used."""

        config = Config(
            signature_version="s3v4",
            connect_timeout=self._timeout,
            read_timeout=self._timeout,
            retries={"max_attempts": 2},
        )
        kwargs: dict[str, object] = {"config": config}
        if endpoint_url:
            kwargs["endpoint_url"] = endpoint_url
        if region_name:
            kwargs["region_name"] = region_name
        if access_key and secret_key:
            kwargs["aws_access_key_id"] = access_key
            kwargs["aws_secret_access_key"] = secret_key
        return self._client_factory("s3", **kwargs)

    def list_buckets(self, client, *, with_regions: bool = True) -> list[BucketInfo]:
        """Return the available buckets sorted by name."""

        with _remote_call("ListBuckets"):
            response = client.list_buckets()
        buckets = []
        for bucket in response.get("Buckets", []):
            name = bucket.get("Name")
            if not name:
                continue
            region = self.get_bucket_region(client, name) if with_regions else None
            buckets.append(BucketInfo(name=name, region=region, creation_date=bucket.get("CreationDate")))
        buckets.sort(key=lambda info: info.name)
        return buckets

    def get_bucket_region(self, client, bucket_name: str) -> str | None:
        try:
            response = client.get_bucket_location(Bucket=bucket_name)
        except (ClientError, BotoCoreError):
            LOGGER.debug("Could not resolve region for bucket '%s'", bucket_name, exc_info=True)
            return None
        return response.get("LocationConstraint") or DEFAULT_REGION

    def list_page(
        self,
        client,
        bucket_name: str,
        cursor: str | None = None,
        *,
        page_size: int = PAGE_SIZE,
        prefix: str = "",
    ) -> ListingPage:
        """Return one key-ordered page and the cursor for the next one (``None`` when done)."""

        params: dict[str, object] = {
            "Bucket": bucket_name,
            "MaxKeys": max(1, min(int(page_size), MAX_PAGE_SIZE)),
        }
        if prefix:
            params["Prefix"] = prefix
        if cursor:
            params["ContinuationToken"] = cursor
        with _remote_call("ListObjectsV2"):
            response = client.list_objects_v2(**params)

        entries = [
            ObjectEntry(
                key=obj["Key"],
                size=int(obj.get("Size") or 0),
                storage_class=obj.get("StorageClass") or StorageTier.STANDARD.value,
                last_modified=obj.get("LastModified"),
            )
            for obj in response.get("Contents", [])
        ]
        next_cursor = None
        if response.get("IsTruncated"):
            next_cursor = response.get("NextContinuationToken") or None
        return ListingPage(entries=entries, next_cursor=next_cursor)

    def get_status(self, client, bucket_name: str, key: str) -> Optional[RemoteStatus]:
        """Fetch restore information for one object, ``None`` if it carries none."""

        with _remote_call("HeadObject", key):
            response = client.head_object(Bucket=bucket_name, Key=key)
        tier = StorageTier.from_label(response.get("StorageClass"))
        if not tier.is_archival:
            return None
        return parse_restore_header(response.get("Restore"))

    def request_restore(self, client, bucket_name: str, key: str, duration_days: int) -> None:
        with _remote_call("RestoreObject", key):
            client.restore_object(
                Bucket=bucket_name,
                Key=key,
                RestoreRequest={"Days": int(duration_days)},
            )

    def set_tier(self, client, bucket_name: str, key: str, target_tier: StorageTier) -> None:
        """Rewrite the object in place with a new storage class."""

        if target_tier is StorageTier.UNKNOWN:
            raise ValueError("target storage class is not supported via API")
        with _remote_call("CopyObject", key):
            client.copy_object(
                Bucket=bucket_name,
                Key=key,
                CopySource={"Bucket": bucket_name, "Key": key},
                StorageClass=target_tier.value,
                MetadataDirective="COPY",
            )
