"""
S3-compatible blob store listing with boto3.

Keys under ``prefix/path`` are paged through ``list_objects_v2`` and matched
on their basename. Listing is non-recursive: keys in deeper "directories"
are skipped.
"""

from __future__ import annotations

from typing import Any

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    ReadTimeoutError,
)

from filepoll.connections.base import ListingRequest, ProtocolAdapter, bound_results
from filepoll.core.models import BlobAuthMode, BlobStoreSettings, DiscoveredFile, ProtocolType, utcnow
from filepoll.exceptions import (
    AdapterError,
    AuthenticationFailedError,
    NetworkError,
    NotFoundError,
    ProtocolError,
)
from filepoll.utils.logging import get_logger

logger = get_logger("filepoll.connections.blob_store")

AUTH_ERROR_CODES = frozenset(
    {
        "InvalidAccessKeyId",
        "SignatureDoesNotMatch",
        "AccessDenied",
        "ExpiredToken",
        "InvalidToken",
        "AuthorizationHeaderMalformed",
    }
)
NOT_FOUND_CODES = frozenset({"NoSuchBucket"})
TRANSIENT_CODES = frozenset({"SlowDown", "ServiceUnavailable", "InternalError", "RequestTimeout", "Throttling"})


class BlobStoreAdapter(ProtocolAdapter):
    """Lists objects in one S3 bucket (or S3-compatible store)."""

    protocol = ProtocolType.BLOB_STORE

    settings: BlobStoreSettings

    def _client_kwargs(self, request: ListingRequest) -> dict[str, Any]:
        cfg = self.settings
        kwargs: dict[str, Any] = {
            "config": BotoConfig(
                connect_timeout=cfg.timeout_s,
                read_timeout=cfg.timeout_s,
                retries={"max_attempts": 1, "mode": "standard"},
            ),
        }
        if cfg.region:
            kwargs["region_name"] = cfg.region
        if cfg.endpoint_url:
            kwargs["endpoint_url"] = cfg.endpoint_url

        # Ambient mode leaves credentials to the default boto3 chain
        if cfg.auth_mode != BlobAuthMode.AMBIENT:
            kwargs["aws_access_key_id"] = cfg.access_key_id
            kwargs["aws_secret_access_key"] = request.credentials.get("secret_access_key")
            if cfg.auth_mode == BlobAuthMode.SESSION_TOKEN:
                kwargs["aws_session_token"] = request.credentials.get("session_token")
        return kwargs

    def create_client(self, request: ListingRequest) -> Any:
        return boto3.client("s3", **self._client_kwargs(request))

    def list_prefix(self, request: ListingRequest) -> str:
        parts = [p.strip("/") for p in (self.settings.prefix, request.path) if p and p.strip("/")]
        return "/".join(parts) + "/" if parts else ""

    async def list_files(self, request: ListingRequest) -> list[DiscoveredFile]:
        logger.debug(f"Listing s3://{self.settings.container}/{self.list_prefix(request)}")
        files = await self.run_blocking(self._list_blocking, request)
        logger.info(f"Blob listing found {len(files)} matching file(s) in {self.settings.container}")
        return files

    def _list_blocking(self, request: ListingRequest) -> list[DiscoveredFile]:
        bucket = self.settings.container
        prefix = self.list_prefix(request)
        try:
            client = self.create_client(request)
            paginator = client.get_paginator("list_objects_v2")
            files: list[DiscoveredFile] = []
            for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
                for obj in page.get("Contents", []):
                    key = obj["Key"]
                    name = key[len(prefix) :]
                    if not name or "/" in name:
                        continue
                    if not request.accepts(name):
                        continue
                    files.append(
                        DiscoveredFile(
                            filename=name,
                            locator=f"s3://{bucket}/{key}",
                            size=obj.get("Size"),
                            last_modified=obj.get("LastModified"),
                            discovered_at=utcnow(),
                            etag=(obj.get("ETag") or "").strip('"') or None,
                        )
                    )
                if len(files) > request.max_results:
                    break
            return bound_results(files, request.max_results, source=f"s3://{bucket}/{prefix}")
        except AdapterError:
            raise
        except ClientError as e:
            raise map_client_error(e, bucket) from e
        except NoCredentialsError as e:
            raise AuthenticationFailedError(f"No credentials available for bucket {bucket}") from e
        except (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError) as e:
            raise NetworkError(f"Blob store endpoint unreachable: {e}") from e
        except BotoCoreError as e:
            raise ProtocolError(f"Blob store request failed: {e}") from e
        except OSError as e:
            raise NetworkError(f"Blob store connection failed: {e}") from e


def map_client_error(error: ClientError, bucket: str) -> AdapterError:
    """Translate a botocore ClientError into the adapter error taxonomy."""
    code = error.response.get("Error", {}).get("Code", "")
    status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0
    if code in AUTH_ERROR_CODES or status in (401, 403):
        return AuthenticationFailedError(f"Blob store rejected credentials ({code or status})")
    if code in NOT_FOUND_CODES:
        return NotFoundError(f"Bucket not found: {bucket}")
    if code in TRANSIENT_CODES or status >= 500:
        return NetworkError(f"Blob store transient failure ({code or status})")
    return ProtocolError(f"Blob store error ({code or status}): {error}")
