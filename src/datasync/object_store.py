"""Object store clients addressed by url: s3://bucket/key or a local path."""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import Protocol
from urllib.parse import urlparse

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from datasync.errors import SyncError
from datasync.sync_config import ObjectStoreSpec

logger = logging.getLogger(__name__)


def join_url(base: str, *parts: str) -> str:
    joined = base.rstrip("/")
    for part in parts:
        joined = f"{joined}/{part.strip('/')}"
    return joined


def as_prefix(url: str) -> str:
    return url if url.endswith("/") else f"{url}/"


class ObjectStore(Protocol):
    def list(self, prefix: str) -> list[str]:
        ...

    def read_text(self, url: str) -> str:
        ...

    def write_text(self, url: str, text: str) -> None:
        ...

    def download(self, url: str, local_path: str) -> str:
        ...

    def delete(self, url: str) -> None:
        ...

    def delete_prefix(self, prefix: str) -> int:
        ...


# ----------------------------
# S3
# ----------------------------
def split_s3_url(url: str) -> tuple[str, str]:
    parsed = urlparse(url)
    if parsed.scheme != "s3" or not parsed.netloc:
        raise SyncError(f"Not an s3 url: {url}")
    return parsed.netloc, parsed.path.lstrip("/")


class S3ObjectStore:
    def __init__(self, client=None, *, endpoint_url: str | None = None, region_name: str | None = None):
        if client is None:
            config = Config(
                retries={"max_attempts": 3, "mode": "standard"},
                max_pool_connections=25,
            )
            client = boto3.client("s3", endpoint_url=endpoint_url, region_name=region_name, config=config)
        self._client = client

    def list(self, prefix: str) -> list[str]:
        bucket, key_prefix = split_s3_url(prefix)
        kwargs = {"Bucket": bucket, "Prefix": key_prefix}

        urls: list[str] = []
        while True:
            response = self._client.list_objects_v2(**kwargs)
            for obj in response.get("Contents", []):
                if obj["Key"].endswith("/"):
                    continue
                urls.append(f"s3://{bucket}/{obj['Key']}")
            if not response.get("IsTruncated"):
                break
            kwargs["ContinuationToken"] = response["NextContinuationToken"]

        logger.debug("Listed %d objects under %s", len(urls), prefix)
        return urls

    def read_text(self, url: str) -> str:
        bucket, key = split_s3_url(url)
        response = self._client.get_object(Bucket=bucket, Key=key)
        return response["Body"].read().decode("utf-8")

    def write_text(self, url: str, text: str) -> None:
        bucket, key = split_s3_url(url)
        self._client.put_object(Bucket=bucket, Key=key, Body=text.encode("utf-8"))
        logger.debug("Wrote %s", url)

    def download(self, url: str, local_path: str) -> str:
        bucket, key = split_s3_url(url)
        os.makedirs(os.path.dirname(local_path) or ".", exist_ok=True)
        self._client.download_file(Bucket=bucket, Key=key, Filename=local_path)
        return local_path

    def delete(self, url: str) -> None:
        bucket, key = split_s3_url(url)
        try:
            self._client.delete_object(Bucket=bucket, Key=key)
        except ClientError as e:
            raise SyncError(f"Failed to delete {url}: {e}") from e

    def delete_prefix(self, prefix: str) -> int:
        urls = self.list(as_prefix(prefix))
        for url in urls:
            self.delete(url)
        logger.debug("Deleted %d objects under %s", len(urls), prefix)
        return len(urls)


# ----------------------------
# Local filesystem
# ----------------------------
class LocalObjectStore:
    """Filesystem stand-in for an object store; urls are plain paths."""

    def list(self, prefix: str) -> list[str]:
        root = Path(prefix)
        if not root.is_dir():
            return []
        base = prefix.rstrip("/")
        return sorted(f"{base}/{p.relative_to(root).as_posix()}" for p in root.rglob("*") if p.is_file())

    def read_text(self, url: str) -> str:
        return Path(url).read_text(encoding="utf-8")

    def write_text(self, url: str, text: str) -> None:
        path = Path(url)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")

    def download(self, url: str, local_path: str) -> str:
        os.makedirs(os.path.dirname(local_path) or ".", exist_ok=True)
        shutil.copyfile(url, local_path)
        return local_path

    def delete(self, url: str) -> None:
        Path(url).unlink(missing_ok=True)

    def delete_prefix(self, prefix: str) -> int:
        urls = self.list(prefix)
        if Path(prefix).is_dir():
            shutil.rmtree(prefix)
        return len(urls)


def create_object_store(spec: ObjectStoreSpec) -> ObjectStore:
    if spec.kind == "s3":
        return S3ObjectStore(endpoint_url=spec.endpoint_url, region_name=spec.region_name)
    return LocalObjectStore()
