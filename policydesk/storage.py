"""Pluggable storage backends.

Rendered policy PDFs, exported briefs and intake forms are written through a
single ``storage_client`` instance which implements :class:`StorageBackend`
regardless of whether the files end up in MinIO/S3 or on the local
filesystem.  The document pipeline only ever writes, reads and signs objects;
it never lists or deletes them.
"""

from __future__ import annotations

import os
import re
import time
from pathlib import Path
from typing import Any

import boto3
from botocore.client import Config
from botocore.exceptions import ClientError, NoCredentialsError


def _env(name: str, default: str | None = None) -> str | None:
    """Fetch configuration values using ``storage.foo`` style names.

    Environment variables use ``STORAGE__FOO`` to mirror nested configuration
    (similar to how libraries like Dynaconf expose settings).
    """

    return os.getenv(name.replace(".", "__").upper(), default)


_UNSAFE_KEY_CHARS = re.compile(r"[^\w.\-]+")


def build_key(prefix: str, owner_id: int | str, file_name: str, timestamp_ms: int | None = None) -> str:
    """Return ``{prefix}/{owner_id}/{timestamp_ms}_{file_name}``.

    The timestamp keeps every upload distinct so earlier renditions are
    never overwritten.
    """
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    safe_name = _UNSAFE_KEY_CHARS.sub("_", file_name).strip("_") or "file"
    return f"{prefix.strip('/')}/{owner_id}/{timestamp_ms}_{safe_name}"


class StorageBackend:
    """Simple interface all storage backends must implement."""

    bucket_main: str | None = None
    signed_url_expire_seconds: int = int(_env("storage.signed_url_expire_seconds", "3600") or "3600")
    # Maximum object size (in bytes) allowed for presigned downloads.
    max_presign_size: int = 200 * 1024 * 1024  # 200MB
    # -- basic primitives -------------------------------------------------
    def put(self, *args, **kwargs):  # pragma: no cover - interface only
        raise NotImplementedError

    def get(self, *args, **kwargs):  # pragma: no cover - interface only
        raise NotImplementedError

    def head(self, *args, **kwargs):  # pragma: no cover - interface only
        raise NotImplementedError

    def generate_presigned_url(  # pragma: no cover - interface only
        self, key: str, expires_in: int | None = None, bucket: str | None = None
    ) -> str | None:
        raise NotImplementedError

    def public_url(self, key: str) -> str:  # pragma: no cover - interface only
        raise NotImplementedError

    # -- convenience ------------------------------------------------------
    def read_bytes(self, key: str) -> bytes:
        """Download ``key`` fully into memory."""
        obj = self.get(Key=key)
        body = obj["Body"]
        try:
            return body.read()
        finally:
            close = getattr(body, "close", None)
            if close:
                close()


class MinIOBackend(StorageBackend):
    """Storage backend backed by MinIO or any S3 compatible service."""

    def __init__(self) -> None:
        self.endpoint = os.getenv("S3_ENDPOINT")
        self.public_endpoint = os.getenv("S3_PUBLIC_ENDPOINT")
        self.access_key = os.getenv("S3_ACCESS_KEY") or os.getenv(
            "S3_ACCESS_KEY_ID"
        )
        self.secret_key = os.getenv("S3_SECRET_KEY") or os.getenv(
            "S3_SECRET_ACCESS_KEY"
        )
        self.bucket_main = os.getenv("S3_BUCKET_MAIN") or os.getenv("S3_BUCKET")

        self.client = boto3.client(
            "s3",
            endpoint_url=self.endpoint,
            aws_access_key_id=self.access_key,
            aws_secret_access_key=self.secret_key,
            config=Config(signature_version="s3v4"),
        )

        if self.public_endpoint:
            self.public_client = boto3.client(
                "s3",
                endpoint_url=self.public_endpoint,
                aws_access_key_id=self.access_key,
                aws_secret_access_key=self.secret_key,
                config=Config(signature_version="s3v4"),
            )
        else:
            self.public_client = self.client

        self._ensure_bucket()

    def _ensure_bucket(self) -> None:
        """Create the main bucket on startup if it does not exist."""

        if not self.bucket_main:
            return
        try:
            existing = {
                b["Name"] for b in self.client.list_buckets().get("Buckets", [])
            }
        except Exception:
            existing = set()
        if self.bucket_main in existing:
            return
        try:
            self.client.create_bucket(Bucket=self.bucket_main)
            self.client.put_bucket_versioning(
                Bucket=self.bucket_main,
                VersioningConfiguration={"Status": "Enabled"},
            )
        except Exception:
            # Ignore failures so a missing permission doesn't break the app
            pass

    # -- basic wrappers -------------------------------------------------
    def put(self, Bucket: str | None = None, **kwargs):
        return self.client.put_object(Bucket=Bucket or self.bucket_main, **kwargs)

    def get(self, Bucket: str | None = None, **kwargs):
        return self.client.get_object(Bucket=Bucket or self.bucket_main, **kwargs)

    def head(self, Bucket: str | None = None, **kwargs):
        return self.client.head_object(Bucket=Bucket or self.bucket_main, **kwargs)

    def generate_presigned_url(
        self, key: str, expires_in: int | None = None, bucket: str | None = None
    ) -> str | None:
        bucket_name = bucket or self.bucket_main or "local"
        try:
            head = self.client.head_object(Bucket=bucket_name, Key=key)
            if head.get("ContentLength", 0) > self.max_presign_size:
                return None
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            if code in ("404", "NoSuchKey"):
                return None
            # For other client errors, continue and attempt to generate a URL.
        except Exception:
            # The object could not be inspected; signing may still succeed.
            pass
        try:
            url = self.public_client.generate_presigned_url(
                "get_object",
                Params={
                    "Bucket": bucket_name,
                    "Key": key,
                    "ResponseCacheControl": "public, max-age=86400",
                },
                ExpiresIn=expires_in or self.signed_url_expire_seconds,
            )
        except NoCredentialsError:
            return self.public_url(key)

        return url

    def public_url(self, key: str) -> str:
        base = self.public_endpoint or self.endpoint or ""
        return f"{base.rstrip('/')}/{self.bucket_main or 'local'}/{key}"


class FSBackend(StorageBackend):
    """Filesystem storage served via an Nginx alias."""

    def __init__(self, base_path: str | None = None, public_base: str | None = None) -> None:
        self.base_path = Path(base_path or _env("storage.fs_path", "/tmp/files")).resolve()
        self.public_base = (public_base or _env("storage.fs_public_url", "/fs")).rstrip("/")
        self.base_path.mkdir(parents=True, exist_ok=True)

        self.bucket_main = None  # kept for interface compatibility

    # helper ------------------------------------------------------------
    def _full_path(self, key: str) -> Path:
        path = (self.base_path / key).resolve()
        if self.base_path not in path.parents:
            raise ValueError(f"Key escapes storage root: {key}")
        return path

    # -- basic wrappers -------------------------------------------------
    def put(self, Key: str, Body: bytes | Any, **kwargs):
        path = self._full_path(Key)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = Body.read() if hasattr(Body, "read") else Body
        with open(path, "wb") as f:
            f.write(data)
        return {}

    def get(self, Key: str, **kwargs):
        path = self._full_path(Key)
        return {"Body": open(path, "rb")}

    def head(self, Key: str, **kwargs):
        path = self._full_path(Key)
        if not path.exists():
            raise FileNotFoundError(Key)
        return {"ContentLength": path.stat().st_size}

    def generate_presigned_url(
        self, key: str, expires_in: int | None = None, bucket: str | None = None
    ) -> str | None:
        path = self._full_path(key)
        if not path.exists() or path.stat().st_size > self.max_presign_size:
            return None
        return self.public_url(key)

    def public_url(self, key: str) -> str:
        return f"{self.public_base}/{key}"


# -- backend loader --------------------------------------------------------
def _load_backend() -> StorageBackend:
    backend_type = (_env("storage.type", "minio") or "minio").lower()
    if backend_type == "fs":
        return FSBackend()
    return MinIOBackend()


# Global instance used throughout the app
storage_client: StorageBackend = _load_backend()


def generate_presigned_url(key: str, expires_in: int | None = None) -> str | None:
    return storage_client.generate_presigned_url(key, expires_in)


__all__ = [
    "StorageBackend",
    "MinIOBackend",
    "FSBackend",
    "build_key",
    "storage_client",
    "generate_presigned_url",
]
