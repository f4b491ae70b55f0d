from __future__ import annotations

import os
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO
from urllib.parse import quote, unquote

from flask import has_request_context, request
from werkzeug.utils import secure_filename

FILES_ROUTE_PREFIX = "/files/"


class StorageError(RuntimeError):
    pass


class Storage:
    """
    Where uploaded documents and shared archives live. Every stored blob is
    addressed by a key and published as a URL that needs no further credentials.
    """

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> str:
        raise NotImplementedError

    def open(self, key: str) -> BinaryIO:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def url_for(self, key: str) -> str:
        raise NotImplementedError

    def key_for_url(self, url: str) -> str | None:
        """Map a URL produced by url_for back to its key; None for foreign URLs."""
        raise NotImplementedError


def new_blob_key(prefix: str, filename: str) -> str:
    name = secure_filename(filename or "") or "document.bin"
    return "/".join((prefix.strip("/"), f"{secrets.token_hex(8)}-{name}"))


def _key_after(url: str, base: str) -> str | None:
    if not url or not url.startswith(base):
        return None
    return unquote(url[len(base):]) or None


@dataclass(frozen=True)
class LocalStorage(Storage):
    """Blobs on the local disk, served back through the /files/ route."""

    root: Path
    public_base_url: str = ""

    @property
    def _url_base(self) -> str:
        return self.public_base_url.rstrip("/") + FILES_ROUTE_PREFIX

    def _resolve(self, key: str) -> Path:
        root = self.root.resolve()
        target = (root / key.replace("\\", "/").lstrip("/")).resolve()
        if target != root and root not in target.parents:
            raise StorageError(f"Storage key points outside the storage root: {key!r}")
        return target

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> str:
        target = self._resolve(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        return self.url_for(key)

    def open(self, key: str) -> BinaryIO:
        target = self._resolve(key)
        try:
            return target.open("rb")
        except (FileNotFoundError, IsADirectoryError) as e:
            raise StorageError(f"Blob not found: {key}") from e

    def exists(self, key: str) -> bool:
        return self._resolve(key).is_file()

    def url_for(self, key: str) -> str:
        return self._url_base + quote(key.lstrip("/"))

    def key_for_url(self, url: str) -> str | None:
        return _key_after(url, self._url_base)


@dataclass(frozen=True)
class S3Storage(Storage):
    """S3-compatible bucket (DigitalOcean Spaces, MinIO, AWS)."""

    endpoint: str
    region: str
    bucket: str
    access_key_id: str
    secret_access_key: str
    public_base_url: str = ""
    presign_seconds: int = 7 * 24 * 3600

    def _client(self):
        import boto3

        endpoint_url = None
        if self.endpoint:
            endpoint_url = self.endpoint if "://" in self.endpoint else f"https://{self.endpoint}"
        return boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
        )

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> str:
        params = {"Bucket": self.bucket, "Key": key, "Body": data}
        if content_type:
            params["ContentType"] = content_type
        try:
            self._client().put_object(**params)
        except Exception as e:
            raise StorageError(f"Could not write {key} to bucket {self.bucket}: {e}") from e
        return self.url_for(key)

    def open(self, key: str) -> BinaryIO:
        try:
            return self._client().get_object(Bucket=self.bucket, Key=key)["Body"]
        except Exception as e:
            raise StorageError(f"Could not read {key} from bucket {self.bucket}: {e}") from e

    def exists(self, key: str) -> bool:
        from botocore.exceptions import ClientError

        try:
            self._client().head_object(Bucket=self.bucket, Key=key)
        except ClientError:
            return False
        return True

    def url_for(self, key: str) -> str:
        if self.public_base_url:
            return self.public_base_url.rstrip("/") + "/" + quote(key)
        return self._client().generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=self.presign_seconds,
        )

    def key_for_url(self, url: str) -> str | None:
        # Presigned links carry a signature; those are fetched over HTTP instead.
        if not self.public_base_url:
            return None
        return _key_after(url, self.public_base_url.rstrip("/") + "/")


def storage_from_config(config) -> Storage:
    def opt(name: str, default: str = "") -> str:
        return str(config.get(name) or default).strip()

    if opt("STORAGE_BACKEND", "local").lower() == "s3":
        return S3Storage(
            endpoint=opt("S3_ENDPOINT"),
            region=opt("S3_REGION", "nyc3"),
            bucket=opt("S3_BUCKET"),
            access_key_id=opt("S3_ACCESS_KEY_ID"),
            secret_access_key=opt("S3_SECRET_ACCESS_KEY"),
            public_base_url=opt("S3_PUBLIC_BASE_URL"),
        )
    root = opt("STORAGE_ROOT") or os.path.join(os.getcwd(), "storage")
    base = opt("PUBLIC_BASE_URL")
    if not base and has_request_context():
        # Stored file URLs must be absolute; fall back to the host serving this request.
        base = request.host_url
    return LocalStorage(root=Path(root), public_base_url=base)
