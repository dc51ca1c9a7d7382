from __future__ import annotations

import os
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

MEDIA_EXTENSIONS = ("mp4", "mov", "avi", "mkv", "webm", "m4a", "wav", "mp3", "flac", "ogg")
AUDIO_EXTENSIONS = ("m4a", "wav", "mp3", "flac", "ogg")
MEETINGS_ROOT = "meetings"


def clean_segment(value: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", value.strip())
    return cleaned or "object"


def file_extension(filename: str) -> str:
    _, _, ext = filename.rpartition(".")
    return ext.lower() if ext != filename else ""


def is_media_file(filename: str) -> bool:
    return file_extension(filename) in MEDIA_EXTENSIONS


def job_prefix(job_id: str, *, now: datetime | None = None) -> str:
    """``meetings/{YYYYMMDD_HHMM}/{job_id}/``; the minute stamp is fixed at dispatch."""
    stamp = (now or datetime.now(UTC)).strftime("%Y%m%d_%H%M")
    return f"{MEETINGS_ROOT}/{stamp}/{clean_segment(job_id)}/"


def staged_key(job_id: str, filename: str, *, now: datetime | None = None) -> str:
    return f"{job_prefix(job_id, now=now)}{clean_segment(filename)}"


def parse_storage_uri(uri: str) -> dict[str, str]:
    if not uri.startswith("object://"):
        raise ValueError("invalid storage uri")
    parts = uri[len("object://") :].split("/", 2)
    if len(parts) != 3 or not all(parts):
        raise ValueError("invalid storage uri")
    return {"backend": parts[0], "bucket": parts[1], "key": parts[2]}


@dataclass(frozen=True)
class ObjectStorageConfig:
    backend: str
    bucket: str
    root: str
    prefix: str
    project: str
    endpoint: str
    region: str
    access_key: str
    secret_key: str
    force_path_style: bool


class ObjectStorageBackend:
    """Artifact store addressed by ``object://{backend}/{bucket}/{key}`` URIs."""

    backend_name = "base"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        self._bucket = config.bucket
        self._prefix = config.prefix.strip("/")

    def put_object(self, *, key: str, content_bytes: bytes, content_type: str | None = None) -> str:
        raise NotImplementedError

    def get_object(self, *, storage_uri: str) -> bytes:
        raise NotImplementedError

    def list_objects(self, *, prefix: str) -> list[str]:
        raise NotImplementedError

    def exists(self, *, storage_uri: str) -> bool:
        raise NotImplementedError

    def native_uri(self, *, storage_uri: str) -> str:
        return storage_uri

    def public_url(self, *, storage_uri: str) -> str:
        return storage_uri

    def _full_key(self, key: str) -> str:
        key = key.lstrip("/")
        if self._prefix and not key.startswith(f"{self._prefix}/"):
            return f"{self._prefix}/{key}"
        return key

    def _uri_for_key(self, key: str) -> str:
        return f"object://{self.backend_name}/{self._bucket}/{key}"

    def _key_for_uri(self, storage_uri: str) -> tuple[str, str]:
        parsed = parse_storage_uri(storage_uri)
        if parsed["backend"] != self.backend_name:
            raise ValueError("storage backend mismatch")
        return parsed["bucket"], parsed["key"]


class LocalObjectStorage(ObjectStorageBackend):
    backend_name = "local"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        super().__init__(config=config)
        self._root = Path(config.root)
        self._root.mkdir(parents=True, exist_ok=True)

    def _path_for(self, bucket: str, key: str) -> Path:
        path = (self._root / bucket / key).resolve()
        if self._root.resolve() not in path.parents:
            raise ValueError("storage key escapes storage root")
        return path

    def put_object(self, *, key: str, content_bytes: bytes, content_type: str | None = None) -> str:
        full_key = self._full_key(key)
        path = self._path_for(self._bucket, full_key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content_bytes)
        return self._uri_for_key(full_key)

    def get_object(self, *, storage_uri: str) -> bytes:
        path = self._path_for(*self._key_for_uri(storage_uri))
        if not path.exists():
            raise FileNotFoundError(storage_uri)
        return path.read_bytes()

    def list_objects(self, *, prefix: str) -> list[str]:
        full_prefix = self._full_key(prefix)
        bucket_root = self._root / self._bucket
        if not bucket_root.exists():
            return []
        keys = [
            path.relative_to(bucket_root).as_posix()
            for path in bucket_root.rglob("*")
            if path.is_file()
        ]
        return [self._uri_for_key(key) for key in sorted(keys) if key.startswith(full_prefix)]

    def exists(self, *, storage_uri: str) -> bool:
        return self._path_for(*self._key_for_uri(storage_uri)).exists()

    def public_url(self, *, storage_uri: str) -> str:
        return self._path_for(*self._key_for_uri(storage_uri)).as_uri()

    def reset(self) -> None:
        if not self._root.exists():
            return
        for path in sorted(self._root.rglob("*"), reverse=True):
            if path.is_file():
                path.unlink()
            elif path.is_dir():
                path.rmdir()


def _import_gcs() -> Any:
    try:
        from google.cloud import storage  # type: ignore
    except ImportError as exc:
        raise RuntimeError(
            "google-cloud-storage is required for OBJECT_STORAGE_BACKEND=gcs; install google-cloud-storage"
        ) from exc
    return storage


class GcsObjectStorage(ObjectStorageBackend):
    backend_name = "gcs"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        super().__init__(config=config)
        storage = _import_gcs()
        self._client = storage.Client(project=config.project or None)

    def put_object(self, *, key: str, content_bytes: bytes, content_type: str | None = None) -> str:
        full_key = self._full_key(key)
        blob = self._client.bucket(self._bucket).blob(full_key)
        blob.upload_from_string(content_bytes, content_type=content_type or "application/octet-stream")
        return self._uri_for_key(full_key)

    def get_object(self, *, storage_uri: str) -> bytes:
        bucket, key = self._key_for_uri(storage_uri)
        return self._client.bucket(bucket).blob(key).download_as_bytes()

    def list_objects(self, *, prefix: str) -> list[str]:
        blobs = self._client.list_blobs(self._bucket, prefix=self._full_key(prefix))
        return [self._uri_for_key(blob.name) for blob in blobs]

    def exists(self, *, storage_uri: str) -> bool:
        bucket, key = self._key_for_uri(storage_uri)
        return bool(self._client.bucket(bucket).blob(key).exists())

    def native_uri(self, *, storage_uri: str) -> str:
        bucket, key = self._key_for_uri(storage_uri)
        return f"gs://{bucket}/{key}"

    def public_url(self, *, storage_uri: str) -> str:
        bucket, key = self._key_for_uri(storage_uri)
        return f"https://storage.googleapis.com/{bucket}/{key}"


class S3ObjectStorage(ObjectStorageBackend):
    backend_name = "s3"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        super().__init__(config=config)
        try:
            import boto3  # type: ignore
        except ImportError as exc:
            raise RuntimeError("boto3 is required for OBJECT_STORAGE_BACKEND=s3; install boto3") from exc
        self._endpoint = config.endpoint
        session = boto3.session.Session(
            aws_access_key_id=config.access_key or None,
            aws_secret_access_key=config.secret_key or None,
            region_name=config.region or None,
        )
        self._client = session.client(
            "s3",
            endpoint_url=config.endpoint or None,
            config=boto3.session.Config(s3={"addressing_style": "path" if config.force_path_style else "auto"}),
        )

    def put_object(self, *, key: str, content_bytes: bytes, content_type: str | None = None) -> str:
        full_key = self._full_key(key)
        self._client.put_object(
            Bucket=self._bucket,
            Key=full_key,
            Body=content_bytes,
            ContentType=content_type or "application/octet-stream",
        )
        return self._uri_for_key(full_key)

    def get_object(self, *, storage_uri: str) -> bytes:
        bucket, key = self._key_for_uri(storage_uri)
        response = self._client.get_object(Bucket=bucket, Key=key)
        return response["Body"].read()

    def list_objects(self, *, prefix: str) -> list[str]:
        paginator = self._client.get_paginator("list_objects_v2")
        uris: list[str] = []
        for page in paginator.paginate(Bucket=self._bucket, Prefix=self._full_key(prefix)):
            for item in page.get("Contents", []):
                uris.append(self._uri_for_key(str(item["Key"])))
        return uris

    def exists(self, *, storage_uri: str) -> bool:
        bucket, key = self._key_for_uri(storage_uri)
        try:
            self._client.head_object(Bucket=bucket, Key=key)
        except self._client.exceptions.ClientError:
            return False
        return True

    def native_uri(self, *, storage_uri: str) -> str:
        bucket, key = self._key_for_uri(storage_uri)
        return f"s3://{bucket}/{key}"

    def public_url(self, *, storage_uri: str) -> str:
        bucket, key = self._key_for_uri(storage_uri)
        base = (self._endpoint or "https://s3.amazonaws.com").rstrip("/")
        return f"{base}/{bucket}/{key}"


def _flag(env: Any, name: str, default: str) -> bool:
    return env.get(name, default).strip().lower() not in {"0", "false", "no", "off"}


def create_object_storage_from_env(environ: dict[str, str] | None = None) -> ObjectStorageBackend:
    env = os.environ if environ is None else environ
    backend = env.get("OBJECT_STORAGE_BACKEND", "local").strip().lower() or "local"
    config = ObjectStorageConfig(
        backend=backend,
        bucket=env.get("OBJECT_STORAGE_BUCKET", "minutes").strip() or "minutes",
        root=env.get("OBJECT_STORAGE_ROOT", "/tmp/minutes-object-storage").strip() or "/tmp/minutes-object-storage",
        prefix=env.get("OBJECT_STORAGE_PREFIX", "").strip(),
        project=env.get("GCP_PROJECT_ID", "").strip(),
        endpoint=env.get("OBJECT_STORAGE_ENDPOINT", "").strip(),
        region=env.get("OBJECT_STORAGE_REGION", "").strip(),
        access_key=env.get("OBJECT_STORAGE_ACCESS_KEY", "").strip(),
        secret_key=env.get("OBJECT_STORAGE_SECRET_KEY", "").strip(),
        force_path_style=_flag(env, "OBJECT_STORAGE_FORCE_PATH_STYLE", "true"),
    )
    if config.backend == "gcs":
        return GcsObjectStorage(config=config)
    if config.backend == "s3":
        return S3ObjectStorage(config=config)
    if config.backend == "local":
        return LocalObjectStorage(config=config)
    raise RuntimeError(f"unsupported object storage backend: {backend}")
