from __future__ import annotations

import sys
from datetime import UTC, datetime
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from minutes_pipeline.object_storage import (
    GcsObjectStorage,
    LocalObjectStorage,
    ObjectStorageConfig,
    S3ObjectStorage,
    clean_segment,
    create_object_storage_from_env,
    is_media_file,
    parse_storage_uri,
    staged_key,
)


def _config(backend: str, root: str = "/tmp", prefix: str = "") -> ObjectStorageConfig:
    return ObjectStorageConfig(
        backend=backend,
        bucket="minutes-bucket",
        root=root,
        prefix=prefix,
        project="proj-1",
        endpoint="",
        region="",
        access_key="",
        secret_key="",
        force_path_style=True,
    )


def test_staged_key_uses_minute_stamp_and_clean_names():
    now = datetime(2024, 5, 1, 9, 30, 59, tzinfo=UTC)
    assert staged_key("job_1", "team sync (final).mp4", now=now) == (
        "meetings/20240501_0930/job_1/team_sync_final_.mp4"
    )
    assert clean_segment("   ") == "object"


def test_media_detection_by_extension():
    assert is_media_file("clip.MOV")
    assert is_media_file("voice.m4a")
    assert not is_media_file("notes.txt")
    assert not is_media_file("mp4")


def test_parse_storage_uri_rejects_malformed_uris():
    assert parse_storage_uri("object://local/b/a/b.txt") == {"backend": "local", "bucket": "b", "key": "a/b.txt"}
    for bad in ("gs://bucket/key", "object://local/bucket", "object://local//key"):
        with pytest.raises(ValueError):
            parse_storage_uri(bad)


def test_local_storage_round_trip_and_listing(tmp_path: Path):
    storage = LocalObjectStorage(config=_config("local", root=str(tmp_path)))
    a = storage.put_object(key="meetings/s/job_1/a.mp4", content_bytes=b"a")
    storage.put_object(key="meetings/s/job_2/b.mp4", content_bytes=b"b")

    assert a == "object://local/minutes-bucket/meetings/s/job_1/a.mp4"
    assert storage.get_object(storage_uri=a) == b"a"
    assert storage.exists(storage_uri=a)
    assert storage.list_objects(prefix="meetings/s/job_1/") == [a]
    assert storage.public_url(storage_uri=a).startswith("file://")

    storage.reset()
    assert storage.list_objects(prefix="meetings/") == []


def test_local_storage_applies_prefix_and_blocks_traversal(tmp_path: Path):
    storage = LocalObjectStorage(config=_config("local", root=str(tmp_path), prefix="env-a"))
    uri = storage.put_object(key="meetings/x/job/a.wav", content_bytes=b"1")
    assert parse_storage_uri(uri)["key"] == "env-a/meetings/x/job/a.wav"

    with pytest.raises(ValueError, match="escapes"):
        storage.put_object(key="../../../../etc/passwd", content_bytes=b"x")
    with pytest.raises(ValueError, match="backend mismatch"):
        storage.get_object(storage_uri="object://s3/minutes-bucket/env-a/meetings/x/job/a.wav")


def test_gcs_storage_with_fake_client(monkeypatch):
    client = MagicMock()
    blob = client.bucket.return_value.blob.return_value
    blob.download_as_bytes.return_value = b"flac"
    listed = MagicMock()
    listed.name = "meetings/s/job_1/audio.flac"
    client.list_blobs.return_value = [listed]

    fake_module = MagicMock()
    fake_module.Client.return_value = client
    monkeypatch.setattr("minutes_pipeline.object_storage._import_gcs", lambda: fake_module)

    storage = GcsObjectStorage(config=_config("gcs"))
    uri = storage.put_object(key="meetings/s/job_1/audio.flac", content_bytes=b"flac", content_type="audio/flac")

    assert uri == "object://gcs/minutes-bucket/meetings/s/job_1/audio.flac"
    fake_module.Client.assert_called_once_with(project="proj-1")
    blob.upload_from_string.assert_called_once_with(b"flac", content_type="audio/flac")
    assert storage.get_object(storage_uri=uri) == b"flac"
    assert storage.list_objects(prefix="meetings/s/job_1/") == [uri]
    assert storage.native_uri(storage_uri=uri) == "gs://minutes-bucket/meetings/s/job_1/audio.flac"
    assert storage.public_url(storage_uri=uri) == (
        "https://storage.googleapis.com/minutes-bucket/meetings/s/job_1/audio.flac"
    )


def test_s3_storage_with_mocked_boto3():
    mock_boto3 = MagicMock()
    mock_client = MagicMock()
    mock_boto3.session.Session.return_value.client.return_value = mock_client
    mock_client.get_paginator.return_value.paginate.return_value = [
        {"Contents": [{"Key": "meetings/s/job_1/a.mp4"}]},
        {},
    ]

    with patch.dict(sys.modules, {"boto3": mock_boto3}):
        storage = S3ObjectStorage(config=_config("s3"))

    uri = storage.put_object(key="meetings/s/job_1/a.mp4", content_bytes=b"v", content_type="video/mp4")
    assert uri == "object://s3/minutes-bucket/meetings/s/job_1/a.mp4"
    mock_client.put_object.assert_called_once_with(
        Bucket="minutes-bucket",
        Key="meetings/s/job_1/a.mp4",
        Body=b"v",
        ContentType="video/mp4",
    )
    assert storage.list_objects(prefix="meetings/s/job_1/") == [uri]
    assert storage.native_uri(storage_uri=uri) == "s3://minutes-bucket/meetings/s/job_1/a.mp4"


def test_factory_defaults_to_local_and_rejects_unknown(tmp_path: Path):
    storage = create_object_storage_from_env({"OBJECT_STORAGE_ROOT": str(tmp_path)})
    assert isinstance(storage, LocalObjectStorage)

    with pytest.raises(RuntimeError, match="unsupported object storage backend"):
        create_object_storage_from_env({"OBJECT_STORAGE_BACKEND": "azure", "OBJECT_STORAGE_ROOT": str(tmp_path)})
