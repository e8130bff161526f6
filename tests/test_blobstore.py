from __future__ import annotations

from datetime import timedelta
from unittest import mock

import pytest

from snapshot_ci.blobstore import FilesystemBlobStore, GcsBlobStore, build_blob_store


class TestFilesystemBlobStore:
    def test_upload_download_and_list(self, blobs) -> None:
        blobs.upload("test.yml/latest/1.json", b"{}", retention_days=1)
        blobs.upload("test.yml/latest/2.json", b"[]", retention_days=1)
        blobs.upload("other/x.json", b"x", retention_days=1)
        assert blobs.download("test.yml/latest/2.json") == b"[]"
        assert blobs.list("test.yml/") == ["test.yml/latest/1.json", "test.yml/latest/2.json"]

    def test_missing_blob_raises_key_error(self, blobs) -> None:
        with pytest.raises(KeyError):
            blobs.download("nope.json")

    def test_expired_blobs_are_hidden(self, blobs, clock) -> None:
        blobs.upload("a.json", b"{}", retention_days=2)
        clock.now += timedelta(days=3)
        assert blobs.list() == []
        with pytest.raises(KeyError):
            blobs.download("a.json")

    def test_zero_retention_never_expires(self, blobs, clock) -> None:
        blobs.upload("a.json", b"{}", retention_days=0)
        clock.now += timedelta(days=3650)
        assert blobs.list() == ["a.json"]

    @pytest.mark.parametrize("name", ["/etc/passwd", "../escape.json"])
    def test_rejects_names_outside_root(self, blobs, name: str) -> None:
        with pytest.raises(ValueError):
            blobs.upload(name, b"", retention_days=1)


class TestGcsBlobStore:
    def test_upload_sets_retention_metadata(self, clock) -> None:
        client = mock.MagicMock()
        bucket = client.bucket.return_value
        store = GcsBlobStore("artifacts", prefix="ci/", client=client, clock=clock)
        store.upload("test.yml/latest/1.json", b"{}", retention_days=1095)
        bucket.blob.assert_called_once_with("ci/test.yml/latest/1.json")
        blob = bucket.blob.return_value
        assert blob.metadata == {"retention-days": "1095"}
        assert blob.custom_time == clock.now
        blob.upload_from_string.assert_called_once_with(b"{}", content_type="application/json")

    def test_list_strips_prefix_and_drops_expired(self, clock) -> None:
        fresh = mock.MagicMock(metadata={"retention-days": "10"}, custom_time=clock.now)
        fresh.name = "ci/test.yml/latest/2.json"
        stale = mock.MagicMock(
            metadata={"retention-days": "10"}, custom_time=clock.now - timedelta(days=11)
        )
        stale.name = "ci/test.yml/latest/1.json"
        client = mock.MagicMock()
        client.list_blobs.return_value = [stale, fresh]
        store = GcsBlobStore("artifacts", prefix="ci", client=client, clock=clock)
        assert store.list("test.yml/") == ["test.yml/latest/2.json"]

    def test_download_missing_blob_raises_key_error(self, clock) -> None:
        client = mock.MagicMock()
        client.bucket.return_value.get_blob.return_value = None
        store = GcsBlobStore("artifacts", client=client, clock=clock)
        with pytest.raises(KeyError):
            store.download("missing.json")


def test_build_blob_store_accepts_paths_and_file_uris(tmp_path) -> None:
    assert isinstance(build_blob_store(str(tmp_path)), FilesystemBlobStore)
    store = build_blob_store(f"file://{tmp_path}/handoff")
    assert isinstance(store, FilesystemBlobStore)
    assert store.root == tmp_path / "handoff"


def test_build_blob_store_rejects_unknown_scheme() -> None:
    with pytest.raises(ValueError):
        build_blob_store("s3://bucket/prefix")
