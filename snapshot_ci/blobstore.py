from __future__ import annotations

import abc
import json
import typing as t
from datetime import datetime, timedelta, timezone
from pathlib import Path

META_SUFFIX = ".meta.json"


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def _expired(uploaded_at: datetime, retention_days: int, now: datetime) -> bool:
    return retention_days > 0 and uploaded_at + timedelta(days=retention_days) < now


class BlobStore(abc.ABC):
    """Named-blob artifact storage with per-blob retention."""

    @abc.abstractmethod
    def upload(self, name: str, data: bytes, *, retention_days: int) -> None:
        ...

    @abc.abstractmethod
    def download(self, name: str) -> bytes:
        """Blob contents; raises ``KeyError`` when the blob is absent or expired."""

    @abc.abstractmethod
    def list(self, prefix: str = "") -> list[str]:
        """Names of live blobs starting with ``prefix``."""


class FilesystemBlobStore(BlobStore):
    def __init__(self, root: Path | str, *, clock: t.Callable[[], datetime] = _utcnow) -> None:
        self.root = Path(root)
        self._clock = clock

    def _path(self, name: str) -> Path:
        relative = Path(name)
        if relative.is_absolute() or ".." in relative.parts:
            raise ValueError(f"invalid blob name {name!r}")
        return self.root / relative

    def _meta_path(self, path: Path) -> Path:
        return path.with_name(path.name + META_SUFFIX)

    def upload(self, name: str, data: bytes, *, retention_days: int) -> None:
        path = self._path(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_bytes(data)
        tmp.replace(path)
        meta = {
            "retentionDays": retention_days,
            "uploadedAt": self._clock().isoformat(),
        }
        self._meta_path(path).write_text(json.dumps(meta, indent=2))

    def _is_live(self, path: Path) -> bool:
        meta_path = self._meta_path(path)
        if not meta_path.exists():
            return True
        try:
            meta = json.loads(meta_path.read_text())
            uploaded_at = datetime.fromisoformat(meta["uploadedAt"])
            retention_days = int(meta.get("retentionDays", 0))
        except (ValueError, KeyError, TypeError):
            return True
        return not _expired(uploaded_at, retention_days, self._clock())

    def download(self, name: str) -> bytes:
        path = self._path(name)
        if not path.is_file() or not self._is_live(path):
            raise KeyError(name)
        return path.read_bytes()

    def list(self, prefix: str = "") -> list[str]:
        if not self.root.exists():
            return []
        names: list[str] = []
        for path in self.root.rglob("*"):
            if not path.is_file() or path.name.endswith((META_SUFFIX, ".tmp")):
                continue
            name = path.relative_to(self.root).as_posix()
            if name.startswith(prefix) and self._is_live(path):
                names.append(name)
        return sorted(names)


class GcsBlobStore(BlobStore):
    def __init__(
        self,
        bucket: str,
        *,
        prefix: str = "",
        client: t.Any | None = None,
        clock: t.Callable[[], datetime] = _utcnow,
    ) -> None:
        from google.cloud import storage

        self._client = client or storage.Client()
        self._bucket = self._client.bucket(bucket)
        self._prefix = prefix.strip("/")
        self._clock = clock

    def _key(self, name: str) -> str:
        return f"{self._prefix}/{name}" if self._prefix else name

    def _name(self, key: str) -> str:
        if self._prefix and key.startswith(self._prefix + "/"):
            return key[len(self._prefix) + 1:]
        return key

    def upload(self, name: str, data: bytes, *, retention_days: int) -> None:
        blob = self._bucket.blob(self._key(name))
        blob.metadata = {"retention-days": str(retention_days)}
        blob.custom_time = self._clock()
        blob.upload_from_string(data, content_type="application/json")

    def _blob_is_live(self, blob: t.Any) -> bool:
        metadata = blob.metadata or {}
        try:
            retention_days = int(metadata.get("retention-days", 0))
        except ValueError:
            return True
        uploaded_at = blob.custom_time or blob.time_created
        if uploaded_at is None:
            return True
        return not _expired(uploaded_at, retention_days, self._clock())

    def download(self, name: str) -> bytes:
        from google.api_core.exceptions import NotFound

        blob = self._bucket.get_blob(self._key(name))
        if blob is None or not self._blob_is_live(blob):
            raise KeyError(name)
        try:
            return blob.download_as_bytes()
        except NotFound as exc:
            raise KeyError(name) from exc

    def list(self, prefix: str = "") -> list[str]:
        blobs = self._client.list_blobs(self._bucket, prefix=self._key(prefix))
        return sorted(self._name(blob.name) for blob in blobs if self._blob_is_live(blob))


def build_blob_store(uri: str) -> BlobStore:
    if uri.startswith("gs://"):
        bucket, _, prefix = uri[len("gs://"):].partition("/")
        if not bucket:
            raise ValueError(f"missing bucket in {uri!r}")
        return GcsBlobStore(bucket, prefix=prefix)
    if uri.startswith("file://"):
        return FilesystemBlobStore(Path(uri[len("file://"):]).expanduser())
    if "://" in uri:
        raise ValueError(f"unsupported handoff store {uri!r}")
    return FilesystemBlobStore(Path(uri).expanduser())
