from __future__ import annotations

import socket
import typing as t
from dataclasses import dataclass, field
from datetime import datetime, timezone

import pytest

from snapshot_ci._types import Console
from snapshot_ci.blobstore import FilesystemBlobStore
from snapshot_ci.config import PipelineConfig
from snapshot_ci.errors import ImageExists, ResourceNotFound
from snapshot_ci.handoff import HandoffStore
from snapshot_ci.models import (
    ContainerHandle,
    InstanceRef,
    InstanceSpec,
    PipelineRun,
    SnapshotKey,
    SnapshotRef,
)
from snapshot_ci.providers.base import ComputeProvider


# ---------------------------------------------------------------------------
# Scripted SSH sessions
# ---------------------------------------------------------------------------


@dataclass
class FakeSession:
    """One scripted attachment: output chunks, then an exit status or a drop."""

    chunks: list[bytes] = field(default_factory=list)
    exit_status: int = 0
    drop: bool = False


class FakeChannel:
    def __init__(self, session: FakeSession, commands: list[str]) -> None:
        self._session = session
        self._chunks = list(session.chunks)
        self._commands = commands
        self.combine_stderr = False

    def set_combine_stderr(self, value: bool) -> None:
        self.combine_stderr = value

    def exec_command(self, command: str) -> None:
        self._commands.append(command)

    def recv(self, size: int) -> bytes:
        if self._chunks:
            return self._chunks.pop(0)
        if self._session.drop:
            raise socket.error("connection reset by peer")
        return b""

    def recv_exit_status(self) -> int:
        return self._session.exit_status


class FakeTransport:
    def __init__(self, session: FakeSession, commands: list[str]) -> None:
        self._session = session
        self._commands = commands
        self.keepalive: int | None = None

    def is_active(self) -> bool:
        return True

    def set_keepalive(self, interval: int) -> None:
        self.keepalive = interval

    def open_session(self) -> FakeChannel:
        return FakeChannel(self._session, self._commands)


class FakeSSHClient:
    def __init__(self, session: FakeSession, commands: list[str]) -> None:
        self.transport = FakeTransport(session, commands)
        self.closed = False

    def get_transport(self) -> FakeTransport:
        return self.transport

    def close(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# In-memory compute provider
# ---------------------------------------------------------------------------


class FakeProvider(ComputeProvider):
    name = "fake"

    def __init__(self, *, synchronous_handle: bool = True) -> None:
        self.synchronous_handle = synchronous_handle
        self.instances: dict[str, InstanceRef] = {}
        self.specs: dict[str, InstanceSpec] = {}
        self.images: dict[str, SnapshotRef] = {}
        self.image_sources: dict[str, str] = {}
        self.sessions: list[FakeSession | BaseException] = []
        self.commands: list[str] = []
        self.system_log: list[str] = []
        self.log_reads = 0
        self.created: list[str] = []
        self.deleted: list[str] = []
        self.delete_calls: list[str] = []
        self.create_error: BaseException | None = None
        self.delete_error: BaseException | None = None
        self.image_error: BaseException | None = None
        self._counter = 0

    def _next_id(self) -> str:
        self._counter += 1
        return str(1000 + self._counter)

    def create_instance(self, spec: InstanceSpec) -> InstanceRef:
        if self.create_error is not None:
            raise self.create_error
        handle = ContainerHandle(f"klt-{spec.name}-abcd") if self.synchronous_handle else None
        ref = InstanceRef(
            name=spec.name,
            zone="test-zone",
            provider_id=self._next_id(),
            disk_names=(spec.disk.name,),
            container_handle=handle,
        )
        self.instances[spec.name] = ref
        self.specs[spec.name] = spec
        self.created.append(spec.name)
        return ref

    def find_instance(self, name: str) -> InstanceRef | None:
        return self.instances.get(name)

    def delete_instance(self, ref: InstanceRef, *, delete_disks: bool = True) -> None:
        self.delete_calls.append(ref.name)
        if self.delete_error is not None:
            raise self.delete_error
        if ref.name not in self.instances:
            raise ResourceNotFound(ref.name)
        del self.instances[ref.name]
        self.deleted.append(ref.name)

    def create_image(
        self,
        ref: InstanceRef,
        key: SnapshotKey,
        image_name: str,
        *,
        description: str = "",
    ) -> SnapshotRef:
        if self.image_error is not None:
            raise self.image_error
        if ref.name not in self.instances:
            raise AssertionError(f"snapshot taken after {ref.name} was deleted")
        if image_name in self.images:
            raise ImageExists(image_name)
        created = SnapshotRef(key=key, image_name=image_name, provider_id=self._next_id())
        self.images[image_name] = created
        self.image_sources[image_name] = ref.state_disk
        return created

    def find_image(self, image_name: str) -> SnapshotRef | None:
        return self.images.get(image_name)

    def delete_image(self, image_name: str) -> None:
        if image_name not in self.images:
            raise ResourceNotFound(image_name)
        del self.images[image_name]

    def read_system_log(self, ref: InstanceRef, text: str, *, limit: int = 1) -> list[str]:
        self.log_reads += 1
        matching = [message for message in self.system_log if text in message]
        return list(reversed(matching))[:limit]

    def connect(self, ref: InstanceRef) -> t.Any:
        if not self.sessions:
            raise AssertionError("no scripted ssh session left")
        session = self.sessions.pop(0)
        if isinstance(session, BaseException):
            raise session
        return FakeSSHClient(session, self.commands)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


class RecordingConsole(Console):
    def __init__(self) -> None:
        super().__init__()
        self.lines: list[str] = []

    def info(self, value: str) -> None:
        self.lines.append(value)

    def always(self, value: str) -> None:
        self.lines.append(value)

    def warn(self, value: str) -> None:
        self.lines.append(f"Warning: {value}")


class FixedClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture()
def console() -> Console:
    return Console(quiet=True)


@pytest.fixture()
def config(tmp_path) -> PipelineConfig:
    return PipelineConfig(
        project_id="zebra-ci",
        registry_base="us-docker.pkg.dev/zebra-ci/zebra",
        discovery_interval=0.01,
        discovery_timeout=0.2,
        keepalive_interval=1.0,
        reconnect_delay=0.0,
        handoff_store=str(tmp_path / "handoff"),
    )


@pytest.fixture()
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture()
def clock() -> FixedClock:
    return FixedClock(datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture()
def blobs(tmp_path, clock) -> FilesystemBlobStore:
    return FilesystemBlobStore(tmp_path / "artifacts", clock=clock)


@pytest.fixture()
def handoff(blobs, console, clock) -> HandoffStore:
    return HandoffStore(blobs, console, workflow="test.yml", clock=clock)


@pytest.fixture()
def make_run() -> t.Callable[..., PipelineRun]:
    def _make(
        run_id: str = "4242",
        ref_slug: str = "main",
        commit: str = "abc1234",
        network: str = "Mainnet",
    ) -> PipelineRun:
        return PipelineRun(run_id=run_id, ref_slug=ref_slug, commit=commit, network=network)

    return _make


def success_session(*lines: str, exit_status: int = 0) -> FakeSession:
    return FakeSession(
        chunks=[("\n".join(lines) + "\n").encode()] if lines else [],
        exit_status=exit_status,
    )
