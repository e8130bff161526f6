from __future__ import annotations

import enum
import typing as t
from dataclasses import dataclass, field

from .errors import InvalidStateTransition
from .naming import snapshot_image_name


class InstanceState(str, enum.Enum):
    REQUESTED = "requested"
    PROVISIONING = "provisioning"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed-out"
    DELETING = "deleting"
    DELETED = "deleted"


ALLOWED_TRANSITIONS: dict[InstanceState, frozenset[InstanceState]] = {
    InstanceState.REQUESTED: frozenset({InstanceState.PROVISIONING}),
    InstanceState.PROVISIONING: frozenset(
        {InstanceState.RUNNING, InstanceState.FAILED, InstanceState.TIMED_OUT}
    ),
    InstanceState.RUNNING: frozenset(
        {InstanceState.COMPLETED, InstanceState.FAILED, InstanceState.TIMED_OUT}
    ),
    InstanceState.COMPLETED: frozenset({InstanceState.DELETING}),
    InstanceState.FAILED: frozenset({InstanceState.DELETING}),
    InstanceState.TIMED_OUT: frozenset({InstanceState.DELETING}),
    InstanceState.DELETING: frozenset({InstanceState.DELETED}),
    InstanceState.DELETED: frozenset(),
}

TERMINAL_RUN_STATES = frozenset(
    {InstanceState.COMPLETED, InstanceState.FAILED, InstanceState.TIMED_OUT}
)


class TerminalStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    INTERRUPTED = "interrupted"


@dataclass(slots=True, frozen=True)
class MachineProfile:
    name: str
    vcpus: int
    memory_mib: int


@dataclass(slots=True, frozen=True)
class SnapshotKey:
    network: str
    format_tag: str
    commit: str

    def image_name(self, prefix: str) -> str:
        return snapshot_image_name(prefix, self.commit, self.network, self.format_tag)


@dataclass(slots=True, frozen=True)
class SnapshotRef:
    key: SnapshotKey
    image_name: str
    provider_id: str = ""


@dataclass(slots=True, frozen=True)
class EmptyDisk:
    name: str
    size_gb: int
    disk_type: str


@dataclass(slots=True, frozen=True)
class SnapshotDisk:
    name: str
    snapshot: SnapshotRef
    size_gb: int
    disk_type: str


DiskSpec = t.Union[EmptyDisk, SnapshotDisk]


@dataclass(slots=True, frozen=True)
class ContainerSpec:
    image: str
    command: tuple[str, ...]
    args: tuple[str, ...] = ()
    env: tuple[tuple[str, str], ...] = ()
    mount_path: str = "/state"


@dataclass(slots=True, frozen=True)
class InstanceSpec:
    name: str
    machine: MachineProfile
    disk: DiskSpec
    container: ContainerSpec
    labels: tuple[tuple[str, str], ...] = ()
    description: str = ""


@dataclass(slots=True, frozen=True)
class ContainerHandle:
    name: str


@dataclass(slots=True, frozen=True)
class InstanceRef:
    name: str
    zone: str
    provider_id: str = ""
    disk_names: tuple[str, ...] = ()
    container_handle: ContainerHandle | None = None

    @property
    def state_disk(self) -> str:
        if not self.disk_names:
            raise ValueError(f"instance {self.name} has no attached state disk")
        return self.disk_names[0]


@dataclass(slots=True)
class PipelineRun:
    run_id: str
    ref_slug: str
    commit: str
    network: str
    lifecycle: InstanceState = InstanceState.REQUESTED
    instance: InstanceRef | None = None
    history: list[InstanceState] = field(default_factory=list)

    @property
    def label(self) -> str:
        return f"{self.ref_slug}@{self.commit}"

    def transition(self, target: InstanceState) -> None:
        if target not in ALLOWED_TRANSITIONS[self.lifecycle]:
            raise InvalidStateTransition(
                f"[{self.label}] cannot move from {self.lifecycle.value} to {target.value}"
            )
        self.history.append(self.lifecycle)
        self.lifecycle = target

    def attach_instance(self, ref: InstanceRef) -> None:
        if self.instance is not None and self.lifecycle is not InstanceState.DELETED:
            raise InvalidStateTransition(
                f"[{self.label}] already owns instance {self.instance.name}"
            )
        self.instance = ref

    def reset_for_attempt(self) -> None:
        if self.lifecycle not in (InstanceState.REQUESTED, InstanceState.DELETED):
            raise InvalidStateTransition(
                f"[{self.label}] previous attempt still {self.lifecycle.value}"
            )
        if self.lifecycle is InstanceState.DELETED:
            self.history.append(self.lifecycle)
        self.lifecycle = InstanceState.REQUESTED
        self.instance = None
