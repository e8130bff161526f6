from __future__ import annotations

import asyncio
import re
import typing as t

from ._types import Console
from .config import PipelineConfig
from .errors import ProvisionError, ResourceNotFound, TeardownFailure
from .models import (
    ContainerSpec,
    DiskSpec,
    EmptyDisk,
    InstanceRef,
    InstanceSpec,
    InstanceState,
    MachineProfile,
    PipelineRun,
    SnapshotDisk,
    SnapshotRef,
)
from .naming import MAX_RESOURCE_NAME, image_reference, instance_name, state_disk_name
from .providers.base import ComputeProvider

_RESOURCE_NAME = re.compile(r"^[a-z]([-a-z0-9]*[a-z0-9])?$")


def instance_spec_for(
    run: PipelineRun,
    config: PipelineConfig,
    *,
    args: t.Iterable[str],
    source: SnapshotRef | None = None,
) -> InstanceSpec:
    name = instance_name(config.instance_prefix, run.ref_slug, run.commit)
    disk_name = state_disk_name(name)
    disk: DiskSpec
    if source is None:
        disk = EmptyDisk(disk_name, config.state_disk_size_gb, config.state_disk_type)
    else:
        disk = SnapshotDisk(disk_name, source, config.state_disk_size_gb, config.state_disk_type)
    container = ContainerSpec(
        image=image_reference(config.image_reference_base, run.commit),
        command=config.container_command,
        args=config.render_args(args, run.network),
        env=config.container_env,
        mount_path=config.mount_path,
    )
    origin = f"from {source.image_name}" if source is not None else "from empty state"
    return InstanceSpec(
        name=name,
        machine=MachineProfile(
            config.machine_type, config.machine_vcpus, config.machine_memory_mib
        ),
        disk=disk,
        container=container,
        labels=(("run-id", _label_value(run.run_id)), ("commit", run.commit)),
        description=f"Run {run.run_id} on {run.ref_slug} at {run.commit}, {origin}",
    )


def _label_value(value: str) -> str:
    return re.sub(r"[^a-z0-9_-]", "-", value.lower())[:MAX_RESOURCE_NAME]


def validate_spec(spec: InstanceSpec) -> None:
    problems: list[str] = []
    for label, value in (("instance", spec.name), ("disk", spec.disk.name)):
        if len(value) > MAX_RESOURCE_NAME or not _RESOURCE_NAME.match(value):
            problems.append(f"{label} name {value!r} is not a valid resource name")
    if spec.disk.size_gb <= 0:
        problems.append(f"disk size must be positive, got {spec.disk.size_gb}")
    if not spec.container.image or spec.container.image.startswith("/"):
        problems.append(f"container image {spec.container.image!r} is not a pullable reference")
    if not spec.machine.name:
        problems.append("machine profile is empty")
    if problems:
        raise ProvisionError("invalid-spec", "; ".join(problems))


class InstanceProvisioner:
    def __init__(self, provider: ComputeProvider, console: Console) -> None:
        self._provider = provider
        self._console = console

    async def create(self, run: PipelineRun, spec: InstanceSpec) -> InstanceRef:
        run.transition(InstanceState.PROVISIONING)
        try:
            validate_spec(spec)
            existing = await asyncio.to_thread(self._provider.find_instance, spec.name)
            if existing is not None:
                raise ProvisionError(
                    "name-collision",
                    f"instance {spec.name} already exists; another attempt for "
                    f"{run.label} is still running or was preserved",
                )
            source = (
                spec.disk.snapshot.image_name
                if isinstance(spec.disk, SnapshotDisk)
                else "empty disk"
            )
            self._console.always(
                f"[{spec.name}] creating {self._provider.name} instance "
                f"({spec.machine.name}, {spec.disk.size_gb}GB {spec.disk.disk_type} from {source})"
            )
            ref = await asyncio.to_thread(self._provider.create_instance, spec)
        except asyncio.CancelledError:
            run.transition(InstanceState.TIMED_OUT)
            raise
        except BaseException:
            run.transition(InstanceState.FAILED)
            raise
        run.attach_instance(ref)
        run.transition(InstanceState.RUNNING)
        self._console.info(f"[{spec.name}] instance running (id {ref.provider_id or 'n/a'})")
        return ref

    async def delete(
        self, ref: InstanceRef, *, delete_disks: bool = True
    ) -> TeardownFailure | None:
        self._console.info(
            f"[{ref.name}] deleting instance"
            + (" and its disks" if delete_disks else "")
        )
        try:
            await asyncio.to_thread(
                self._provider.delete_instance, ref, delete_disks=delete_disks
            )
        except ResourceNotFound:
            self._console.info(f"[{ref.name}] instance already gone")
            return None
        except Exception as exc:  # noqa: BLE001
            failure = TeardownFailure(ref.name, exc)
            self._console.warn(f"{failure}; delete it by hand to avoid leaking resources")
            return failure
        self._console.info(f"[{ref.name}] instance deleted")
        return None
