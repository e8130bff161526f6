"""
Morph Cloud provider.

A Morph instance is booted from a base snapshot (empty state) or from a
previously captured state snapshot, and the test container is started with
``docker run`` over the exec API.  The whole VM disk doubles as the state disk,
and snapshots are keyed by their digest.  Because we name the container
ourselves, the runtime identity is known at creation time and no log polling
is needed.
"""

from __future__ import annotations

import shlex
import time
import typing as t

import httpx
import paramiko
from morphcloud.api import ApiError, Instance, InstanceExecResponse, MorphCloudClient

from .._types import Command, Console
from ..config import PipelineConfig
from ..errors import ImageExists, ProvisionError, ResourceNotFound, SnapshotConflict
from ..models import (
    ContainerHandle,
    EmptyDisk,
    InstanceRef,
    InstanceSpec,
    SnapshotDisk,
    SnapshotKey,
    SnapshotRef,
)
from ..naming import state_disk_name
from .base import ComputeProvider

NAME_METADATA_KEY = "snapshot-ci-name"
HOST_STATE_DIR = "/var/lib/snapshot-ci/state"
EXEC_MAX_ATTEMPTS = 3


def _shell_command(command: Command) -> list[str]:
    if isinstance(command, str):
        script = f"set -euo pipefail\n{command}"
        return ["bash", "-lc", script]
    return list(command)


def docker_run_command(spec: InstanceSpec) -> str:
    container = spec.container
    parts: list[str] = ["docker", "run", "-d", "-i", "-t", "--restart", "no", "--name", spec.name]
    parts += ["-v", f"{HOST_STATE_DIR}:{container.mount_path}"]
    for key, value in container.env:
        parts += ["-e", f"{key}={value}"]
    argv = list(container.command) + list(container.args)
    if container.command:
        parts += ["--entrypoint", argv[0]]
        argv = argv[1:]
    parts.append(container.image)
    parts += argv
    return f"mkdir -p {shlex.quote(HOST_STATE_DIR)}\n{shlex.join(parts)}"


def _status_code(exc: BaseException) -> int | None:
    code = getattr(exc, "status_code", None)
    return code if isinstance(code, int) else None


class MorphProvider(ComputeProvider):
    name = "morph"

    def __init__(
        self,
        config: PipelineConfig,
        *,
        console: Console | None = None,
        client: MorphCloudClient | None = None,
    ) -> None:
        self._config = config
        self._console = console or Console()
        self._client = client or MorphCloudClient()

    def _exec(self, instance: Instance, label: str, command: Command) -> InstanceExecResponse:
        attempts = 0
        while True:
            attempts += 1
            try:
                result = instance.exec(_shell_command(command))
            except (httpx.HTTPError, OSError) as exc:
                if attempts < EXEC_MAX_ATTEMPTS:
                    delay = min(2**attempts, 8)
                    self._console.info(
                        f"[{label}] retrying after remote exec failure ({exc}) "
                        f"(attempt {attempts}/{EXEC_MAX_ATTEMPTS}) in {delay}s"
                    )
                    time.sleep(delay)
                    continue
                raise
            if result.exit_code not in (0, None):
                error_parts = [f"{label} failed with exit code {result.exit_code}"]
                if result.stderr.strip():
                    error_parts.append(f"stderr:\n{result.stderr.rstrip()}")
                raise RuntimeError("\n".join(error_parts))
            return result

    def _boot_source(self, spec: InstanceSpec) -> str:
        disk = spec.disk
        if isinstance(disk, SnapshotDisk):
            found = self.find_image(disk.snapshot.image_name)
            if found is None:
                raise ProvisionError(
                    "invalid-spec", f"state snapshot {disk.snapshot.image_name} not found"
                )
            return found.provider_id
        if isinstance(disk, EmptyDisk):
            if not self._config.morph_base_snapshot:
                raise ProvisionError(
                    "invalid-spec", "SNAPSHOT_CI_MORPH_BASE_SNAPSHOT is required for empty state"
                )
            return self._config.morph_base_snapshot
        raise ProvisionError("invalid-spec", f"unsupported disk spec {disk!r}")

    def create_instance(self, spec: InstanceSpec) -> InstanceRef:
        snapshot_id = self._boot_source(spec)
        try:
            instance = self._client.instances.boot(
                snapshot_id,
                vcpus=spec.machine.vcpus,
                memory=spec.machine.memory_mib,
                disk_size=spec.disk.size_gb * 1024,
                metadata={NAME_METADATA_KEY: spec.name, **dict(spec.labels)},
                ttl_seconds=self._config.morph_ttl_seconds,
                ttl_action="stop",
            )
        except ApiError as exc:
            code = _status_code(exc)
            if code in (402, 429):
                raise ProvisionError("quota", str(exc)) from exc
            if code == 409:
                raise ProvisionError("name-collision", str(exc)) from exc
            raise ProvisionError("invalid-spec", str(exc)) from exc
        self._console.info(f"[{spec.name}] booted Morph instance {instance.id}; waiting until ready")
        try:
            instance.wait_until_ready(timeout=self._config.operation_timeout)
            self._exec(instance, spec.name, docker_run_command(spec))
        except (RuntimeError, OSError, httpx.HTTPError) as exc:
            self._stop_instance(instance)
            raise ProvisionError("invalid-spec", f"container did not start: {exc}") from exc
        return InstanceRef(
            name=spec.name,
            zone="morph",
            provider_id=instance.id,
            disk_names=(spec.disk.name,),
            container_handle=ContainerHandle(spec.name),
        )

    def _stop_instance(self, instance: Instance) -> None:
        try:
            self._console.info(f"Stopping instance {instance.id}...")
            instance.stop()
        except Exception as exc:  # noqa: BLE001
            self._console.always(f"Failed to stop instance {instance.id}: {exc}")

    def _lookup(self, name: str) -> Instance | None:
        matches = self._client.instances.list(metadata={NAME_METADATA_KEY: name})
        return matches[0] if matches else None

    def find_instance(self, name: str) -> InstanceRef | None:
        instance = self._lookup(name)
        if instance is None:
            return None
        return InstanceRef(
            name=name,
            zone="morph",
            provider_id=instance.id,
            disk_names=(state_disk_name(name),),
            container_handle=ContainerHandle(name),
        )

    def delete_instance(self, ref: InstanceRef, *, delete_disks: bool = True) -> None:
        instance = self._lookup(ref.name)
        if instance is None:
            raise ResourceNotFound(ref.name)
        if not delete_disks:
            self._console.warn(
                f"[{ref.name}] Morph instances carry their disk; it is removed with the instance"
            )
        instance.stop()

    def create_image(
        self,
        ref: InstanceRef,
        key: SnapshotKey,
        image_name: str,
        *,
        description: str = "",
    ) -> SnapshotRef:
        instance = self._lookup(ref.name)
        if instance is None:
            raise SnapshotConflict(f"instance {ref.name} is gone; cannot snapshot its disk")
        if self._client.snapshots.list(digest=image_name):
            raise ImageExists(image_name)
        try:
            snapshot = instance.snapshot(digest=image_name)
        except ApiError as exc:
            raise SnapshotConflict(f"cannot snapshot {ref.name} as {image_name}: {exc}") from exc
        try:
            snapshot.set_metadata(
                {
                    "network": key.network.lower(),
                    "format": key.format_tag,
                    "commit": key.commit,
                    "description": description,
                }
            )
        except ApiError as exc:
            self._console.warn(f"[{ref.name}] failed to tag snapshot {snapshot.id}: {exc}")
        return SnapshotRef(key=key, image_name=image_name, provider_id=snapshot.id)

    def find_image(self, image_name: str) -> SnapshotRef | None:
        matches = self._client.snapshots.list(digest=image_name)
        if not matches:
            return None
        snapshot = matches[0]
        metadata = dict(getattr(snapshot, "metadata", None) or {})
        key = SnapshotKey(
            network=metadata.get("network", ""),
            format_tag=metadata.get("format", ""),
            commit=metadata.get("commit", ""),
        )
        return SnapshotRef(key=key, image_name=image_name, provider_id=snapshot.id)

    def delete_image(self, image_name: str) -> None:
        matches = self._client.snapshots.list(digest=image_name)
        if not matches:
            raise ResourceNotFound(image_name)
        for snapshot in matches:
            try:
                snapshot.delete()
            except ApiError as exc:
                raise SnapshotConflict(f"cannot replace snapshot {image_name}: {exc}") from exc

    def read_system_log(self, ref: InstanceRef, text: str, *, limit: int = 1) -> list[str]:
        instance = self._lookup(ref.name)
        if instance is None:
            return []
        result = self._exec(
            instance,
            ref.name,
            f"journalctl --no-pager -o cat -n 2000 | grep -F -- {shlex.quote(text)} "
            f"| tail -n {int(limit)} || true",
        )
        return [line for line in result.stdout.splitlines() if line.strip()]

    def connect(self, ref: InstanceRef) -> paramiko.SSHClient:
        instance = self._lookup(ref.name)
        if instance is None:
            raise ResourceNotFound(ref.name)
        return t.cast(paramiko.SSHClient, instance.ssh_connect())
