"""
Google Compute Engine provider.

Instances are Container-Optimized OS VMs carrying a container declaration in
their metadata (what ``gcloud compute instances create-with-container`` does),
with one extra persistent disk mounted into the container.  The container
agent picks its own container name, so the runtime identity is only visible
in the ``cos_system`` log, which is read through the Cloud Logging REST API.
"""

from __future__ import annotations

import json
import os
import typing as t

import google.auth
import google.auth.transport.requests
import httpx
import paramiko
from google.api_core import exceptions as gexc
from google.cloud import compute_v1

from ..config import PipelineConfig
from ..errors import ImageExists, ProvisionError, ResourceNotFound, SnapshotConflict
from ..models import (
    ContainerSpec,
    EmptyDisk,
    InstanceRef,
    InstanceSpec,
    SnapshotDisk,
    SnapshotKey,
    SnapshotRef,
)
from .base import ComputeProvider

COS_IMAGE = "projects/cos-cloud/global/images/family/cos-stable"
LOGGING_ENTRIES_URL = "https://logging.googleapis.com/v2/entries:list"
LOGGING_SCOPE = "https://www.googleapis.com/auth/logging.read"
CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"
STATE_VOLUME = "pd-0"

_QUOTA_MARKERS = ("QUOTA", "quota", "RESOURCE_EXHAUSTED", "ZONE_RESOURCE_POOL_EXHAUSTED")


def container_declaration(spec: InstanceSpec) -> str:
    container: ContainerSpec = spec.container
    declaration = {
        "spec": {
            "containers": [
                {
                    "name": spec.name,
                    "image": container.image,
                    "command": list(container.command),
                    "args": list(container.args),
                    "env": [{"name": key, "value": value} for key, value in container.env],
                    "stdin": True,
                    "tty": True,
                    "volumeMounts": [
                        {
                            "name": STATE_VOLUME,
                            "mountPath": container.mount_path,
                            "readOnly": False,
                        }
                    ],
                }
            ],
            "volumes": [
                {
                    "name": STATE_VOLUME,
                    "gcePersistentDisk": {
                        "pdName": spec.disk.name,
                        "fsType": "ext4",
                        "partition": 0,
                    },
                }
            ],
            "restartPolicy": "Never",
        }
    }
    # The container agent parses YAML; JSON is a subset of it.
    return json.dumps(declaration)


def _classify_create_error(exc: BaseException, name: str) -> ProvisionError:
    message = str(exc)
    if isinstance(exc, gexc.Conflict):
        return ProvisionError("name-collision", f"instance {name} already exists")
    if isinstance(exc, (gexc.TooManyRequests, gexc.ResourceExhausted)) or any(
        marker in message for marker in _QUOTA_MARKERS
    ):
        return ProvisionError("quota", message)
    return ProvisionError("invalid-spec", message)


class GceProvider(ComputeProvider):
    name = "gce"

    def __init__(
        self,
        config: PipelineConfig,
        *,
        instances_client: t.Any | None = None,
        images_client: t.Any | None = None,
        http_client: httpx.Client | None = None,
        credentials: t.Any | None = None,
    ) -> None:
        if not config.project_id:
            raise ValueError("GCE provider requires a project id (GCP_PROJECT_ID)")
        self._config = config
        self._project = config.project_id
        self._zone = config.zone
        self._instances = instances_client or compute_v1.InstancesClient()
        self._images = images_client or compute_v1.ImagesClient()
        self._http = http_client or httpx.Client(timeout=30.0)
        self._credentials = credentials

    # -- instances -----------------------------------------------------------

    def _state_disk(self, spec: InstanceSpec) -> compute_v1.AttachedDisk:
        disk = spec.disk
        params = compute_v1.AttachedDiskInitializeParams(
            disk_name=disk.name,
            disk_size_gb=disk.size_gb,
            disk_type=f"zones/{self._zone}/diskTypes/{disk.disk_type}",
        )
        if isinstance(disk, SnapshotDisk):
            params.source_image = f"projects/{self._project}/global/images/{disk.snapshot.image_name}"
        return compute_v1.AttachedDisk(
            boot=False,
            auto_delete=True,
            device_name=disk.name,
            initialize_params=params,
        )

    def _ssh_key_item(self) -> compute_v1.Items | None:
        public_key_path = os.path.expanduser(self._config.ssh_key_path) + ".pub"
        try:
            with open(public_key_path, "r", encoding="utf-8") as f:
                public_key = f.read().strip()
        except FileNotFoundError:
            return None
        return compute_v1.Items(key="ssh-keys", value=f"{self._config.ssh_user}:{public_key}")

    def build_instance(self, spec: InstanceSpec) -> compute_v1.Instance:
        if not isinstance(spec.disk, (EmptyDisk, SnapshotDisk)):
            raise ProvisionError("invalid-spec", f"unsupported disk spec {spec.disk!r}")
        boot_disk = compute_v1.AttachedDisk(
            boot=True,
            auto_delete=True,
            initialize_params=compute_v1.AttachedDiskInitializeParams(
                source_image=COS_IMAGE,
                disk_size_gb=self._config.boot_disk_size_gb,
                disk_type=f"zones/{self._zone}/diskTypes/{self._config.boot_disk_type}",
            ),
        )
        metadata_items = [
            compute_v1.Items(key="gce-container-declaration", value=container_declaration(spec)),
            compute_v1.Items(key="google-logging-enabled", value="true"),
            compute_v1.Items(key="google-monitoring-enabled", value="true"),
        ]
        ssh_key = self._ssh_key_item()
        if ssh_key is not None:
            metadata_items.append(ssh_key)
        labels = {"container-vm": "cos-stable"}
        labels.update(dict(spec.labels))
        return compute_v1.Instance(
            name=spec.name,
            description=spec.description,
            machine_type=f"zones/{self._zone}/machineTypes/{spec.machine.name}",
            disks=[boot_disk, self._state_disk(spec)],
            network_interfaces=[
                compute_v1.NetworkInterface(
                    network="global/networks/default",
                    access_configs=[
                        compute_v1.AccessConfig(name="External NAT", type_="ONE_TO_ONE_NAT")
                    ],
                )
            ],
            metadata=compute_v1.Metadata(items=metadata_items),
            labels=labels,
            tags=compute_v1.Tags(items=list(self._config.network_tags)),
            service_accounts=[
                compute_v1.ServiceAccount(email="default", scopes=[CLOUD_PLATFORM_SCOPE])
            ],
        )

    def create_instance(self, spec: InstanceSpec) -> InstanceRef:
        resource = self.build_instance(spec)
        try:
            operation = self._instances.insert(
                project=self._project,
                zone=self._zone,
                instance_resource=resource,
            )
            operation.result(timeout=self._config.operation_timeout)
        except gexc.GoogleAPICallError as exc:
            raise _classify_create_error(exc, spec.name) from exc
        if getattr(operation, "error_code", None):
            raise _classify_create_error(
                RuntimeError(f"{operation.error_code}: {operation.error_message}"),
                spec.name,
            )
        created = self.find_instance(spec.name)
        if created is None:
            raise ProvisionError("invalid-spec", f"instance {spec.name} vanished after creation")
        return created

    def _get_instance(self, name: str) -> compute_v1.Instance | None:
        try:
            return self._instances.get(project=self._project, zone=self._zone, instance=name)
        except gexc.NotFound:
            return None

    def find_instance(self, name: str) -> InstanceRef | None:
        instance = self._get_instance(name)
        if instance is None:
            return None
        disk_names = tuple(
            disk.device_name for disk in instance.disks if not disk.boot and disk.device_name
        )
        return InstanceRef(
            name=name,
            zone=self._zone,
            provider_id=str(instance.id),
            disk_names=disk_names,
        )

    def delete_instance(self, ref: InstanceRef, *, delete_disks: bool = True) -> None:
        try:
            if not delete_disks:
                for disk_name in ref.disk_names:
                    self._instances.set_disk_auto_delete(
                        project=self._project,
                        zone=self._zone,
                        instance=ref.name,
                        auto_delete=False,
                        device_name=disk_name,
                    ).result(timeout=self._config.operation_timeout)
            operation = self._instances.delete(
                project=self._project, zone=self._zone, instance=ref.name
            )
            operation.result(timeout=self._config.operation_timeout)
        except gexc.NotFound as exc:
            raise ResourceNotFound(ref.name) from exc

    def external_ip(self, name: str) -> str:
        instance = self._get_instance(name)
        if instance is None:
            raise ResourceNotFound(name)
        for interface in instance.network_interfaces:
            for access in interface.access_configs:
                if access.nat_i_p:
                    return access.nat_i_p
        raise RuntimeError(f"instance {name} has no external address")

    # -- images --------------------------------------------------------------

    def create_image(
        self,
        ref: InstanceRef,
        key: SnapshotKey,
        image_name: str,
        *,
        description: str = "",
    ) -> SnapshotRef:
        image = compute_v1.Image(
            name=image_name,
            source_disk=f"projects/{self._project}/zones/{ref.zone}/disks/{ref.state_disk}",
            storage_locations=[self._config.image_storage_location],
            description=description,
            labels={"network": key.network.lower(), "format": key.format_tag, "commit": key.commit},
        )
        try:
            # force_create: the source disk is still attached to its instance.
            operation = self._images.insert(
                project=self._project, image_resource=image, force_create=True
            )
            operation.result(timeout=self._config.operation_timeout)
        except gexc.Conflict as exc:
            raise ImageExists(image_name) from exc
        except (gexc.Forbidden, gexc.TooManyRequests, gexc.ResourceExhausted) as exc:
            raise SnapshotConflict(f"cannot create image {image_name}: {exc}") from exc
        except gexc.GoogleAPICallError as exc:
            raise SnapshotConflict(f"image {image_name} creation failed: {exc}") from exc
        found = self.find_image(image_name)
        if found is None:
            raise SnapshotConflict(f"image {image_name} missing after creation")
        return SnapshotRef(key=key, image_name=image_name, provider_id=found.provider_id)

    def find_image(self, image_name: str) -> SnapshotRef | None:
        try:
            image = self._images.get(project=self._project, image=image_name)
        except gexc.NotFound:
            return None
        labels = dict(image.labels)
        key = SnapshotKey(
            network=labels.get("network", ""),
            format_tag=labels.get("format", ""),
            commit=labels.get("commit", ""),
        )
        return SnapshotRef(key=key, image_name=image_name, provider_id=str(image.id))

    def delete_image(self, image_name: str) -> None:
        try:
            operation = self._images.delete(project=self._project, image=image_name)
            operation.result(timeout=self._config.operation_timeout)
        except gexc.NotFound as exc:
            raise ResourceNotFound(image_name) from exc
        except (gexc.Forbidden, gexc.TooManyRequests, gexc.ResourceExhausted) as exc:
            raise SnapshotConflict(f"cannot replace image {image_name}: {exc}") from exc

    # -- side channels -------------------------------------------------------

    def _access_token(self) -> str:
        if self._credentials is None:
            self._credentials, _ = google.auth.default(scopes=[LOGGING_SCOPE])
        if not self._credentials.valid:
            self._credentials.refresh(google.auth.transport.requests.Request())
        return self._credentials.token

    def log_filter(self, ref: InstanceRef, text: str) -> str:
        escaped = text.replace('"', '\\"')
        parts = [
            f'log_name="projects/{self._project}/logs/cos_system"',
            f'jsonPayload.MESSAGE:"{escaped}"',
        ]
        if ref.provider_id:
            parts.append(f'resource.labels.instance_id="{ref.provider_id}"')
        return " AND ".join(parts)

    def read_system_log(self, ref: InstanceRef, text: str, *, limit: int = 1) -> list[str]:
        body = {
            "resourceNames": [f"projects/{self._project}"],
            "filter": self.log_filter(ref, text),
            "orderBy": "timestamp desc",
            "pageSize": limit,
        }
        response = self._http.post(
            LOGGING_ENTRIES_URL,
            json=body,
            headers={"Authorization": f"Bearer {self._access_token()}"},
        )
        response.raise_for_status()
        messages: list[str] = []
        for entry in response.json().get("entries", []):
            payload = entry.get("jsonPayload") or {}
            message = payload.get("MESSAGE")
            if isinstance(message, str):
                messages.append(message)
        return messages

    def connect(self, ref: InstanceRef) -> paramiko.SSHClient:
        host = self.external_ip(ref.name)
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        client.connect(
            hostname=host,
            username=self._config.ssh_user,
            key_filename=os.path.expanduser(self._config.ssh_key_path),
            timeout=30,
            banner_timeout=30,
        )
        return client
