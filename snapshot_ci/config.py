"""
Pipeline configuration.

All naming fragments, placement and sizing that the stages need travel in one
immutable ``PipelineConfig`` value.  ``from_env`` reads ``SNAPSHOT_CI_*``
variables (plus the usual GCP ones); the CLI loads ``.env`` first.
"""

from __future__ import annotations

import dataclasses
import os
import shlex
import typing as t
from dataclasses import dataclass

ProviderName = t.Literal["gce", "morph"]

DEFAULT_REGENERATE_ARGS: tuple[str, ...] = (
    "test",
    "--locked",
    "--release",
    "--features",
    "enable-sentry,test_sync_to_mandatory_checkpoint_{network}",
    "--manifest-path",
    "zebrad/Cargo.toml",
    "sync_to_mandatory_checkpoint_{network}",
)
DEFAULT_CONSUMER_ARGS: tuple[str, ...] = (
    "test",
    "--locked",
    "--release",
    "--features",
    "enable-sentry,test_sync_past_mandatory_checkpoint_{network}",
    "--manifest-path",
    "zebrad/Cargo.toml",
    "sync_past_mandatory_checkpoint_{network}",
)


@dataclass(slots=True, frozen=True)
class PipelineConfig:
    provider: ProviderName = "gce"
    project_id: str = ""
    region: str = "us-central1"
    zone: str = "us-central1-a"
    machine_type: str = "c2-standard-8"
    machine_vcpus: int = 8
    machine_memory_mib: int = 32_768
    registry_base: str = ""
    image_name: str = "zebrad-test"
    workflow: str = "test.yml"
    artifact_name: str = "latest-disk-state-sha"
    instance_prefix: str = "zebrad-tests"
    disk_prefix: str = "zebrad-cache"
    format_tag: str = "canopy"
    default_network: str = "Mainnet"
    boot_disk_size_gb: int = 100
    boot_disk_type: str = "pd-ssd"
    state_disk_size_gb: int = 100
    state_disk_type: str = "pd-ssd"
    mount_path: str = "/zebrad-cache"
    container_command: tuple[str, ...] = ("cargo",)
    regenerate_args: tuple[str, ...] = DEFAULT_REGENERATE_ARGS
    consumer_args: tuple[str, ...] = DEFAULT_CONSUMER_ARGS
    container_env: tuple[tuple[str, str], ...] = (("ZEBRA_SKIP_IPV6_TESTS", "1"),)
    network_tags: tuple[str, ...] = ("zebrad",)
    image_storage_location: str = "us"
    discovery_interval: float = 10.0
    discovery_timeout: float = 900.0
    keepalive_interval: float = 5.0
    max_reconnects: int = 3
    reconnect_delay: float = 5.0
    operation_timeout: float = 600.0
    handoff_store: str = "file://.snapshot-ci/handoff"
    handoff_retention_days: int = 1095
    preserve_on_timeout: bool = True
    ssh_user: str = "snapshot-ci"
    ssh_key_path: str = "~/.ssh/google_compute_engine"
    remote_docker: str = "docker"
    morph_base_snapshot: str = ""
    morph_ttl_seconds: int = 6 * 3600

    @property
    def image_reference_base(self) -> str:
        return f"{self.registry_base.rstrip('/')}/{self.image_name}"

    def network_slug(self, network: str | None = None) -> str:
        return (network or self.default_network).strip().lower()

    def render_args(self, args: t.Iterable[str], network: str) -> tuple[str, ...]:
        slug = self.network_slug(network)
        return tuple(arg.format(network=slug) for arg in args)

    def with_overrides(self, **overrides: t.Any) -> "PipelineConfig":
        present = {key: value for key, value in overrides.items() if value is not None}
        return dataclasses.replace(self, **present)

    @classmethod
    def from_env(cls, env: t.Mapping[str, str] | None = None) -> "PipelineConfig":
        source = os.environ if env is None else env
        defaults = cls()
        values: dict[str, t.Any] = {}
        project = source.get("GCP_PROJECT_ID") or source.get("PROJECT_ID")
        if project:
            values["project_id"] = project
            values["registry_base"] = f"us-docker.pkg.dev/{project}/zebra"
        for field in dataclasses.fields(cls):
            raw = source.get(f"SNAPSHOT_CI_{field.name.upper()}")
            if raw is None:
                continue
            values[field.name] = _coerce(getattr(defaults, field.name), raw, field.name)
        return dataclasses.replace(defaults, **values)


def _coerce(default: t.Any, raw: str, name: str) -> t.Any:
    if isinstance(default, bool):
        lowered = raw.strip().lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off", ""):
            return False
        raise ValueError(f"SNAPSHOT_CI_{name.upper()}: expected a boolean, got {raw!r}")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    if isinstance(default, tuple):
        if name == "container_env":
            pairs: list[tuple[str, str]] = []
            for item in shlex.split(raw):
                key, sep, value = item.partition("=")
                if not sep:
                    raise ValueError(f"SNAPSHOT_CI_CONTAINER_ENV: expected KEY=VALUE, got {item!r}")
                pairs.append((key, value))
            return tuple(pairs)
        if name == "network_tags":
            return tuple(tag for tag in raw.replace(",", " ").split() if tag)
        return tuple(shlex.split(raw))
    return raw
