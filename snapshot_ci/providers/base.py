from __future__ import annotations

import abc
import typing as t

if t.TYPE_CHECKING:
    import paramiko

    from ..models import InstanceRef, InstanceSpec, SnapshotKey, SnapshotRef


class ComputeProvider(abc.ABC):
    """Blocking compute API used by the orchestrator stages.

    Implementations translate SDK errors into ``ProvisionError``,
    ``SnapshotConflict`` (``ImageExists`` when an image name is taken) and
    ``ResourceNotFound``; the stages run these calls in worker threads.
    """

    name: t.ClassVar[str] = "provider"

    @abc.abstractmethod
    def create_instance(self, spec: "InstanceSpec") -> "InstanceRef":
        """Create one instance running one container with one attached state disk."""

    @abc.abstractmethod
    def find_instance(self, name: str) -> "InstanceRef | None":
        ...

    @abc.abstractmethod
    def delete_instance(self, ref: "InstanceRef", *, delete_disks: bool = True) -> None:
        """Delete the instance (and its disks); raises ``ResourceNotFound`` if absent."""

    @abc.abstractmethod
    def create_image(
        self,
        ref: "InstanceRef",
        key: "SnapshotKey",
        image_name: str,
        *,
        description: str = "",
    ) -> "SnapshotRef":
        """Create an image from the instance's state disk while it is still attached.

        Raises ``ImageExists`` rather than replacing an image of the same name.
        """

    @abc.abstractmethod
    def find_image(self, image_name: str) -> "SnapshotRef | None":
        ...

    @abc.abstractmethod
    def delete_image(self, image_name: str) -> None:
        ...

    @abc.abstractmethod
    def read_system_log(self, ref: "InstanceRef", text: str, *, limit: int = 1) -> list[str]:
        """Most recent system log messages for the instance that contain ``text``."""

    @abc.abstractmethod
    def connect(self, ref: "InstanceRef") -> "paramiko.SSHClient":
        """Open a remote command channel to the instance (not to the container)."""
