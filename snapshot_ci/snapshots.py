from __future__ import annotations

import asyncio

from ._types import Console
from .errors import ImageExists, ResourceNotFound, SnapshotConflict
from .models import InstanceRef, PipelineRun, SnapshotKey, SnapshotRef
from .providers.base import ComputeProvider


class SnapshotManager:
    """Freeze a state disk into an image named after its ``SnapshotKey``.

    Creation works on the disk while it is still attached to its instance and
    always overwrites.  Creation is attempted first; only when the provider
    reports the name as taken is the existing image deleted and creation
    retried, so a retried run leaves exactly one image behind and a refused
    creation leaves the previous image in place.
    """

    def __init__(self, provider: ComputeProvider, console: Console, *, prefix: str) -> None:
        self._provider = provider
        self._console = console
        self._prefix = prefix

    def image_name(self, key: SnapshotKey) -> str:
        return key.image_name(self._prefix)

    async def snapshot(
        self,
        ref: InstanceRef,
        key: SnapshotKey,
        *,
        run: PipelineRun | None = None,
    ) -> SnapshotRef:
        name = self.image_name(key)
        description = f"Created from disk {ref.state_disk} of instance {ref.name}"
        if run is not None:
            description += f" for run {run.run_id} on {run.ref_slug} at commit {run.commit}"
        self._console.info(f"[{ref.name}] creating image {name} from {ref.state_disk}...")
        try:
            created = await self._create(ref, key, name, description)
        except ImageExists:
            self._console.always(f"[{ref.name}] replacing existing image {name}")
            try:
                await asyncio.to_thread(self._provider.delete_image, name)
            except ResourceNotFound:
                self._console.info(f"[{ref.name}] image {name} disappeared before replacement")
            try:
                created = await self._create(ref, key, name, description)
            except SnapshotConflict:
                self._console.warn(
                    f"[{ref.name}] previous image {name} was deleted and its replacement "
                    "failed; runs that published this commit cannot resolve it until it "
                    "is regenerated"
                )
                raise
        self._console.always(f"[{ref.name}] image created: {created.image_name}")
        return created

    async def _create(
        self, ref: InstanceRef, key: SnapshotKey, name: str, description: str
    ) -> SnapshotRef:
        return await asyncio.to_thread(
            self._provider.create_image, ref, key, name, description=description
        )

    async def find(self, key: SnapshotKey) -> SnapshotRef | None:
        found = await asyncio.to_thread(self._provider.find_image, self.image_name(key))
        if found is None:
            return None
        return SnapshotRef(key=key, image_name=found.image_name, provider_id=found.provider_id)

    async def exists(self, key: SnapshotKey) -> bool:
        return await self.find(key) is not None
