from __future__ import annotations

import pytest

from conftest import FakeProvider, RecordingConsole
from snapshot_ci.errors import SnapshotConflict
from snapshot_ci.models import SnapshotKey
from snapshot_ci.provisioner import instance_spec_for
from snapshot_ci.snapshots import SnapshotManager

KEY = SnapshotKey(network="mainnet", format_tag="canopy", commit="abc1234")


async def test_snapshot_names_image_after_key(provider, console, config, make_run) -> None:
    run = make_run()
    ref = provider.create_instance(instance_spec_for(run, config, args=()))
    manager = SnapshotManager(provider, console, prefix="zebrad-cache")
    created = await manager.snapshot(ref, KEY, run=run)
    assert created.image_name == "zebrad-cache-abc1234-mainnet-canopy"
    assert provider.image_sources[created.image_name] == ref.state_disk
    assert await manager.exists(KEY)


async def test_snapshot_overwrites_existing_image(provider, console, config, make_run) -> None:
    ref = provider.create_instance(instance_spec_for(make_run(), config, args=()))
    manager = SnapshotManager(provider, console, prefix="zebrad-cache")
    first = await manager.snapshot(ref, KEY)
    second = await manager.snapshot(ref, KEY)
    assert first.provider_id != second.provider_id
    assert list(provider.images) == [KEY.image_name("zebrad-cache")]
    found = await manager.find(KEY)
    assert found is not None and found.provider_id == second.provider_id


async def test_missing_snapshot_does_not_exist(provider, console) -> None:
    manager = SnapshotManager(provider, console, prefix="zebrad-cache")
    assert await manager.find(KEY) is None
    assert not await manager.exists(KEY)


async def test_conflict_propagates(provider, console, config, make_run) -> None:
    ref = provider.create_instance(instance_spec_for(make_run(), config, args=()))
    provider.image_error = SnapshotConflict("permission denied on images.create")
    with pytest.raises(SnapshotConflict):
        await SnapshotManager(provider, console, prefix="zebrad-cache").snapshot(ref, KEY)


async def test_refused_creation_keeps_the_previous_image(
    provider, console, config, make_run
) -> None:
    ref = provider.create_instance(instance_spec_for(make_run(), config, args=()))
    manager = SnapshotManager(provider, console, prefix="zebrad-cache")
    first = await manager.snapshot(ref, KEY)
    provider.image_error = SnapshotConflict("QUOTA_EXCEEDED: images")
    with pytest.raises(SnapshotConflict):
        await manager.snapshot(ref, KEY)
    found = await manager.find(KEY)
    assert found is not None and found.provider_id == first.provider_id


async def test_failed_replacement_warns_that_the_image_is_gone(config, make_run) -> None:
    class QuotaAfterDelete(FakeProvider):
        def delete_image(self, image_name: str) -> None:
            super().delete_image(image_name)
            self.image_error = SnapshotConflict("QUOTA_EXCEEDED: images")

    provider = QuotaAfterDelete()
    console = RecordingConsole()
    ref = provider.create_instance(instance_spec_for(make_run(), config, args=()))
    manager = SnapshotManager(provider, console, prefix="zebrad-cache")
    await manager.snapshot(ref, KEY)
    with pytest.raises(SnapshotConflict):
        await manager.snapshot(ref, KEY)
    assert provider.images == {}
    assert any(
        line.startswith("Warning:") and "was deleted" in line for line in console.lines
    )
