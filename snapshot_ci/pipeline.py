"""
Entry points for the two CI stages.

``regenerate_snapshot`` runs the state-producing test on an empty disk and
freezes the disk into an image keyed by (network, format tag, commit), then
publishes the commit through the handoff store.  ``run_from_snapshot``
resolves a published commit, boots a fresh instance whose state disk is
created from that image and follows the consuming test to completion.

Both return a ``StageReport`` after reclaim has run (or the instance was
deliberately preserved).  Stage errors are reported, not raised: anything
that is not a ``PipelineError`` is wrapped in a fatal ``UnexpectedError``.
"""

from __future__ import annotations

import asyncio
import time
import typing as t
from dataclasses import dataclass, field

from ._types import Console, TimingsCollector
from .config import PipelineConfig
from .discovery import ContainerDiscovery
from .errors import (
    HandoffMissing,
    Outcome,
    PipelineError,
    PublishFailed,
    RemoteFailure,
    StageTimeout,
    TeardownFailure,
    UnexpectedError,
    outcome_for,
)
from .handoff import HandoffStore
from .models import (
    InstanceRef,
    InstanceState,
    PipelineRun,
    SnapshotKey,
    SnapshotRef,
    TerminalStatus,
)
from .providers.base import ComputeProvider
from .provisioner import InstanceProvisioner, instance_spec_for
from .snapshots import SnapshotManager
from .streaming import LogStreamer
from .teardown import Teardown

T = t.TypeVar("T")


@dataclass(slots=True)
class StageReport:
    outcome: Outcome
    status: TerminalStatus | None = None
    snapshot: SnapshotRef | None = None
    commit: str | None = None
    error: PipelineError | None = None
    teardown: TeardownFailure | None = None
    preserved: str | None = None
    timings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class _Stages:
    provisioner: InstanceProvisioner
    discovery: ContainerDiscovery
    streamer: LogStreamer
    snapshots: SnapshotManager
    teardown: Teardown
    timings: TimingsCollector

    @classmethod
    def build(
        cls, config: PipelineConfig, provider: ComputeProvider, console: Console
    ) -> "_Stages":
        provisioner = InstanceProvisioner(provider, console)
        return cls(
            provisioner=provisioner,
            discovery=ContainerDiscovery(
                provider, console, interval=config.discovery_interval
            ),
            streamer=LogStreamer(
                provider,
                console,
                keepalive=config.keepalive_interval,
                max_reconnects=config.max_reconnects,
                reconnect_delay=config.reconnect_delay,
                docker=config.remote_docker,
            ),
            snapshots=SnapshotManager(provider, console, prefix=config.disk_prefix),
            teardown=Teardown(
                provisioner,
                console,
                zone=config.zone,
                preserve_on_timeout=config.preserve_on_timeout,
            ),
            timings=TimingsCollector(),
        )

    async def timed(self, label: str, awaitable: t.Awaitable[T]) -> T:
        start = time.perf_counter()
        try:
            return await awaitable
        finally:
            self.timings.add(label, time.perf_counter() - start)


def snapshot_key(config: PipelineConfig, run: PipelineRun, commit: str | None = None) -> SnapshotKey:
    return SnapshotKey(
        network=config.network_slug(run.network),
        format_tag=config.format_tag,
        commit=commit or run.commit,
    )


async def _follow_to_exit(
    stages: _Stages,
    config: PipelineConfig,
    run: PipelineRun,
    ref: InstanceRef,
    report: StageReport,
) -> None:
    handle = await stages.timed(
        "discover", stages.discovery.discover(ref, config.discovery_timeout)
    )
    status = await stages.timed("stream", stages.streamer.follow(ref, handle))
    report.status = status
    if status is TerminalStatus.SUCCESS:
        run.transition(InstanceState.COMPLETED)
        return
    run.transition(InstanceState.FAILED)
    if status is TerminalStatus.INTERRUPTED:
        raise RemoteFailure(
            ref.name,
            None,
            f"lost the output of {handle.name} after {stages.streamer.reconnects} reconnects",
        )
    raise RemoteFailure(ref.name, stages.streamer.exit_code)


async def _run_stage(
    stage: str,
    body: t.Callable[[], t.Awaitable[None]],
    *,
    stages: _Stages,
    report: StageReport,
    run: PipelineRun,
    deadline: float | None,
    console: Console,
) -> StageReport:
    timeout = asyncio.timeout(deadline)
    try:
        async with timeout:
            await body()
    except TimeoutError as exc:
        if timeout.expired():
            report.error = StageTimeout(
                f"[{run.label}] {stage} did not finish within {deadline:.0f}s"
            )
        else:
            report.error = UnexpectedError(stage, exc)
    except PipelineError as exc:
        report.error = exc
    except Exception as exc:  # noqa: BLE001
        report.error = UnexpectedError(stage, exc)

    if report.error is not None:
        report.outcome = outcome_for(report.error)
        console.always(f"[{run.label}] {stage} {report.outcome.value}: {report.error}")
    else:
        console.always(f"[{run.label}] {stage} succeeded")
    report.teardown = stages.teardown.last_failure
    report.preserved = stages.teardown.preserved

    report.timings = stages.timings.summary()
    if report.timings:
        console.always("\nTiming Summary")
        for line in report.timings:
            console.always(line)
    return report


async def regenerate_snapshot(
    run: PipelineRun,
    config: PipelineConfig,
    provider: ComputeProvider,
    handoff: HandoffStore,
    *,
    regenerate: bool,
    deadline: float | None = None,
    console: Console | None = None,
) -> StageReport:
    console = console or Console()
    if not regenerate:
        console.always(
            f"[{run.label}] state format files unchanged; keeping the published snapshot"
        )
        return StageReport(outcome=Outcome.SKIPPED)

    stages = _Stages.build(config, provider, console)
    key = snapshot_key(config, run)
    spec = instance_spec_for(run, config, args=config.regenerate_args)
    report = StageReport(outcome=Outcome.SUCCESS)

    async def body() -> None:
        async with stages.teardown.guard(run, spec) as ref:
            await _follow_to_exit(stages, config, run, ref, report)
            snapshot = await stages.timed(
                "snapshot", stages.snapshots.snapshot(ref, key, run=run)
            )
            report.snapshot = snapshot
        try:
            await stages.timed(
                "publish",
                asyncio.to_thread(
                    handoff.publish, run.run_id, run.commit, network=key.network
                ),
            )
        except Exception as exc:  # noqa: BLE001
            raise PublishFailed(snapshot.image_name, run.commit, exc) from exc
        report.commit = run.commit

    return await _run_stage(
        "regeneration",
        body,
        stages=stages,
        report=report,
        run=run,
        deadline=deadline,
        console=console,
    )


async def run_from_snapshot(
    run: PipelineRun,
    config: PipelineConfig,
    provider: ComputeProvider,
    handoff: HandoffStore,
    *,
    deadline: float | None = None,
    console: Console | None = None,
) -> StageReport:
    console = console or Console()
    stages = _Stages.build(config, provider, console)
    report = StageReport(outcome=Outcome.SUCCESS)

    async def body() -> None:
        network = config.network_slug(run.network)
        record = await asyncio.to_thread(
            handoff.resolve_record, run.run_id, network=network
        )
        key = snapshot_key(config, run, record.commit)
        source = await stages.snapshots.find(key)
        if source is None:
            raise HandoffMissing(
                f"run {record.run_id} published commit {record.commit} but image "
                f"{stages.snapshots.image_name(key)} does not exist"
            )
        report.commit = record.commit
        report.snapshot = source
        console.always(f"[{run.label}] booting from state image {source.image_name}")
        spec = instance_spec_for(run, config, args=config.consumer_args, source=source)
        async with stages.teardown.guard(run, spec) as ref:
            await _follow_to_exit(stages, config, run, ref, report)

    return await _run_stage(
        "consumer run",
        body,
        stages=stages,
        report=report,
        run=run,
        deadline=deadline,
        console=console,
    )
