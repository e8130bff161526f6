from __future__ import annotations

import asyncio
import contextlib
import typing as t

from ._types import Console
from .errors import ProvisionError, TeardownFailure
from .models import TERMINAL_RUN_STATES, InstanceRef, InstanceSpec, InstanceState, PipelineRun
from .provisioner import InstanceProvisioner


class Teardown:
    """Reclaim ephemeral instances exactly once per provisioning attempt.

    ``guard`` wraps one attempt: it creates the instance and deletes it (with
    its disks) on the way out, whatever happened inside.  When the enclosing
    deadline cancels the attempt and ``preserve_on_timeout`` is set, the
    instance is left running for inspection and a warning names it.
    """

    def __init__(
        self,
        provisioner: InstanceProvisioner,
        console: Console,
        *,
        zone: str = "",
        preserve_on_timeout: bool = False,
    ) -> None:
        self._provisioner = provisioner
        self._console = console
        self._zone = zone
        self._preserve_on_timeout = preserve_on_timeout
        self._reclaimed: set[str] = set()
        self.last_failure: TeardownFailure | None = None
        self.preserved: str | None = None

    async def reclaim(self, ref: InstanceRef | None) -> TeardownFailure | None:
        if ref is None or ref.name in self._reclaimed:
            return None
        self._reclaimed.add(ref.name)
        failure = await self._provisioner.delete(ref, delete_disks=True)
        if failure is not None:
            self.last_failure = failure
        return failure

    @contextlib.asynccontextmanager
    async def guard(self, run: PipelineRun, spec: InstanceSpec) -> t.AsyncIterator[InstanceRef]:
        ref: InstanceRef | None = None
        timed_out = False
        owned = True
        try:
            ref = await self._provisioner.create(run, spec)
            yield ref
        except asyncio.CancelledError:
            timed_out = True
            raise
        except ProvisionError as exc:
            # The existing instance belongs to another attempt.
            if exc.kind == "name-collision":
                owned = False
            raise
        finally:
            if owned:
                await self._finish(run, spec, ref, timed_out=timed_out)

    async def _finish(
        self,
        run: PipelineRun,
        spec: InstanceSpec,
        ref: InstanceRef | None,
        *,
        timed_out: bool,
    ) -> None:
        if run.lifecycle is InstanceState.RUNNING:
            run.transition(InstanceState.TIMED_OUT if timed_out else InstanceState.FAILED)

        if timed_out and self._preserve_on_timeout:
            self.preserved = spec.name
            self._console.warn(
                f"[{spec.name}] deadline reached; preserving instance and disk "
                f"{spec.disk.name} for inspection. Delete them by hand when done."
            )
            return

        if ref is None:
            # Creation may have gone through on the provider side before failing.
            ref = InstanceRef(name=spec.name, zone=self._zone, disk_names=(spec.disk.name,))

        if run.lifecycle in TERMINAL_RUN_STATES:
            run.transition(InstanceState.DELETING)
        failure = await self.reclaim(ref)
        if failure is None and run.lifecycle is InstanceState.DELETING:
            run.transition(InstanceState.DELETED)
