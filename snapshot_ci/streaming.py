from __future__ import annotations

import asyncio
import shlex
import time

import paramiko

from ._types import Console
from .errors import RemoteFailure, ResourceNotFound, StreamInterrupted
from .models import ContainerHandle, InstanceRef, TerminalStatus
from .providers.base import ComputeProvider
from .ssh import follow_remote_command

# Replay overlap after a reconnect, so no line falls between two attachments.
SINCE_OVERLAP_SECONDS = 2


def follow_command(docker: str, container: str, since: float | None = None) -> str:
    name = shlex.quote(container)
    since_flag = f" --since {int(since)}" if since is not None else ""
    return f'{docker} logs --follow{since_flag} {name}; exit "$({docker} wait {name})"'


class LogStreamer:
    def __init__(
        self,
        provider: ComputeProvider,
        console: Console,
        *,
        keepalive: float = 5.0,
        max_reconnects: int = 3,
        reconnect_delay: float = 5.0,
        docker: str = "docker",
    ) -> None:
        self._provider = provider
        self._console = console
        self._keepalive = keepalive
        self._max_reconnects = max_reconnects
        self._reconnect_delay = reconnect_delay
        self._docker = docker
        self.exit_code: int | None = None
        self.reconnects = 0
        self._last_line_at: float | None = None

    def _attach(self, ref: InstanceRef, handle: ContainerHandle, since: float | None) -> int:
        try:
            client = self._provider.connect(ref)
        except ResourceNotFound as exc:
            raise RemoteFailure(ref.name, None, "instance disappeared before its output could be attached") from exc
        except (paramiko.SSHException, OSError, RuntimeError) as exc:
            raise StreamInterrupted(f"cannot reach {ref.name}: {exc}") from exc
        try:
            return follow_remote_command(
                client,
                follow_command(self._docker, handle.name, since),
                on_line=lambda line: self._emit(handle, line),
                keepalive=self._keepalive,
            )
        finally:
            client.close()

    def _emit(self, handle: ContainerHandle, line: str) -> None:
        self._last_line_at = time.time()
        self._console.info(f"[{handle.name}] {line}")

    async def follow(self, ref: InstanceRef, handle: ContainerHandle) -> TerminalStatus:
        self.exit_code = None
        self.reconnects = 0
        self._last_line_at = None
        since: float | None = None
        while True:
            try:
                code = await asyncio.to_thread(self._attach, ref, handle, since)
            except StreamInterrupted as exc:
                if self.reconnects >= self._max_reconnects:
                    self._console.warn(
                        f"[{ref.name}] output stream lost after {self.reconnects} "
                        f"reconnects: {exc}"
                    )
                    return TerminalStatus.INTERRUPTED
                self.reconnects += 1
                if self._last_line_at is not None:
                    since = self._last_line_at - SINCE_OVERLAP_SECONDS
                self._console.always(
                    f"[{ref.name}] stream interrupted ({exc}); reconnecting "
                    f"({self.reconnects}/{self._max_reconnects}) in {self._reconnect_delay:.0f}s"
                )
                await asyncio.sleep(self._reconnect_delay)
                continue
            self.exit_code = code
            if code == 0:
                self._console.always(f"[{ref.name}] container {handle.name} exited successfully")
                return TerminalStatus.SUCCESS
            self._console.always(f"[{ref.name}] container {handle.name} exited with code {code}")
            return TerminalStatus.FAILURE
