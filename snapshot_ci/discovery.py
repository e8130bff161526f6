"""
Container identity discovery.

The container agent on a container VM names the container itself, for example
``klt-zebrad-tests-main-abc1234-qrst``, and only announces the name in the
instance's system log.  When the provider already returned the name at
creation time we use it; otherwise we poll the log until the announcement
shows up or the deadline passes.
"""

from __future__ import annotations

import asyncio
import re
import time

import httpx
from google.auth import exceptions as auth_exceptions

from ._types import Console
from .errors import DiscoveryTimeout, UnexpectedError
from .models import ContainerHandle, InstanceRef
from .providers.base import ComputeProvider


def container_name_pattern(instance_name: str) -> re.Pattern[str]:
    return re.compile(rf"[A-Za-z0-9]{{3}}-{re.escape(instance_name)}-[A-Za-z0-9]{{4}}")


def extract_container_name(message: str, instance_name: str) -> str | None:
    match = container_name_pattern(instance_name).search(message)
    if match is None:
        return None
    return match.group(0).strip("'\".")


def is_permanent_read_error(exc: BaseException) -> bool:
    """Client errors and credential failures do not heal by polling again."""
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return 400 <= status < 500 and status != 429
    if isinstance(exc, auth_exceptions.RefreshError):
        return not getattr(exc, "retryable", False)
    return isinstance(exc, auth_exceptions.DefaultCredentialsError)


class ContainerDiscovery:
    def __init__(
        self,
        provider: ComputeProvider,
        console: Console,
        *,
        interval: float = 10.0,
    ) -> None:
        self._provider = provider
        self._console = console
        self._interval = interval

    async def discover(self, ref: InstanceRef, timeout: float) -> ContainerHandle:
        if ref.container_handle is not None:
            self._console.info(
                f"[{ref.name}] container {ref.container_handle.name} reported at creation"
            )
            return ref.container_handle

        deadline = time.monotonic() + timeout
        attempt = 0
        while True:
            attempt += 1
            try:
                messages = await asyncio.to_thread(
                    self._provider.read_system_log, ref, ref.name, limit=1
                )
            except Exception as exc:  # noqa: BLE001
                if is_permanent_read_error(exc):
                    raise UnexpectedError("container discovery", exc) from exc
                self._console.info(f"[{ref.name}] system log read failed ({exc}); retrying")
                messages = []
            for message in messages:
                name = extract_container_name(message, ref.name)
                if name:
                    self._console.always(
                        f"[{ref.name}] using container {name} (after {attempt} polls)"
                    )
                    return ContainerHandle(name)
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise DiscoveryTimeout(ref.name, timeout)
            self._console.info(
                f"[{ref.name}] container not announced yet (poll {attempt}); "
                f"next check in {min(self._interval, remaining):.0f}s"
            )
            await asyncio.sleep(min(self._interval, remaining))
