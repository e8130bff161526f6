from __future__ import annotations

import paramiko
import pytest

from conftest import (
    FakeProvider,
    FakeSession,
    FakeSSHClient,
    RecordingConsole,
    success_session,
)
from snapshot_ci._types import Console
from snapshot_ci.errors import RemoteFailure, ResourceNotFound, StreamInterrupted
from snapshot_ci.models import ContainerHandle, InstanceRef, TerminalStatus
from snapshot_ci.ssh import follow_remote_command
from snapshot_ci.streaming import LogStreamer, follow_command

REF = InstanceRef(name="zebrad-tests-main-abc1234", zone="z", disk_names=("d",))
HANDLE = ContainerHandle("klt-zebrad-tests-main-abc1234-abcd")


def _streamer(provider: FakeProvider, console: Console, **kwargs) -> LogStreamer:
    kwargs.setdefault("reconnect_delay", 0.0)
    kwargs.setdefault("keepalive", 5.0)
    return LogStreamer(provider, console, **kwargs)


class TestFollowRemoteCommand:
    def test_splits_chunks_into_lines(self) -> None:
        commands: list[str] = []
        client = FakeSSHClient(
            FakeSession(chunks=[b"first li", b"ne\nsecond\r\nthi", b"rd"], exit_status=7),
            commands,
        )
        lines: list[str] = []
        status = follow_remote_command(client, "docker logs x", on_line=lines.append)
        assert status == 7
        assert lines == ["first line", "second", "third"]
        assert commands == ["docker logs x"]
        assert client.transport.keepalive == 5

    def test_dropped_channel_is_interrupted(self) -> None:
        client = FakeSSHClient(FakeSession(chunks=[b"partial\n"], drop=True), [])
        with pytest.raises(StreamInterrupted):
            follow_remote_command(client, "docker logs x", on_line=lambda _: None)

    def test_missing_exit_status_is_interrupted(self) -> None:
        client = FakeSSHClient(FakeSession(exit_status=-1), [])
        with pytest.raises(StreamInterrupted, match="without an exit status"):
            follow_remote_command(client, "docker logs x", on_line=lambda _: None)


def test_follow_command_waits_for_container_exit_code() -> None:
    command = follow_command("docker", HANDLE.name)
    assert command.startswith(f"docker logs --follow {HANDLE.name};")
    assert f'exit "$(docker wait {HANDLE.name})"' in command
    assert "--since 1700000000" in follow_command("docker", HANDLE.name, 1_700_000_000.9)


class TestLogStreamer:
    async def test_zero_exit_is_success(self) -> None:
        provider = FakeProvider()
        provider.sessions.append(success_session("syncing", "checkpoint reached"))
        console = RecordingConsole()
        streamer = _streamer(provider, console)
        assert await streamer.follow(REF, HANDLE) is TerminalStatus.SUCCESS
        assert streamer.exit_code == 0
        assert f"[{HANDLE.name}] checkpoint reached" in console.lines

    async def test_non_zero_exit_is_failure_without_reconnect(self) -> None:
        provider = FakeProvider()
        provider.sessions += [success_session("panic", exit_status=101), success_session()]
        streamer = _streamer(provider, RecordingConsole())
        assert await streamer.follow(REF, HANDLE) is TerminalStatus.FAILURE
        assert streamer.exit_code == 101
        assert streamer.reconnects == 0
        assert len(provider.sessions) == 1

    async def test_reconnects_with_since_after_a_drop(self) -> None:
        provider = FakeProvider()
        provider.sessions += [
            FakeSession(chunks=[b"block 1\n"], drop=True),
            success_session("block 2"),
        ]
        streamer = _streamer(provider, RecordingConsole())
        assert await streamer.follow(REF, HANDLE) is TerminalStatus.SUCCESS
        assert streamer.reconnects == 1
        assert "--since" not in provider.commands[0]
        assert "--since" in provider.commands[1]

    async def test_connect_failure_counts_as_interruption(self) -> None:
        provider = FakeProvider()
        provider.sessions += [paramiko.SSHException("banner timeout"), success_session()]
        streamer = _streamer(provider, RecordingConsole())
        assert await streamer.follow(REF, HANDLE) is TerminalStatus.SUCCESS
        assert streamer.reconnects == 1

    async def test_missing_address_counts_as_interruption(self) -> None:
        provider = FakeProvider()
        provider.sessions += [RuntimeError("instance has no external address"), success_session()]
        streamer = _streamer(provider, RecordingConsole())
        assert await streamer.follow(REF, HANDLE) is TerminalStatus.SUCCESS
        assert streamer.reconnects == 1

    async def test_vanished_instance_is_a_remote_failure(self) -> None:
        provider = FakeProvider()
        provider.sessions += [ResourceNotFound(REF.name), success_session()]
        streamer = _streamer(provider, RecordingConsole())
        with pytest.raises(RemoteFailure, match="disappeared"):
            await streamer.follow(REF, HANDLE)
        assert streamer.reconnects == 0
        assert len(provider.sessions) == 1

    async def test_reconnects_are_bounded(self) -> None:
        provider = FakeProvider()
        provider.sessions += [FakeSession(drop=True) for _ in range(3)]
        console = RecordingConsole()
        streamer = _streamer(provider, console, max_reconnects=2)
        assert await streamer.follow(REF, HANDLE) is TerminalStatus.INTERRUPTED
        assert streamer.reconnects == 2
        assert streamer.exit_code is None
        assert any(line.startswith("Warning:") for line in console.lines)
