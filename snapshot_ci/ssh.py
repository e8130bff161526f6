from __future__ import annotations

import socket
import typing as t

import paramiko

from .errors import StreamInterrupted

LineSink = t.Callable[[str], None]

READ_CHUNK = 32 * 1024


def follow_remote_command(
    client: paramiko.SSHClient,
    command: str,
    *,
    on_line: LineSink,
    keepalive: float = 5.0,
) -> int:
    """Run ``command`` on the remote host, forwarding combined output line by line.

    Blocks until the remote command exits and returns its exit status.  A
    channel that closes without reporting an exit status, or any transport
    error, raises ``StreamInterrupted``.
    """
    transport = client.get_transport()
    if transport is None or not transport.is_active():
        raise StreamInterrupted("ssh transport is not active")
    # Long idle follows get cut by network idle timeouts without this.
    transport.set_keepalive(max(int(keepalive), 1))
    pending = ""
    try:
        channel = transport.open_session()
        channel.set_combine_stderr(True)
        channel.exec_command(command)
        while True:
            data = channel.recv(READ_CHUNK)
            if not data:
                break
            pending += data.decode("utf-8", "replace")
            *complete, pending = pending.split("\n")
            for line in complete:
                on_line(line.rstrip("\r"))
        if pending:
            on_line(pending.rstrip("\r"))
        status = channel.recv_exit_status()
    except (paramiko.SSHException, socket.error, EOFError) as exc:
        raise StreamInterrupted(f"ssh channel dropped: {exc}") from exc
    if status < 0:
        raise StreamInterrupted("ssh channel closed without an exit status")
    return status
