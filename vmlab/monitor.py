"""QEMU control channel (QMP over a Unix socket) for vmlab.

Framing follows the QEMU Machine Protocol: every message is one JSON object
terminated by a newline. On connect the server sends a greeting, the client
must negotiate with ``qmp_capabilities`` and afterwards each command gets
exactly one ``return`` or ``error`` reply. Asynchronous ``event`` messages may
arrive in between and are recorded, not treated as replies.

Every command carries an ``id`` which QEMU echoes back. A reply whose ``id``
belongs to an earlier command (one that timed out) is discarded.
"""

from __future__ import annotations

import itertools
import json
import socket
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from vmlab.constants import MONITOR_TIMEOUT
from vmlab.exceptions import MonitorError
from vmlab.utils import log

_MAX_EVENTS = 100


class MonitorChannel:
    def __init__(self, socket_path: Union[str, Path], timeout: float = MONITOR_TIMEOUT) -> None:
        self.socket_path = Path(socket_path)
        self.timeout = timeout
        self.greeting: Optional[Dict[str, Any]] = None
        self.events: List[Dict[str, Any]] = []
        self._sock: Optional[socket.socket] = None
        self._buffer = b""
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

    @property
    def connected(self) -> bool:
        return self._sock is not None

    def __enter__(self) -> "MonitorChannel":
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def connect(self) -> None:
        if self._sock is not None:
            return
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(self.timeout)
        try:
            sock.connect(str(self.socket_path))
        except OSError as exc:
            sock.close()
            raise MonitorError(f"Cannot connect to monitor socket {self.socket_path}: {exc}") from exc
        self._sock = sock
        self._buffer = b""
        try:
            greeting = self._recv()
            if "QMP" not in greeting:
                raise MonitorError(f"Unexpected monitor greeting: {greeting}")
            self.greeting = greeting
            command_id = self._next_id()
            self._send({"execute": "qmp_capabilities", "id": command_id})
            self._read_reply("qmp_capabilities", command_id)
        except MonitorError:
            self.close()
            raise
        log("DEBUG", f"Monitor connected on {self.socket_path}")

    def close(self) -> None:
        if self._sock is None:
            return
        try:
            self._sock.close()
        except OSError:
            pass
        self._sock = None
        self._buffer = b""

    def _send(self, message: Dict[str, Any]) -> None:
        if self._sock is None:
            raise MonitorError("Not connected to monitor")
        payload = json.dumps(message).encode("utf-8") + b"\n"
        try:
            self._sock.sendall(payload)
        except OSError as exc:
            raise MonitorError(f"Failed to write to monitor socket: {exc}") from exc

    def _recv(self) -> Dict[str, Any]:
        if self._sock is None:
            raise MonitorError("Not connected to monitor")
        while b"\n" not in self._buffer:
            try:
                chunk = self._sock.recv(4096)
            except socket.timeout as exc:
                raise MonitorError(f"Timed out waiting for monitor reply after {self.timeout}s") from exc
            except OSError as exc:
                raise MonitorError(f"Failed to read from monitor socket: {exc}") from exc
            if not chunk:
                raise MonitorError("Monitor closed the connection without a reply")
            self._buffer += chunk
        line, self._buffer = self._buffer.split(b"\n", 1)
        line = line.strip()
        if not line:
            return self._recv()
        try:
            message = json.loads(line)
        except ValueError as exc:
            raise MonitorError(f"Malformed monitor reply: {line[:200]!r}") from exc
        if not isinstance(message, dict):
            raise MonitorError(f"Malformed monitor reply: {line[:200]!r}")
        return message

    def _next_id(self) -> str:
        return f"vmlab-{next(self._ids)}"

    def _read_reply(self, command: str, command_id: str) -> Dict[str, Any]:
        while True:
            message = self._recv()
            if "event" in message:
                log("DEBUG", f"Monitor event: {message.get('event')}")
                self.events.append(message)
                del self.events[:-_MAX_EVENTS]
                continue
            if "id" in message and message["id"] != command_id:
                log("DEBUG", f"Dropping stale monitor reply {message.get('id')} while waiting for '{command}'")
                continue
            if "error" in message:
                error = message["error"] or {}
                desc = error.get("desc") if isinstance(error, dict) else error
                raise MonitorError(f"Monitor command '{command}' failed: {desc}")
            if "return" in message:
                return message
            raise MonitorError(f"Unexpected monitor reply to '{command}': {message}")

    def execute(self, command: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Run one command and return the full ``{"return": ...}`` reply."""
        message: Dict[str, Any] = {"execute": command}
        if arguments:
            message["arguments"] = arguments
        with self._lock:
            command_id = self._next_id()
            message["id"] = command_id
            log("DEBUG", f"Monitor <- {command} ({command_id})")
            self._send(message)
            return self._read_reply(command, command_id)


def send_command(
    socket_path: Union[str, Path],
    command: str,
    arguments: Optional[Dict[str, Any]] = None,
    timeout: float = MONITOR_TIMEOUT,
) -> Dict[str, Any]:
    """Open a short-lived channel, run one command and close it again."""
    with MonitorChannel(socket_path, timeout=timeout) as channel:
        return channel.execute(command, arguments)
