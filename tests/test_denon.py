"""Tests for the Denon telnet client and reply codecs."""

from __future__ import annotations

import socket
import threading
import time
from typing import Optional

import pytest

from volume_sync_manager import (
    DenonReceiver,
    EncodingError,
    NetworkError,
    ReceiverPowerState,
    decode_volume_reply,
    encode_set_volume,
    parse_power_reply,
)


class FakeReceiverServer:
    """Local TCP server answering Denon commands from a reply table.

    Commands without an entry get no reply at all.
    """

    def __init__(self, replies: dict[str, bytes]) -> None:
        self.replies = replies
        self.received: list[str] = []
        self.connections = 0
        self._stopped = threading.Event()
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._sock.bind(("127.0.0.1", 0))
        self._sock.listen()
        self._sock.settimeout(0.05)
        self.port = self._sock.getsockname()[1]
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    def _serve(self) -> None:
        while not self._stopped.is_set():
            try:
                conn, _ = self._sock.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            self.connections += 1
            with conn:
                conn.settimeout(2.0)
                self._handle(conn)

    def _handle(self, conn: socket.socket) -> None:
        data = b""
        try:
            while not data.endswith(b"\r\n"):
                chunk = conn.recv(64)
                if not chunk:
                    break
                data += chunk
            command = data.decode("ascii").strip()
            self.received.append(command)
            reply = self.replies.get(command)
            if reply is not None:
                conn.sendall(reply)
            # Hold the connection open until the client hangs up
            conn.recv(64)
        except OSError:
            pass

    def wait_for(self, count: int, timeout: float = 2.0) -> None:
        deadline = time.monotonic() + timeout
        while len(self.received) < count and time.monotonic() < deadline:
            time.sleep(0.01)

    def close(self) -> None:
        self._stopped.set()
        self._thread.join(timeout=2.0)
        self._sock.close()


@pytest.fixture
def server():
    servers: list[FakeReceiverServer] = []

    def _start(replies: Optional[dict[str, bytes]] = None) -> FakeReceiverServer:
        srv = FakeReceiverServer(replies or {})
        servers.append(srv)
        return srv

    yield _start
    for srv in servers:
        srv.close()


def _receiver(port: int, read_timeout: float = 1.0) -> DenonReceiver:
    return DenonReceiver("127.0.0.1", port, connect_timeout=1.0, read_timeout=read_timeout)


def test_query_reads_one_cr_terminated_line(server) -> None:
    srv = server({"PW?": b"PWON\r"})

    assert _receiver(srv.port).send_command("PW?") == "PWON"
    assert srv.received == ["PW?"]


def test_query_returns_first_line_only(server) -> None:
    srv = server({"MV?": b"MV45\rMVMAX 98\r"})

    assert _receiver(srv.port).send_command("MV?") == "MV45"


def test_set_command_does_not_wait_for_reply(server) -> None:
    srv = server()

    started = time.monotonic()
    assert _receiver(srv.port, read_timeout=5.0).send_command("MV07") == ""
    assert time.monotonic() - started < 2.0

    srv.wait_for(1)
    assert srv.received == ["MV07"]


def test_each_command_uses_its_own_connection(server) -> None:
    srv = server({"PW?": b"PWON\r", "MV?": b"MV20\r"})
    receiver = _receiver(srv.port)

    receiver.send_command("PW?")
    receiver.send_command("MV?")

    assert srv.connections == 2


def test_missing_reply_times_out_with_network_error(server) -> None:
    srv = server()

    with pytest.raises(NetworkError, match="timeout"):
        _receiver(srv.port, read_timeout=0.2).send_command("MV?")


def test_connection_refused_raises_network_error() -> None:
    probe = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    probe.bind(("127.0.0.1", 0))
    port = probe.getsockname()[1]
    probe.close()

    with pytest.raises(NetworkError):
        _receiver(port).send_command("PW?")


@pytest.mark.parametrize("command", ["", "MV\r\n10", "MVé10"])
def test_invalid_command_raises_encoding_error(command: str) -> None:
    with pytest.raises(EncodingError):
        _receiver(1).send_command(command)


def test_typed_helpers_against_server(server) -> None:
    srv = server({"PW?": b"PWSTANDBY\r", "MV?": b"MV355\r"})
    receiver = _receiver(srv.port)

    assert receiver.get_power() is ReceiverPowerState.OFF
    assert receiver.get_volume() == 35
    receiver.set_volume(7)

    srv.wait_for(3)
    assert srv.received == ["PW?", "MV?", "MV07"]


@pytest.mark.parametrize(
    ("reply", "state"),
    [
        ("PWON", ReceiverPowerState.ON),
        ("PWSTANDBY", ReceiverPowerState.OFF),
        ("PWOFF", ReceiverPowerState.OFF),
        ("", ReceiverPowerState.UNKNOWN),
        ("MV40", ReceiverPowerState.UNKNOWN),
    ],
)
def test_parse_power_reply(reply: str, state: ReceiverPowerState) -> None:
    assert parse_power_reply(reply) is state


def test_set_volume_command_is_zero_padded() -> None:
    assert encode_set_volume(7) == "MV07"
    assert encode_set_volume(0) == "MV00"
    assert encode_set_volume(40) == "MV40"


@pytest.mark.parametrize("level", [-1, 99, 7.5, True])
def test_set_volume_rejects_out_of_range(level) -> None:
    with pytest.raises(EncodingError):
        encode_set_volume(level)


@pytest.mark.parametrize(
    ("reply", "volume"),
    [
        ("MV07", 7),
        ("07", 7),
        ("MV40", 40),
        ("MV455", 45),
        ("MV", 0),
        ("", 0),
        ("MVMAX 98", 0),
        ("garbage", 0),
    ],
)
def test_decode_volume_reply(reply: str, volume: int) -> None:
    assert decode_volume_reply(reply) == volume
