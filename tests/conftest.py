from __future__ import annotations

import socket
import time
from typing import Callable, List, Optional, Tuple

import pytest

from tftpserver.config import ServerConfig
from tftpserver.events import EventFanout
from tftpserver.packets import DataPacket, Opcode, Packet, build_ack, build_request, decode
from tftpserver.server import TftpServer
from tftpserver.storage import MemoryFileStorage


class TftpTestClient:
    """Bare UDP peer that speaks raw packets to the server under test."""

    def __init__(self, timeout: float = 2.0):
        self.timeout = timeout
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.sock.bind(("127.0.0.1", 0))

    @property
    def address(self) -> Tuple[str, int]:
        return self.sock.getsockname()

    def request(self, server_addr, opcode: Opcode, filename: str, mode: str = "octet") -> None:
        self.sock.sendto(build_request(opcode, filename, mode), server_addr)

    def send(self, raw: bytes, addr) -> None:
        self.sock.sendto(raw, addr)

    def recv(self, timeout: Optional[float] = None) -> Tuple[Packet, Tuple[str, int]]:
        self.sock.settimeout(self.timeout if timeout is None else timeout)
        data, addr = self.sock.recvfrom(65535)
        return decode(data), addr

    def close(self) -> None:
        self.sock.close()


def download(client: TftpTestClient, server_addr, filename: str):
    """Run a whole RRQ, returning (payloads, transfer address)."""
    client.request(server_addr, Opcode.RRQ, filename)
    payloads = []
    tid = None
    expected = 1
    while True:
        pkt, addr = client.recv()
        assert isinstance(pkt, DataPacket)
        assert pkt.block == expected
        tid = tid or addr
        assert addr == tid
        payloads.append(pkt.payload)
        client.send(build_ack(pkt.block), tid)
        if len(pkt.payload) < 512:
            return payloads, tid
        expected += 1


def wait_for(predicate: Callable[[], bool], timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


@pytest.fixture
def storage() -> MemoryFileStorage:
    return MemoryFileStorage()


@pytest.fixture
def make_server(storage):
    servers: List[TftpServer] = []

    def _make(store=None, **overrides) -> TftpServer:
        cfg = ServerConfig(host="127.0.0.1", port=0, storage="memory", timeout_sec=2.0, max_retries=3)
        for key, value in overrides.items():
            setattr(cfg, key, value)
        server = TftpServer(cfg, store if store is not None else storage, event_q=EventFanout())
        server.start()
        assert server.wait_ready(timeout=5)
        servers.append(server)
        return server

    yield _make
    for server in servers:
        server.stop()


@pytest.fixture
def server(make_server) -> TftpServer:
    return make_server()


@pytest.fixture
def client():
    c = TftpTestClient()
    yield c
    c.close()
