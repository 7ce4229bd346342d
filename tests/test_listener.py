from __future__ import annotations

import asyncio
import logging

from tftpserver.config import ServerConfig
from tftpserver.listener import ListenerProtocol
from tftpserver.packets import Opcode, build_request
from tftpserver.server import SessionRegistry
from tftpserver.storage import MemoryFileStorage

CLIENT = ("127.0.0.1", 40000)


class SilentTransport:
    def __init__(self):
        self.sent = []

    def get_extra_info(self, name, default=None):
        return ("127.0.0.1", 69) if name == "sockname" else default

    def sendto(self, data, addr):
        self.sent.append((data, addr))

    def is_closing(self):
        return False


class StalledBindLoop:
    """Event loop stand-in whose endpoint creation never finishes."""

    def __init__(self, loop):
        self._loop = loop
        self.bind_started = asyncio.Event()

    def create_task(self, coro):
        return self._loop.create_task(coro)

    async def create_datagram_endpoint(self, factory, local_addr=None):
        self.bind_started.set()
        await asyncio.Event().wait()


def test_shutdown_during_bind_releases_reserved_port():
    storage = MemoryFileStorage()
    storage.put("f", b"data")
    registry = SessionRegistry()

    async def main():
        listener = ListenerProtocol(ServerConfig(), logging.getLogger("test"), storage, registry)
        listener.connection_made(SilentTransport())
        stalled = StalledBindLoop(listener.loop)
        listener.loop = stalled

        listener.datagram_received(build_request(Opcode.RRQ, "f", "octet"), CLIENT)
        await asyncio.wait_for(stalled.bind_started.wait(), timeout=2)
        assert len(registry) == 1

        await listener.shutdown()
        assert len(registry) == 0

    asyncio.run(main())
