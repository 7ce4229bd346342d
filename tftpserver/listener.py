from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import TYPE_CHECKING, Optional, Set, Tuple, Type, cast

from .audit import write_audit
from .config import ServerConfig
from .events import Event, EventFanout
from .packets import (
    ErrorCode,
    MalformedPacket,
    Opcode,
    RequestPacket,
    build_error,
    decode,
    peek_op,
)
from .session import ReadTransfer, Session, TransferProtocol, WriteTransfer
from .storage import FileStorage, StorageError

if TYPE_CHECKING:
    from .server import SessionRegistry


class ListenerProtocol(asyncio.DatagramProtocol):
    """Handshake endpoint on the well-known port.

    Validates RRQ/WRQ packets and hands each accepted request to a new
    transfer protocol bound to its own port. Nothing else is served here.
    """

    def __init__(
        self,
        cfg: ServerConfig,
        logger: logging.Logger,
        storage: FileStorage,
        registry: "SessionRegistry",
        event_q: Optional[EventFanout] = None,
    ):
        self.cfg = cfg
        self.logger = logger
        self.storage = storage
        self.registry = registry
        self.event_q = event_q
        self.transport: Optional[asyncio.DatagramTransport] = None
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self._spawning: Set[asyncio.Task] = set()

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.transport = transport  # type: ignore
        self.loop = asyncio.get_event_loop()
        sockname = transport.get_extra_info("sockname")
        self.logger.info("Listener bound on %s:%s", sockname[0], sockname[1])

    def error_received(self, exc: Exception) -> None:
        self.logger.warning("Listener socket error: %s", exc)

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        try:
            opcode = peek_op(data)
        except MalformedPacket as exc:
            self.logger.warning("Dropped malformed datagram from %s:%s: %s", addr[0], addr[1], exc)
            return

        if opcode not in (Opcode.RRQ, Opcode.WRQ):
            self.logger.info("Ignoring %s from %s:%s on the request port", opcode.name, addr[0], addr[1])
            return

        try:
            req = decode(data)
        except MalformedPacket as exc:
            self._reject(addr, ErrorCode.ILLEGAL_OPERATION, "Malformed RRQ/WRQ", detail=str(exc))
            return
        req = cast(RequestPacket, req)

        if req.mode.lower() != "octet":
            self._reject(addr, ErrorCode.ILLEGAL_OPERATION, "Only octet mode supported", req.filename)
            return

        if not self.storage.is_valid_name(req.filename):
            self._reject(addr, ErrorCode.ACCESS_VIOLATION, "Access violation", req.filename)
            return

        if req.is_write:
            if not self.cfg.allow_write:
                self._reject(addr, ErrorCode.ACCESS_VIOLATION, "Writes disabled", req.filename)
                return
        else:
            try:
                meta = self.storage.get_metadata(req.filename)
            except (StorageError, OSError) as exc:
                self._reject(addr, ErrorCode.NOT_DEFINED, "Storage error", req.filename, detail=str(exc))
                return
            if meta is None:
                self._reject(addr, ErrorCode.FILE_NOT_FOUND, "File not found", req.filename)
                return
            if not meta.is_complete:
                self._reject(addr, ErrorCode.ACCESS_VIOLATION, "File upload in progress", req.filename)
                return

        self.logger.info(
            "%s request for %s from %s:%s",
            "Write" if req.is_write else "Read", req.filename, addr[0], addr[1],
        )
        task = self.loop.create_task(self._spawn_transfer(req, addr))
        self._spawning.add(task)
        task.add_done_callback(self._spawning.discard)

    async def _spawn_transfer(self, req: RequestPacket, addr: Tuple[str, int]) -> None:
        sess = Session(client=addr, filename=req.filename, mode=req.mode.lower(), is_write=req.is_write)
        factory: Type[TransferProtocol] = WriteTransfer if req.is_write else ReadTransfer

        transport = None
        protocol: Optional[TransferProtocol] = None
        port = 0
        last_exc: Optional[Exception] = None
        lo, hi = self.cfg.transfer_port_min, self.cfg.transfer_port_max
        for _ in range(self.cfg.port_alloc_attempts):
            port = random.randint(lo, hi)
            if not self.registry.reserve(port):
                continue
            try:
                transport, protocol = await self.loop.create_datagram_endpoint(  # type: ignore
                    lambda: factory(
                        self.cfg, self.logger, self.storage, sess,
                        event_q=self.event_q, on_close=self.registry.retire,
                    ),
                    local_addr=(self.cfg.host, port),
                )
                break
            except OSError as exc:
                self.registry.release(port)
                last_exc = exc
                continue
            except asyncio.CancelledError:
                self.registry.release(port)
                raise

        if transport is None or protocol is None:
            self.logger.error("No free data port in %s-%s: %s", lo, hi, last_exc)
            self._reject(addr, ErrorCode.NOT_DEFINED, "No data port", req.filename, detail=str(last_exc))
            return

        self.registry.attach(port, protocol)
        protocol.start()

    async def shutdown(self) -> None:
        """Cancel handshakes still waiting for a port."""
        tasks = list(self._spawning)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _reject(
        self, addr: Tuple[str, int], code: ErrorCode, msg: str, filename: str = "", detail: str = ""
    ) -> None:
        self.logger.info("Rejected request from %s:%s for %r: %s %s", addr[0], addr[1], filename, msg, detail)
        if self.transport is not None and not self.transport.is_closing():
            self.transport.sendto(build_error(code, msg), addr)
        if self.event_q is not None:
            self.event_q.put_nowait(
                Event(kind="rejected", client=addr, filename=filename, is_write=False, message=msg)
            )
        write_audit(
            self.cfg.audit_log_file,
            {
                "ts": time.time(),
                "event": "error",
                "client_ip": addr[0],
                "client_port": addr[1],
                "code": int(code),
                "file": filename,
                "message": msg,
                "detail": detail,
            },
        )
