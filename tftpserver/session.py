from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional, Tuple

from .audit import write_audit, write_transfer_log_csv
from .config import ServerConfig
from .events import Event, EventFanout
from .packets import (
    BLOCK_SIZE,
    MAX_BLOCK_NUMBER,
    AckPacket,
    DataPacket,
    ErrorCode,
    ErrorPacket,
    MalformedPacket,
    Packet,
    build_ack,
    build_data,
    build_error,
    decode,
    next_block,
)
from .storage import FileStorage, StorageError

# Outcomes a finished session can end in.
COMPLETE = "complete"
TIMEOUT = "timeout"
CANCELLED = "cancelled"
FAILED = "error"
ABORTED = "aborted"


def is_behind(block_no: int, current: int) -> bool:
    """True when ``block_no`` precedes ``current`` in rolling 16-bit order."""
    distance = (current - block_no) & MAX_BLOCK_NUMBER
    return 0 < distance < 0x8000


@dataclass
class Session:
    client: Tuple[str, int]
    filename: str
    mode: str
    is_write: bool
    port: int = 0
    block: int = 0  # wire block number last sent (read) or acknowledged (write)
    blocks_done: int = 0
    bytes_done: int = 0
    last_payload_len: int = 0
    last_packet: bytes = b""
    last_send_time: float = 0.0
    retries: int = 0
    retransmits: int = 0
    complete: bool = False
    outcome: Optional[str] = None
    error: Optional[str] = None
    start_time: float = field(default_factory=time.time)
    end_time: Optional[float] = None

    @property
    def direction(self) -> str:
        return "upload" if self.is_write else "download"

    @property
    def duration(self) -> float:
        end = self.end_time if self.end_time is not None else time.time()
        return max(0.0, end - self.start_time)

    def to_json(self) -> dict:
        return {
            "client": [self.client[0], self.client[1]],
            "port": self.port,
            "filename": self.filename,
            "direction": self.direction,
            "block": self.block,
            "blocks_done": self.blocks_done,
            "bytes_done": self.bytes_done,
            "retransmits": self.retransmits,
            "outcome": self.outcome,
            "error": self.error,
            "duration_sec": round(self.duration, 3),
        }


class TransferProtocol(asyncio.DatagramProtocol):
    """One transfer on its own ephemeral port.

    Subclasses implement :meth:`start` and :meth:`handle_packet`. All state in
    ``self.sess`` is touched only from this protocol's callbacks and its
    retransmit task, which run on the same event loop.
    """

    def __init__(
        self,
        cfg: ServerConfig,
        logger: logging.Logger,
        storage: FileStorage,
        sess: Session,
        event_q: Optional[EventFanout] = None,
        on_close: Optional[Callable[["TransferProtocol"], None]] = None,
    ):
        self.cfg = cfg
        self.logger = logger
        self.storage = storage
        self.sess = sess
        self.event_q = event_q
        self.on_close = on_close
        self.transport: Optional[asyncio.DatagramTransport] = None
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self._retransmit_task: Optional[asyncio.Task] = None

    # --- asyncio callbacks ---
    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.transport = transport  # type: ignore
        self.loop = asyncio.get_event_loop()
        sockname = transport.get_extra_info("sockname")
        if sockname:
            self.sess.port = sockname[1]
        self._retransmit_task = self.loop.create_task(self._retransmit_loop())

    def connection_lost(self, exc: Optional[Exception]) -> None:
        if self._retransmit_task:
            self._retransmit_task.cancel()
        if not self.sess.complete:
            self._end_session(ABORTED, f"Socket closed: {exc}" if exc else "Socket closed")

    def error_received(self, exc: Exception) -> None:
        s = self.sess
        self.logger.warning("Socket error on port %s (%s:%s): %s", s.port, s.client[0], s.client[1], exc)

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        s = self.sess
        if tuple(addr[:2]) != tuple(s.client[:2]):
            self.logger.warning("Packet for port %s from unknown peer %s:%s", s.port, addr[0], addr[1])
            self._sendto(build_error(ErrorCode.UNKNOWN_TID, "Unknown transfer ID"), addr)
            return
        if s.complete:
            return
        try:
            packet = decode(data)
        except MalformedPacket as exc:
            self.logger.warning("Dropped malformed packet from %s:%s: %s", addr[0], addr[1], exc)
            return

        if isinstance(packet, ErrorPacket):
            self._end_session(CANCELLED, f"Peer sent error {int(packet.code)}: {packet.message}")
            return
        self.handle_packet(packet)

    async def _retransmit_loop(self) -> None:
        interval = min(0.1, self.cfg.timeout_sec / 4)
        s = self.sess
        try:
            while not s.complete:
                await asyncio.sleep(interval)
                if s.complete or not s.last_packet:
                    continue
                now = time.monotonic()
                if now - s.last_send_time < self.cfg.timeout_sec:
                    continue
                if s.retries >= self.cfg.max_retries:
                    self._end_session(TIMEOUT, f"No response after {s.retries} retransmissions")
                    return
                s.retries += 1
                s.retransmits += 1
                self.logger.debug(
                    "Retransmit %d/%d on port %s (block %d)",
                    s.retries, self.cfg.max_retries, s.port, s.block,
                )
                self._sendto(s.last_packet, s.client)
                s.last_send_time = now
        except asyncio.CancelledError:
            return

    # --- state machine hooks ---
    def start(self) -> None:
        """Send the first packet of the transfer; called once the port is registered."""
        raise NotImplementedError

    def handle_packet(self, packet: Packet) -> None:
        """Handle a decoded non-error packet from the session's client."""
        raise NotImplementedError

    def cancel(self) -> None:
        """Abandon the transfer without telling the peer."""
        self._end_session(ABORTED, "Server shutting down")

    # --- senders ---
    def _send(self, packet: bytes) -> None:
        s = self.sess
        s.last_packet = packet
        s.last_send_time = time.monotonic()
        s.retries = 0
        self._sendto(packet, s.client)

    def _sendto(self, payload: bytes, addr: Tuple[str, int]) -> None:
        if self.transport is not None and not self.transport.is_closing():
            self.transport.sendto(payload, addr)

    def _fail(self, code: ErrorCode, message: str, detail: str = "") -> None:
        self._sendto(build_error(code, message), self.sess.client)
        self._end_session(FAILED, detail or message)

    def _end_session(self, outcome: str, message: str) -> None:
        s = self.sess
        if s.complete:
            return
        s.complete = True
        s.outcome = outcome
        s.end_time = time.time()
        if outcome != COMPLETE:
            s.error = message
        self._emit_event(outcome, message)
        if self.transport is not None:
            self.transport.close()
        if self.on_close is not None:
            self.on_close(self)

    def _emit_event(self, kind: str, message: str) -> None:
        s = self.sess
        if self.event_q is not None:
            self.event_q.put_nowait(
                Event(
                    kind=kind,
                    client=s.client,
                    filename=s.filename,
                    is_write=s.is_write,
                    port=s.port,
                    block=s.block,
                    bytes_done=s.bytes_done,
                    message=message,
                )
            )

        direction = s.direction.upper()
        if kind == "progress":
            self.logger.debug("%s %s %s block=%d bytes=%d", direction, s.filename, kind, s.block, s.bytes_done)
            return

        level = logging.WARNING if kind in (TIMEOUT, FAILED) else logging.INFO
        self.logger.log(
            level,
            "%s %s %s:%s %s port=%s bytes=%d blocks=%d retransmits=%d - %s",
            kind.upper(), direction, s.client[0], s.client[1], s.filename,
            s.port, s.bytes_done, s.blocks_done, s.retransmits, message,
        )
        write_audit(
            self.cfg.audit_log_file,
            {
                "ts": time.time(),
                "event": kind,
                "client_ip": s.client[0],
                "client_port": s.client[1],
                "file": s.filename,
                "direction": s.direction,
                "port": s.port,
                "bytes_done": s.bytes_done,
                "blocks": s.blocks_done,
                "message": message,
            },
        )
        if kind != "start":
            write_transfer_log_csv(
                self.cfg.transfer_log_file,
                {
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                    "client_ip": s.client[0],
                    "client_port": s.client[1],
                    "direction": s.direction,
                    "filename": s.filename,
                    "bytes_done": s.bytes_done,
                    "blocks": s.blocks_done,
                    "retransmits": s.retransmits,
                    "status": "ok" if kind == COMPLETE else kind,
                    "message": message,
                    "duration_sec": round(s.duration, 3),
                },
            )


class ReadTransfer(TransferProtocol):
    """Server sends DATA, client acknowledges each block."""

    def start(self) -> None:
        self._emit_event("start", "Download started")
        self._send_block(1)

    def handle_packet(self, packet: Packet) -> None:
        if isinstance(packet, AckPacket):
            self._on_ack(packet.block)
        else:
            self._fail(ErrorCode.ILLEGAL_OPERATION, "Illegal TFTP operation",
                       f"Unexpected {type(packet).__name__} during download")

    def _on_ack(self, block_no: int) -> None:
        s = self.sess
        if block_no == s.block:
            s.bytes_done += s.last_payload_len
            if s.last_payload_len < BLOCK_SIZE:
                self._end_session(COMPLETE, "Download complete")
                return
            self._emit_event("progress", f"Sent block {block_no}")
            self._send_block(s.blocks_done + 1)
        elif is_behind(block_no, s.block):
            # Stale or duplicated ACK; keep waiting for the current one.
            self.logger.debug("Ignoring old ACK %d on port %s (expecting %d)", block_no, s.port, s.block)
        else:
            self._fail(ErrorCode.ILLEGAL_OPERATION, "Unexpected block number",
                       f"ACK {block_no} ahead of sent block {s.block}")

    def _send_block(self, index: int) -> None:
        """Send the ``index``-th block of the file (1-based, not wrapped)."""
        s = self.sess
        start = (index - 1) * BLOCK_SIZE
        try:
            chunk = self.storage.read_range(s.filename, start, start + BLOCK_SIZE)
        except (StorageError, OSError) as exc:
            self._fail(ErrorCode.NOT_DEFINED, "Read error", f"Storage read failed: {exc}")
            return
        s.blocks_done = index
        s.block = index & MAX_BLOCK_NUMBER
        s.last_payload_len = len(chunk)
        self._send(build_data(s.block, chunk))


class WriteTransfer(TransferProtocol):
    """Client sends DATA, server acknowledges and appends to storage."""

    def start(self) -> None:
        self._emit_event("start", "Upload started")
        self.sess.block = 0
        self._send(build_ack(0))

    def handle_packet(self, packet: Packet) -> None:
        if isinstance(packet, DataPacket):
            self._on_data(packet)
        else:
            self._fail(ErrorCode.ILLEGAL_OPERATION, "Illegal TFTP operation",
                       f"Unexpected {type(packet).__name__} during upload")

    def _on_data(self, packet: DataPacket) -> None:
        s = self.sess
        expected = next_block(s.block)
        if packet.block == expected:
            index = s.blocks_done + 1
            try:
                if index == 1:
                    self.storage.start_new_upload(s.filename)
                self.storage.append_data(s.filename, index, packet.payload)
                if packet.is_final:
                    self.storage.complete_upload(s.filename)
            except (StorageError, OSError) as exc:
                self._fail(ErrorCode.NOT_DEFINED, "Write error", f"Storage write failed: {exc}")
                return
            s.blocks_done = index
            s.block = packet.block
            s.bytes_done += len(packet.payload)
            self._send(build_ack(packet.block))
            if packet.is_final:
                self._end_session(COMPLETE, "Upload complete")
            else:
                self._emit_event("progress", f"Received block {packet.block}")
        elif is_behind(packet.block, expected):
            # Already applied; our ACK was probably lost.
            self.logger.debug("Duplicate DATA %d on port %s, re-sending ACK", packet.block, s.port)
            self._sendto(build_ack(packet.block), s.client)
        else:
            self._fail(ErrorCode.ILLEGAL_OPERATION, "Unexpected block number",
                       f"DATA {packet.block} ahead of expected block {expected}")
