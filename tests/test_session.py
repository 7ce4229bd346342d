from __future__ import annotations

import asyncio
import logging

from tftpserver.config import ServerConfig
from tftpserver.events import EventFanout
from tftpserver.packets import (
    AckPacket,
    DataPacket,
    ErrorCode,
    ErrorPacket,
    build_ack,
    build_data,
    build_error,
    decode,
)
from tftpserver.session import ReadTransfer, Session, WriteTransfer, is_behind
from tftpserver.storage import MemoryFileStorage, StorageError

CLIENT = ("127.0.0.1", 40000)


class FakeTransport:
    def __init__(self, port: int = 50000):
        self.port = port
        self.sent = []
        self.closed = False

    def get_extra_info(self, name, default=None):
        if name == "sockname":
            return ("127.0.0.1", self.port)
        return default

    def sendto(self, data, addr):
        self.sent.append((decode(data), addr))

    def is_closing(self):
        return self.closed

    def close(self):
        self.closed = True


class FailingStorage(MemoryFileStorage):
    def append_data(self, filename, block_num, data):
        raise StorageError("disk full")


def run(scenario):
    """Run ``scenario(proto, transport)`` against a freshly connected protocol."""

    def _run(factory, storage, is_write, cfg=None, events=None):
        cfg = cfg or ServerConfig(timeout_sec=5.0)
        sess = Session(client=CLIENT, filename="f", mode="octet", is_write=is_write)
        retired = []

        async def main():
            proto = factory(cfg, logging.getLogger("test"), storage, sess,
                            event_q=events, on_close=retired.append)
            transport = FakeTransport()
            proto.connection_made(transport)
            try:
                scenario(proto, transport)
            finally:
                proto.connection_lost(None)
                await asyncio.sleep(0)

        asyncio.run(main())
        return sess, retired

    return _run


def test_is_behind_handles_rollover():
    assert is_behind(4, 5)
    assert not is_behind(5, 5)
    assert not is_behind(6, 5)
    assert is_behind(65535, 0)
    assert not is_behind(0, 65535)


def test_read_block_numbers_roll_over_past_65535():
    storage = MemoryFileStorage()
    storage.put("f", b"")

    def scenario(proto, transport):
        s = proto.sess
        # pretend block 65535 (a full one) is outstanding
        s.blocks_done = 65535
        s.block = 65535
        s.last_payload_len = 512
        proto.datagram_received(build_ack(65535), CLIENT)
        assert transport.sent[-1] == (DataPacket(block=0, payload=b""), CLIENT)
        assert s.blocks_done == 65536
        proto.datagram_received(build_ack(0), CLIENT)

    sess, retired = run(scenario)(ReadTransfer, storage, is_write=False)
    assert sess.outcome == "complete"
    assert retired and retired[0].sess is sess


def test_read_session_rejects_data_packets():
    storage = MemoryFileStorage()
    storage.put("f", b"x" * 10)

    def scenario(proto, transport):
        proto.start()
        proto.datagram_received(build_data(1, b"x"), CLIENT)
        sent = [pkt for pkt, _ in transport.sent]
        assert sent[0] == DataPacket(block=1, payload=b"x" * 10)
        assert isinstance(sent[-1], ErrorPacket)
        assert sent[-1].code == ErrorCode.ILLEGAL_OPERATION
        assert transport.closed

    sess, _ = run(scenario)(ReadTransfer, storage, is_write=False)
    assert sess.outcome == "error"


def test_read_storage_failure_sends_not_defined():
    storage = MemoryFileStorage()  # file vanished after the handshake

    def scenario(proto, transport):
        proto.start()
        pkt, addr = transport.sent[-1]
        assert isinstance(pkt, ErrorPacket) and pkt.code == ErrorCode.NOT_DEFINED
        assert addr == CLIENT

    sess, _ = run(scenario)(ReadTransfer, storage, is_write=False)
    assert sess.outcome == "error"
    assert "Storage read failed" in sess.error


def test_write_storage_failure_sends_not_defined():
    def scenario(proto, transport):
        proto.start()
        proto.datagram_received(build_data(1, b"abc"), CLIENT)
        assert transport.sent[0] == (AckPacket(block=0), CLIENT)
        pkt, _ = transport.sent[-1]
        assert isinstance(pkt, ErrorPacket) and pkt.code == ErrorCode.NOT_DEFINED

    sess, _ = run(scenario)(WriteTransfer, FailingStorage(), is_write=True)
    assert sess.outcome == "error"


def test_write_session_rejects_acks():
    def scenario(proto, transport):
        proto.start()
        proto.datagram_received(build_ack(0), CLIENT)
        pkt, _ = transport.sent[-1]
        assert isinstance(pkt, ErrorPacket) and pkt.code == ErrorCode.ILLEGAL_OPERATION

    sess, _ = run(scenario)(WriteTransfer, MemoryFileStorage(), is_write=True)
    assert sess.outcome == "error"


def test_malformed_and_foreign_packets_leave_session_alone():
    storage = MemoryFileStorage()
    storage.put("f", b"y" * 600)

    def scenario(proto, transport):
        proto.start()
        proto.datagram_received(b"\x00", CLIENT)
        proto.datagram_received(b"\x00\x04\x00", CLIENT)
        assert len(transport.sent) == 1
        proto.datagram_received(build_ack(1), ("127.0.0.1", 40001))
        pkt, addr = transport.sent[-1]
        assert pkt.code == ErrorCode.UNKNOWN_TID and addr == ("127.0.0.1", 40001)
        assert not proto.sess.complete
        proto.datagram_received(build_ack(1), CLIENT)
        assert transport.sent[-1] == (DataPacket(block=2, payload=b"y" * 88), CLIENT)

    run(scenario)(ReadTransfer, storage, is_write=False)


def test_peer_error_cancels_without_reply():
    def scenario(proto, transport):
        proto.start()
        proto.datagram_received(build_error(ErrorCode.DISK_FULL, "full"), CLIENT)
        assert len(transport.sent) == 1
        assert transport.closed

    sess, retired = run(scenario)(WriteTransfer, MemoryFileStorage(), is_write=True)
    assert sess.outcome == "cancelled"
    assert len(retired) == 1


def test_cancel_is_silent_and_emits_event():
    events = EventFanout()
    q = events.register()
    storage = MemoryFileStorage()
    storage.put("f", b"z" * 2000)

    def scenario(proto, transport):
        proto.start()
        proto.cancel()
        assert len(transport.sent) == 1
        assert transport.closed

    sess, _ = run(scenario)(ReadTransfer, storage, is_write=False, events=events)
    assert sess.outcome == "aborted"
    kinds = []
    while not q.empty():
        kinds.append(q.get_nowait().kind)
    assert kinds == ["start", "aborted"]


def test_connection_lost_marks_session_aborted():
    storage = MemoryFileStorage()
    storage.put("f", b"z" * 2000)

    def scenario(proto, transport):
        proto.start()

    sess, retired = run(scenario)(ReadTransfer, storage, is_write=False)
    assert sess.outcome == "aborted"
    assert len(retired) == 1
