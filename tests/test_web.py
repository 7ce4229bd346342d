from __future__ import annotations

from fastapi.testclient import TestClient

from tftpserver.events import EventFanout
from tftpserver.packets import Opcode
from tftpserver.web import create_web_app

from conftest import download, wait_for


def test_status_of_stopped_server(make_server):
    server = make_server()
    server.stop()
    api = TestClient(create_web_app(server, EventFanout()))
    body = api.get("/api/status").json()
    assert body["running"] is False
    assert body["active_sessions"] == 0
    assert body["storage"] == "memory"


def test_status_and_sessions_after_transfer(server, client, storage):
    storage.put("boot.cfg", b"timeout 10\n")
    download(client, server.address, "boot.cfg")
    assert wait_for(lambda: server.registry.completed == 1)

    api = TestClient(create_web_app(server, server.event_q))
    status = api.get("/api/status").json()
    assert status["running"] is True
    assert status["port"] == server.address[1]
    assert status["completed"] == 1
    assert status["failed"] == 0

    sessions = api.get("/api/sessions").json()
    assert sessions["active"] == []
    assert sessions["recent"][-1]["filename"] == "boot.cfg"
    assert sessions["recent"][-1]["outcome"] == "complete"
    assert sessions["recent"][-1]["bytes_done"] == 11


def test_sessions_lists_active_transfer(server, client, storage):
    storage.put("big.img", b"i" * 5000)
    client.request(server.address, Opcode.RRQ, "big.img")
    _, tid = client.recv()
    api = TestClient(create_web_app(server, server.event_q))
    active = api.get("/api/sessions").json()["active"]
    assert len(active) == 1
    assert active[0]["port"] == tid[1]
    assert active[0]["direction"] == "download"
