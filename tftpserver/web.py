from __future__ import annotations

import asyncio
import json
import queue

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse, StreamingResponse

from . import VERSION
from .events import EventFanout
from .server import TftpServer


def create_web_app(server: TftpServer, fanout: EventFanout) -> FastAPI:
    cfg = server.cfg
    app = FastAPI(title="TFTP Server Status", version=VERSION)

    @app.get("/api/status", response_class=JSONResponse)
    def api_status():
        host, port = server.address or (cfg.host, cfg.port)
        return {
            "running": bool(server.is_running),
            "host": str(host),
            "port": int(port),
            "storage": cfg.storage,
            "allow_write": bool(cfg.allow_write),
            "transfer_ports": [cfg.transfer_port_min, cfg.transfer_port_max],
            "active_sessions": len(server.registry.sessions()),
            "completed": server.registry.completed,
            "failed": server.registry.failed,
        }

    @app.get("/api/sessions", response_class=JSONResponse)
    def api_sessions():
        return {
            "active": server.registry.snapshot(),
            "recent": [s.to_json() for s in list(server.registry.recent)],
        }

    @app.get("/api/events")
    def api_events():
        # Server-Sent Events stream of recent + future events
        async def gen():
            for e in list(fanout.recent):
                yield f"data: {json.dumps(e.to_json())}\n\n"
            q = fanout.register(maxsize=1000)
            loop = asyncio.get_running_loop()
            try:
                while True:
                    try:
                        e = await loop.run_in_executor(None, q.get, True, 1.0)
                    except queue.Empty:
                        yield ": keepalive\n\n"
                        continue
                    yield f"data: {json.dumps(e.to_json())}\n\n"
            finally:
                fanout.unregister(q)

        return StreamingResponse(gen(), media_type="text/event-stream")

    return app


def run_web(app: FastAPI, host: str, port: int) -> None:
    uvicorn.run(app, host=host, port=port, log_level="info")
