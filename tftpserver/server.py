from __future__ import annotations

import asyncio
import logging
import threading
from collections import deque
from typing import Deque, Dict, List, Optional, Tuple

from .config import ServerConfig
from .events import Event, EventFanout
from .listener import ListenerProtocol
from .session import COMPLETE, Session, TransferProtocol
from .storage import FileStorage


class SessionRegistry:
    """Ports of the active transfers, shared between the event loop and readers
    in other threads (web API, console).

    A port is first reserved, then attached to its protocol once the socket is
    bound, and released when the transfer ends.
    """

    def __init__(self, history_max: int = 100) -> None:
        self._lock = threading.Lock()
        self._sessions: Dict[int, Optional[TransferProtocol]] = {}
        self.recent: Deque[Session] = deque(maxlen=history_max)
        self.completed = 0
        self.failed = 0

    def reserve(self, port: int) -> bool:
        with self._lock:
            if port in self._sessions:
                return False
            self._sessions[port] = None
            return True

    def attach(self, port: int, protocol: TransferProtocol) -> None:
        with self._lock:
            if self._sessions.get(port, None) is not None:
                raise ValueError(f"port {port} already has an active session")
            self._sessions[port] = protocol

    def release(self, port: int) -> None:
        with self._lock:
            self._sessions.pop(port, None)

    def retire(self, protocol: TransferProtocol) -> None:
        """Called by a transfer when it finishes, whatever the outcome."""
        sess = protocol.sess
        with self._lock:
            if self._sessions.get(sess.port) is protocol:
                del self._sessions[sess.port]
            self.recent.append(sess)
            if sess.outcome == COMPLETE:
                self.completed += 1
            else:
                self.failed += 1

    def get(self, port: int) -> Optional[TransferProtocol]:
        with self._lock:
            return self._sessions.get(port)

    def __contains__(self, port: object) -> bool:
        with self._lock:
            return port in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def ports(self) -> List[int]:
        with self._lock:
            return sorted(self._sessions)

    def sessions(self) -> List[TransferProtocol]:
        with self._lock:
            return [p for p in self._sessions.values() if p is not None]

    def snapshot(self) -> List[dict]:
        return [p.sess.to_json() for p in self.sessions()]

    def close_all(self) -> None:
        for protocol in self.sessions():
            protocol.cancel()


class TftpServer:
    """Owns the request listener and the session registry.

    :meth:`run` blocks until :meth:`stop` is called; :meth:`start` runs the
    same loop in a background thread.
    """

    def __init__(
        self,
        cfg: ServerConfig,
        storage: FileStorage,
        logger: Optional[logging.Logger] = None,
        event_q: Optional[EventFanout] = None,
    ):
        self.cfg = cfg
        self.storage = storage
        self.logger = logger or logging.getLogger("tftpserver")
        self.event_q = event_q
        self.registry = SessionRegistry()
        self.is_running: bool = False
        self.startup_error: Optional[BaseException] = None
        self._address: Optional[Tuple[str, int]] = None
        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._stop_requested = False
        self._ready = threading.Event()

    @property
    def address(self) -> Optional[Tuple[str, int]]:
        return self._address

    def _broadcast_server(self, running: bool) -> None:
        self.is_running = running
        if self.event_q is None:
            return
        host, port = self._address or (self.cfg.host, self.cfg.port)
        self.event_q.put_nowait(
            Event(
                kind="server",
                client=(host, port),
                filename="",
                is_write=False,
                message="running" if running else "stopped",
            )
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def serve(self) -> None:
        self._stop_event = asyncio.Event()
        self._loop = asyncio.get_running_loop()
        if self._stop_requested:
            self._stop_event.set()

        try:
            transport, listener = await self._loop.create_datagram_endpoint(
                lambda: ListenerProtocol(self.cfg, self.logger, self.storage, self.registry, self.event_q),
                local_addr=(self.cfg.host, self.cfg.port),
            )
        except OSError as exc:
            self.startup_error = exc
            self._ready.set()
            raise

        sockname = transport.get_extra_info("sockname")
        self._address = (sockname[0], sockname[1])
        self._broadcast_server(True)
        self._ready.set()

        try:
            await self._stop_event.wait()
        finally:
            transport.close()
            await listener.shutdown()
            active = len(self.registry)
            if active:
                self.logger.info("Abandoning %d active transfer(s)", active)
            self.registry.close_all()
            # let connection_lost callbacks run before the loop goes away
            await asyncio.sleep(0)
            self._broadcast_server(False)
            self.logger.info("TFTP server loop stopped.")

    def run(self) -> None:
        """Serve until :meth:`stop`; bind failures propagate."""
        asyncio.run(self.serve())

    def start(self) -> None:
        """Launch the server loop in a background thread."""
        if self._thread and self._thread.is_alive():
            return
        self._ready.clear()
        self._stop_requested = False
        self.startup_error = None
        self._thread = threading.Thread(target=self._run_thread, name="TFTP-Server", daemon=True)
        self._thread.start()

    def _run_thread(self) -> None:
        try:
            self.run()
        except OSError as exc:
            self.logger.error("Failed to start server: %s", exc)
        finally:
            self.is_running = False
            self._ready.set()

    def wait_ready(self, timeout: Optional[float] = None) -> bool:
        """Wait for the listener to bind; False on timeout or startup failure."""
        return self._ready.wait(timeout) and self.startup_error is None

    def stop(self) -> None:
        self._stop_requested = True
        loop, stop_event = self._loop, self._stop_event
        if loop is not None and stop_event is not None and not loop.is_closed():
            try:
                loop.call_soon_threadsafe(stop_event.set)
            except RuntimeError:
                # loop already shut down
                pass
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)
            self._thread = None
        self.logger.info("TFTP server stopped.")
