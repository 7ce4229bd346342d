from __future__ import annotations

import logging
import queue
import threading
from collections import deque
from dataclasses import dataclass
from typing import Deque, List, Tuple


@dataclass
class Event:
    kind: str
    client: Tuple[str, int]
    filename: str
    is_write: bool
    port: int = 0
    block: int = 0
    bytes_done: int = 0
    message: str = ""

    def to_json(self) -> dict:
        return {
            "kind": self.kind,
            "client": [self.client[0], self.client[1]],
            "filename": self.filename,
            "is_write": self.is_write,
            "port": self.port,
            "block": self.block,
            "bytes_done": self.bytes_done,
            "message": self.message,
        }


class EventFanout:
    """Broadcasts events to multiple consumers (web, console)."""

    def __init__(self, history_max: int = 1000) -> None:
        self._subs: List[queue.Queue] = []
        self._lock = threading.Lock()
        self.recent: Deque[Event] = deque(maxlen=history_max)

    def register(self, maxsize: int = 0) -> "queue.Queue[Event]":
        q: "queue.Queue[Event]" = queue.Queue(maxsize=maxsize)
        with self._lock:
            self._subs.append(q)
        return q

    def unregister(self, q: "queue.Queue[Event]") -> None:
        with self._lock:
            if q in self._subs:
                self._subs.remove(q)

    def put_nowait(self, evt: Event) -> None:
        with self._lock:
            self.recent.append(evt)
            subs = list(self._subs)
        for q in subs:
            try:
                q.put_nowait(evt)
            except queue.Full:
                logging.getLogger("tftpserver").debug("Event subscriber full; dropped %s event", evt.kind)
