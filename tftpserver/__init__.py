"""
TFTP server (RFC 1350) on asyncio.

- RRQ/WRQ in octet mode, one ephemeral port per transfer
- stop-and-wait with retransmission and bounded retries
- pluggable storage (in-memory or a root directory)
- JSON config, rotating logs, JSONL audit and CSV transfer logs
- optional FastAPI status API (tftpserver.web)
"""

VERSION = "1.0.0"

from .config import ServerConfig  # noqa: E402
from .server import SessionRegistry, TftpServer  # noqa: E402
from .storage import DirectoryFileStorage, FileMetadata, FileStorage, MemoryFileStorage  # noqa: E402

__all__ = [
    "VERSION",
    "ServerConfig",
    "SessionRegistry",
    "TftpServer",
    "FileStorage",
    "FileMetadata",
    "MemoryFileStorage",
    "DirectoryFileStorage",
]
