from __future__ import annotations

import abc
import os
import threading
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, Optional

PART_SUFFIX = ".part"


class StorageError(Exception):
    pass


@dataclass
class FileMetadata:
    filename: str
    is_complete: bool = False
    last_block_num: int = 0
    size: int = 0


class FileStorage(abc.ABC):
    """Byte-stream store the transfer sessions read from and upload into."""

    @abc.abstractmethod
    def start_new_upload(self, filename: str) -> FileMetadata:
        """Begin (or restart) an upload. A completed file of the same name stays
        readable until :meth:`complete_upload` replaces it."""

    @abc.abstractmethod
    def append_data(self, filename: str, block_num: int, data: bytes) -> None:
        ...

    @abc.abstractmethod
    def complete_upload(self, filename: str) -> None:
        ...

    @abc.abstractmethod
    def read_range(self, filename: str, start: int, end: int) -> bytes:
        """Bytes ``[start, end)`` of the file, clamped to its length."""

    @abc.abstractmethod
    def get_metadata(self, filename: str) -> Optional[FileMetadata]:
        ...

    def is_valid_name(self, filename: str) -> bool:
        return True


class MemoryFileStorage(FileStorage):
    """Files held in process memory.

    Uploads are staged apart from the finished files and swapped in by
    :meth:`complete_upload`, so readers keep seeing the previous content.
    """

    def __init__(self) -> None:
        self._files: Dict[str, FileMetadata] = {}
        self._contents: Dict[str, bytearray] = {}
        self._pending: Dict[str, FileMetadata] = {}
        self._pending_contents: Dict[str, bytearray] = {}
        self._lock = threading.Lock()

    def put(self, filename: str, data: bytes) -> FileMetadata:
        meta = FileMetadata(
            filename=filename,
            is_complete=True,
            last_block_num=0,
            size=len(data),
        )
        with self._lock:
            self._files[filename] = meta
            self._contents[filename] = bytearray(data)
        return replace(meta)

    def start_new_upload(self, filename: str) -> FileMetadata:
        meta = FileMetadata(filename=filename)
        with self._lock:
            self._pending[filename] = meta
            self._pending_contents[filename] = bytearray()
        return replace(meta)

    def append_data(self, filename: str, block_num: int, data: bytes) -> None:
        with self._lock:
            meta = self._pending.get(filename)
            if meta is None:
                raise StorageError(f"no upload in progress for {filename!r}")
            buf = self._pending_contents[filename]
            buf.extend(data)
            meta.last_block_num = block_num
            meta.size = len(buf)

    def complete_upload(self, filename: str) -> None:
        with self._lock:
            meta = self._pending.pop(filename, None)
            if meta is None:
                raise StorageError(f"no upload in progress for {filename!r}")
            meta.is_complete = True
            self._files[filename] = meta
            self._contents[filename] = self._pending_contents.pop(filename)

    def read_range(self, filename: str, start: int, end: int) -> bytes:
        with self._lock:
            buf = self._contents.get(filename)
            if buf is None:
                raise StorageError(f"no such file {filename!r}")
            start = min(start, len(buf))
            end = min(end, len(buf))
            return bytes(buf[start:end])

    def get_metadata(self, filename: str) -> Optional[FileMetadata]:
        with self._lock:
            meta = self._files.get(filename) or self._pending.get(filename)
            return replace(meta) if meta is not None else None


def safe_join(root: Path, user_path: str) -> Optional[Path]:
    candidate = (root / user_path).resolve()
    try:
        candidate.relative_to(root.resolve())
    except ValueError:
        return None
    return candidate


class DirectoryFileStorage(FileStorage):
    """Files under a root directory.

    Uploads land in ``<name>.part`` and are renamed into place by
    :meth:`complete_upload`, so a reader never sees a half-written file.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root).expanduser().resolve()
        if not self.root.is_dir():
            raise StorageError(f"root_dir '{self.root}' does not exist or is not a directory.")
        self._last_block: Dict[str, int] = {}
        self._lock = threading.Lock()

    def _path(self, filename: str) -> Path:
        path = safe_join(self.root, filename)
        if path is None or path == self.root:
            raise StorageError(f"access violation: {filename!r}")
        return path

    @staticmethod
    def _part(path: Path) -> Path:
        return path.with_name(path.name + PART_SUFFIX)

    def is_valid_name(self, filename: str) -> bool:
        path = safe_join(self.root, filename)
        return path is not None and path != self.root and not filename.endswith(PART_SUFFIX)

    def start_new_upload(self, filename: str) -> FileMetadata:
        path = self._path(filename)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            self._part(path).write_bytes(b"")
        except OSError as exc:
            raise StorageError(f"cannot create {filename!r}: {exc}") from exc
        with self._lock:
            self._last_block[filename] = 0
        return FileMetadata(filename=filename)

    def append_data(self, filename: str, block_num: int, data: bytes) -> None:
        part = self._part(self._path(filename))
        if not part.exists():
            raise StorageError(f"no upload in progress for {filename!r}")
        try:
            with part.open("ab") as fobj:
                fobj.write(data)
        except OSError as exc:
            raise StorageError(f"write to {filename!r} failed: {exc}") from exc
        with self._lock:
            self._last_block[filename] = block_num

    def complete_upload(self, filename: str) -> None:
        path = self._path(filename)
        try:
            os.replace(self._part(path), path)
        except OSError as exc:
            raise StorageError(f"cannot complete {filename!r}: {exc}") from exc
        with self._lock:
            self._last_block.pop(filename, None)

    def read_range(self, filename: str, start: int, end: int) -> bytes:
        path = self._path(filename)
        if end <= start:
            return b""
        try:
            with path.open("rb") as fobj:
                fobj.seek(start)
                return fobj.read(end - start)
        except OSError as exc:
            raise StorageError(f"read of {filename!r} failed: {exc}") from exc

    def get_metadata(self, filename: str) -> Optional[FileMetadata]:
        path = safe_join(self.root, filename)
        if path is None:
            return None
        if path.is_file():
            return FileMetadata(filename=filename, is_complete=True, size=path.stat().st_size)
        part = self._part(path)
        if part.is_file():
            with self._lock:
                last = self._last_block.get(filename, 0)
            return FileMetadata(
                filename=filename,
                is_complete=False,
                last_block_num=last,
                size=part.stat().st_size,
            )
        return None
