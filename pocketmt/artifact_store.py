"""
Artifact Store
Keyed persistence for model artifacts (weights, vocabulary, merge rules, configs)
"""

from __future__ import annotations

import hashlib
import json
import os
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from .errors import ArtifactStorageError
from .utils import format_size, logger

__all__ = [
    "ArtifactInfo",
    "ArtifactStore",
    "InMemoryArtifactStore",
    "SQLiteArtifactStore",
    "FileSystemArtifactStore",
    "create_artifact_store",
]


@dataclass(frozen=True)
class ArtifactInfo:
    """Metadata of a cached artifact (the payload itself is not included)."""

    name: str
    size: int
    timestamp: int  # epoch milliseconds of the last put
    sha256: str

    def to_dict(self) -> Dict[str, Union[str, int]]:
        return asdict(self)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _digest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class ArtifactStore(ABC):
    """
    Base class for artifact stores.

    Every public operation initializes the backend lazily, exactly once.
    Missing keys are reported as ``None``/``False``; backend failures are
    raised as :class:`ArtifactStorageError`.
    """

    def __init__(self) -> None:
        self._initialized = False
        self._init_lock = threading.Lock()

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> None:
        """Set up the backend on first use; later calls are no-ops."""
        if self._initialized:
            return
        with self._init_lock:
            if self._initialized:
                return
            try:
                self._setup()
            except (OSError, sqlite3.Error, ValueError) as e:
                raise ArtifactStorageError("initialize", None, e) from e
            self._initialized = True
            logger.debug("%s initialized", type(self).__name__)

    def has(self, name: str) -> bool:
        return self.info(name) is not None

    def get(self, name: str) -> Optional[bytes]:
        return self._call("get", name, self._get, name)

    def put(self, name: str, data: bytes) -> ArtifactInfo:
        if not isinstance(data, (bytes, bytearray, memoryview)):
            raise TypeError(f"Artifact data must be bytes, got {type(data).__name__}")
        payload = bytes(data)
        info = ArtifactInfo(name=name, size=len(payload), timestamp=_now_ms(), sha256=_digest(payload))
        self._call("put", name, self._put, info, payload)
        logger.debug("Stored artifact %s (%s)", name, format_size(info.size))
        return info

    def info(self, name: str) -> Optional[ArtifactInfo]:
        return self._call("info", name, self._info, name)

    def list_info(self) -> List[ArtifactInfo]:
        infos = self._call("list", None, self._list_info)
        return sorted(infos, key=lambda item: item.name)

    def delete(self, name: str) -> bool:
        return self._call("delete", name, self._delete, name)

    def clear(self) -> None:
        self._call("clear", None, self._clear)
        logger.info("Artifact cache cleared")

    def verify(self, name: str) -> bool:
        """Recompute the content digest of ``name`` and compare it with the recorded one."""
        info = self.info(name)
        data = self.get(name)
        if info is None or data is None:
            return False
        return _digest(data) == info.sha256

    def _call(self, operation: str, name: Optional[str], func, *args):
        self.initialize()
        try:
            return func(*args)
        except ArtifactStorageError:
            raise
        except (OSError, sqlite3.Error, ValueError, KeyError) as e:
            raise ArtifactStorageError(operation, name, e) from e

    @abstractmethod
    def _setup(self) -> None: ...

    @abstractmethod
    def _get(self, name: str) -> Optional[bytes]: ...

    @abstractmethod
    def _put(self, info: ArtifactInfo, data: bytes) -> None: ...

    @abstractmethod
    def _info(self, name: str) -> Optional[ArtifactInfo]: ...

    @abstractmethod
    def _list_info(self) -> List[ArtifactInfo]: ...

    @abstractmethod
    def _delete(self, name: str) -> bool: ...

    @abstractmethod
    def _clear(self) -> None: ...


# ============================================================================
# IN-MEMORY BACKEND
# ============================================================================

class InMemoryArtifactStore(ArtifactStore):
    """Process-local store, mainly for tests and ephemeral sessions."""

    def __init__(self) -> None:
        super().__init__()
        self._records: Dict[str, Tuple[ArtifactInfo, bytes]] = {}

    def _setup(self) -> None:
        self._records = {}

    def _get(self, name: str) -> Optional[bytes]:
        record = self._records.get(name)
        return record[1] if record else None

    def _put(self, info: ArtifactInfo, data: bytes) -> None:
        self._records[info.name] = (info, data)

    def _info(self, name: str) -> Optional[ArtifactInfo]:
        record = self._records.get(name)
        return record[0] if record else None

    def _list_info(self) -> List[ArtifactInfo]:
        return [info for info, _ in self._records.values()]

    def _delete(self, name: str) -> bool:
        return self._records.pop(name, None) is not None

    def _clear(self) -> None:
        self._records.clear()


# ============================================================================
# SQLITE BACKEND
# ============================================================================

class SQLiteArtifactStore(ArtifactStore):
    """
    Durable store backed by a single SQLite file.

    One row per artifact, keyed by filename; ``INSERT OR REPLACE`` gives
    last-write-wins semantics.
    """

    def __init__(self, path: Union[str, Path]) -> None:
        super().__init__()
        self.path = str(path)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    def _setup(self) -> None:
        if self.path != ":memory:":
            db_path = Path(self.path).expanduser()
            db_path.parent.mkdir(parents=True, exist_ok=True)
            self.path = str(db_path)
        self._conn = sqlite3.connect(self.path, check_same_thread=False)
        if self.path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(
            "CREATE TABLE IF NOT EXISTS artifacts ("
            "filename TEXT PRIMARY KEY, data BLOB NOT NULL, size INTEGER NOT NULL, "
            "timestamp INTEGER NOT NULL, sha256 TEXT NOT NULL)"
        )
        self._conn.commit()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise sqlite3.ProgrammingError("SQLite artifact store is closed")
        return self._conn

    def _get(self, name: str) -> Optional[bytes]:
        with self._lock:
            row = self.conn.execute(
                "SELECT data FROM artifacts WHERE filename = ?", (name,)
            ).fetchone()
        return bytes(row[0]) if row else None

    def _put(self, info: ArtifactInfo, data: bytes) -> None:
        with self._lock:
            self.conn.execute(
                "INSERT OR REPLACE INTO artifacts (filename, data, size, timestamp, sha256) "
                "VALUES (?, ?, ?, ?, ?)",
                (info.name, sqlite3.Binary(data), info.size, info.timestamp, info.sha256),
            )
            self.conn.commit()

    def _info(self, name: str) -> Optional[ArtifactInfo]:
        with self._lock:
            row = self.conn.execute(
                "SELECT filename, size, timestamp, sha256 FROM artifacts WHERE filename = ?",
                (name,),
            ).fetchone()
        return ArtifactInfo(*row) if row else None

    def _list_info(self) -> List[ArtifactInfo]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT filename, size, timestamp, sha256 FROM artifacts"
            ).fetchall()
        return [ArtifactInfo(*row) for row in rows]

    def _delete(self, name: str) -> bool:
        with self._lock:
            cursor = self.conn.execute("DELETE FROM artifacts WHERE filename = ?", (name,))
            self.conn.commit()
        return cursor.rowcount > 0

    def _clear(self) -> None:
        with self._lock:
            self.conn.execute("DELETE FROM artifacts")
            self.conn.commit()

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            self._initialized = False


# ============================================================================
# FILESYSTEM BACKEND
# ============================================================================

class FileSystemArtifactStore(ArtifactStore):
    """
    Durable store keeping one blob file per artifact plus an ``index.json``.

    Blobs are named by content digest, so re-putting identical bytes
    reuses the same file.
    """

    INDEX_FILE = "index.json"

    def __init__(self, root: Union[str, Path]) -> None:
        super().__init__()
        self.root = Path(root).expanduser()
        self._index: Dict[str, ArtifactInfo] = {}
        self._lock = threading.Lock()

    @property
    def blob_dir(self) -> Path:
        return self.root / "blobs"

    def _setup(self) -> None:
        self.blob_dir.mkdir(parents=True, exist_ok=True)
        index_path = self.root / self.INDEX_FILE
        if index_path.exists():
            with open(index_path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            self._index = {name: ArtifactInfo(**entry) for name, entry in raw.items()}
        else:
            self._index = {}

    def _write_index(self, index: Dict[str, ArtifactInfo]) -> None:
        index_path = self.root / self.INDEX_FILE
        tmp_path = index_path.with_suffix(".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump({name: info.to_dict() for name, info in index.items()}, f, indent=2)
        os.replace(tmp_path, index_path)
        self._index = index

    def _blob_path(self, info: ArtifactInfo) -> Path:
        return self.blob_dir / info.sha256

    def _write_blob(self, info: ArtifactInfo, data: bytes) -> None:
        blob = self._blob_path(info)
        if blob.exists() and _digest(blob.read_bytes()) == info.sha256:
            return
        # Blob names are digests; a partial file must never sit under one.
        tmp_path = blob.with_name(f"{blob.name}.{os.getpid()}.tmp")
        try:
            tmp_path.write_bytes(data)
            os.replace(tmp_path, blob)
        finally:
            tmp_path.unlink(missing_ok=True)

    def _get(self, name: str) -> Optional[bytes]:
        with self._lock:
            info = self._index.get(name)
            if info is None:
                return None
            return self._blob_path(info).read_bytes()

    def _put(self, info: ArtifactInfo, data: bytes) -> None:
        with self._lock:
            self._write_blob(info, data)
            previous = self._index.get(info.name)
            self._write_index({**self._index, info.name: info})
            if previous is not None and previous.sha256 != info.sha256:
                self._drop_blob_if_unused(previous)

    def _info(self, name: str) -> Optional[ArtifactInfo]:
        with self._lock:
            return self._index.get(name)

    def _list_info(self) -> List[ArtifactInfo]:
        with self._lock:
            return list(self._index.values())

    def _delete(self, name: str) -> bool:
        with self._lock:
            info = self._index.get(name)
            if info is None:
                return False
            self._write_index({key: value for key, value in self._index.items() if key != name})
            self._drop_blob_if_unused(info)
            return True

    def _clear(self) -> None:
        with self._lock:
            stale = list(self._index.values())
            self._write_index({})
            for info in stale:
                self._blob_path(info).unlink(missing_ok=True)

    def _drop_blob_if_unused(self, info: ArtifactInfo) -> None:
        if all(other.sha256 != info.sha256 for other in self._index.values()):
            self._blob_path(info).unlink(missing_ok=True)


def create_artifact_store(kind: str, location: Optional[Union[str, Path]] = None) -> ArtifactStore:
    """
    Construct an artifact store by backend name.

    Args:
        kind: 'memory', 'sqlite' or 'filesystem'
        location: Database file (sqlite) or root directory (filesystem)
    """
    if kind == "memory":
        return InMemoryArtifactStore()
    if kind == "sqlite":
        return SQLiteArtifactStore(location or "~/.cache/pocketmt/artifacts.sqlite3")
    if kind == "filesystem":
        return FileSystemArtifactStore(location or "~/.cache/pocketmt/artifacts")
    raise ValueError(f"Unknown artifact store backend '{kind}'. Expected memory, sqlite or filesystem")
