"""
Tests for the artifact stores.

Every backend must behave identically: lazy single initialization,
last-write-wins puts, metadata listing, deletion and error wrapping.
"""

import hashlib
import json
from pathlib import Path
from unittest.mock import patch

import pytest

from pocketmt.artifact_store import (
    ArtifactStore,
    FileSystemArtifactStore,
    InMemoryArtifactStore,
    SQLiteArtifactStore,
    create_artifact_store,
)
from pocketmt.errors import ArtifactStorageError


@pytest.fixture(params=["memory", "sqlite", "filesystem"])
def store(request, tmp_path) -> ArtifactStore:
    if request.param == "memory":
        return InMemoryArtifactStore()
    if request.param == "sqlite":
        return SQLiteArtifactStore(tmp_path / "cache" / "artifacts.sqlite3")
    return FileSystemArtifactStore(tmp_path / "blobs-root")


class TestArtifactStoreContract:
    """Behaviour shared by all backends."""

    def test_get_missing_returns_none(self, store) -> None:
        assert store.get("model.onnx") is None
        assert store.info("model.onnx") is None
        assert not store.has("model.onnx")

    def test_put_then_get(self, store) -> None:
        info = store.put("vocab.json", b'{"a": 0}')
        assert store.get("vocab.json") == b'{"a": 0}'
        assert info.name == "vocab.json"
        assert info.size == 8
        assert store.info("vocab.json") == info

    def test_put_is_last_write_wins(self, store) -> None:
        store.put("config.json", b"old")
        store.put("config.json", b"newer")
        assert store.get("config.json") == b"newer"
        assert store.info("config.json").size == 5
        assert len(store.list_info()) == 1

    def test_repeated_put_is_idempotent(self, store) -> None:
        store.put("model.onnx", b"\x00\x01")
        store.put("model.onnx", b"\x00\x01")
        assert [info.name for info in store.list_info()] == ["model.onnx"]

    def test_list_info_sorted_by_name(self, store) -> None:
        store.put("vocab.json", b"v")
        store.put("config.json", b"c")
        store.put("model.onnx", b"m")
        assert [info.name for info in store.list_info()] == ["config.json", "model.onnx", "vocab.json"]

    def test_delete(self, store) -> None:
        store.put("a", b"1")
        assert store.delete("a") is True
        assert store.delete("a") is False
        assert store.get("a") is None

    def test_clear(self, store) -> None:
        store.put("a", b"1")
        store.put("b", b"2")
        store.clear()
        assert store.list_info() == []

    def test_verify(self, store) -> None:
        store.put("a", b"payload")
        assert store.verify("a") is True
        assert store.verify("missing") is False

    def test_non_bytes_rejected(self, store) -> None:
        with pytest.raises(TypeError, match="must be bytes"):
            store.put("a", "text")

    def test_lazy_single_initialization(self, store) -> None:
        assert not store.initialized
        with patch.object(type(store), "_setup", wraps=store._setup) as setup:
            store.has("x")
            store.put("x", b"1")
            store.initialize()
        assert setup.call_count == 1
        assert store.initialized


class TestSQLiteArtifactStore:
    """SQLite-specific behaviour."""

    def test_persists_across_instances(self, tmp_path) -> None:
        path = tmp_path / "artifacts.sqlite3"
        first = SQLiteArtifactStore(path)
        first.put("model.onnx", b"weights")
        first.close()

        second = SQLiteArtifactStore(path)
        assert second.get("model.onnx") == b"weights"
        second.close()

    def test_in_memory_database(self) -> None:
        store = SQLiteArtifactStore(":memory:")
        store.put("a", b"1")
        assert store.get("a") == b"1"

    def test_initialize_failure_is_wrapped(self, tmp_path) -> None:
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("x")
        store = SQLiteArtifactStore(blocker / "artifacts.sqlite3")
        with pytest.raises(ArtifactStorageError, match="initialize"):
            store.get("a")


class TestFileSystemArtifactStore:
    """Filesystem-specific behaviour."""

    def test_index_and_blobs_on_disk(self, tmp_path) -> None:
        store = FileSystemArtifactStore(tmp_path)
        info = store.put("vocab.json", b"data")
        index = json.loads((tmp_path / "index.json").read_text())
        assert index["vocab.json"]["sha256"] == info.sha256
        assert (tmp_path / "blobs" / info.sha256).read_bytes() == b"data"

    def test_replaced_blob_is_removed(self, tmp_path) -> None:
        store = FileSystemArtifactStore(tmp_path)
        old = store.put("a", b"old")
        store.put("a", b"new")
        assert not (tmp_path / "blobs" / old.sha256).exists()

    def test_shared_blob_kept_while_referenced(self, tmp_path) -> None:
        store = FileSystemArtifactStore(tmp_path)
        info = store.put("a", b"same")
        store.put("b", b"same")
        store.delete("a")
        assert store.get("b") == b"same"
        assert (tmp_path / "blobs" / info.sha256).exists()

    def test_reload_from_index(self, tmp_path) -> None:
        FileSystemArtifactStore(tmp_path).put("a", b"1")
        assert FileSystemArtifactStore(tmp_path).get("a") == b"1"

    def test_missing_blob_is_wrapped(self, tmp_path) -> None:
        store = FileSystemArtifactStore(tmp_path)
        info = store.put("a", b"1")
        (tmp_path / "blobs" / info.sha256).unlink()
        with pytest.raises(ArtifactStorageError, match="get 'a'"):
            store.get("a")

    def test_failed_blob_write_leaves_no_partial_blob(self, tmp_path) -> None:
        store = FileSystemArtifactStore(tmp_path)
        payload = bytes(range(250)) * 4

        def half_write(path, data):
            with open(path, "wb") as f:
                f.write(data[: len(data) // 2])
            raise OSError(28, "No space left on device")

        with patch.object(Path, "write_bytes", half_write):
            with pytest.raises(ArtifactStorageError, match="put 'model.onnx'"):
                store.put("model.onnx", payload)
        assert store.info("model.onnx") is None
        assert list((tmp_path / "blobs").iterdir()) == []

        store.put("model.onnx", payload)
        assert store.get("model.onnx") == payload
        assert store.verify("model.onnx")

    def test_corrupt_blob_under_digest_is_rewritten(self, tmp_path) -> None:
        store = FileSystemArtifactStore(tmp_path)
        payload = b"weights" * 100
        store.initialize()
        (tmp_path / "blobs" / hashlib.sha256(payload).hexdigest()).write_bytes(payload[:10])

        store.put("model.onnx", payload)

        assert store.get("model.onnx") == payload

    def test_failed_index_write_keeps_previous_entry(self, tmp_path) -> None:
        store = FileSystemArtifactStore(tmp_path)
        store.put("a", b"old")
        with patch("pocketmt.artifact_store.json.dump", side_effect=OSError("disk full")):
            with pytest.raises(ArtifactStorageError):
                store.put("a", b"new")
        assert store.get("a") == b"old"
        assert FileSystemArtifactStore(tmp_path).get("a") == b"old"


class TestCreateArtifactStore:
    """Tests for the backend factory."""

    def test_known_backends(self, tmp_path) -> None:
        assert isinstance(create_artifact_store("memory"), InMemoryArtifactStore)
        assert isinstance(create_artifact_store("sqlite", tmp_path / "a.db"), SQLiteArtifactStore)
        assert isinstance(create_artifact_store("filesystem", tmp_path), FileSystemArtifactStore)

    def test_unknown_backend(self) -> None:
        with pytest.raises(ValueError, match="Unknown artifact store backend"):
            create_artifact_store("redis")
