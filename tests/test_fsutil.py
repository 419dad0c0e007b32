"""Tests for deployer.fsutil — locks, atomic writes and locked JSON documents."""

import json
import stat
import threading
from pathlib import Path

import pytest

from deployer.errors import StorageError
from deployer.fsutil import atomic_write_text, locked_json, read_json, write_json


class TestAtomicWrite:
    def test_writes_with_mode(self, tmp_path: Path):
        path = tmp_path / "sub" / "file.txt"
        atomic_write_text(path, "hello", mode=0o600)
        assert path.read_text() == "hello"
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_replaces_existing(self, tmp_path: Path):
        path = tmp_path / "file.txt"
        path.write_text("old")
        atomic_write_text(path, "new")
        assert path.read_text() == "new"

    def test_no_temp_files_left(self, tmp_path: Path):
        atomic_write_text(tmp_path / "file.txt", "x")
        assert [p.name for p in tmp_path.iterdir()] == ["file.txt"]

    def test_unwritable_directory(self, tmp_path: Path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        with pytest.raises(StorageError):
            atomic_write_text(blocker / "file.txt", "x")


class TestJson:
    def test_read_missing_returns_default(self, tmp_path: Path):
        assert read_json(tmp_path / "missing.json", default={"a": 1}) == {"a": 1}

    def test_roundtrip(self, tmp_path: Path):
        write_json(tmp_path / "doc.json", {"b": 2, "a": 1})
        assert read_json(tmp_path / "doc.json") == {"a": 1, "b": 2}

    def test_corrupt_json(self, tmp_path: Path):
        path = tmp_path / "doc.json"
        path.write_text("{not json")
        with pytest.raises(StorageError, match="Corrupt"):
            read_json(path)


class TestLockedJson:
    def test_creates_from_default(self, tmp_path: Path):
        path = tmp_path / "doc.json"
        default = {"items": []}
        with locked_json(path, default=default) as doc:
            doc["items"].append(1)
        assert json.loads(path.read_text()) == {"items": [1]}
        # default itself is never mutated
        assert default == {"items": []}

    def test_not_written_when_block_raises(self, tmp_path: Path):
        path = tmp_path / "doc.json"
        write_json(path, {"n": 1})
        with pytest.raises(RuntimeError):
            with locked_json(path) as doc:
                doc["n"] = 2
                raise RuntimeError("boom")
        assert read_json(path) == {"n": 1}

    def test_concurrent_increments_are_not_lost(self, tmp_path: Path):
        path = tmp_path / "counter.json"

        def bump():
            for _ in range(20):
                with locked_json(path, default={"n": 0}) as doc:
                    doc["n"] += 1

        threads = [threading.Thread(target=bump) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert read_json(path) == {"n": 160}
