"""Tests for atomic JSON writes."""

import json
from unittest.mock import patch

import pytest

from coding_worker.utils.atomic_io import atomic_write_json, read_json


class TestAtomicWriteJson:
    def test_writes_and_replaces(self, tmp_path):
        target = tmp_path / "task-1.json"

        atomic_write_json(target, {"taskId": "task-1"})
        atomic_write_json(target, {"taskId": "task-1", "success": True})

        assert json.loads(target.read_text()) == {"taskId": "task-1", "success": True}
        assert [p.name for p in tmp_path.iterdir()] == ["task-1.json"]

    def test_failure_leaves_no_partial_file(self, tmp_path):
        target = tmp_path / "task-1.json"
        atomic_write_json(target, {"v": 1})

        with patch("coding_worker.utils.atomic_io.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                atomic_write_json(target, {"v": 2})

        assert json.loads(target.read_text()) == {"v": 1}
        assert [p.name for p in tmp_path.iterdir()] == ["task-1.json"]

    def test_unserializable_data_raises_and_cleans_up(self, tmp_path):
        with pytest.raises(TypeError):
            atomic_write_json(tmp_path / "task-1.json", {"v": object()})
        assert list(tmp_path.iterdir()) == []


class TestReadJson:
    def test_missing_file(self, tmp_path):
        assert read_json(tmp_path / "missing.json") is None

    def test_reads_content(self, tmp_path):
        (tmp_path / "r.json").write_text('{"a": 1}')
        assert read_json(tmp_path / "r.json") == {"a": 1}
