import json
import os
from datetime import datetime, timezone

import pytest

from bacli.errors import MetadataError, RestoreError
from bacli.metadata import BackupRecord, load_metadata, metadata_path, write_metadata


def _record(**overrides):
    values = dict(
        engine="postgres",
        database="db1",
        file_path="/backups/postgres/db1/x.sql",
        status="success",
        method="plain",
        started_at=datetime(2025, 5, 1, 10, 0, tzinfo=timezone.utc),
        completed_at=datetime(2025, 5, 1, 10, 1, tzinfo=timezone.utc),
        duration_ms=60000,
        size_bytes=1234,
    )
    values.update(overrides)
    return BackupRecord(**values)


def test_write_then_load(tmp_path):
    directory = tmp_path / "postgres" / "db1"

    path = write_metadata(str(directory), _record())

    assert path == str(directory / "metadata.json")
    loaded = load_metadata(path)
    assert loaded == _record()


def test_json_shape(tmp_path):
    path = write_metadata(str(tmp_path), _record(status="failed", file_path="none", error="boom", size_bytes=0))

    with open(path) as f:
        raw = f.read()
    data = json.loads(raw)

    assert raw.startswith("{\n  ")
    assert data["file_path"] == "none"
    assert data["error"] == "boom"
    assert data["duration_ms"] == 60000
    assert set(data) >= {"engine", "database", "file_path", "status", "started_at", "completed_at",
                         "duration_ms", "size_bytes"}


def test_success_record_omits_error(tmp_path):
    path = write_metadata(str(tmp_path), _record())
    with open(path) as f:
        assert "error" not in json.load(f)


def test_write_overwrites_previous_record(tmp_path):
    write_metadata(str(tmp_path), _record(size_bytes=1))
    write_metadata(str(tmp_path), _record(size_bytes=2))

    assert os.listdir(tmp_path) == ["metadata.json"]
    assert load_metadata(str(tmp_path / "metadata.json")).size_bytes == 2


def test_load_missing_file(tmp_path):
    with pytest.raises(MetadataError):
        load_metadata(str(tmp_path / "metadata.json"))


@pytest.mark.parametrize("content", ["{not json", "[]", '{"engine": "postgres"}'])
def test_load_invalid_content(tmp_path, content):
    path = tmp_path / "metadata.json"
    path.write_text(content)

    with pytest.raises(RestoreError):
        load_metadata(str(path))


def test_metadata_path():
    assert metadata_path("backups", "mongodb", "testdb1") == os.path.join("backups", "mongodb", "testdb1", "metadata.json")
