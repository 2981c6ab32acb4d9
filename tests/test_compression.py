import os

import pytest

from bacli import compression
from bacli.compression import compress_file, decompress_file
from bacli.errors import CompressionError


@pytest.mark.parametrize("payload", [
    b"",
    b"SELECT 1;\n",
    bytes(range(256)) * 4096,
    os.urandom(200_000),
])
def test_round_trip(tmp_path, payload):
    source = tmp_path / "2025-01-01-db1.sql"
    source.write_bytes(payload)

    compressed = compress_file(str(source))

    assert compressed == str(source) + ".zst"
    assert not source.exists()
    restored = decompress_file(compressed)
    assert restored == str(source)
    assert source.read_bytes() == payload
    # the compressed source belongs to the caller and stays in place
    assert os.path.exists(compressed)


def test_decompress_to_explicit_destination(tmp_path):
    source = tmp_path / "a.dump"
    source.write_bytes(b"data" * 100)
    compressed = compress_file(str(source))

    out = decompress_file(compressed, str(tmp_path / "scratch.dump"))

    assert out == str(tmp_path / "scratch.dump")
    assert (tmp_path / "scratch.dump").read_bytes() == b"data" * 100


def test_compress_missing_file(tmp_path):
    with pytest.raises(CompressionError):
        compress_file(str(tmp_path / "missing.sql"))
    assert os.listdir(tmp_path) == []


def test_failed_compression_leaves_original(tmp_path, monkeypatch):
    source = tmp_path / "db1.sql"
    source.write_bytes(b"important" * 1000)

    class BrokenCompressor:
        def __init__(self, level=3):
            pass

        def copy_stream(self, src, dst):
            dst.write(b"partial")
            raise OSError("No space left on device")

    monkeypatch.setattr(compression.zstandard, "ZstdCompressor", BrokenCompressor)

    with pytest.raises(CompressionError):
        compress_file(str(source))

    assert source.read_bytes() == b"important" * 1000
    assert sorted(os.listdir(tmp_path)) == ["db1.sql"]


def test_decompress_corrupt_input(tmp_path):
    bogus = tmp_path / "db1.sql.zst"
    bogus.write_bytes(b"not zstd at all")

    with pytest.raises(CompressionError):
        decompress_file(str(bogus))

    assert not (tmp_path / "db1.sql").exists()


def test_decompress_requires_suffix(tmp_path):
    path = tmp_path / "db1.sql"
    path.write_bytes(b"x")
    with pytest.raises(CompressionError):
        decompress_file(str(path))
