import os

import zstandard

from .errors import CompressionError
from .logger import fields, get_logger

logger = get_logger(__name__)

SUFFIX = ".zst"


def compress_file(path: str, level: int = 3) -> str:
    """
    Streams path through zstd into path + ".zst" and removes the original.
    On any failure the original is left untouched and no output is kept.
    """
    output_path = path + SUFFIX
    partial_path = output_path + ".partial"
    cctx = zstandard.ZstdCompressor(level=level)
    try:
        with open(path, "rb") as src, open(partial_path, "wb") as dst:
            cctx.copy_stream(src, dst)
        os.replace(partial_path, output_path)
    except (OSError, zstandard.ZstdError) as e:
        if os.path.exists(partial_path):
            os.remove(partial_path)
        raise CompressionError(f"Failed to compress {path}: {e}") from e

    try:
        os.remove(path)
    except OSError as e:
        raise CompressionError(f"Compressed {path} but could not remove the original: {e}") from e

    logger.debug("artifact compressed", extra=fields(source=path, path=output_path))
    return output_path


def decompress_file(path: str, destination: str = None) -> str:
    """
    Streams a .zst file back to its uncompressed form. The compressed source
    is kept; the caller owns the returned file.
    """
    if destination is None:
        if not path.endswith(SUFFIX):
            raise CompressionError(f"Cannot derive output name: {path} has no {SUFFIX} suffix")
        destination = path[: -len(SUFFIX)]

    try:
        src = open(path, "rb")
    except OSError as e:
        raise CompressionError(f"Failed to open {path}: {e}") from e

    dctx = zstandard.ZstdDecompressor()
    with src:
        try:
            with open(destination, "wb") as dst:
                dctx.copy_stream(src, dst)
        except (OSError, zstandard.ZstdError) as e:
            if os.path.exists(destination):
                os.remove(destination)
            raise CompressionError(f"Failed to decompress {path}: {e}") from e

    logger.debug("artifact decompressed", extra=fields(source=path, path=destination))
    return destination
