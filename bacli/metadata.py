import os
import tempfile
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ValidationError

from .errors import MetadataError
from .logger import get_logger

logger = get_logger(__name__)

METADATA_FILENAME = "metadata.json"

STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"

# Written as file_path when a run produced no artifact
NO_FILE = "none"


class BackupRecord(BaseModel):
    """Outcome of the latest backup run of one (engine, database)."""

    engine: str
    database: str
    file_path: str = NO_FILE
    status: str
    error: Optional[str] = None
    error_kind: Optional[str] = None
    error_summary: Optional[str] = None
    method: Optional[str] = None
    compressed: bool = False
    started_at: datetime
    completed_at: datetime
    duration_ms: int = 0
    size_bytes: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == STATUS_SUCCESS


def metadata_path(output_root: str, engine: str, database: str) -> str:
    return os.path.join(output_root, engine, database, METADATA_FILENAME)


def write_metadata(directory: str, record: BackupRecord) -> str:
    """
    Writes record as indented JSON to <directory>/metadata.json, replacing any
    previous record. The file is swapped in atomically.
    """
    os.makedirs(directory, exist_ok=True)
    path = os.path.join(directory, METADATA_FILENAME)

    fd, tmp_path = tempfile.mkstemp(prefix=".metadata-", suffix=".json", dir=directory)
    try:
        with os.fdopen(fd, "w") as f:
            f.write(record.model_dump_json(indent=2, exclude_none=True))
            f.write("\n")
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise

    logger.debug(f"Metadata written to {path}")
    return path


def load_metadata(path: str) -> BackupRecord:
    try:
        with open(path, "rb") as f:
            content = f.read()
    except OSError as e:
        raise MetadataError(f"Couldn't open metadata file {path}: {e}") from e

    try:
        return BackupRecord.model_validate_json(content)
    except (ValidationError, ValueError) as e:
        raise MetadataError(f"Invalid metadata in {path}: {e}") from e
