import os
import tempfile
from typing import List

import yaml

from ..errors import UnsupportedRestoreMethodError
from .base import DatabaseEngine

METHOD_DIR = "directory"
METHOD_DIR_GZIP = "directory-gzip"
METHOD_ARCHIVE = "archive"
METHOD_ARCHIVE_GZIP = "archive-gzip"


class MongoDB(DatabaseEngine):
    """MongoDB instance dumped with mongodump, restored with mongorestore."""

    engine = "mongodb"
    methods = {
        METHOD_DIR: None,
        METHOD_DIR_GZIP: None,
        METHOD_ARCHIVE: "archive",
        METHOD_ARCHIVE_GZIP: "archive.gz",
    }
    default_tools = {"mongodump": "mongodump", "mongorestore": "mongorestore"}

    def _base_args(self) -> List[str]:
        s = self.settings
        return [
            f"--host={s.host}",
            f"--port={s.port}",
            f"--username={s.username or ''}",
            "--authenticationDatabase=admin",
            "--quiet",
        ]

    def _target_args(self, artifact: str, dump: bool) -> List[str]:
        gzip = ["--gzip"] if self.method in (METHOD_DIR_GZIP, METHOD_ARCHIVE_GZIP) else []
        if self.method in (METHOD_ARCHIVE, METHOD_ARCHIVE_GZIP):
            return [f"--archive={artifact}", *gzip]
        if dump:
            return [f"--out={artifact}", *gzip]
        return [f"--dir={artifact}", *gzip]

    def backup_command(self, artifact: str) -> List[str]:
        return [
            self.tool("mongodump"),
            *self._base_args(),
            f"--db={self.name}",
            *self._target_args(artifact, dump=True),
        ]

    def restore_command(self, artifact: str) -> List[str]:
        if self.method not in self.methods:
            raise UnsupportedRestoreMethodError(f"Unsupported mongodb restore method '{self.method}'")
        return [
            self.tool("mongorestore"),
            *self._base_args(),
            f"--nsInclude={self.name}.*",
            "--drop",
            *self._target_args(artifact, dump=False),
        ]

    def _run(self, cmd: List[str]):
        # The database tools read the password from a --config YAML file,
        # so it never shows up in argv.
        fd, config_path = tempfile.mkstemp(prefix="bacli-mongo-", suffix=".yaml")
        try:
            with os.fdopen(fd, "w") as f:
                yaml.safe_dump({"password": self.password()}, f)
            os.chmod(config_path, 0o600)
            self.runner([cmd[0], f"--config={config_path}", *cmd[1:]], env=self.tool_env(), timeout=self.timeout_seconds)
        finally:
            os.remove(config_path)
