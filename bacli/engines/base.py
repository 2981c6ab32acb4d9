import abc
import os
import subprocess
import time
from datetime import datetime
from typing import Dict, List, Optional

from ..config import EngineInstanceConfig
from ..errors import (
    BackupError,
    BackupTimeoutError,
    RestoreError,
    RestoreFailedError,
    RestoreTimeoutError,
    ToolExecutionError,
    ToolTimeoutError,
    UnsupportedBackupMethodError,
)
from ..logger import fields, get_logger
from ..utils import remove_path


def run_tool(cmd: List[str], env: Optional[Dict[str, str]] = None, timeout: float = None) -> str:
    """
    Runs an external tool to completion and returns its stderr.
    The child is killed when the deadline passes.
    """
    try:
        result = subprocess.run(
            cmd,
            env=env,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        raise ToolTimeoutError(cmd[0], timeout) from e
    except OSError as e:
        raise ToolExecutionError(cmd[0], None, str(e)) from e

    if result.returncode != 0:
        raise ToolExecutionError(cmd[0], result.returncode, result.stderr)
    return result.stderr


class DatabaseEngine(abc.ABC):
    """
    One configured database instance of a given engine.
    Subclasses supply the native dump/restore invocations; path layout,
    deadlines and logging are shared.
    """

    engine: str = ""
    methods: Dict[str, Optional[str]] = {}
    default_tools: Dict[str, str] = {}

    def __init__(self, settings: EngineInstanceConfig, runner=run_tool, logger=None):
        self.settings = settings
        self.runner = runner
        self.log = logger or get_logger(f"bacli.engines.{self.engine}")

    @property
    def name(self) -> str:
        return self.settings.database

    @property
    def method(self) -> str:
        return self.settings.method

    @property
    def path(self) -> str:
        """Directory holding this engine's artifacts."""
        return os.path.join(self.settings.output_directory, self.engine)

    @property
    def directory(self) -> str:
        """Directory holding this instance's artifacts and metadata."""
        return os.path.join(self.path, self.name)

    @property
    def timeout_seconds(self) -> float:
        return self.settings.timeout.total_seconds()

    def tool(self, name: str) -> str:
        return self.settings.tools.get(name) or self.default_tools.get(name, name)

    def tool_env(self) -> Dict[str, str]:
        return os.environ.copy()

    def password(self) -> str:
        secret = self.settings.password
        return secret.get_secret_value() if secret is not None else ""

    def artifact_path(self, now: datetime = None) -> str:
        if self.method not in self.methods:
            raise UnsupportedBackupMethodError(f"Unsupported {self.engine} backup method '{self.method}'")
        timestamp = (now or datetime.now()).strftime(self.settings.timestamp_format)
        filename = f"{timestamp}-{self.name}"
        ext = self.methods[self.method]
        if ext:
            filename += f".{ext}"
        return os.path.join(self.directory, filename)

    def is_directory_artifact(self) -> bool:
        return self.methods.get(self.method) is None

    @abc.abstractmethod
    def backup_command(self, artifact: str) -> List[str]:
        pass

    @abc.abstractmethod
    def restore_command(self, artifact: str) -> List[str]:
        pass

    def _run(self, cmd: List[str]):
        self.runner(cmd, env=self.tool_env(), timeout=self.timeout_seconds)

    def _log_fields(self, **extra):
        return fields(database=self.name, engine=self.engine, method=self.method, **extra)

    def backup(self) -> str:
        artifact = self.artifact_path()
        try:
            os.makedirs(os.path.dirname(artifact), exist_ok=True)
        except OSError as e:
            raise BackupError(f"Cannot create backup directory {os.path.dirname(artifact)}: {e}") from e

        self.log.info("backup started", extra=self._log_fields(path=artifact))
        start = time.monotonic()
        try:
            self._run(self.backup_command(artifact))
        except ToolTimeoutError as e:
            remove_path(artifact)
            self.log.error("backup timed out", extra=self._log_fields(path=artifact, error=str(e)))
            raise BackupTimeoutError(f"{self.engine} backup of '{self.name}' timed out: {e}") from e
        except ToolExecutionError as e:
            remove_path(artifact)
            self.log.error("backup failed", extra=self._log_fields(path=artifact, error=str(e)))
            raise BackupError(f"{self.engine} backup of '{self.name}' failed: {e}") from e

        duration = time.monotonic() - start
        self.log.info("backup completed", extra=self._log_fields(path=artifact, duration=f"{duration:.2f}s"))
        return artifact

    def restore(self, artifact: str):
        if not os.path.exists(artifact):
            raise RestoreError(f"Backup source '{artifact}' not found")
        cmd = self.restore_command(artifact)

        self.log.info("restore started", extra=self._log_fields(source=artifact))
        start = time.monotonic()
        try:
            self._run(cmd)
        except ToolTimeoutError as e:
            self.log.error("restore timed out", extra=self._log_fields(source=artifact, error=str(e)))
            raise RestoreTimeoutError(f"{self.engine} restore of '{self.name}' timed out: {e}") from e
        except ToolExecutionError as e:
            self.log.error("restore failed", extra=self._log_fields(source=artifact, error=str(e)))
            raise RestoreFailedError(f"{self.engine} restore of '{self.name}' failed ({self.method}): {e}") from e

        duration = time.monotonic() - start
        self.log.info("restore completed", extra=self._log_fields(source=artifact, duration=f"{duration:.2f}s"))

    def __repr__(self):
        return f"<{type(self).__name__} {self.engine}/{self.name} method={self.method}>"
