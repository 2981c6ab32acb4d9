class BacliError(Exception):
    """Base class for every error raised by bacli."""

    kind = "io"


class OperationTimeout(Exception):
    """Marker for failures caused by an external tool exceeding its deadline."""


class ConfigError(BacliError):
    kind = "config"


class CredentialError(BacliError):
    kind = "credential"


class ToolExecutionError(BacliError):
    """An external tool exited non-zero or could not be started."""

    kind = "tool_failed"

    def __init__(self, cmd: str, returncode: int = None, stderr: str = ""):
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = stderr or ""
        if returncode is None:
            message = f"{cmd} could not be started: {self.stderr.strip()}"
        else:
            message = f"{cmd} exited with code {returncode}"
            if self.stderr.strip():
                message += f": {self.stderr.strip()}"
        super().__init__(message)


class ToolTimeoutError(BacliError, OperationTimeout):
    kind = "timeout"

    def __init__(self, cmd: str, timeout: float):
        self.cmd = cmd
        self.timeout = timeout
        super().__init__(f"{cmd} did not finish within {timeout:g}s")


class BackupError(BacliError):
    kind = "tool_failed"


class BackupTimeoutError(BackupError, OperationTimeout):
    kind = "timeout"


class UnsupportedBackupMethodError(BackupError):
    kind = "config"


class RestoreError(BacliError):
    kind = "tool_failed"


class RestoreFailedError(RestoreError):
    pass


class RestoreTimeoutError(RestoreError, OperationTimeout):
    kind = "timeout"


class UnsupportedRestoreMethodError(RestoreError):
    kind = "config"


class MetadataError(RestoreError):
    kind = "io"


class CompressionError(BacliError):
    kind = "compression"


def error_kind(exc: BaseException) -> str:
    """Classify an exception for the ``error_kind`` field of a metadata record."""
    if isinstance(exc, OperationTimeout):
        return "timeout"
    if isinstance(exc, BacliError):
        return exc.kind
    return "io"
