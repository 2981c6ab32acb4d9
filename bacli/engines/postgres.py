from typing import List

from ..errors import UnsupportedRestoreMethodError
from .base import DatabaseEngine


class Postgres(DatabaseEngine):
    """PostgreSQL instance dumped with pg_dump, restored with pg_restore or psql."""

    engine = "postgres"
    # pg_dump -F value -> artifact extension; None means a directory artifact
    methods = {
        "plain": "sql",
        "custom": "dump",
        "tar": "tar",
        "directory": None,
    }
    default_tools = {"pg_dump": "pg_dump", "pg_restore": "pg_restore", "psql": "psql"}

    def tool_env(self):
        env = super().tool_env()
        # Keeps the password out of the process listing
        env["PGPASSWORD"] = self.password()
        return env

    def _connection_args(self) -> List[str]:
        s = self.settings
        return ["-h", s.host, "-p", str(s.port), "-U", s.username or "", "-d", s.database]

    def backup_command(self, artifact: str) -> List[str]:
        return [self.tool("pg_dump"), *self._connection_args(), "-F", self.method, "-f", artifact]

    def restore_command(self, artifact: str) -> List[str]:
        if self.method == "plain":
            return [self.tool("psql"), *self._connection_args(), "-v", "ON_ERROR_STOP=1", "-f", artifact]
        if self.method in ("custom", "tar", "directory"):
            return [self.tool("pg_restore"), *self._connection_args(), "-c", "--if-exists", "-F", self.method, artifact]
        raise UnsupportedRestoreMethodError(f"Unsupported postgres restore method '{self.method}'")
