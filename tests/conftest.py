import os
import threading

import pytest
from hvac.exceptions import Forbidden, InvalidPath

from bacli.config import Config
from bacli.errors import ToolExecutionError, ToolTimeoutError
from bacli.vault import VaultBroker, VaultSettings

ROLE_BASE = "auth/approle/role"


class FakeVaultClient:
    """Stands in for hvac.Client: serves reads from a dict and records every call."""

    def __init__(self, url=None, namespace=None, verify=True, secrets=None, fail_on=None):
        self.url = url
        self.namespace = namespace
        self.verify = verify
        self.token = None
        self.secrets = secrets if secrets is not None else {}
        self.fail_on = set(fail_on or ())
        self.calls = []
        self._lock = threading.Lock()

    def _record(self, op, path, data=None):
        with self._lock:
            self.calls.append((op, path, data))
        if path in self.fail_on:
            raise Forbidden(f"permission denied on {path}")

    def read(self, path):
        self._record("read", path)
        if path not in self.secrets:
            raise InvalidPath(f"no handler for route {path}")
        return self.secrets[path]

    def write_data(self, path, data=None):
        self._record("write", path, data)
        if path.endswith("/secret-id"):
            return {"data": {"secret_id": "secret-123", "secret_id_accessor": "acc"}}
        if path.endswith("/login"):
            return {"auth": {"client_token": "s.session-token", "lease_duration": 3600}}
        raise InvalidPath(path)


def creds_response(username="v-user", password="v-pass", lease_duration=3600, lease_id="database/creds/x/1"):
    return {
        "lease_id": lease_id,
        "lease_duration": lease_duration,
        "renewable": True,
        "data": {"username": username, "password": password},
    }


class FakeRunner:
    """
    Replaces run_tool. Dump tools produce a small artifact at the path named in
    their arguments; databases listed in fail/timeout raise the matching error.
    """

    def __init__(self, fail=(), timeout=(), content=b"-- dump --\n"):
        self.fail = set(fail)
        self.timeout = set(timeout)
        self.content = content
        self.calls = []
        self._lock = threading.Lock()

    def __call__(self, cmd, env=None, timeout=None):
        with self._lock:
            self.calls.append((list(cmd), dict(env or {}), timeout))

        database = _database_arg(cmd)
        if database in self.timeout:
            raise ToolTimeoutError(cmd[0], timeout or 0)
        if database in self.fail:
            raise ToolExecutionError(cmd[0], 1, "FATAL: password authentication failed for user")

        target, is_dir = _output_arg(cmd)
        if target:
            if is_dir:
                os.makedirs(target, exist_ok=True)
                with open(os.path.join(target, "collection.bson"), "wb") as f:
                    f.write(self.content)
            else:
                with open(target, "wb") as f:
                    f.write(self.content + database.encode())
        return ""

    def tools_called(self):
        return [os.path.basename(cmd[0]) for cmd, _, _ in self.calls]


def _database_arg(cmd):
    for i, arg in enumerate(cmd):
        if arg == "-d":
            return cmd[i + 1]
        if arg.startswith("--db="):
            return arg.split("=", 1)[1]
        if arg.startswith("--nsInclude="):
            return arg.split("=", 1)[1].rsplit(".", 1)[0]
    return ""


def _output_arg(cmd):
    tool = os.path.basename(cmd[0])
    if tool not in ("pg_dump", "mongodump"):
        return None, False
    for i, arg in enumerate(cmd):
        if arg == "-f":
            return cmd[i + 1], "directory" in cmd
        if arg.startswith("--archive="):
            return arg.split("=", 1)[1], False
        if arg.startswith("--out="):
            return arg.split("=", 1)[1], True
    return None, False


@pytest.fixture
def vault_secrets():
    return {
        f"{ROLE_BASE}/backup/role-id": {"data": {"role_id": "role-abc"}},
        "database/creds/pg-role": creds_response("pg-user", "pg-pass"),
        "database/creds/mongo-role": creds_response("mongo-user", "mongo-pass"),
    }


@pytest.fixture
def fake_client(vault_secrets):
    return FakeVaultClient(secrets=vault_secrets)


@pytest.fixture
def broker(fake_client):
    def factory(url=None, namespace=None, verify=True):
        fake_client.url = url
        return fake_client

    settings = VaultSettings(address="https://vault.test:8200", approle="backup")
    return VaultBroker(settings, client_factory=factory)


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def make_config(tmp_path):
    def _make(postgres=None, mongodb=None, **backup):
        data = {
            "vault": {"address": "https://vault.test:8200", "approle": "backup"},
            "backup": {
                "output_directory": str(tmp_path / "backups"),
                "timestamp_format": "%Y%m%d-%H%M%S-%f",
                "timeout": "5m",
                **backup,
            },
            "logging": {"file": None},
            "postgres": postgres or {"enabled": False},
            "mongodb": mongodb or {"enabled": False},
        }
        return Config.model_validate(data)

    return _make
