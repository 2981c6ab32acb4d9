"""
Credential broker backed by HashiCorp Vault.

Two things are needed from Vault: a session (static token or AppRole login)
and short-lived database credentials leased from the database secrets engine.
Leases are taken once per run and never renewed.
"""

import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

import hvac
import requests
from hvac.exceptions import VaultError

from .errors import CredentialError
from .logger import fields, get_logger


@dataclass(frozen=True)
class Credential:
    """Dynamic username/password pair and the lease it was issued under."""

    username: str
    password: str = field(repr=False)
    ttl: timedelta
    lease_id: Optional[str] = None
    issued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def expires_at(self) -> datetime:
        return self.issued_at + self.ttl

    def remaining(self, now: datetime = None) -> timedelta:
        now = now or datetime.now(timezone.utc)
        return max(self.expires_at - now, timedelta(0))


@dataclass(frozen=True)
class ConnectionMeta:
    """Static connection facts stored in a KV secret."""

    host: Optional[str] = None
    port: Optional[str] = None
    database: Optional[str] = None


@dataclass(frozen=True)
class VaultSettings:
    address: Optional[str] = None
    token: Optional[str] = field(default=None, repr=False)
    approle: Optional[str] = None
    role_id: Optional[str] = None
    role_base: str = "auth/approle/role"
    approle_mount: str = "approle"
    namespace: Optional[str] = None
    verify: object = True

    @classmethod
    def from_sources(cls, vault_config=None, environ=None) -> "VaultSettings":
        """
        Environment defaults first (VAULT_ADDR, VAULT_TOKEN, VAULT_APPROLE,
        VAULT_NAMESPACE, VAULT_CACERT, VAULT_SKIP_VERIFY), explicit config wins.
        """
        env = os.environ if environ is None else environ
        values = {
            "address": env.get("VAULT_ADDR"),
            "token": env.get("VAULT_TOKEN"),
            "approle": env.get("VAULT_APPROLE"),
            "namespace": env.get("VAULT_NAMESPACE"),
        }
        if env.get("VAULT_CACERT"):
            values["verify"] = env["VAULT_CACERT"]
        if env.get("VAULT_SKIP_VERIFY", "").lower() in ("1", "true", "yes"):
            values["verify"] = False

        if vault_config is not None:
            explicit = vault_config.model_dump(exclude_unset=True)
            values.update({k: v for k, v in explicit.items() if v is not None and v != ""})
            for key in ("role_base", "approle_mount"):
                values.setdefault(key, getattr(vault_config, key))

        return cls(**{k: v for k, v in values.items() if v is not None})


class VaultBroker:
    """Authenticates to Vault and leases per-role dynamic credentials."""

    def __init__(self, settings: VaultSettings, client_factory=hvac.Client, logger=None):
        self.settings = settings
        self._client_factory = client_factory
        self._client = None
        self.log = logger or get_logger(__name__)

    @property
    def authenticated(self) -> bool:
        return self._client is not None

    def authenticate(self):
        """
        Opens the broker session. With an AppRole configured this performs the
        role-id read, secret-id generation and login; otherwise the static token
        is used as is. The session is only kept if every step succeeds.
        """
        s = self.settings
        if not s.address:
            raise CredentialError("Vault address is not configured (set vault.address or VAULT_ADDR)")

        try:
            client = self._client_factory(url=s.address, namespace=s.namespace, verify=s.verify)
        except (VaultError, requests.exceptions.RequestException, ValueError) as e:
            raise CredentialError(f"Cannot create Vault client for {s.address}: {e}") from e

        if s.approle:
            client.token = self._approle_login(client, s.approle)
            self.log.info("Authenticated to Vault with AppRole", extra=fields(role=s.approle, address=s.address))
        elif s.token:
            client.token = s.token
            self.log.info("Using static Vault token", extra=fields(address=s.address))
        else:
            raise CredentialError("Neither a Vault token nor an AppRole is configured")

        self._client = client
        return client

    def _approle_login(self, client, role: str) -> str:
        s = self.settings
        base = f"{s.role_base.rstrip('/')}/{role}"

        role_id = s.role_id
        if not role_id:
            response = self._call(f"read {base}/role-id", client.read, f"{base}/role-id")
            role_id = _data(response).get("role_id")
            if not isinstance(role_id, str) or not role_id:
                raise CredentialError(f"No role_id returned for AppRole '{role}'")

        response = self._call(f"write {base}/secret-id", client.write_data, f"{base}/secret-id")
        secret_id = _data(response).get("secret_id")
        if not isinstance(secret_id, str) or not secret_id:
            raise CredentialError(f"No secret_id returned for AppRole '{role}'")

        login_path = f"auth/{s.approle_mount}/login"
        response = self._call(
            f"write {login_path}",
            client.write_data,
            login_path,
            data={"role_id": role_id, "secret_id": secret_id},
        )
        token = ((response or {}).get("auth") or {}).get("client_token")
        if not isinstance(token, str) or not token:
            raise CredentialError(f"AppRole login for '{role}' returned no client token")
        return token

    def _call(self, description: str, func, *args, **kwargs):
        try:
            return func(*args, **kwargs)
        except (VaultError, requests.exceptions.RequestException) as e:
            raise CredentialError(f"Vault {description} failed: {e}") from e

    def _require_session(self):
        if self._client is None:
            raise CredentialError("Vault session is not authenticated")
        return self._client

    def lease_dynamic_credential(self, role_path: str) -> Credential:
        """Reads <creds_path>/<role> and returns the leased username/password."""
        client = self._require_session()
        response = self._call(f"read {role_path}", client.read, role_path)
        if not response:
            raise CredentialError(f"No credentials at '{role_path}'")

        data = _data(response)
        username = data.get("username")
        password = data.get("password")
        if not isinstance(username, str) or not isinstance(password, str):
            raise CredentialError(f"Unexpected credential payload at '{role_path}': missing username or password")

        ttl = timedelta(seconds=_lease_seconds(response.get("lease_duration"), role_path))
        self.log.debug("Leased dynamic credential", extra=fields(path=role_path, ttl=str(ttl)))
        return Credential(username=username, password=password, ttl=ttl, lease_id=response.get("lease_id"))

    def read_connection_meta(self, path: str) -> ConnectionMeta:
        """Reads static host/port/database facts from a KV v1 or v2 secret."""
        client = self._require_session()
        response = self._call(f"read {path}", client.read, path)
        if not response:
            raise CredentialError(f"No data at '{path}'")

        data = _data(response)
        # KV v2 nests the real fields under "data"
        if isinstance(data.get("data"), dict):
            data = data["data"]
        port = data.get("port")
        return ConnectionMeta(
            host=data.get("host"),
            port=str(port) if port is not None else None,
            database=data.get("database"),
        )


def _data(response) -> dict:
    if not isinstance(response, dict):
        return {}
    data = response.get("data")
    return data if isinstance(data, dict) else {}


def _lease_seconds(value, role_path: str) -> int:
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        raise CredentialError(f"Unexpected lease_duration at '{role_path}': {value!r}")
    try:
        seconds = int(value)
    except (TypeError, ValueError) as e:
        raise CredentialError(f"Unexpected lease_duration at '{role_path}': {value!r}") from e
    if seconds < 0:
        raise CredentialError(f"Unexpected lease_duration at '{role_path}': {value!r}")
    return seconds
