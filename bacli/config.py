import os
from datetime import timedelta
from typing import Dict, List, Optional, Union

import yaml
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationError,
    field_validator,
)

from .errors import ConfigError
from .logger import DEFAULT_LOG_FILE, get_logger
from .utils import parse_duration, to_strftime

logger = get_logger(__name__)

DEFAULT_TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"
DEFAULT_TIMEOUT = timedelta(minutes=30)

# Order is significant: instances are initialized engine by engine in this order.
ENGINE_NAMES = ("postgres", "mongodb")

ENGINE_DEFAULTS = {
    "postgres": {"host": "localhost", "port": 5432, "method": "custom"},
    "mongodb": {"host": "localhost", "port": 27017, "method": "archive-gzip"},
}


def _duration(value):
    if value is None or value == "":
        return None
    try:
        return parse_duration(value)
    except ValueError as e:
        raise ValueError(str(e)) from e


class VaultConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    address: Optional[str] = None
    token: Optional[str] = None
    approle: Optional[str] = Field(default=None, validation_alias=AliasChoices("approle", "role_name"))
    role_id: Optional[str] = None
    role_base: str = "auth/approle/role"
    approle_mount: str = "approle"
    namespace: Optional[str] = None
    verify: Union[bool, str] = True


class BackupSettings(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    output_directory: str = Field(
        default="./backups", validation_alias=AliasChoices("output_directory", "output_dir", "directory")
    )
    compress: bool = Field(default=False, validation_alias=AliasChoices("compress", "compression"))
    compression_level: int = Field(default=3, ge=1, le=22)
    timestamp_format: str = Field(
        default=DEFAULT_TIMESTAMP_FORMAT, validation_alias=AliasChoices("timestamp_format", "timestamp_fmt")
    )
    timeout: timedelta = DEFAULT_TIMEOUT

    @field_validator("timestamp_format")
    @classmethod
    def _convert_layout(cls, v):
        return to_strftime(v)

    @field_validator("timeout", mode="before")
    @classmethod
    def _parse_timeout(cls, v):
        return _duration(v) or DEFAULT_TIMEOUT


class RetentionConfig(BaseModel):
    """Accepted for compatibility with existing config files; not enforced."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    keep_last: Optional[int] = Field(default=None, validation_alias=AliasChoices("keep_last", "keep"))
    cleanup_interval: Optional[timedelta] = Field(
        default=None, validation_alias=AliasChoices("cleanup_interval", "interval")
    )

    @field_validator("cleanup_interval", mode="before")
    @classmethod
    def _parse_interval(cls, v):
        return _duration(v)


class LoggingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    level: Optional[str] = None
    file: Optional[str] = DEFAULT_LOG_FILE


class MetricsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    textfile: Optional[str] = None


class GroupVaultPaths(BaseModel):
    model_config = ConfigDict(extra="forbid")

    creds_path: str = "database/creds"
    kv_path: Optional[str] = None


class InstanceConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: str
    host: Optional[str] = None
    port: Optional[int] = None
    database: Optional[str] = None
    method: Optional[str] = Field(default=None, validation_alias=AliasChoices("method", "format"))
    role: Optional[str] = Field(default=None, validation_alias=AliasChoices("role", "role_name"))
    compress: Optional[bool] = None
    timeout: Optional[timedelta] = None
    output_directory: Optional[str] = None
    timestamp_format: Optional[str] = None
    kv_path: Optional[str] = None

    @field_validator("timeout", mode="before")
    @classmethod
    def _parse_timeout(cls, v):
        return _duration(v)

    @field_validator("timestamp_format")
    @classmethod
    def _convert_layout(cls, v):
        return to_strftime(v) if v else v


class EngineGroupConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    enabled: bool = True
    host: Optional[str] = None
    port: Optional[int] = None
    method: Optional[str] = Field(default=None, validation_alias=AliasChoices("method", "format"))
    role: Optional[str] = Field(default=None, validation_alias=AliasChoices("role", "role_name"))
    compress: Optional[bool] = Field(default=None, validation_alias=AliasChoices("compress", "compression"))
    timeout: Optional[timedelta] = None
    vault: GroupVaultPaths = Field(default_factory=GroupVaultPaths)
    tools: Dict[str, str] = Field(default_factory=dict)
    instances: List[InstanceConfig] = Field(default_factory=list)

    @field_validator("timeout", mode="before")
    @classmethod
    def _parse_timeout(cls, v):
        return _duration(v)


class Config(BaseModel):
    model_config = ConfigDict(extra="forbid")

    include: List[str] = Field(default_factory=list)
    vault: VaultConfig = Field(default_factory=VaultConfig)
    backup: BackupSettings = Field(default_factory=BackupSettings)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    postgres: EngineGroupConfig = Field(default_factory=EngineGroupConfig)
    mongodb: EngineGroupConfig = Field(default_factory=EngineGroupConfig)

    def engine_groups(self):
        """Yields (engine, group) for every enabled engine, in a fixed order."""
        for engine in ENGINE_NAMES:
            group = getattr(self, engine)
            if group.enabled:
                yield engine, group


class EngineInstanceConfig(BaseModel):
    """The effective, immutable settings of one database instance for one run."""

    model_config = ConfigDict(frozen=True)

    engine: str
    name: str
    host: str
    port: int
    database: str
    method: str
    role_name: Optional[str] = None
    compress: bool = False
    compression_level: int = 3
    output_directory: str
    timestamp_format: str = DEFAULT_TIMESTAMP_FORMAT
    timeout: timedelta = DEFAULT_TIMEOUT
    username: Optional[str] = None
    password: Optional[SecretStr] = None
    credential_ttl: Optional[timedelta] = None
    tools: Dict[str, str] = Field(default_factory=dict)


def _layer(**values) -> dict:
    return {k: v for k, v in values.items() if v is not None and v != ""}


def resolve_instance(
    engine: str,
    group: EngineGroupConfig,
    instance: InstanceConfig,
    backup: BackupSettings,
    credential=None,
    connection=None,
) -> EngineInstanceConfig:
    """
    Merges the configuration layers of one instance into its effective settings.
    Precedence, lowest first: engine defaults and global backup settings,
    engine group, instance, then values fetched from the secret broker.
    Empty values never override a lower layer.
    """
    layers = [
        dict(
            ENGINE_DEFAULTS.get(engine, {}),
            compress=backup.compress,
            compression_level=backup.compression_level,
            output_directory=backup.output_directory,
            timestamp_format=backup.timestamp_format,
            timeout=backup.timeout,
        ),
        _layer(
            host=group.host,
            port=group.port,
            method=group.method,
            role_name=group.role,
            compress=group.compress,
            timeout=group.timeout,
        ),
        _layer(
            host=instance.host,
            port=instance.port,
            database=instance.database or instance.name,
            method=instance.method,
            role_name=instance.role,
            compress=instance.compress,
            timeout=instance.timeout,
            output_directory=instance.output_directory,
            timestamp_format=instance.timestamp_format,
        ),
    ]
    if connection is not None:
        layers.append(_layer(host=connection.host, port=connection.port, database=connection.database))
    if credential is not None:
        layers.append(_layer(username=credential.username, password=credential.password, credential_ttl=credential.ttl))

    merged = {}
    for layer in layers:
        merged.update(_layer(**layer))

    try:
        return EngineInstanceConfig(engine=engine, name=instance.name, tools=dict(group.tools), **merged)
    except ValidationError as e:
        raise ConfigError(f"Invalid settings for {engine} instance '{instance.name}': {e}") from e


def _deep_merge(base: dict, override: dict) -> dict:
    result = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_yaml(path: str) -> dict:
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Error parsing {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level")
    return data


def _resolve_include(include: str, base_dir: str) -> str:
    if os.path.isabs(include) or os.path.exists(include):
        return include
    return os.path.join(base_dir, include)


def load_config(path: str) -> Config:
    """Reads the YAML config at path, merges its include files and validates it."""
    logger.info(f"Loading configuration from {path}")
    data = _read_yaml(path)

    base_dir = os.path.dirname(os.path.abspath(path))
    for include in data.get("include") or []:
        include_path = _resolve_include(include, base_dir)
        logger.debug(f"Merging include file {include_path}")
        data = _deep_merge(data, _read_yaml(include_path))

    try:
        config = Config.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Configuration validation failed: {e}") from e

    for engine, group in config.engine_groups():
        logger.debug(f"Found {len(group.instances)} {engine} instance(s) in configuration.")
    return config
