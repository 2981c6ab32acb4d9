import os
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .compression import SUFFIX as COMPRESSED_SUFFIX, compress_file, decompress_file
from .config import Config, EngineInstanceConfig, resolve_instance
from .engines.base import DatabaseEngine, run_tool
from .engines.registry import ENGINES, build_engine
from .error_parser import parse_tool_error
from .errors import (
    BacliError,
    ConfigError,
    CredentialError,
    MetadataError,
    OperationTimeout,
    ToolExecutionError,
    error_kind,
)
from .logger import fields, get_logger
from .metadata import (
    NO_FILE,
    STATUS_FAILED,
    STATUS_SUCCESS,
    BackupRecord,
    load_metadata,
    metadata_path,
    write_metadata,
)
from .metrics import RunMetrics
from .utils import path_size, remove_path


class InstanceState(str, Enum):
    PENDING = "pending"
    CREDENTIAL_LEASED = "credential_leased"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    METADATA_LOADED = "metadata_loaded"
    SKIPPED = "skipped"
    DECOMPRESSING = "decompressing"
    RESTORING = "restoring"


@dataclass
class InstanceFailure:
    """An instance that could not be turned into a Database for this run."""

    engine: str
    name: str
    error: Exception
    settings: Optional[EngineInstanceConfig] = None


@dataclass
class InitResult:
    databases: List[DatabaseEngine] = field(default_factory=list)
    errors: List[InstanceFailure] = field(default_factory=list)


@dataclass
class Outcome:
    engine: str
    database: str
    state: InstanceState
    record: Optional[BackupRecord] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.state in (InstanceState.SUCCEEDED, InstanceState.SKIPPED)


@dataclass
class RunReport:
    outcomes: List[Outcome] = field(default_factory=list)
    init_errors: List[InstanceFailure] = field(default_factory=list)

    @property
    def failed(self) -> List[Outcome]:
        return [o for o in self.outcomes if not o.ok]

    @property
    def timed_out(self) -> List[Outcome]:
        return [o for o in self.outcomes if o.state == InstanceState.TIMED_OUT]

    @property
    def errors(self) -> List[Exception]:
        return [f.error for f in self.init_errors] + [o.error for o in self.outcomes if o.error is not None]

    @property
    def ok(self) -> bool:
        return not self.init_errors and not self.failed


def _now() -> datetime:
    return datetime.now(timezone.utc)


class OperationManager:
    """
    Drives backup and restore of every configured instance.

    The broker session is opened once, before any task starts, and only read
    afterwards. Each task returns its own Outcome; results are aggregated after
    all tasks have joined, so no state is shared between tasks.
    """

    def __init__(self, config: Config, broker, logger=None, metrics: RunMetrics = None,
                 engines=None, runner=run_tool):
        self.config = config
        self.broker = broker
        self.log = logger or get_logger(__name__)
        self.metrics = metrics or RunMetrics()
        self.engines = engines or ENGINES
        self.runner = runner
        self._leases: Dict[Tuple[str, str], object] = {}

    def authenticate(self):
        """Opens the broker session. A failure here is fatal for the whole run."""
        if not self.broker.authenticated:
            self.broker.authenticate()

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    def initialize_databases(self) -> InitResult:
        """
        Resolves every configured instance of every enabled engine, leases its
        credential and builds its adapter. Per-instance failures are collected;
        only an authentication failure aborts.
        """
        self.authenticate()
        result = InitResult()
        seen = set()

        for engine, group in self.config.engine_groups():
            for instance in group.instances:
                try:
                    base = resolve_instance(engine, group, instance, self.config.backup)
                except ConfigError as e:
                    self._init_failed(result, engine, instance.name, e)
                    continue

                key = (engine, base.database)
                if key in seen:
                    err = ConfigError(f"Duplicate {engine} database '{base.database}' in configuration")
                    self._init_failed(result, engine, instance.name, err)
                    continue
                seen.add(key)

                try:
                    db = self._initialize_instance(engine, group, instance, base)
                except BacliError as e:
                    self._init_failed(result, engine, instance.name, e, base)
                    continue
                result.databases.append(db)

        self.log.info(
            f"Initialized {len(result.databases)} database(s), {len(result.errors)} failed."
        )
        return result

    def _initialize_instance(self, engine, group, instance, base: EngineInstanceConfig) -> DatabaseEngine:
        if not base.role_name:
            raise ConfigError(f"No Vault role configured for {engine} instance '{instance.name}'")

        connection = None
        kv_path = instance.kv_path
        if not kv_path and group.vault.kv_path:
            try:
                kv_path = group.vault.kv_path.format(name=instance.name)
            except (KeyError, IndexError, ValueError) as e:
                raise ConfigError(
                    f"Invalid {engine} kv_path template '{group.vault.kv_path}': only {{name}} is supported"
                ) from e
        if kv_path:
            connection = self.broker.read_connection_meta(kv_path)

        role_path = f"{group.vault.creds_path.rstrip('/')}/{base.role_name}"
        credential = self.broker.lease_dynamic_credential(role_path)

        settings = resolve_instance(engine, group, instance, self.config.backup, credential, connection)
        if credential.ttl and credential.ttl < settings.timeout:
            self.log.warning(
                "credential lease is shorter than the operation timeout and will not be renewed",
                extra=fields(database=settings.database, engine=engine, ttl=str(credential.ttl),
                             timeout=str(settings.timeout)),
            )
        self._leases[(engine, settings.database)] = credential

        db = build_engine(settings, engines=self.engines, runner=self.runner)
        self.log.debug("credential leased", extra=fields(database=db.name, engine=engine,
                                                         state=InstanceState.CREDENTIAL_LEASED.value))
        return db

    def _init_failed(self, result: InitResult, engine, name, error, settings=None):
        self.log.error("instance initialization failed",
                       extra=fields(database=name, engine=engine, error=str(error)))
        result.errors.append(InstanceFailure(engine, name, error, settings))

    # ------------------------------------------------------------------
    # Backup
    # ------------------------------------------------------------------

    def backup_database(self, db: DatabaseEngine) -> Outcome:
        """Runs one backup, optional compression, and writes its metadata record."""
        started_at = _now()
        t0 = time.monotonic()
        state = InstanceState.RUNNING
        error = None
        compressed = False
        artifact = NO_FILE

        try:
            artifact = db.backup()
            completed_at = _now()
            duration = time.monotonic() - t0
            if db.settings.compress:
                if db.is_directory_artifact():
                    self.log.debug("directory artifact left uncompressed",
                                   extra=fields(database=db.name, engine=db.engine))
                else:
                    artifact = compress_file(artifact, db.settings.compression_level)
                    compressed = True
            record = BackupRecord(
                engine=db.engine,
                database=db.name,
                file_path=artifact,
                status=STATUS_SUCCESS,
                method=db.method,
                compressed=compressed,
                started_at=started_at,
                completed_at=completed_at,
                duration_ms=int(duration * 1000),
                size_bytes=path_size(artifact),
            )
            state = InstanceState.SUCCEEDED
        except Exception as e:
            error = e
            completed_at = _now()
            state = InstanceState.TIMED_OUT if isinstance(e, OperationTimeout) else InstanceState.FAILED
            record = self._failed_record(db.engine, db.name, db.method, e, started_at, completed_at,
                                         int((time.monotonic() - t0) * 1000))
            self.log.error("backup failed", exc_info=not isinstance(e, BacliError),
                           extra=fields(database=db.name, engine=db.engine, error=str(e),
                                        error_kind=record.error_kind))

        try:
            write_metadata(db.directory, record)
        except OSError as e:
            self.log.error("metadata write failed", extra=fields(database=db.name, engine=db.engine, error=str(e)))
            if error is None:
                error = e
                state = InstanceState.FAILED

        return Outcome(db.engine, db.name, state, record, error)

    def _failed_record(self, engine, database, method, exc, started_at, completed_at, duration_ms) -> BackupRecord:
        kind = error_kind(exc)
        message = str(exc)
        summary = None

        cause = exc.__cause__
        if isinstance(cause, ToolExecutionError):
            summary = parse_tool_error(cause.stderr, engine)
            lease = self._leases.get((engine, database))
            if lease is not None and lease.ttl and lease.remaining() == timedelta(0):
                kind = CredentialError.kind
                message += f" (credential lease expired at {lease.expires_at.isoformat()})"

        return BackupRecord(
            engine=engine,
            database=database,
            file_path=NO_FILE,
            status=STATUS_FAILED,
            error=message,
            error_kind=kind,
            error_summary=summary,
            method=method,
            started_at=started_at,
            completed_at=completed_at,
            duration_ms=duration_ms,
            size_bytes=0,
        )

    def backup_all(self) -> RunReport:
        """
        Backs up every configured instance concurrently. Failures of one
        instance never cancel the others; all tasks are joined before returning.
        """
        init = self.initialize_databases()
        report = RunReport(init_errors=init.errors)

        for failure in init.errors:
            if failure.settings is None:
                continue
            now = _now()
            record = self._failed_record(failure.engine, failure.settings.database, failure.settings.method,
                                         failure.error, now, now, 0)
            directory = os.path.join(failure.settings.output_directory, failure.engine, failure.settings.database)
            try:
                write_metadata(directory, record)
            except OSError as e:
                self.log.error("metadata write failed",
                               extra=fields(database=failure.name, engine=failure.engine, error=str(e)))
            self.metrics.observe_backup(record)

        report.outcomes = self._fan_out(self.backup_database, init.databases, concurrent=True)

        for outcome in report.outcomes:
            if outcome.record is not None:
                self.metrics.observe_backup(outcome.record)
        self._export_metrics()

        self.log.info(
            f"Backup run finished: {len(report.outcomes) - len(report.failed)} succeeded, "
            f"{len(report.failed) + len(report.init_errors)} failed, {len(report.timed_out)} timed out."
        )
        return report

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def restore_database(self, db: DatabaseEngine) -> Outcome:
        """Restores one instance from the artifact named in its latest metadata record."""
        path = metadata_path(db.settings.output_directory, db.engine, db.name)
        try:
            record = load_metadata(path)
        except MetadataError as e:
            self.log.error("restore failed", extra=fields(database=db.name, engine=db.engine, error=str(e)))
            return Outcome(db.engine, db.name, InstanceState.FAILED, error=e)

        if not record.succeeded:
            self.log.warning("skipping restore, last backup failed",
                             extra=fields(database=db.name, engine=db.engine, error=record.error))
            return Outcome(db.engine, db.name, InstanceState.SKIPPED, record)

        if record.method and record.method != db.method:
            # Restore with the format the artifact was produced in
            db = type(db)(db.settings.model_copy(update={"method": record.method}),
                          runner=db.runner, logger=db.log)

        state = InstanceState.METADATA_LOADED
        scratch = None
        error = None
        try:
            artifact = record.file_path
            # Records written without a "compressed" flag are recognised by suffix
            if record.compressed or artifact.endswith(COMPRESSED_SUFFIX):
                state = InstanceState.DECOMPRESSING
                scratch = decompress_file(artifact)
                artifact = scratch
            state = InstanceState.RESTORING
            db.restore(artifact)
            state = InstanceState.SUCCEEDED
        except Exception as e:
            error = e
            state = InstanceState.TIMED_OUT if isinstance(e, OperationTimeout) else InstanceState.FAILED
            self.log.error("restore failed", exc_info=not isinstance(e, BacliError),
                           extra=fields(database=db.name, engine=db.engine, error=str(e), error_kind=error_kind(e)))
        finally:
            if scratch is not None:
                remove_path(scratch)

        return Outcome(db.engine, db.name, state, record, error)

    def restore_all(self, concurrent: bool = True) -> RunReport:
        init = self.initialize_databases()
        report = RunReport(init_errors=init.errors)
        report.outcomes = self._fan_out(self.restore_database, init.databases, concurrent=concurrent)

        for outcome in report.outcomes:
            if outcome.state != InstanceState.SKIPPED:
                status = STATUS_SUCCESS if outcome.ok else STATUS_FAILED
                self.metrics.observe_restore(outcome.engine, outcome.database, status)
        self._export_metrics()

        skipped = sum(1 for o in report.outcomes if o.state == InstanceState.SKIPPED)
        self.log.info(
            f"Restore run finished: {len(report.outcomes) - len(report.failed) - skipped} restored, "
            f"{skipped} skipped, {len(report.failed) + len(report.init_errors)} failed."
        )
        return report

    # ------------------------------------------------------------------

    def _fan_out(self, task, databases: List[DatabaseEngine], concurrent: bool) -> List[Outcome]:
        if not databases:
            return []
        if not concurrent:
            return [task(db) for db in databases]
        with ThreadPoolExecutor(max_workers=len(databases), thread_name_prefix="bacli") as pool:
            futures = [pool.submit(task, db) for db in databases]
            return [future.result() for future in futures]

    def _export_metrics(self):
        path = self.config.metrics.textfile
        if not path:
            return
        try:
            self.metrics.write(path)
        except OSError as e:
            self.log.warning(f"Failed to write metrics textfile {path}: {e}")
