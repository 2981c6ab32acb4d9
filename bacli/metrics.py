from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, write_to_textfile


class RunMetrics:
    """Per-run Prometheus metrics, exported through the node_exporter textfile collector."""

    def __init__(self, registry: CollectorRegistry = None):
        self.registry = registry or CollectorRegistry()

        self.backups_total = Counter(
            "bacli_backups_total",
            "Total number of backups.",
            ["engine", "database_name", "status"],
            registry=self.registry,
        )
        self.backup_duration_seconds = Histogram(
            "bacli_backup_duration_seconds",
            "Duration of backup operations in seconds.",
            ["engine", "database_name"],
            registry=self.registry,
        )
        self.backup_size_bytes = Gauge(
            "bacli_backup_size_bytes",
            "Size of the last successful backup in bytes.",
            ["engine", "database_name"],
            registry=self.registry,
        )
        self.backup_last_status = Gauge(
            "bacli_backup_last_status",
            "Status of the last backup (1 for success, 0 for failure).",
            ["engine", "database_name"],
            registry=self.registry,
        )
        self.backup_last_success_timestamp = Gauge(
            "bacli_backup_last_success_timestamp_seconds",
            "Timestamp of the last successful backup.",
            ["engine", "database_name"],
            registry=self.registry,
        )
        self.restores_total = Counter(
            "bacli_restores_total",
            "Total number of restore attempts.",
            ["engine", "database_name", "status"],
            registry=self.registry,
        )

    def observe_backup(self, record):
        labels = {"engine": record.engine, "database_name": record.database}
        self.backups_total.labels(status=record.status, **labels).inc()
        self.backup_duration_seconds.labels(**labels).observe(record.duration_ms / 1000.0)
        self.backup_last_status.labels(**labels).set(1 if record.succeeded else 0)
        if record.succeeded:
            self.backup_size_bytes.labels(**labels).set(record.size_bytes)
            self.backup_last_success_timestamp.labels(**labels).set(record.completed_at.timestamp())

    def observe_restore(self, engine: str, database: str, status: str):
        self.restores_total.labels(engine=engine, database_name=database, status=status).inc()

    def write(self, path: str):
        write_to_textfile(path, self.registry)
