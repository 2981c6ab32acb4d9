import logging
import logging.handlers
import os
import sys

DEFAULT_LOG_FILE = "data/bacli.log"


class FieldsFormatter(logging.Formatter):
    """Append structured ``extra={"fields": {...}}`` values as key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        fields = getattr(record, "fields", None)
        if fields:
            rendered = " ".join(f"{key}={value}" for key, value in fields.items())
            message = f"{message} | {rendered}"
        return message


def setup_logging(level: str = None, log_file: str = DEFAULT_LOG_FILE):
    """Configure the logging for the application."""
    log_level = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()

    logger = logging.getLogger()
    logger.setLevel(log_level)

    # Remove existing handlers to avoid duplicates
    if logger.hasHandlers():
        logger.handlers.clear()

    formatter = FieldsFormatter(
        "[%(asctime)s] [%(levelname)s] [%(name)s] - %(message)s",
        "%Y-%m-%d %H:%M:%S"
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        try:
            log_dir = os.path.dirname(log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                log_file, maxBytes=10 * 1024 * 1024, backupCount=5  # 10 MB
            )
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
        except OSError as e:
            logger.error(f"Failed to create log file handler: {e}")

    logging.getLogger("bacli").setLevel(log_level)
    # hvac and urllib3 are chatty at DEBUG
    logging.getLogger("urllib3").setLevel(max(logging.getLevelName(log_level), logging.INFO))

    logging.info(f"Logging configured with level {log_level}")


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance."""
    return logging.getLogger(name)


def fields(**values) -> dict:
    """Build the ``extra`` mapping for a structured log call, dropping empty values."""
    return {"fields": {k: v for k, v in values.items() if v is not None and v != ""}}
