import argparse
import sys

from .config import load_config
from .errors import BacliError, ConfigError, CredentialError
from .logger import fields, get_logger, setup_logging
from .operations import OperationManager
from .vault import VaultBroker, VaultSettings

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_INSTANCE_FAILED = 1
EXIT_FATAL = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bacli",
        description="Back up and restore databases using short-lived Vault credentials.",
    )
    parser.add_argument("--log-level", default=None, help="Override the configured log level")

    subparsers = parser.add_subparsers(dest="command", required=True)

    backup = subparsers.add_parser("backup", help="Back up all databases as per config")
    backup.add_argument("-c", "--config", default="./configs/config.yaml", help="Path to YAML config file")

    restore = subparsers.add_parser("restore", help="Restore all databases from their latest backup")
    restore.add_argument("-c", "--config", default="./configs/config.yaml", help="Path to YAML config file")
    restore.add_argument("--sequential", action="store_true", help="Restore one database at a time")

    return parser


def run(args) -> int:
    try:
        config = load_config(args.config)
    except ConfigError as e:
        setup_logging(args.log_level)
        logger.error(f"Failed to load config: {e}")
        return EXIT_FATAL

    setup_logging(args.log_level or config.logging.level, config.logging.file)

    broker = VaultBroker(VaultSettings.from_sources(config.vault))
    manager = OperationManager(config, broker)

    try:
        if args.command == "backup":
            report = manager.backup_all()
        else:
            report = manager.restore_all(concurrent=not args.sequential)
    except CredentialError as e:
        logger.error("authentication failed, aborting run", extra=fields(error=str(e)))
        return EXIT_FATAL
    except BacliError as e:
        logger.error(f"{args.command} run aborted: {e}")
        return EXIT_FATAL

    for failure in report.init_errors:
        logger.error("instance not processed",
                     extra=fields(database=failure.name, engine=failure.engine, error=str(failure.error)))
    for outcome in report.failed:
        logger.error(f"{args.command} failed",
                     extra=fields(database=outcome.database, engine=outcome.engine,
                                  state=outcome.state.value, error=str(outcome.error)))

    return EXIT_OK if report.ok else EXIT_INSTANCE_FAILED


def main(argv=None):
    args = build_parser().parse_args(argv)
    sys.exit(run(args))


if __name__ == "__main__":
    main()
