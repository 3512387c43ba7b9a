"""Command line interface: run the server and manage the execution store."""

import argparse
import sys
from typing import Optional

from .config import AppConfig, LogLevel, load_config
from .core.logging import get_logger, setup_logging


def create_argument_parser() -> argparse.ArgumentParser:
    """Create command line argument parser."""
    parser = argparse.ArgumentParser(
        description="Flowrunner - workflow execution engine"
    )

    parser.add_argument("--config", help="Path to a .env configuration file")
    parser.add_argument("--host", help="Host to bind the server to")
    parser.add_argument("--port", type=int, help="Port to bind the server to")
    parser.add_argument("--database-url", help="Database connection URL")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level"
    )
    parser.add_argument("--log-file", help="Path to log file")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    parser.add_argument(
        "--max-concurrent-executions",
        type=int,
        help="Maximum number of concurrent workflow executions"
    )

    # Commands
    subparsers = parser.add_subparsers(dest="command", help="Available commands")
    subparsers.add_parser("run", help="Run the workflow engine server")

    db_parser = subparsers.add_parser("db", help="Database management commands")
    db_subparsers = db_parser.add_subparsers(dest="db_command", help="Database commands")
    db_subparsers.add_parser("init", help="Initialize database tables")
    db_subparsers.add_parser("reset", help="Reset database (drop and recreate tables)")

    recover_parser = subparsers.add_parser("recover", help="Fail executions abandoned by a crashed process")
    recover_parser.add_argument(
        "--grace-period",
        type=int,
        help="Seconds after which a pending/running execution counts as abandoned"
    )

    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_subparsers = config_parser.add_subparsers(dest="config_command", help="Config commands")
    config_subparsers.add_parser("show", help="Show current configuration")

    return parser


def load_configuration(args: argparse.Namespace) -> AppConfig:
    """Load configuration from the environment and apply command line overrides."""
    config = load_config(args.config)

    overrides = {}
    if args.host:
        overrides["host"] = args.host
    if args.port:
        overrides["port"] = args.port
    if args.database_url:
        overrides["database_url"] = args.database_url
    if args.log_level:
        overrides["log_level"] = LogLevel(args.log_level)
    if args.log_file:
        overrides["log_file"] = args.log_file
    if args.debug:
        overrides["debug"] = True
    if args.max_concurrent_executions:
        overrides["max_concurrent_executions"] = args.max_concurrent_executions

    # re-validate through the model so overrides get the same checks
    return AppConfig(**{**config.model_dump(), **overrides})


def run_server(config: AppConfig):
    """Run the workflow engine server."""
    import uvicorn
    from .factory import create_app

    app = create_app(config)
    uvicorn.run(app, **config.get_uvicorn_config())


def run_database_command(command: str, config: AppConfig):
    """Run database management commands."""
    from .storage.database import Database

    logger = get_logger(__name__)
    database = Database(config.database_url, echo=config.database_echo)
    try:
        if command == "init":
            database.create_tables()
            logger.info("Database tables created successfully")
        elif command == "reset":
            database.drop_tables()
            database.create_tables()
            logger.info("Database reset completed successfully")
    finally:
        database.dispose()


def run_recovery(config: AppConfig, grace_period: Optional[int] = None):
    """Run the stale-execution sweep once, outside the server."""
    from .factory import graceful_shutdown, initialize_core_components

    state = initialize_core_components(config)
    try:
        recovered = state.execution_engine.recover_stale_executions(
            grace_period or config.stale_execution_grace_period
        )
        print(f"Recovered {len(recovered)} execution(s)")
        for execution_id in recovered:
            print(f"  {execution_id}")
    finally:
        graceful_shutdown(state)


def show_configuration(config: AppConfig):
    """Show current configuration."""
    print("Current Configuration:")
    print(f"  App Name: {config.app_name}")
    print(f"  Version: {config.app_version}")
    print(f"  Debug: {config.debug}")
    print(f"  Host: {config.host}")
    print(f"  Port: {config.port}")
    print(f"  Database URL: {config.database_url}")
    print(f"  Log Level: {config.log_level.value}")
    print(f"  Max Concurrent Executions: {config.max_concurrent_executions}")
    print(f"  Max Parallel Nodes: {config.max_parallel_nodes}")
    print(f"  Scheduler Timezone: {config.scheduler_timezone}")


def main():
    """Main entry point for the application."""
    parser = create_argument_parser()
    args = parser.parse_args()

    try:
        config = load_configuration(args)
        setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.log_structured,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count
        )

        if args.command == "run" or args.command is None:
            run_server(config)
        elif args.command == "db":
            if not args.db_command:
                print("Database command required. Use --help for options.")
                sys.exit(1)
            run_database_command(args.db_command, config)
        elif args.command == "recover":
            run_recovery(config, args.grace_period)
        elif args.command == "config":
            if args.config_command == "show":
                show_configuration(config)
            else:
                print("Configuration command required. Use --help for options.")
                sys.exit(1)
        else:
            parser.print_help()

    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
