"""The ``bizflow`` command: serve the API, manage the schema, check graphs and settings."""

import argparse
import json
import sys

from pydantic import ValidationError

from bizflow.config import (
    AppConfig,
    LogLevel,
    get_development_config,
    get_production_config,
    get_testing_config,
    load_config,
    validate_config
)
from bizflow.core.exceptions import ConfigurationError, WorkflowEngineError
from bizflow.core.logging import get_logger, setup_logging

logger = get_logger(__name__)

# Options that override the AppConfig field of the same name
CONFIG_OVERRIDES = (
    "host", "port", "reload", "database_url", "log_level", "log_file",
    "debug", "automation_timeout", "automation_workers",
)


def create_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bizflow",
        description="BizFlow Workflow Engine - business process workflows with human tasks and approvals"
    )

    settings = parser.add_argument_group("settings")
    settings.add_argument("--env", choices=["development", "production", "testing"],
                          help="Start from a configuration preset instead of the environment")
    settings.add_argument("--config", help="Path to a .env configuration file")
    settings.add_argument("--debug", action="store_true", help="Enable debug mode")

    server = parser.add_argument_group("server")
    server.add_argument("--host", help="Host to bind the server to (default: 0.0.0.0)")
    server.add_argument("--port", type=int, help="Port to bind the server to (default: 8000)")
    server.add_argument("--reload", action="store_true", help="Enable auto-reload for development")

    storage = parser.add_argument_group("storage and logging")
    storage.add_argument("--database-url", help="Database connection URL")
    storage.add_argument("--log-level", choices=[level.value for level in LogLevel], help="Logging level")
    storage.add_argument("--log-file", help="Path to log file")

    engine = parser.add_argument_group("execution engine")
    engine.add_argument("--automation-timeout", type=float,
                        help="Default timeout in seconds for automation handlers")
    engine.add_argument("--automation-workers", type=int,
                        help="Threads available to automation handlers")

    commands = parser.add_subparsers(dest="command", title="commands")

    run_parser = commands.add_parser("run", help="Serve the HTTP API (default)")
    run_parser.add_argument("--workers", type=int, default=1, help="uvicorn worker processes (default: 1)")
    run_parser.set_defaults(handler=command_run)

    db_parser = commands.add_parser("db", help="Manage the instance store schema")
    db_actions = db_parser.add_subparsers(dest="db_command", required=True)
    db_actions.add_parser("init", help="Create tables and indexes")
    db_actions.add_parser("migrate", help="Create query indexes")
    db_actions.add_parser("reset", help="Drop and recreate all tables")
    db_parser.set_defaults(handler=command_db)

    validate_parser = commands.add_parser("validate", help="Check a workflow graph JSON file")
    validate_parser.add_argument("graph_file", help="Path to a {nodes, edges} JSON document")
    validate_parser.set_defaults(handler=command_validate)

    config_parser = commands.add_parser("config", help="Inspect the effective settings")
    config_actions = config_parser.add_subparsers(dest="config_command", required=True)
    config_actions.add_parser("show", help="Print the effective settings")
    config_actions.add_parser("validate", help="Check settings against the filesystem")
    config_parser.set_defaults(handler=command_config)

    return parser


PRESETS = {
    "development": get_development_config,
    "production": get_production_config,
    "testing": get_testing_config,
}


def load_configuration(args: argparse.Namespace) -> AppConfig:
    """Build the configuration from a preset or the environment, then apply command line overrides."""
    config = PRESETS[args.env]() if args.env else load_config(args.config)

    overrides = {}
    for field in CONFIG_OVERRIDES:
        value = getattr(args, field, None)
        # store_true flags are False when absent
        if value is not None and value is not False:
            overrides[field] = value

    # Re-validate so overrides pass the same field checks as the environment
    return AppConfig.model_validate({**config.model_dump(), **overrides})


def command_run(args: argparse.Namespace, config: AppConfig) -> int:
    import uvicorn

    from bizflow.factory import create_app

    workers = getattr(args, "workers", 1)
    logger.info(f"Serving {config.app_name} on {config.host}:{config.port} with {workers} worker(s)")
    if workers > 1:
        # Worker processes build their own app from BIZFLOW_* environment variables
        uvicorn.run("bizflow.factory:create_app", factory=True, workers=workers, **config.get_uvicorn_config())
    else:
        uvicorn.run(create_app(config), **config.get_uvicorn_config())
    return 0


def command_db(args: argparse.Namespace, config: AppConfig) -> int:
    """Apply ``init``, ``migrate`` or ``reset`` to the configured database."""
    from bizflow.storage.database import build_engine, create_tables, drop_tables
    from bizflow.storage.migrations import run_migrations

    engine = build_engine(config.database_url, echo=config.database_echo,
                          connect_args=config.get_database_connect_args())
    try:
        if args.db_command == "reset":
            logger.warning(f"Dropping all workflow tables in {config.database_url}")
            drop_tables(engine)
        if args.db_command in ("init", "reset"):
            create_tables(engine)
        run_migrations(engine)
        logger.info(f"db {args.db_command} completed")
    finally:
        engine.dispose()
    return 0


def validate_graph_file(path: str) -> bool:
    """Validate a graph document and print the findings. Returns True when valid."""
    from bizflow.core.handler_registry import HandlerRegistry
    from bizflow.core.validator import GraphValidator
    from bizflow.models.core import WorkflowGraph

    with open(path, "r", encoding="utf-8") as handle:
        document = json.load(handle)

    # Accept either a bare graph or a stored definition with a "graph" key
    if isinstance(document, dict) and "graph" in document:
        document = document["graph"]

    try:
        graph = WorkflowGraph.model_validate(document)
    except ValidationError as e:
        print("Graph validation: FAILED")
        print(f"Malformed graph document: {e}")
        return False

    result = GraphValidator(HandlerRegistry()).validate(graph)
    if result.is_valid:
        print("Graph validation: PASSED")
    else:
        print(f"Graph validation: FAILED ({result.reason})")
        for issue in result.errors:
            print(f"  {issue.code}: {issue.message}")
    for warning in result.warnings:
        print(f"  warning: {warning}")
    return result.is_valid


def command_validate(args: argparse.Namespace, config: AppConfig) -> int:
    return 0 if validate_graph_file(args.graph_file) else 1


SHOWN_SETTINGS = (
    "app_name", "app_version", "debug", "host", "port", "database_url", "log_level",
    "log_file", "automation_timeout", "automation_workers", "max_steps_per_advance",
)


def command_config(args: argparse.Namespace, config: AppConfig) -> int:
    if args.config_command == "show":
        for name in SHOWN_SETTINGS:
            value = getattr(config, name)
            print(f"{name:<24} {value.value if isinstance(value, LogLevel) else value}")
        return 0

    try:
        validate_config(config)
    except ConfigurationError as e:
        print(f"Configuration validation: FAILED\n  {e}")
        return 1
    print("Configuration validation: PASSED")
    return 0


def main(argv=None):
    """Entry point of the ``bizflow`` command."""
    parser = create_argument_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, "handler", command_run)

    try:
        config = load_configuration(args)
        if handler is not command_config:
            validate_config(config)
        setup_logging(level=config.log_level.value, log_file=config.log_file,
                      structured=config.log_structured)
        exit_code = handler(args, config)
    except (ValueError, OSError, WorkflowEngineError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    if exit_code:
        sys.exit(exit_code)


if __name__ == "__main__":
    main()
