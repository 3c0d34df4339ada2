"""Builds the FastAPI application and wires the engine components together."""

from contextlib import asynccontextmanager
from datetime import datetime
from types import SimpleNamespace
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import Engine, text

from .api.endpoints import init_dependencies, router
from .config import AppConfig, get_config, validate_config
from .core.definition_manager import DefinitionManager
from .core.exceptions import WorkflowEngineError, create_error_response, get_status_code_for_error
from .core.execution_engine import ExecutionEngine
from .core.handler_registry import HandlerRegistry
from .core.instance_store import SqlAlchemyInstanceStore
from .core.logging import get_logger, setup_logging
from .core.validator import GraphValidator
from .models.core import InstanceEvent
from .storage.database import build_engine, create_session_factory, create_tables
from .storage.migrations import run_migrations

logger = get_logger(__name__)


def initialize_database(config: AppConfig) -> Engine:
    """Open the instance store database and make sure its schema exists."""
    engine = build_engine(config.database_url, echo=config.database_echo,
                          connect_args=config.get_database_connect_args())
    create_tables(engine)
    try:
        run_migrations(engine)
    except Exception as e:
        # Indexes only speed up lookups; the service works without them
        logger.warning(f"Index migration failed, continuing without it: {e}")
    logger.info(f"Instance store ready ({config.database_type.value})")
    return engine


def build_components(config: AppConfig, engine: Engine,
                     handler_registry: Optional[HandlerRegistry] = None) -> SimpleNamespace:
    """Assemble the registry, store, validator, definition manager and engine."""
    registry = handler_registry or HandlerRegistry()
    store = SqlAlchemyInstanceStore(create_session_factory(engine))
    validator = GraphValidator(registry)
    execution_engine = ExecutionEngine(
        store=store,
        handler_registry=registry,
        validator=validator,
        automation_timeout=config.automation_timeout,
        max_steps=config.max_steps_per_advance,
        automation_workers=config.automation_workers,
    )

    event_logger = get_logger("bizflow.events")

    def log_event(event: InstanceEvent) -> None:
        event_logger.debug(f"[{event.instance_id}] {event.event_type.value}: {event.message}")

    store.add_listener(log_event)

    return SimpleNamespace(
        database_engine=engine,
        handler_registry=registry,
        instance_store=store,
        definition_manager=DefinitionManager(store, validator),
        execution_engine=execution_engine,
    )


def shutdown_components(components: SimpleNamespace) -> None:
    try:
        components.execution_engine.shutdown()
    except Exception as e:
        logger.error(f"Automation pool did not shut down cleanly: {e}")
    components.database_engine.dispose()
    logger.info("Database connections closed")


def create_lifespan_handler(config: AppConfig, handler_registry: Optional[HandlerRegistry] = None):
    """Startup and shutdown of the engine components around the app's lifetime."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.log_structured,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count
        )
        logger.info(f"Starting {config.app_name} v{config.app_version}")

        try:
            components = build_components(config, initialize_database(config), handler_registry)
        except Exception as e:
            logger.error(f"Startup failed: {e}")
            raise

        app.state.components = components
        init_dependencies(
            definition_manager=components.definition_manager,
            execution_engine=components.execution_engine,
            handler_registry=components.handler_registry,
            instance_store=components.instance_store,
        )
        logger.info(f"{len(components.handler_registry.list_handlers())} handlers registered, accepting requests")

        yield

        logger.info(f"Shutting down {config.app_name}")
        shutdown_components(components)
        app.state.components = None

    return lifespan


def register_exception_handlers(app: FastAPI) -> None:
    """Render workflow engine errors as JSON with the matching status code."""

    @app.exception_handler(WorkflowEngineError)
    async def workflow_engine_error_handler(request: Request, exc: WorkflowEngineError):
        status_code = get_status_code_for_error(exc)
        level = logger.error if status_code >= 500 else logger.warning
        level(f"{exc.error_code} on {request.method} {request.url.path}: {exc.message}")
        return JSONResponse(status_code=status_code, content=create_error_response(exc))


def create_app(config: Optional[AppConfig] = None,
               handler_registry: Optional[HandlerRegistry] = None) -> FastAPI:
    """Create the FastAPI application.

    Args:
        config: Settings to use; read from the environment when omitted
        handler_registry: Registry with deployment-specific predicates and automations
    """
    config = config or get_config()
    validate_config(config)

    app = FastAPI(
        title=config.app_name,
        description="Workflow engine for business processes with human tasks, approvals, "
                    "conditions and automations",
        version=config.app_version,
        debug=config.debug,
        lifespan=create_lifespan_handler(config, handler_registry)
    )
    app.state.components = None

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=config.cors_methods,
            allow_headers=["*"],
        )

    if config.enable_performance_monitoring:
        from .core.middleware import (
            ErrorHandlingMiddleware,
            RequestLoggingMiddleware,
            PerformanceMonitoringMiddleware
        )

        # Added last runs first: the error handler wraps timing and logging
        app.add_middleware(RequestLoggingMiddleware)
        app.add_middleware(PerformanceMonitoringMiddleware, slow_request_threshold=config.slow_request_threshold)
        app.add_middleware(ErrorHandlingMiddleware)

    register_exception_handlers(app)
    app.include_router(router)
    add_health_endpoints(app, config)

    return app


def add_health_endpoints(app: FastAPI, config: AppConfig) -> None:
    service_name = config.app_name.lower().replace(" ", "-")

    @app.get("/")
    async def root():
        return {"message": f"{config.app_name} is running", "version": config.app_version}

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "service": service_name, "version": config.app_version}

    @app.get("/health/ready")
    def readiness_check(request: Request):
        """Ready when the database answers and the engine is up."""
        components = request.app.state.components
        checks = {}
        try:
            if components is None:
                raise RuntimeError("components not initialized")
            with components.database_engine.connect() as connection:
                connection.execute(text("SELECT 1"))
            checks["database"] = {"status": "healthy"}
        except Exception as e:
            logger.error(f"Readiness check failed: {e}")
            checks["database"] = {"status": "unhealthy", "error": str(e)}

        checks["execution_engine"] = {
            "status": "healthy" if components is not None else "unhealthy"
        }

        ready = all(check["status"] == "healthy" for check in checks.values())
        return JSONResponse(
            status_code=200 if ready else 503,
            content={"ready": ready, "checks": checks, "timestamp": datetime.utcnow().isoformat()}
        )

    @app.get("/health/live")
    async def liveness_check():
        return {"alive": True, "timestamp": datetime.utcnow().isoformat()}
