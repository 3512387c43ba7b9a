"""Application factory for creating FastAPI instances."""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

import httpx
from fastapi import FastAPI
from fastapi.responses import JSONResponse

from .api.endpoints import init_dependencies, router
from .config import AppConfig, get_config
from .core.engine import ExecutionEngine
from .core.events import ExecutionEventBus
from .core.expressions import Evaluator
from .core.graph_validator import GraphValidator
from .core.logging import get_logger, setup_logging
from .core.scheduler import TriggerScheduler
from .core.workflow_manager import WorkflowManager
from .executors import build_default_registry
from .executors.registry import ExecutorRegistry
from .executors.ssrf import SSRFGuard
from .storage.database import Database
from .storage.repository import SqlAlchemyExecutionStore


class ApplicationState:
    """Container for application state and components."""

    def __init__(self):
        self.config: Optional[AppConfig] = None
        self.database: Optional[Database] = None
        self.store: Optional[SqlAlchemyExecutionStore] = None
        self.registry: Optional[ExecutorRegistry] = None
        self.execution_engine: Optional[ExecutionEngine] = None
        self.trigger_scheduler: Optional[TriggerScheduler] = None
        self.workflow_manager: Optional[WorkflowManager] = None


def initialize_core_components(
    config: AppConfig,
    http_transport: Optional[httpx.BaseTransport] = None,
    guard: Optional[SSRFGuard] = None
) -> ApplicationState:
    """
    Build the store, registry, engine and scheduler for one configuration.

    Args:
        config: Application configuration
        http_transport: Optional httpx transport used by every outbound action
        guard: Optional SSRF guard; built from the configured allowlist otherwise

    Returns:
        ApplicationState holding the wired components (scheduler not started)
    """
    logger = get_logger(__name__)
    state = ApplicationState()
    state.config = config

    state.database = Database(config.database_url, echo=config.database_echo)
    state.database.create_tables()
    logger.info("Database tables created")

    state.store = SqlAlchemyExecutionStore(state.database.SessionLocal)
    evaluator = Evaluator()
    validator = GraphValidator()
    state.registry = build_default_registry(config, evaluator, http_transport=http_transport, guard=guard)
    state.execution_engine = ExecutionEngine(
        store=state.store,
        registry=state.registry,
        evaluator=evaluator,
        validator=validator,
        max_concurrent_executions=config.max_concurrent_executions,
        max_parallel_nodes=config.max_parallel_nodes,
        event_bus=ExecutionEventBus()
    )
    state.trigger_scheduler = TriggerScheduler(
        state.store,
        start_execution=state.execution_engine.start_execution,
        default_timezone=config.scheduler_timezone
    )
    state.workflow_manager = WorkflowManager(
        state.store,
        state.trigger_scheduler,
        validator=validator,
        email_domain=config.email_trigger_domain
    )

    logger.info("Core components initialized")
    return state


def graceful_shutdown(state: ApplicationState) -> None:
    """Handle graceful shutdown of application components."""
    logger = get_logger(__name__)
    logger.info(f"Shutting down {state.config.app_name if state.config else 'application'}")

    try:
        if state.trigger_scheduler:
            state.trigger_scheduler.shutdown()
    except Exception as e:
        logger.error(f"Error stopping trigger scheduler: {str(e)}")

    try:
        if state.execution_engine:
            state.execution_engine.shutdown()
    except Exception as e:
        logger.error(f"Error during execution engine shutdown: {str(e)}")

    if state.database:
        state.database.dispose()


def create_app(
    config: Optional[AppConfig] = None,
    http_transport: Optional[httpx.BaseTransport] = None,
    guard: Optional[SSRFGuard] = None
) -> FastAPI:
    """Create and configure FastAPI application instance."""

    # Use provided config or load from environment
    if config is None:
        config = get_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        logger = setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.log_structured,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count
        )
        logger.info(f"Starting {config.app_name} v{config.app_version}")

        state = initialize_core_components(config, http_transport=http_transport, guard=guard)
        app.state.components = state

        try:
            recovered = state.execution_engine.recover_stale_executions(config.stale_execution_grace_period)
            if recovered:
                logger.warning(f"Marked {len(recovered)} abandoned execution(s) as failed")

            state.trigger_scheduler.start()
            state.trigger_scheduler.restore_schedules()

            init_dependencies(
                workflow_manager=state.workflow_manager,
                execution_engine=state.execution_engine,
                trigger_scheduler=state.trigger_scheduler
            )
            logger.info("Application startup completed successfully")
        except Exception as e:
            logger.error(f"Application startup failed: {e}")
            graceful_shutdown(state)
            raise

        yield

        # Shutdown
        graceful_shutdown(state)

    # Create FastAPI application
    app = FastAPI(
        title=config.app_name,
        description="Workflow execution engine: run trigger/action/condition graphs and record every step",
        version=config.app_version,
        debug=config.debug,
        lifespan=lifespan
    )

    # Include API router
    app.include_router(router)

    # Add health check endpoints
    add_health_endpoints(app, config)

    return app


def add_health_endpoints(app: FastAPI, config: AppConfig) -> None:
    """Add health check endpoints to the application."""

    @app.get("/")
    async def root():
        """Root endpoint for basic health check."""
        return {"message": f"{config.app_name} is running", "version": config.app_version}

    @app.get("/health")
    async def health_check():
        """Basic health check endpoint."""
        components: Optional[ApplicationState] = getattr(app.state, "components", None)
        if components is None or components.execution_engine is None:
            return JSONResponse(
                status_code=503,
                content={"status": "starting", "timestamp": datetime.utcnow().isoformat()}
            )
        return {
            "status": "healthy",
            "service": config.app_name.lower().replace(" ", "-"),
            "version": config.app_version,
            "active_executions": len(components.execution_engine.get_active_executions()),
            "scheduler_running": components.trigger_scheduler.running
        }
