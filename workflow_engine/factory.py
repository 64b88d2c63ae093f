"""Application factory for creating FastAPI instances."""

from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI
from sqlalchemy import text

from .config import AppConfig, get_config, validate_config
from .core.logging import setup_logging, get_logger
from .core.execution_engine import ExecutionEngine
from .core.graph_store import SqlGraphStore
from .core.node_executors import NodeExecutorRegistry
from .core.query_runner import RegistryQueryRunner
from .core.workflow_manager import WorkflowManager
from .models.core import QueryDefinition
from .storage.database import init_database, create_tables, session_scope
from .api.endpoints import router, init_dependencies


class ApplicationState:
    """Container for application state and components."""

    def __init__(self):
        self.config: Optional[AppConfig] = None
        self.query_runner: Optional[RegistryQueryRunner] = None
        self.store: Optional[SqlGraphStore] = None
        self.workflow_manager: Optional[WorkflowManager] = None
        self.execution_engine: Optional[ExecutionEngine] = None


# Global application state
app_state = ApplicationState()


def static_query(acting_user: Optional[str], query: QueryDefinition, options: Dict[str, Any]) -> Any:
    """Query kind ``static``: returns ``options["value"]`` once its placeholders are bound."""
    return options.get("value")


def register_default_handlers(query_runner: RegistryQueryRunner, logger) -> None:
    """Register the query kinds available out of the box."""
    if not query_runner.handler_exists("static"):
        query_runner.register_handler("static", static_query, "Returns the bound 'value' option")
    logger.info(f"Query handlers available: {', '.join(sorted(query_runner.list_handlers()))}")


def initialize_core_components(config: AppConfig, query_runner: RegistryQueryRunner) -> ExecutionEngine:
    """Initialize core application components."""
    store = SqlGraphStore()
    workflow_manager = WorkflowManager()
    execution_engine = ExecutionEngine(
        store=store,
        query_runner=query_runner,
        executor_registry=NodeExecutorRegistry.with_builtin_types(),
        workflow_manager=workflow_manager,
        max_concurrent_runs=config.max_concurrent_runs,
        abort_on_expression_error=config.abort_on_expression_error
    )

    app_state.config = config
    app_state.query_runner = query_runner
    app_state.store = store
    app_state.workflow_manager = workflow_manager
    app_state.execution_engine = execution_engine
    return execution_engine


def create_lifespan_handler(config: AppConfig, query_runner: RegistryQueryRunner):
    """Create application lifespan handler."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.log_structured,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count
        )
        logger = get_logger(__name__)
        logger.info(f"Starting {config.app_name} v{config.app_version}")

        try:
            init_database(config.database_url, echo=config.database_echo)
            create_tables()
            logger.info("Database tables created")

            register_default_handlers(query_runner, logger)
            execution_engine = initialize_core_components(config, query_runner)
            init_dependencies(app_state.workflow_manager, execution_engine)

            logger.info("Application startup completed successfully")
        except Exception as e:
            logger.error(f"Application startup failed: {e}")
            raise

        yield

        # Shutdown
        logger.info(f"Shutting down {config.app_name}")
        try:
            execution_engine.shutdown()
        except Exception as e:
            logger.error(f"Error during execution engine shutdown: {str(e)}")

    return lifespan


def create_app(config: Optional[AppConfig] = None, query_runner: Optional[RegistryQueryRunner] = None) -> FastAPI:
    """
    Create and configure a FastAPI application instance.

    Args:
        config: Application configuration; loaded from the environment if omitted
        query_runner: Query runner with the deployment's handlers registered;
            a runner with only the default handlers is used if omitted

    Returns:
        Configured FastAPI application
    """
    if config is None:
        config = get_config()
    if query_runner is None:
        query_runner = RegistryQueryRunner()

    validate_config(config)

    app = FastAPI(
        title=config.app_name,
        description="Executes workflow definitions as dependency-gated graphs of typed nodes",
        version=config.app_version,
        debug=config.debug,
        lifespan=create_lifespan_handler(config, query_runner)
    )

    app.include_router(router)
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
        """Health check including database connectivity and active runs."""
        service = config.app_name.lower().replace(" ", "-")
        try:
            with session_scope() as db:
                db.execute(text("SELECT 1"))
            database = "healthy"
        except Exception as e:
            get_logger(__name__).error(f"Health check failed: {str(e)}")
            database = "unhealthy"

        engine = app_state.execution_engine
        return {
            "status": "healthy" if database == "healthy" else "unhealthy",
            "service": service,
            "version": config.app_version,
            "database": database,
            "active_runs": len(engine.get_active_runs()) if engine else 0
        }


def get_app_state() -> ApplicationState:
    """Get the current application state."""
    return app_state
