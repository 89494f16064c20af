"""FastAPI application exposing the classification engine over JSON.

Creates the FastAPI app with:
- Lifespan context manager for config, Rule Store and engine initialization
- Exception handlers rendering domain errors in the response envelope
- The /api router (health, rule CRUD, classification)

Usage:
    from graphclassifier.web.app import create_app

    app = create_app()
    # Run with: uvicorn.run(app, host="127.0.0.1", port=8000)
"""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from graphclassifier.core.logging import configure_logging, get_logger

logger = get_logger(__name__)

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize dependencies on startup.

    On startup:
    1. Load config (defaults when no config file exists) and configure logging
    2. Initialize the Rule Store database
    3. Build the classification engine

    A failed step leaves the remaining state as None; routes that need it
    answer 503 instead of the app failing to start.
    """
    from graphclassifier.config import get_config
    from graphclassifier.core.errors import ConfigLoadError, ConfigValidationError, DatabaseError
    from graphclassifier.db.store import RuleStore
    from graphclassifier.engine.orchestrator import ClassificationEngine

    app.state.config = None
    app.state.store = None
    app.state.engine = None

    # 1. Load config
    try:
        config = get_config(missing_ok=True)
    except (ConfigLoadError, ConfigValidationError) as e:
        logger.error("config_load_failed", error=str(e))
        yield
        return

    app.state.config = config
    configure_logging(log_level=config.logging.level, json_output=config.logging.json_output)

    # 2. Initialize database
    store = RuleStore(config.rule_store.db_path)
    try:
        await store.initialize()
    except DatabaseError as e:
        logger.error("rule_store_init_failed", error=str(e))
        yield
        return

    app.state.store = store

    # 3. Build the engine (no Semantic Matcher is wired by default)
    app.state.engine = ClassificationEngine(store, config=config)
    logger.info("api_started", db_path=config.rule_store.db_path)

    yield


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI instance
    """
    from graphclassifier.web.errors import EXCEPTION_HANDLERS
    from graphclassifier.web.routes import api_router

    app = FastAPI(
        title="Graph Rule Classifier",
        description="Graph-based rule classification for email threads",
        version=VERSION,
        lifespan=lifespan,
    )

    for exc_class, handler in EXCEPTION_HANDLERS.items():
        app.add_exception_handler(exc_class, handler)

    app.include_router(api_router)

    return app
