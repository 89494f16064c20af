"""FastAPI dependency injection helpers.

Extracts shared dependencies from app.state for use in route handlers.
All dependencies are initialized during the FastAPI lifespan and stored
on app.state.

Usage:
    from graphclassifier.web.dependencies import get_store

    @router.get("/rules")
    async def list_rules(store: RuleStore = Depends(get_store)):
        rules = await store.list_rules()
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import Request

from graphclassifier.core.errors import EngineUnavailableError

if TYPE_CHECKING:
    from graphclassifier.db.store import RuleStore
    from graphclassifier.engine.orchestrator import ClassificationEngine


def get_store(request: Request) -> RuleStore:
    """Get the shared RuleStore from app state.

    Raises:
        EngineUnavailableError: If startup could not open the store
    """
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise EngineUnavailableError("Rule Store is not initialized")
    return store


def get_engine(request: Request) -> ClassificationEngine:
    """Get the ClassificationEngine from app state.

    Raises:
        EngineUnavailableError: If startup could not build the engine
    """
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise EngineUnavailableError("Classification engine is not initialized")
    return engine
