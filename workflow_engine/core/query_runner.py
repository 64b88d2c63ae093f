"""Query runner contract and a handler registry implementation."""

import inspect
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

from ..models.core import QueryDefinition
from .exceptions import QueryExecutionError
from .logging import get_logger

logger = get_logger(__name__)

QueryHandler = Callable[[Optional[str], QueryDefinition, Dict[str, Any]], Any]


class QueryRunner(ABC):
    """Executes a query on behalf of a user and returns its result.

    Failures are raised; the engine records them on the node and keeps going.
    Timeouts are the runner's responsibility.
    """

    @abstractmethod
    def run_query(self, acting_user: Optional[str], query: QueryDefinition, options: Dict[str, Any]) -> Any:
        """Run ``query`` with already-resolved ``options``."""


class RegistryQueryRunner(QueryRunner):
    """Query runner dispatching on ``query.kind`` to registered handler functions."""

    def __init__(self):
        self._handlers: Dict[str, QueryHandler] = {}
        self._descriptions: Dict[str, str] = {}

    def register_handler(self, kind: str, handler: QueryHandler, description: str = "") -> None:
        """Register a handler for a query kind.

        Args:
            kind: Query kind the handler serves
            handler: Callable taking ``(acting_user, query, options)``
            description: Optional description of the handler

        Raises:
            QueryExecutionError: If the kind is empty or taken, or the handler is not callable
        """
        if not kind or not kind.strip():
            raise QueryExecutionError("Query kind cannot be empty")

        kind = kind.strip()

        if not callable(handler):
            raise QueryExecutionError(f"Handler for query kind '{kind}' must be callable", query_kind=kind)

        if kind in self._handlers:
            raise QueryExecutionError(f"Query kind '{kind}' is already registered", query_kind=kind)

        try:
            sig = inspect.signature(handler)
            if len(sig.parameters) < 3 and not any(
                p.kind == inspect.Parameter.VAR_POSITIONAL for p in sig.parameters.values()
            ):
                logger.warning(f"Handler for '{kind}' accepts fewer than (acting_user, query, options)")
        except (ValueError, TypeError):
            pass

        self._handlers[kind] = handler
        self._descriptions[kind] = description.strip() if description else ""
        logger.info(f"Registered query handler '{kind}'")

    def get_handler(self, kind: str) -> QueryHandler:
        """Return the handler for a kind.

        Raises:
            QueryExecutionError: If no handler is registered for the kind
        """
        handler = self._handlers.get(kind)
        if handler is None:
            raise QueryExecutionError(f"No handler registered for query kind '{kind}'", query_kind=kind)
        return handler

    def handler_exists(self, kind: str) -> bool:
        return kind in self._handlers

    def list_handlers(self) -> Dict[str, str]:
        """Registered kinds mapped to their descriptions."""
        return dict(self._descriptions)

    def unregister_handler(self, kind: str) -> bool:
        """Remove a handler. Returns False if none was registered."""
        if kind not in self._handlers:
            return False
        del self._handlers[kind]
        del self._descriptions[kind]
        logger.info(f"Unregistered query handler '{kind}'")
        return True

    def run_query(self, acting_user: Optional[str], query: QueryDefinition, options: Dict[str, Any]) -> Any:
        handler = self.get_handler(query.kind)
        logger.debug(f"Running query '{query.name}' of kind '{query.kind}'")
        return handler(acting_user, query, options)
