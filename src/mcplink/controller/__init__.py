"""Agent loop controller package."""

from .state import QueryContext, QueryState

__all__ = [
    "QueryContext",
    "QueryState",
]
