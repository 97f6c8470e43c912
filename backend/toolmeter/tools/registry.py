"""Registry of metered tool handlers.

A handler is an async callable ``(payload, user) -> dict``. Returning
normally is the success signal that makes the call count against the user's
quota; raising (an HTTPException or anything else) means nothing is recorded.
The AI-provider proxies themselves live outside this package and register here.
"""

from collections.abc import Awaitable, Callable

import structlog
from fastapi import Request

from toolmeter.core.auth import AuthenticatedUser

logger = structlog.get_logger(__name__)

ToolHandler = Callable[[dict, AuthenticatedUser], Awaitable[dict]]


class ToolRegistry:
    def __init__(self):
        self._handlers: dict[str, ToolHandler] = {}

    def register(self, name: str, handler: ToolHandler) -> None:
        if name in self._handlers:
            raise ValueError(f"Tool already registered: {name}")
        self._handlers[name] = handler
        logger.debug("tool_registered", tool=name)

    def tool(self, name: str):
        """Decorator form of ``register``.

        Usage::

            @registry.tool("translate")
            async def translate(payload: dict, user: AuthenticatedUser) -> dict:
                ...
        """

        def decorator(handler: ToolHandler) -> ToolHandler:
            self.register(name, handler)
            return handler

        return decorator

    def get(self, name: str) -> ToolHandler | None:
        return self._handlers.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._handlers

    def names(self) -> list[str]:
        return sorted(self._handlers)


def get_tool_registry(request: Request) -> ToolRegistry:
    """FastAPI dependency returning the app's tool registry."""
    return request.app.state.tools
