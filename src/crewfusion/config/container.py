"""
Dependency injection container wiring settings into the pipeline.

settings -> transport -> retrying client -> crew orchestrator
"""

from contextlib import asynccontextmanager
from typing import Any

from ..observability.logging import get_logger
from .settings import Settings, get_settings

logger = get_logger(__name__)


class Container:
    """Lazily created services with async cleanup."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self._services: dict[str, Any] = {}
        self._factories: dict[str, Any] = {}
        self._singletons: dict[str, Any] = {}

    def register_factory(self, name: str, factory: Any) -> None:
        """Register a factory ``(container) -> service``."""
        self._factories[name] = factory

    def register_singleton(self, name: str, instance: Any) -> None:
        self._singletons[name] = instance

    def get(self, name: str, default: Any = None) -> Any:
        if name in self._singletons:
            return self._singletons[name]
        if name in self._services:
            return self._services[name]
        if name in self._factories:
            instance = self._factories[name](self)
            self._services[name] = instance
            return instance
        return default

    async def cleanup(self) -> None:
        """Close every created service that exposes ``aclose``."""
        for name, service in list(self._services.items()):
            aclose = getattr(service, "aclose", None)
            if aclose is None:
                continue
            try:
                await aclose()
            except Exception as e:
                logger.error(f"Error cleaning up {name}: {e}")
        self._services.clear()

    @asynccontextmanager
    async def lifespan(self):
        try:
            yield self
        finally:
            await self.cleanup()


def setup_container(settings: Settings | None = None) -> Container:
    """Container with the default service factories."""
    container = Container(settings)

    def _transport_factory(c: Container):
        from ..transport.gemini import GeminiTransport

        return GeminiTransport(c.settings.gemini)

    def _api_client_factory(c: Container):
        from ..core.client import RetryingApiClient, RetryPolicy

        return RetryingApiClient(c.get("transport"), RetryPolicy.from_config(c.settings.retry))

    def _idea_history_factory(c: Container):
        from ..crew.history import IdeaHistory

        return IdeaHistory()

    def _orchestrator_factory(c: Container):
        from ..crew.agents import build_crew

        return build_crew(c.get("api_client"), c.get("idea_history"), c.settings.pipeline)

    container.register_factory("transport", _transport_factory)
    container.register_factory("api_client", _api_client_factory)
    container.register_factory("idea_history", _idea_history_factory)
    container.register_factory("orchestrator", _orchestrator_factory)

    return container
