"""Service container wiring the messaging core together.

Routes receive the container through ``Depends(get_services)`` instead of
reaching for module globals, so tests can install a container backed by an
in-memory store and a fresh registry with ``set_services``.
"""
import logging
from typing import Optional

from chatrelay.config import AppSettings, get_config
from chatrelay.conversations.service import ConversationResolver
from chatrelay.messages.mutations import MessageMutators
from chatrelay.messages.pipeline import MessagePipeline
from chatrelay.messages.receipts import ReadStateMachine
from chatrelay.realtime.manager import RoomRegistry
from chatrelay.realtime.presence import TypingTracker
from chatrelay.storage.service import ChatStore

logger = logging.getLogger(__name__)


class Services:
    """All messaging components sharing one store and one room registry."""

    def __init__(
        self,
        store: ChatStore,
        registry: Optional[RoomRegistry] = None,
        config: Optional[AppSettings] = None,
    ) -> None:
        self.config = config or get_config()
        self.store = store
        self.registry = registry or RoomRegistry()
        self.conversations = ConversationResolver(store)
        self.pipeline = MessagePipeline(
            store, self.conversations, self.registry, self.config.messaging
        )
        self.receipts = ReadStateMachine(store, self.conversations, self.registry)
        self.mutations = MessageMutators(
            store, self.conversations, self.registry, self.pipeline, self.config.messaging
        )
        self.typing = TypingTracker(self.registry)
        self.registry.on_departure(self.typing.rooms_left)


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_services: Optional[Services] = None


def get_services() -> Services:
    """Return the global container, building it from config on first use."""
    global _services
    if _services is None:
        config = get_config()
        _services = Services(ChatStore.get_instance(config.storage.db_path), config=config)
        logger.info("Messaging services initialised (db=%s)", config.storage.db_path)
    return _services


def set_services(services: Optional[Services]) -> None:
    """Set (or clear, with ``None``) the global container."""
    global _services
    _services = services
