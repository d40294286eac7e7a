"""Client tooling: WebSocket session with an optimistic outbox, and the
``chatrelay-verify`` end-to-end check."""
from .session import ClientSession, OutboxEntry, OutboxState, SessionError

__all__ = ["ClientSession", "OutboxEntry", "OutboxState", "SessionError"]
