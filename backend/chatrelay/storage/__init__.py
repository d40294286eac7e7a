"""Durable storage for the messaging core."""
from .service import ChatStore, direct_key

__all__ = ["ChatStore", "direct_key"]
