"""chatrelay: real-time messaging core (conversations, messages, receipts, typing)."""

__version__ = "0.1.0"
