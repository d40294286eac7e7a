"""Identity & connection gate."""
from .service import Identity, TokenService

__all__ = ["Identity", "TokenService"]
