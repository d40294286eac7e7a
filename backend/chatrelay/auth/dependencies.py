"""FastAPI dependencies that bind a verified identity to a request."""
from typing import Optional

from fastapi import Depends, WebSocket
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from chatrelay.errors import Unauthenticated

from .service import Identity, TokenService

_bearer = HTTPBearer(auto_error=False)


def get_token_service() -> TokenService:
    return TokenService.from_config()


async def get_current_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
    tokens: TokenService = Depends(get_token_service),
) -> Identity:
    """Resolve the caller's identity from the ``Authorization`` header."""
    if credentials is None:
        raise Unauthenticated("Missing or invalid Authorization header")
    return tokens.verify(credentials.credentials)


def websocket_token(websocket: WebSocket) -> Optional[str]:
    """Extract the bearer token of a WebSocket handshake.

    Browsers cannot set headers on a WebSocket, so the ``token`` query
    parameter is checked first and the ``Authorization`` header second.
    """
    token = websocket.query_params.get("token")
    if token:
        return token
    header = websocket.headers.get("authorization")
    if header and header.startswith("Bearer "):
        return header[7:]
    return None
