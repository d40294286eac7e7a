"""Error taxonomy for the messaging core.

Every failure that is returned to the initiating caller is a subclass of
:class:`MessagingError`. The REST layer renders them with the HTTP status
below; the WebSocket gateway turns them into an ``error`` frame.
"""


class MessagingError(Exception):
    """Base class for errors surfaced to the initiating call."""

    status_code: int = 400
    code: str = "messaging_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code}


class Unauthenticated(MessagingError):
    """Missing, malformed, expired or unverifiable bearer credential."""
    status_code = 401
    code = "unauthenticated"


class Forbidden(MessagingError):
    """Authenticated, but not a participant or not the owner."""
    status_code = 403
    code = "forbidden"


class NotFound(MessagingError):
    """Conversation or message id does not resolve."""
    status_code = 404
    code = "not_found"


class InvalidReference(MessagingError):
    """A reply-to id points outside the conversation."""
    status_code = 400
    code = "invalid_reference"


class InvalidRequest(MessagingError):
    """Malformed input that passed schema validation but breaks a rule."""
    status_code = 400
    code = "invalid_request"


class Conflict(MessagingError):
    """Uniqueness violation: a store race (resolved internally) or adding a
    member who is already in the group."""
    status_code = 409
    code = "conflict"
