"""Exception hierarchy for the real-time messaging subsystem.

Every error carries a short machine-readable ``code`` that is forwarded to
clients in ``ErrorResponse.code``.  Only :class:`TransportError` ends a
connection; everything else is reported back to the originating client.
"""


class ChatError(Exception):
    """Base exception for chat errors."""
    code = "chat_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class MessageValidationError(ChatError):
    """Raised for empty/oversized content, bad receivers and malformed frames."""
    code = "validation_error"


class PersistenceError(ChatError):
    """Raised when the message store fails or times out."""
    code = "persistence_error"


class DeliveryError(ChatError):
    """Raised when a payload cannot be handed to a connection's outbound queue."""
    code = "delivery_error"

    def __init__(self, message: str, user_id: str):
        self.user_id = user_id
        super().__init__(message)


class NotOnlineError(DeliveryError):
    """The target identity has no registered connection."""
    def __init__(self, user_id: str):
        super().__init__(f"user {user_id} is not online", user_id)


class DisconnectedError(DeliveryError):
    """The target connection closed while the payload was being handed over."""
    def __init__(self, user_id: str):
        super().__init__(f"user {user_id} disconnected", user_id)


class QueueFullError(DeliveryError):
    """The target connection's outbound queue is saturated."""
    def __init__(self, user_id: str):
        super().__init__(f"user {user_id} message queue full", user_id)


class TransportError(ChatError):
    """Read failure, liveness timeout or write failure on one connection."""
    code = "transport_error"


class IdentityMismatchError(ChatError):
    """A request named an identity other than the authenticated one."""
    code = "forbidden"
