"""
Error taxonomy for the chat panel.

- MalformedEvent: bad or incomplete inbound event (skipped, batch continues)
- PersistenceError: store unavailable or write failed (propagated)
- GatewayError: Graph API call failed or timed out (no local write)
- AuthorizationError: caller lacks credentials (rejected before any state change)
- InvalidSendRequest: outbound payload has the wrong shape
"""

from typing import Any, Optional


class ChatPanelError(Exception):
    """Base class for all chat panel errors."""


class MalformedEvent(ChatPanelError):
    """An inbound gateway event is missing required fields or is unreadable."""

    def __init__(self, message: str, event_id: Optional[str] = None):
        super().__init__(message)
        self.event_id = event_id


class PersistenceError(ChatPanelError):
    """The store is unavailable or a write failed and was rolled back."""

    def __init__(self, message: str, wa_message_id: Optional[str] = None):
        super().__init__(message)
        # Set when the message already left through the gateway
        self.wa_message_id = wa_message_id


class GatewayError(ChatPanelError):
    """Error from the messaging gateway (Graph API)."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.code = code
        self.details = details or {}
        self.retryable = retryable


class AuthorizationError(ChatPanelError):
    """Caller is not allowed to invoke a protected operation."""


class InvalidSendRequest(ChatPanelError):
    """Outbound send payload failed validation."""
