"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for panel operations
- Response models for API responses
For the gateway's webhook payload models, see events.py.
"""

from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


# =============================================================================
# Pydantic Request Models
# =============================================================================

class TemplateRequest(BaseModel):
    name: str = Field(..., description="Approved template name")
    language: Optional[str] = Field(
        None,
        description="Language code (e.g., es or es_PE); cached template languages take precedence"
    )
    components: list[dict[str, Any]] = Field(
        default_factory=list,
        description="Template components (header, body, button variables)"
    )


class SendRequest(BaseModel):
    """
    Outbound send from the panel.

    The payload shape (text body, template name) is checked by the send
    coordinator, which answers 422 on a mismatch.
    """
    to: str = Field(..., min_length=1, description="Recipient phone number")
    type: Literal["text", "template"] = Field("text", description="Kind of message")
    text: Optional[str] = Field(None, max_length=4096, description="Text body")
    template: Optional[TemplateRequest] = None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"to": "51999888777", "type": "text", "text": "Hola"},
                {"to": "51999888777", "type": "template", "template": {"name": "hello_world", "language": "es"}},
            ]
        }
    }


class PinRequest(BaseModel):
    pinned: bool = Field(..., description="Whether the chat is pinned")


# =============================================================================
# Pydantic Response Models
# =============================================================================

class WebhookResponse(BaseModel):
    """Response model for webhook deliveries; always ok once authenticated."""
    status: str = Field(default="ok", description="Operation status")


class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Error description")


class GatewayErrorResponse(BaseModel):
    detail: str = Field(..., description="Error description")
    code: Optional[str] = Field(None, description="Gateway error code")
    retryable: bool = Field(False, description="Whether retrying may succeed")


class ChatResponse(BaseModel):
    phone: str
    name: Optional[str] = None
    last_timestamp: Optional[int] = Field(None, description="Seconds since epoch")
    last_preview: Optional[str] = None
    pinned: bool = False
    has_unread: bool = False

    model_config = {"from_attributes": True}


class ChatsListResponse(BaseModel):
    data: list[ChatResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)


class MessageResponse(BaseModel):
    id: int
    phone: str
    direction: Literal["in", "out"]
    type: str
    text: Optional[str] = None
    template_name: Optional[str] = None
    media_ref: Optional[str] = None
    timestamp: int = Field(..., description="Seconds since epoch")
    is_read: bool

    model_config = {"from_attributes": True}


class MessagesListResponse(BaseModel):
    phone: str
    data: list[MessageResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)


class MarkReadResponse(BaseModel):
    phone: str
    updated: int = Field(..., ge=0, description="Messages flipped to read")


class PinResponse(BaseModel):
    phone: str
    pinned: bool


class SendResponse(BaseModel):
    status: str = "sent"
    message_id: int
    wa_message_id: Optional[str] = None
    timestamp: int
    template_language: Optional[str] = None


class TemplateResponse(BaseModel):
    name: str
    language: str
    status: Optional[str] = None
    category: Optional[str] = None
    last_synced_at: int

    model_config = {"from_attributes": True}


class TemplatesListResponse(BaseModel):
    data: list[TemplateResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)


class TemplateRefreshResponse(BaseModel):
    status: str = "ok"
    count: int = Field(..., ge=0)


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
