"""
Outbound send coordinator.

Order of effects for one operator send:

1. validate the request shape (no I/O)
2. call the gateway; a failure or timeout surfaces as GatewayError and
   nothing is written locally
3. append the outbound message and merge the chat in one transaction
4. notify the panel

If step 3 fails after step 2 succeeded, the message has left but is not
recorded. That window is reported as PersistenceError carrying the gateway
message id; it is not retried here.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from chatpanel.domain import CanonicalMessage, MessageDirection, MessageType, SendResult
from chatpanel.errors import GatewayError, InvalidSendRequest, PersistenceError
from chatpanel.gateway import MessagingGateway, SentMessage, normalize_language, normalize_template_name
from chatpanel.metrics import record_outbound_send
from chatpanel.normalizer import text_preview
from chatpanel.notifier import NotificationSink, notify_chats
from chatpanel.repositories import ChatRepository, MessageRepository
from chatpanel.storage import Database
from chatpanel.templates import TemplateCache

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TextSend:
    body: str


@dataclass(frozen=True)
class TemplateSend:
    name: str
    language: Optional[str] = None
    components: list[dict[str, Any]] = field(default_factory=list)


SendRequest = TextSend | TemplateSend


def validate_send(to: str, request: SendRequest) -> None:
    if not to or not to.strip():
        raise InvalidSendRequest("Recipient phone is required")
    if isinstance(request, TextSend):
        if not request.body or not request.body.strip():
            raise InvalidSendRequest("Text messages require a non-empty body")
    elif isinstance(request, TemplateSend):
        if not request.name or not normalize_template_name(request.name):
            raise InvalidSendRequest("Template messages require a template name")
    else:
        raise InvalidSendRequest(f"Unsupported send request: {type(request).__name__}")


class SendCoordinator:
    def __init__(
        self,
        database: Database,
        gateway: MessagingGateway,
        templates: TemplateCache,
        sink: NotificationSink,
        default_language: str = "es",
    ):
        self.database = database
        self.gateway = gateway
        self.templates = templates
        self.sink = sink
        self.default_language = default_language

    async def resolve_language(self, name: str, requested: Optional[str] = None) -> str:
        """
        Pick the language code for a template send.

        Cached languages win (the requested one if it is among them); on a
        cache miss or an unreadable cache fall back to the requested code,
        then the default.
        """
        wanted = normalize_language(requested) if requested else None
        try:
            cached = [normalize_language(code) for code in await self.templates.languages(name)]
        except PersistenceError as e:
            logger.warning(f"Template cache unavailable, using fallback language: {e}")
            cached = []
        if cached:
            if wanted in cached:
                return wanted
            return cached[0]
        return wanted or normalize_language(self.default_language)

    async def send(self, to: str, request: SendRequest) -> SendResult:
        """
        Send one message and record it locally once the gateway accepted it.

        Raises:
            InvalidSendRequest: request shape is wrong (nothing sent)
            GatewayError: gateway rejected the send or timed out (nothing recorded)
            PersistenceError: the message was sent but could not be recorded
        """
        kind = "template" if isinstance(request, TemplateSend) else "text"
        try:
            validate_send(to, request)
        except InvalidSendRequest:
            record_outbound_send(kind, "invalid")
            raise
        to = to.strip()

        language = None
        try:
            if isinstance(request, TemplateSend):
                name = normalize_template_name(request.name)
                language = await self.resolve_language(name, request.language)
                sent = await self.gateway.send_template(to, name, language, request.components)
                message = CanonicalMessage(
                    phone=to,
                    direction=MessageDirection.OUTBOUND,
                    type=MessageType.TEMPLATE,
                    timestamp=int(time.time()),
                    template_name=name,
                    wa_message_id=sent.wa_message_id,
                )
                preview = f"[TEMPLATE: {name}]"
            else:
                sent = await self.gateway.send_text(to, request.body)
                message = CanonicalMessage(
                    phone=to,
                    direction=MessageDirection.OUTBOUND,
                    type=MessageType.TEXT,
                    timestamp=int(time.time()),
                    text=request.body,
                    wa_message_id=sent.wa_message_id,
                )
                preview = text_preview(request.body)
        except GatewayError as e:
            record_outbound_send(kind, "gateway_error")
            logger.error(f"Outbound {kind} send failed: to={to}, code={e.code}, error={e}")
            raise

        message_id = await self._record(message, preview, sent)
        record_outbound_send(kind, "sent")
        await notify_chats(self.sink, [to])

        logger.info(f"Outbound {kind} sent and recorded: id={message_id}, to={to}")
        return SendResult(
            message_id=message_id,
            phone=to,
            type=message.type,
            timestamp=message.timestamp,
            wa_message_id=sent.wa_message_id,
            template_language=language,
        )

    async def _record(self, message: CanonicalMessage, preview: str, sent: SentMessage) -> int:
        try:
            async with self.database.session() as session:
                message_id = await MessageRepository(session).append(message)
                await ChatRepository(session).upsert(
                    phone=message.phone,
                    timestamp=message.timestamp,
                    preview=preview,
                )
            return message_id
        except PersistenceError as e:
            record_outbound_send(message.type.value, "unrecorded")
            logger.error(
                f"Message sent but not recorded: to={message.phone}, "
                f"wa_message_id={sent.wa_message_id}, error={e}"
            )
            raise PersistenceError(
                f"Message sent but not recorded: {e}",
                wa_message_id=sent.wa_message_id,
            ) from e
