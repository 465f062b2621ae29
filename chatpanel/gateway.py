"""
WhatsApp Cloud API gateway client.

Outbound side of the Graph API: text and template sends, the paginated
template list and media download. Every call has a bounded timeout; HTTP
errors, Graph error bodies and timeouts all raise GatewayError.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

import httpx

from chatpanel.config import Settings
from chatpanel.errors import GatewayError

logger = logging.getLogger(__name__)


def normalize_template_name(name: str) -> str:
    """Template names are lowercase and carry no surrounding whitespace."""
    return name.strip().lower()


def normalize_language(code: str) -> str:
    """Graph API expects ``es_PE`` rather than ``es-PE``."""
    return code.strip().replace("-", "_")


@dataclass(frozen=True)
class SentMessage:
    """Gateway acknowledgement of an accepted send."""

    wa_message_id: Optional[str]
    raw_response: dict[str, Any]


@dataclass(frozen=True)
class MediaInfo:
    url: str
    mime_type: str
    file_size: Optional[int] = None


@dataclass
class MediaStream:
    """Open byte stream of a media object; ``chunks`` closes the upstream when exhausted."""

    mime_type: str
    chunks: AsyncIterator[bytes]
    content_length: Optional[str] = None


class MessagingGateway(ABC):
    """Interface of the messaging gateway used by the send coordinator and cache."""

    @abstractmethod
    async def send_text(self, to: str, body: str) -> SentMessage:
        ...

    @abstractmethod
    async def send_template(
        self,
        to: str,
        name: str,
        language_code: str,
        components: Optional[list[dict[str, Any]]] = None,
    ) -> SentMessage:
        ...

    @abstractmethod
    async def list_templates(self) -> list[dict[str, Any]]:
        ...

    @abstractmethod
    async def get_media(self, media_ref: str) -> MediaInfo:
        ...

    @abstractmethod
    async def stream_media(self, media_ref: str) -> MediaStream:
        ...

    async def close(self) -> None:
        return None


class GraphApiClient(MessagingGateway):
    """
    Meta Graph API client for WhatsApp Business.

    One AsyncClient is shared by all concurrent calls and closed on shutdown.
    """

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        self.access_token = settings.ACCESS_TOKEN
        self.phone_number_id = settings.PHONE_NUMBER_ID
        self.waba_id = settings.WABA_ID
        self.base_url = f"{settings.GRAPH_API_BASE_URL.rstrip('/')}/{settings.GRAPH_API_VERSION}"
        self.timeout = httpx.Timeout(settings.GATEWAY_TIMEOUT_SECONDS)
        self.media_timeout = httpx.Timeout(settings.MEDIA_TIMEOUT_SECONDS)
        self._client = client or httpx.AsyncClient(
            timeout=self.timeout,
            headers={"Content-Type": "application/json"},
        )

    @property
    def configured(self) -> bool:
        return bool(self.access_token and self.phone_number_id)

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}

    async def close(self) -> None:
        """Close the HTTP client."""
        if not self._client.is_closed:
            await self._client.aclose()

    async def _request(
        self,
        method: str,
        url: str,
        json_data: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Make an authenticated API request and decode the JSON body."""
        try:
            response = await self._client.request(method, url, headers=self._headers(), json=json_data)
        except httpx.TimeoutException as e:
            logger.error(f"Graph API request timed out: {method} {url}")
            raise GatewayError(
                f"Gateway request timed out: {e}",
                code="TIMEOUT",
                retryable=True,
            ) from e
        except httpx.RequestError as e:
            logger.error(f"Graph API request failed: {e}")
            raise GatewayError(
                f"HTTP request failed: {e}",
                code="HTTP_ERROR",
                retryable=True,
            ) from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code >= 400:
            error = data.get("error") if isinstance(data, dict) else None
            if not isinstance(error, dict):
                error = {}
            logger.error(f"Graph API error: status={response.status_code}, error={error}")
            raise GatewayError(
                error.get("message", f"Gateway returned HTTP {response.status_code}"),
                code=str(error.get("code", response.status_code)),
                details=error,
                retryable=response.status_code >= 500 or response.status_code == 429,
            )

        return data if isinstance(data, dict) else {}

    async def _send(self, payload: dict[str, Any]) -> SentMessage:
        if not self.configured:
            raise GatewayError("Gateway credentials are not configured", code="NOT_CONFIGURED")
        url = f"{self.base_url}/{self.phone_number_id}/messages"
        response = await self._request("POST", url, payload)
        messages = response.get("messages")
        first = messages[0] if isinstance(messages, list) and messages else None
        wa_message_id = first.get("id") if isinstance(first, dict) else None
        if wa_message_id is None:
            logger.warning(f"Graph API accepted the send without a message id: {response}")
        return SentMessage(wa_message_id=wa_message_id, raw_response=response)

    async def send_text(self, to: str, body: str) -> SentMessage:
        """Send a text message via Graph API."""
        sent = await self._send({
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to,
            "type": "text",
            "text": {"body": body},
        })
        logger.info(f"Sent text message via Graph API: to={to}, wa_message_id={sent.wa_message_id}")
        return sent

    async def send_template(
        self,
        to: str,
        name: str,
        language_code: str,
        components: Optional[list[dict[str, Any]]] = None,
    ) -> SentMessage:
        """Send a template message via Graph API."""
        name = normalize_template_name(name)
        language_code = normalize_language(language_code)
        sent = await self._send({
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to,
            "type": "template",
            "template": {
                "name": name,
                "language": {"code": language_code},
                "components": components or [],
            },
        })
        logger.info(
            f"Sent template message via Graph API: to={to}, template={name}, "
            f"language={language_code}, wa_message_id={sent.wa_message_id}"
        )
        return sent

    async def list_templates(self) -> list[dict[str, Any]]:
        """
        Fetch every message template of the business account.

        Templates live at the WABA level, not the phone number. Pagination
        cursors are followed until ``paging.next`` is absent.
        """
        if not (self.access_token and self.waba_id):
            raise GatewayError("Template listing needs ACCESS_TOKEN and WABA_ID", code="NOT_CONFIGURED")

        templates: list[dict[str, Any]] = []
        next_url: Optional[str] = f"{self.base_url}/{self.waba_id}/message_templates"
        pages = 0
        while next_url:
            response = await self._request("GET", next_url)
            pages += 1
            for t in response.get("data") or []:
                if not t.get("name") or not t.get("language"):
                    continue
                templates.append({
                    "name": t["name"],
                    "language": t["language"],
                    "status": t.get("status"),
                    "category": t.get("category"),
                })
            next_url = (response.get("paging") or {}).get("next")

        logger.info(f"Fetched {len(templates)} templates in {pages} pages")
        return templates

    async def get_media(self, media_ref: str) -> MediaInfo:
        """Resolve a media id into its short-lived download URL and MIME type."""
        response = await self._request("GET", f"{self.base_url}/{media_ref}")
        url = response.get("url")
        if not url:
            raise GatewayError(f"Media {media_ref} has no download URL", code="MEDIA_NOT_FOUND")
        return MediaInfo(
            url=url,
            mime_type=response.get("mime_type") or "application/octet-stream",
            file_size=response.get("file_size"),
        )

    async def stream_media(self, media_ref: str) -> MediaStream:
        """Open the media bytes as a stream; the core never stores them."""
        info = await self.get_media(media_ref)
        request = self._client.build_request(
            "GET", info.url, headers=self._headers(), timeout=self.media_timeout
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.TimeoutException as e:
            raise GatewayError(f"Media download timed out: {e}", code="TIMEOUT", retryable=True) from e
        except httpx.RequestError as e:
            raise GatewayError(f"Media download failed: {e}", code="HTTP_ERROR", retryable=True) from e

        if response.status_code >= 400:
            await response.aclose()
            raise GatewayError(
                f"Media download returned HTTP {response.status_code}",
                code=str(response.status_code),
                retryable=response.status_code >= 500,
            )

        async def chunks() -> AsyncIterator[bytes]:
            try:
                async for chunk in response.aiter_bytes():
                    yield chunk
            except httpx.HTTPError as e:
                logger.error(f"Media stream interrupted: media_ref={media_ref}, error={e}")
                raise GatewayError(f"Media stream interrupted: {e}", code="STREAM_ERROR") from e
            finally:
                await response.aclose()

        return MediaStream(
            mime_type=response.headers.get("content-type") or info.mime_type,
            chunks=chunks(),
            content_length=response.headers.get("content-length"),
        )
