"""
Pytest configuration and shared fixtures.

Test environment variables are set here before any app import so that the
cached settings pick them up.
"""

import os
from pathlib import Path
from typing import Any, Optional

import pytest

TEST_DB_PATH = Path("./test_chatpanel.db")

os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{TEST_DB_PATH}")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("APP_SECRET", "test-app-secret")
os.environ.setdefault("VERIFY_TOKEN", "test-verify-token")
os.environ.setdefault("TEMPLATE_REFRESH_SECONDS", "0")
os.environ.setdefault("DEFAULT_TEMPLATE_LANGUAGE", "es")

# Clear settings cache before any app imports to ensure test env vars are used
from chatpanel.config import get_settings  # noqa: E402
get_settings.cache_clear()

from chatpanel.errors import GatewayError  # noqa: E402
from chatpanel.gateway import MediaInfo, MediaStream, MessagingGateway, SentMessage  # noqa: E402
from chatpanel.notifier import ConnectionManager  # noqa: E402


class FakeGateway(MessagingGateway):
    """In-memory gateway recording every call."""

    def __init__(self):
        self.sent: list[dict[str, Any]] = []
        self.templates: list[dict[str, Any]] = []
        self.media: dict[str, tuple[str, bytes]] = {}
        self.error: Optional[GatewayError] = None
        self.list_calls = 0

    async def send_text(self, to: str, body: str) -> SentMessage:
        if self.error:
            raise self.error
        self.sent.append({"type": "text", "to": to, "body": body})
        return SentMessage(wa_message_id=f"wamid.{len(self.sent)}", raw_response={})

    async def send_template(self, to, name, language_code, components=None) -> SentMessage:
        if self.error:
            raise self.error
        self.sent.append({
            "type": "template",
            "to": to,
            "name": name,
            "language": language_code,
            "components": components or [],
        })
        return SentMessage(wa_message_id=f"wamid.{len(self.sent)}", raw_response={})

    async def list_templates(self) -> list[dict[str, Any]]:
        self.list_calls += 1
        if self.error:
            raise self.error
        return [dict(t) for t in self.templates]

    async def get_media(self, media_ref: str) -> MediaInfo:
        if media_ref not in self.media:
            raise GatewayError(f"Media {media_ref} not found", code="100")
        mime_type, _ = self.media[media_ref]
        return MediaInfo(url=f"https://media.example/{media_ref}", mime_type=mime_type)

    async def stream_media(self, media_ref: str) -> MediaStream:
        info = await self.get_media(media_ref)
        _, content = self.media[media_ref]

        async def chunks():
            yield content[:4]
            yield content[4:]

        return MediaStream(mime_type=info.mime_type, chunks=chunks(), content_length=str(len(content)))


class RecordingNotifier(ConnectionManager):
    """ConnectionManager that also remembers every chat notification."""

    def __init__(self):
        super().__init__()
        self.notified: list[str] = []

    async def chat_updated(self, phone: str) -> None:
        self.notified.append(phone)
        await super().chat_updated(phone)


def _remove_test_db() -> None:
    if TEST_DB_PATH.exists():
        TEST_DB_PATH.unlink()


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture(scope="function")
def client(fake_gateway, notifier):
    """Create test client with a fresh database, fake gateway and recording notifier."""
    from fastapi.testclient import TestClient
    from chatpanel.main import app

    _remove_test_db()
    with TestClient(app) as test_client:
        app.state.gateway = fake_gateway
        app.state.notifier = notifier
        yield test_client
    _remove_test_db()
