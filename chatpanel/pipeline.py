"""
Webhook ingestion pipeline.

For one delivery: record the raw payload, decode it into events, then for
each event in order normalize it and, when it is a message, append it to the
log and merge it into its chat in a single transaction. A malformed event is
logged and skipped; its siblings are still processed. Each affected chat is
notified once after the batch.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from chatpanel.errors import MalformedEvent, PersistenceError
from chatpanel.events import StatusEvent, decode_delivery
from chatpanel.metrics import record_webhook_event
from chatpanel.normalizer import normalize
from chatpanel.notifier import NotificationSink, notify_chats
from chatpanel.repositories import ChatRepository, MessageRepository, WebhookEventRepository
from chatpanel.storage import Database

logger = logging.getLogger(__name__)


@dataclass
class IngestReport:
    """Outcome of one delivery."""

    stored: int = 0
    malformed: int = 0
    statuses: int = 0
    phones: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def touch(self, phone: str) -> None:
        if phone not in self.phones:
            self.phones.append(phone)

    def as_log_data(self) -> dict[str, Any]:
        return {
            "stored": self.stored,
            "malformed": self.malformed,
            "statuses": self.statuses,
            "chats": len(self.phones),
        }


class WebhookPipeline:
    """Stateless driver; all state lives in the stores."""

    def __init__(self, database: Database, sink: NotificationSink):
        self.database = database
        self.sink = sink

    async def process(self, payload: Any) -> IngestReport:
        """
        Ingest one webhook delivery.

        Raises:
            PersistenceError: the store failed; events committed before the
                failure stay committed and their chats are still notified
        """
        report = IngestReport()

        try:
            async with self.database.session() as session:
                await WebhookEventRepository(session).record(payload)
        except PersistenceError as e:
            # Audit trail only; ingestion goes on without it
            logger.error(f"Failed to record raw webhook delivery: {e}")

        events = decode_delivery(payload)
        logger.info(f"Processing webhook delivery: events={len(events)}")

        try:
            for event in events:
                if isinstance(event, StatusEvent):
                    report.statuses += 1
                    continue

                try:
                    message = normalize(event)
                except MalformedEvent as e:
                    report.malformed += 1
                    report.errors.append(str(e))
                    logger.warning(f"Skipping malformed event: id={e.event_id}, error={e}")
                    continue

                async with self.database.session() as session:
                    message_id = await MessageRepository(session).append(message.to_canonical())
                    await ChatRepository(session).upsert(
                        phone=message.phone,
                        timestamp=message.timestamp,
                        preview=message.preview,
                        name=message.contact_name,
                    )

                report.stored += 1
                report.touch(message.phone)
                logger.info(
                    f"Stored inbound message: id={message_id}, phone={message.phone}, "
                    f"type={message.type.value}, ts={message.timestamp}"
                )
        finally:
            record_webhook_event("stored", report.stored)
            record_webhook_event("malformed", report.malformed)
            record_webhook_event("status", report.statuses)
            await notify_chats(self.sink, report.phones)

        logger.info(f"Webhook delivery processed: {report.as_log_data()}")
        return report
