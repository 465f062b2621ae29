"""
Chat and message repositories.

Each repository is bound to one AsyncSession obtained from
``Database.session()``; the caller owns the transaction boundary.

- ChatRepository exclusively owns chats rows
- MessageRepository exclusively owns messages rows
- TemplateRepository owns the template cache
- WebhookEventRepository appends raw deliveries
"""

import json
import logging
import time
from typing import Any, Optional

from sqlalchemy import case, delete, exists, func, insert, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from chatpanel.domain import CanonicalMessage, ChatSummary, MessageDirection
from chatpanel.models import Chat, Message, TemplateCacheEntry, WebhookEventLog

logger = logging.getLogger(__name__)


def _dialect_insert(session: AsyncSession):
    """Pick the INSERT construct that supports ON CONFLICT for this engine."""
    dialect = session.bind.dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise NotImplementedError(f"Upsert is not supported on dialect {dialect!r}")


class ChatRepository:
    """Repository for the per-conversation aggregate."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def upsert(
        self,
        phone: str,
        timestamp: int,
        preview: Optional[str],
        name: Optional[str] = None,
    ) -> None:
        """
        Merge one event into the chat in a single conditional write.

        last_timestamp becomes max(existing, incoming); last_preview follows
        only when the incoming timestamp is the new maximum (ties go to the
        latest arrival). A missing or empty name never erases a known one.
        """
        name = name.strip() if name else None
        name = name or None

        logger.debug(f"Upserting chat: phone={phone}, ts={timestamp}, preview={preview!r}")

        stmt = _dialect_insert(self.session)(Chat).values(
            phone=phone,
            name=name,
            last_timestamp=timestamp,
            last_preview=preview,
            pinned=False,
        )
        current_ts = func.coalesce(Chat.last_timestamp, 0)
        is_newest = stmt.excluded.last_timestamp >= current_ts
        stmt = stmt.on_conflict_do_update(
            index_elements=[Chat.phone],
            set_={
                "name": func.coalesce(stmt.excluded.name, Chat.name),
                "last_timestamp": case(
                    (is_newest, stmt.excluded.last_timestamp),
                    else_=current_ts,
                ),
                "last_preview": case(
                    (is_newest, stmt.excluded.last_preview),
                    else_=Chat.last_preview,
                ),
            },
        )
        await self.session.execute(stmt)

    async def mark_read(self, phone: str) -> int:
        """
        Flip every unread inbound message of a chat to read.

        Returns:
            Number of messages changed (0 on a repeat call)
        """
        result = await self.session.execute(
            update(Message)
            .where(
                Message.phone == phone,
                Message.direction == MessageDirection.INBOUND.value,
                Message.is_read.is_(False),
            )
            .values(is_read=True)
        )
        changed = result.rowcount or 0
        logger.info(f"Marked chat read: phone={phone}, changed={changed}")
        return changed

    async def set_pinned(self, phone: str, pinned: bool) -> bool:
        """Pin or unpin a chat. Returns False if the chat does not exist."""
        result = await self.session.execute(
            update(Chat).where(Chat.phone == phone).values(pinned=pinned)
        )
        found = bool(result.rowcount)
        logger.info(f"Set pinned: phone={phone}, pinned={pinned}, found={found}")
        return found

    def _summary_query(self):
        has_unread = exists().where(
            Message.phone == Chat.phone,
            Message.direction == MessageDirection.INBOUND.value,
            Message.is_read.is_(False),
        )
        return select(Chat, has_unread.label("has_unread"))

    @staticmethod
    def _to_summary(chat: Chat, has_unread: bool) -> ChatSummary:
        return ChatSummary(
            phone=chat.phone,
            name=chat.name,
            last_timestamp=chat.last_timestamp,
            last_preview=chat.last_preview,
            pinned=bool(chat.pinned),
            has_unread=bool(has_unread),
        )

    async def list_chats(self) -> list[ChatSummary]:
        """List chats pinned first, then most recent first (nulls last)."""
        query = self._summary_query().order_by(
            Chat.pinned.desc(),
            Chat.last_timestamp.desc().nulls_last(),
            Chat.phone.asc(),
        )
        rows = (await self.session.execute(query)).all()
        logger.debug(f"Listed {len(rows)} chats")
        return [self._to_summary(chat, has_unread) for chat, has_unread in rows]

    async def get(self, phone: str) -> Optional[ChatSummary]:
        row = (
            await self.session.execute(self._summary_query().where(Chat.phone == phone))
        ).first()
        if row is None:
            return None
        return self._to_summary(row[0], row[1])


class MessageRepository:
    """Repository for the append-only message log."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def append(self, message: CanonicalMessage) -> int:
        """Insert a message and return its assigned id."""
        row = Message(
            phone=message.phone,
            direction=message.direction.value,
            type=message.type.value,
            text=message.text,
            template_name=message.template_name,
            media_ref=message.media_ref,
            timestamp=message.timestamp,
            is_read=message.is_read,
            wa_message_id=message.wa_message_id,
        )
        self.session.add(row)
        await self.session.flush()
        logger.debug(
            f"Appended message: id={row.id}, phone={message.phone}, "
            f"direction={message.direction.value}, type={message.type.value}"
        )
        return row.id

    async def list_by_chat(self, phone: str) -> list[Message]:
        """Messages of one chat, oldest first, ties broken by insertion order."""
        result = await self.session.execute(
            select(Message)
            .where(Message.phone == phone)
            .order_by(Message.timestamp.asc(), Message.id.asc())
        )
        return list(result.scalars().all())


class TemplateRepository:
    """Repository for the template metadata cache."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def replace_all(self, templates: list[dict[str, Any]]) -> int:
        """Clear the cache and bulk-insert the given templates."""
        synced_at = int(time.time())
        await self.session.execute(delete(TemplateCacheEntry))
        rows = [
            {
                "name": t["name"],
                "language": t["language"],
                "status": t.get("status"),
                "category": t.get("category"),
                "last_synced_at": synced_at,
            }
            for t in templates
        ]
        if rows:
            await self.session.execute(insert(TemplateCacheEntry), rows)
        return len(rows)

    async def languages(self, name: str) -> list[str]:
        result = await self.session.execute(
            select(TemplateCacheEntry.language)
            .where(TemplateCacheEntry.name == name)
            .order_by(TemplateCacheEntry.id.asc())
        )
        return list(result.scalars().all())

    async def list_templates(self) -> list[TemplateCacheEntry]:
        result = await self.session.execute(
            select(TemplateCacheEntry).order_by(
                TemplateCacheEntry.name.asc(), TemplateCacheEntry.language.asc()
            )
        )
        return list(result.scalars().all())


class WebhookEventRepository:
    """Write-only audit trail of raw deliveries."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def record(self, payload: Any) -> None:
        self.session.add(
            WebhookEventLog(
                payload=json.dumps(payload, ensure_ascii=False, default=str),
                received_at=int(time.time()),
            )
        )
        await self.session.flush()
