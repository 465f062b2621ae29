"""
Tests for the chat and message repositories.

Tests cover:
- Max-merge upsert (out-of-order and duplicate events)
- Name preservation
- Unread derivation and idempotent mark_read
- Chat list ordering (pinned first, then most recent)
- Message log ordering and append-only duplicates
- Concurrent merges and mark_read on one phone
- Template cache replacement
"""

import asyncio
import random

import pytest

from chatpanel.domain import CanonicalMessage, MessageDirection, MessageType
from chatpanel.errors import PersistenceError
from chatpanel.repositories import ChatRepository, MessageRepository, TemplateRepository
from chatpanel.storage import Database


def run(scenario, tmp_path):
    """Run an async scenario against a fresh SQLite database."""
    async def main():
        database = Database(f"sqlite+aiosqlite:///{tmp_path / 'storage.db'}")
        await database.create_all()
        try:
            return await scenario(database)
        finally:
            await database.dispose()

    return asyncio.run(main())


def inbound(phone: str, ts: int, text: str = "hi") -> CanonicalMessage:
    return CanonicalMessage(
        phone=phone,
        direction=MessageDirection.INBOUND,
        type=MessageType.TEXT,
        timestamp=ts,
        text=text,
    )


def outbound(phone: str, ts: int, text: str = "ok") -> CanonicalMessage:
    return CanonicalMessage(
        phone=phone,
        direction=MessageDirection.OUTBOUND,
        type=MessageType.TEXT,
        timestamp=ts,
        text=text,
    )


async def merge(database: Database, message: CanonicalMessage, name=None) -> int:
    async with database.session() as session:
        message_id = await MessageRepository(session).append(message)
        await ChatRepository(session).upsert(message.phone, message.timestamp, message.text, name=name)
    return message_id


async def get_chat(database: Database, phone: str):
    async with database.session() as session:
        return await ChatRepository(session).get(phone)


class TestChatUpsert:

    def test_out_of_order_merge_keeps_newest(self, tmp_path):
        async def scenario(db):
            await merge(db, inbound("P", 100, "newer"))
            await merge(db, inbound("P", 50, "older"))
            return await get_chat(db, "P")

        chat = run(scenario, tmp_path)
        assert chat.last_timestamp == 100
        assert chat.last_preview == "newer"

    def test_in_order_merge_advances(self, tmp_path):
        async def scenario(db):
            await merge(db, inbound("P", 50, "first"))
            await merge(db, inbound("P", 100, "second"))
            return await get_chat(db, "P")

        chat = run(scenario, tmp_path)
        assert chat.last_timestamp == 100
        assert chat.last_preview == "second"

    def test_duplicate_event_leaves_chat_unchanged_and_logs_twice(self, tmp_path):
        async def scenario(db):
            await merge(db, inbound("51999", 1000, "Hola"))
            first = await get_chat(db, "51999")
            await merge(db, inbound("51999", 1000, "Hola"))
            second = await get_chat(db, "51999")
            async with db.session() as session:
                messages = await MessageRepository(session).list_by_chat("51999")
            return first, second, messages

        first, second, messages = run(scenario, tmp_path)
        assert (second.last_timestamp, second.last_preview) == (first.last_timestamp, first.last_preview)
        # The log does not deduplicate
        assert len(messages) == 2

    def test_name_never_erased(self, tmp_path):
        async def scenario(db):
            await merge(db, inbound("P", 1), name="Ana")
            await merge(db, inbound("P", 2), name=None)
            await merge(db, inbound("P", 3), name="   ")
            return await get_chat(db, "P")

        assert run(scenario, tmp_path).name == "Ana"

    def test_name_updated_when_present(self, tmp_path):
        async def scenario(db):
            await merge(db, inbound("P", 1), name="Ana")
            await merge(db, inbound("P", 2), name="Ana María")
            return await get_chat(db, "P")

        assert run(scenario, tmp_path).name == "Ana María"

    def test_different_phones_are_independent(self, tmp_path):
        async def scenario(db):
            await merge(db, inbound("A", 10, "a"))
            await merge(db, inbound("B", 20, "b"))
            return await get_chat(db, "A"), await get_chat(db, "B")

        a, b = run(scenario, tmp_path)
        assert (a.last_timestamp, a.last_preview) == (10, "a")
        assert (b.last_timestamp, b.last_preview) == (20, "b")


class TestConcurrentMutations:

    def test_concurrent_merges_keep_the_newest(self, tmp_path):
        timestamps = list(range(100, 120))
        random.Random(7).shuffle(timestamps)

        async def scenario(db):
            await asyncio.gather(*(merge(db, inbound("P", ts, f"m{ts}")) for ts in timestamps))
            async with db.session() as session:
                messages = await MessageRepository(session).list_by_chat("P")
            return await get_chat(db, "P"), messages

        chat, messages = run(scenario, tmp_path)
        assert chat.last_timestamp == 119
        assert chat.last_preview == "m119"
        assert [m.timestamp for m in messages] == sorted(timestamps)

    def test_mark_read_alongside_appends(self, tmp_path):
        async def mark_read(db):
            async with db.session() as session:
                return await ChatRepository(session).mark_read("P")

        async def scenario(db):
            await merge(db, inbound("P", 1, "first"))
            results = await asyncio.gather(
                *(merge(db, inbound("P", ts)) for ts in range(2, 12)),
                mark_read(db),
            )
            async with db.session() as session:
                messages = await MessageRepository(session).list_by_chat("P")
            return results[-1], await get_chat(db, "P"), messages

        flipped, chat, messages = run(scenario, tmp_path)
        unread = [m for m in messages if not m.is_read]
        assert len(messages) == 11
        # Every inbound message was either flipped by mark_read or is still unread
        assert flipped + len(unread) == 11
        assert flipped >= 1
        assert chat.has_unread is bool(unread)
        assert chat.last_timestamp == 11


class TestUnread:

    def test_mark_read_is_idempotent(self, tmp_path):
        async def scenario(db):
            await merge(db, inbound("51999", 1000, "Hola"))
            await merge(db, inbound("51999", 2000, "[IMAGE]"))
            await merge(db, outbound("51999", 3000))
            before = await get_chat(db, "51999")
            async with db.session() as session:
                first = await ChatRepository(session).mark_read("51999")
            async with db.session() as session:
                second = await ChatRepository(session).mark_read("51999")
            after = await get_chat(db, "51999")
            async with db.session() as session:
                messages = await MessageRepository(session).list_by_chat("51999")
            return before, first, second, after, messages

        before, first, second, after, messages = run(scenario, tmp_path)
        assert before.has_unread is True
        assert first == 2
        assert second == 0
        assert after.has_unread is False
        assert all(m.is_read for m in messages)

    def test_outbound_only_chat_has_no_unread(self, tmp_path):
        async def scenario(db):
            await merge(db, outbound("P", 10))
            return await get_chat(db, "P")

        assert run(scenario, tmp_path).has_unread is False

    def test_mark_read_touches_only_one_phone(self, tmp_path):
        async def scenario(db):
            await merge(db, inbound("A", 10))
            await merge(db, inbound("B", 10))
            async with db.session() as session:
                await ChatRepository(session).mark_read("A")
            return await get_chat(db, "A"), await get_chat(db, "B")

        a, b = run(scenario, tmp_path)
        assert a.has_unread is False
        assert b.has_unread is True


class TestChatList:

    def test_pinned_first_then_most_recent(self, tmp_path):
        async def scenario(db):
            await merge(db, inbound("old", 10))
            await merge(db, inbound("new", 30))
            await merge(db, inbound("pinned", 5))
            async with db.session() as session:
                assert await ChatRepository(session).set_pinned("pinned", True) is True
                assert await ChatRepository(session).set_pinned("missing", True) is False
            async with db.session() as session:
                return await ChatRepository(session).list_chats()

        chats = run(scenario, tmp_path)
        assert [c.phone for c in chats] == ["pinned", "new", "old"]
        assert chats[0].pinned is True

    def test_pinning_keeps_timestamp(self, tmp_path):
        async def scenario(db):
            await merge(db, inbound("P", 42, "x"))
            async with db.session() as session:
                await ChatRepository(session).set_pinned("P", True)
            return await get_chat(db, "P")

        chat = run(scenario, tmp_path)
        assert chat.pinned is True
        assert chat.last_timestamp == 42
        assert chat.last_preview == "x"


class TestMessageLog:

    def test_ordered_by_timestamp_then_id(self, tmp_path):
        async def scenario(db):
            ids = [
                await merge(db, inbound("P", 20, "b")),
                await merge(db, inbound("P", 10, "a")),
                await merge(db, inbound("P", 20, "c")),
            ]
            async with db.session() as session:
                return ids, await MessageRepository(session).list_by_chat("P")

        ids, messages = run(scenario, tmp_path)
        assert ids == sorted(ids)
        assert [m.text for m in messages] == ["a", "b", "c"]

    def test_inbound_unread_outbound_read(self, tmp_path):
        async def scenario(db):
            await merge(db, inbound("P", 1))
            await merge(db, outbound("P", 2))
            async with db.session() as session:
                return await MessageRepository(session).list_by_chat("P")

        messages = run(scenario, tmp_path)
        assert [(m.direction, m.is_read) for m in messages] == [("in", False), ("out", True)]

    def test_failed_unit_of_work_is_rolled_back(self, tmp_path):
        async def scenario(db):
            with pytest.raises(PersistenceError):
                async with db.session() as session:
                    await MessageRepository(session).append(inbound("P", 1))
                    # NOT NULL violation on the second write
                    await ChatRepository(session).upsert(None, 1, "x")
            async with db.session() as session:
                return await MessageRepository(session).list_by_chat("P")

        assert run(scenario, tmp_path) == []


class TestTemplateRepository:

    def test_replace_all_swaps_the_whole_set(self, tmp_path):
        async def scenario(db):
            async with db.session() as session:
                await TemplateRepository(session).replace_all([
                    {"name": "old", "language": "es"},
                ])
            async with db.session() as session:
                count = await TemplateRepository(session).replace_all([
                    {"name": "welcome", "language": "es", "status": "APPROVED", "category": "UTILITY"},
                    {"name": "welcome", "language": "en_US", "status": "APPROVED", "category": "UTILITY"},
                ])
            async with db.session() as session:
                repo = TemplateRepository(session)
                return count, await repo.list_templates(), await repo.languages("welcome")

        count, entries, languages = run(scenario, tmp_path)
        assert count == 2
        assert {e.name for e in entries} == {"welcome"}
        assert languages == ["es", "en_US"]
