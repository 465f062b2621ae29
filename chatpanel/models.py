"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import BigInteger, Boolean, Column, Index, Integer, String, Text, false

from chatpanel.storage import Base


class Chat(Base):
    """
    One row per counterparty phone number.

    Table: chats
    Primary Key: phone
    has_unread is derived from messages at read time, never stored.
    """
    __tablename__ = "chats"

    phone = Column(String(32), primary_key=True)
    name = Column(String(255), nullable=True)
    last_timestamp = Column(BigInteger, nullable=True, index=True)
    last_preview = Column(Text, nullable=True)
    pinned = Column(Boolean, nullable=False, default=False, server_default=false())


class Message(Base):
    """
    Append-only message log.

    Table: messages
    Only is_read ever changes after insert, and only false -> true.
    """
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    phone = Column(String(32), nullable=False)
    direction = Column(String(3), nullable=False)  # 'in' or 'out'
    type = Column(String(20), nullable=False, default="text")
    text = Column(Text, nullable=True)
    template_name = Column(String(512), nullable=True)
    media_ref = Column(String(255), nullable=True)
    timestamp = Column(BigInteger, nullable=False)
    is_read = Column(Boolean, nullable=False, default=False)
    # Gateway id, kept for forensics; not unique
    wa_message_id = Column(String(128), nullable=True)

    __table_args__ = (
        Index("idx_messages_phone_timestamp", "phone", "timestamp", "id"),
        Index("idx_messages_unread", "phone", "direction", "is_read"),
    )


class TemplateCacheEntry(Base):
    """
    Disposable copy of the approved templates list.

    Table: template_cache
    Replaced wholesale on every refresh.
    """
    __tablename__ = "template_cache"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(512), nullable=False, index=True)
    language = Column(String(16), nullable=False)
    status = Column(String(32), nullable=True)
    category = Column(String(32), nullable=True)
    last_synced_at = Column(BigInteger, nullable=False)


class WebhookEventLog(Base):
    """
    Raw webhook deliveries, write-only audit trail.

    Table: webhook_events
    """
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    payload = Column(Text, nullable=False)
    received_at = Column(BigInteger, nullable=False)
