"""
Database models for the Instagram sync engine
"""
from sqlalchemy import (
    Column,
    String,
    Integer,
    DateTime,
    Boolean,
    Text,
    ForeignKey,
    JSON,
    UniqueConstraint,
    Index,
)
from sqlalchemy.orm import relationship
from datetime import datetime
from .database import Base


class Connection(Base):
    """
    OAuth credential and status for one (owning account, provider) pair.
    Tokens are Fernet-encrypted; only the credential store decrypts them.
    """
    __tablename__ = "social_connections"
    __table_args__ = (
        UniqueConstraint("owner_id", "provider", name="uq_connection_owner_provider"),
        Index("ix_connection_remote_account", "provider", "remote_account_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(String, nullable=False, index=True)
    provider = Column(String(20), nullable=False, default="instagram")

    # Provider account
    remote_account_id = Column(String(64), nullable=False)
    remote_username = Column(String(100))

    # Encrypted tokens
    encrypted_access_token = Column(Text, nullable=False)
    encrypted_refresh_token = Column(Text)
    token_expires_at = Column(DateTime)

    # Granted permissions and status
    scopes = Column(JSON, default=list)
    status = Column(String(30), nullable=False, default="connected")  # connected, expired, needs_reauth
    status_reason = Column(Text)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    last_refreshed_at = Column(DateTime)


class Conversation(Base):
    """
    A DM thread with one participant.
    Keyed by the provider conversation id, and also by participant so that
    webhook-created placeholder threads merge with synced ones.
    """
    __tablename__ = "social_conversations"
    __table_args__ = (
        UniqueConstraint("owner_id", "provider", "remote_conversation_id", name="uq_conversation_remote"),
        UniqueConstraint("owner_id", "provider", "participant_id", name="uq_conversation_participant"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(String, nullable=False, index=True)
    provider = Column(String(20), nullable=False, default="instagram")
    remote_conversation_id = Column(String(128), nullable=False)

    # Participant (the other user, never the connected account)
    participant_id = Column(String(64), nullable=False)
    participant_name = Column(String(200))
    participant_username = Column(String(100))
    participant_avatar_url = Column(Text)

    # Activity
    last_message_at = Column(DateTime)
    last_message_preview = Column(String(100))
    unread_count = Column(Integer, nullable=False, default=0)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    messages = relationship("Message", back_populates="conversation", cascade="all, delete-orphan")


class Message(Base):
    """
    Individual DM. The provider message id is the idempotency key.
    """
    __tablename__ = "social_messages"
    __table_args__ = (
        UniqueConstraint("owner_id", "remote_message_id", name="uq_message_remote"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(String, nullable=False, index=True)
    conversation_id = Column(Integer, ForeignKey("social_conversations.id"), nullable=False, index=True)
    remote_message_id = Column(String(255), nullable=False)

    direction = Column(String(10), nullable=False)  # inbound, outbound
    sender_id = Column(String(64))
    recipient_id = Column(String(64))
    text = Column(Text)
    attachments = Column(JSON)
    remote_timestamp = Column(DateTime)
    read_at = Column(DateTime)

    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    conversation = relationship("Conversation", back_populates="messages")


class Comment(Base):
    """
    Comment (or nested reply) on a media item, plus our reply bookkeeping.
    """
    __tablename__ = "social_comments"
    __table_args__ = (
        UniqueConstraint("owner_id", "remote_media_id", "remote_comment_id", name="uq_comment_remote"),
        Index("ix_comment_owner_comment", "owner_id", "remote_comment_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(String, nullable=False, index=True)
    remote_media_id = Column(String(64), nullable=False)
    remote_comment_id = Column(String(64), nullable=False)
    parent_comment_id = Column(String(64))  # set for nested replies

    author_id = Column(String(64))
    author_username = Column(String(100))
    text = Column(Text)
    remote_timestamp = Column(DateTime)

    # Reply bookkeeping
    replied = Column(Boolean, nullable=False, default=False)
    replied_at = Column(DateTime)
    reply_text = Column(Text)
    reply_status = Column(String(20))  # sent, failed
    reply_remote_id = Column(String(64))

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class IdentityCacheEntry(Base):
    """
    Resolved display identity for a remote user id, scoped to the
    connected provider account that can see it.
    """
    __tablename__ = "identity_cache"
    __table_args__ = (
        UniqueConstraint("account_scope", "remote_user_id", name="uq_identity_scope_user"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_scope = Column(String(64), nullable=False)
    remote_user_id = Column(String(64), nullable=False)

    username = Column(String(100))
    display_name = Column(String(200))
    avatar_url = Column(Text)

    last_fetched_at = Column(DateTime)
    fail_count = Column(Integer, nullable=False, default=0)
    last_failed_at = Column(DateTime)


class SyncState(Base):
    """
    Sync health for one (owning account, provider).
    """
    __tablename__ = "social_sync_state"
    __table_args__ = (
        UniqueConstraint("owner_id", "provider", name="uq_sync_state_owner_provider"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(String, nullable=False)
    provider = Column(String(20), nullable=False, default="instagram")

    last_synced_at = Column(DateTime)
    last_attempt_at = Column(DateTime)
    last_error = Column(Text)
    granted_scopes = Column(JSON, default=list)
    missing_scopes = Column(JSON, default=list)
    cursor = Column(String(512))
    items_synced = Column(Integer, default=0)

    # Webhook delivery health
    webhook_verified_at = Column(DateTime)
    last_webhook_event_at = Column(DateTime)
    last_webhook_error = Column(Text)
