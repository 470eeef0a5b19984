"""
Canonical store mutations shared by webhook ingestion, pull sync and replies.

Every write is an INSERT ... ON CONFLICT keyed by the provider's id, so the
same event applied twice leaves one row. Counters move through single
UPDATE statements instead of read-then-write.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

from sqlalchemy import case, func, or_
from sqlalchemy.orm import Session

from database.database import insert_for
from database.models import Conversation, Message, Comment, SyncState
from ..models import MessageDirection, ReplyStatus

logger = logging.getLogger(__name__)

PROVIDER = "instagram"
PREVIEW_LENGTH = 100


def placeholder_conversation_id(account_id: str, participant_id: str) -> str:
    """Synthetic thread id used until a sync learns the provider's id."""
    return f"conv_{account_id}_{participant_id}"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Normalize provider timestamps to naive UTC.

    Webhooks send epoch milliseconds (sometimes seconds); the Graph API
    sends ISO-8601 strings like 2024-05-01T10:00:00+0000.
    """
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) or (isinstance(value, str) and value.isdigit()):
        number = float(value)
        if number > 1e11:
            number /= 1000.0
        return datetime.fromtimestamp(number, tz=timezone.utc).replace(tzinfo=None)
    if isinstance(value, str):
        text = value.replace("Z", "+00:00")
        # +0000 -> +00:00 for fromisoformat
        if len(text) > 5 and text[-5] in "+-" and text[-4:].isdigit():
            text = f"{text[:-2]}:{text[-2:]}"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            logger.warning(f"Unparseable timestamp from provider: {value!r}")
            return None
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed
    return None


# =============================================================================
# Conversations
# =============================================================================


def upsert_conversation(
    db: Session,
    owner_id: str,
    participant_id: str,
    remote_conversation_id: str,
    participant_username: Optional[str] = None,
    participant_avatar_url: Optional[str] = None,
) -> int:
    """
    Create or merge the owner's thread with a participant; returns its row id.

    A real provider id replaces a placeholder, never the other way round.
    """
    now = datetime.utcnow()
    table = Conversation.__table__
    stmt = insert_for(db, Conversation).values(
        owner_id=owner_id,
        provider=PROVIDER,
        remote_conversation_id=remote_conversation_id,
        participant_id=participant_id,
        participant_username=participant_username,
        participant_avatar_url=participant_avatar_url,
        unread_count=0,
        created_at=now,
        updated_at=now,
    )
    excluded = stmt.excluded
    stmt = stmt.on_conflict_do_update(
        index_elements=["owner_id", "provider", "participant_id"],
        set_={
            "remote_conversation_id": case(
                (excluded.remote_conversation_id.like("conv\\_%", escape="\\"), table.c.remote_conversation_id),
                else_=excluded.remote_conversation_id,
            ),
            "participant_username": func.coalesce(
                excluded.participant_username, table.c.participant_username
            ),
            "participant_avatar_url": func.coalesce(
                excluded.participant_avatar_url, table.c.participant_avatar_url
            ),
            "updated_at": now,
        },
    )
    db.execute(stmt)
    return (
        db.query(Conversation.id)
        .filter(
            Conversation.owner_id == owner_id,
            Conversation.provider == PROVIDER,
            Conversation.participant_id == participant_id,
        )
        .scalar()
    )


def advance_last_message(
    db: Session, conversation_id: int, timestamp: Optional[datetime], text: Optional[str]
) -> bool:
    """Move the thread's last-message marker forward; older events never rewind it."""
    if timestamp is None:
        return False
    updated = (
        db.query(Conversation)
        .filter(
            Conversation.id == conversation_id,
            or_(Conversation.last_message_at.is_(None), Conversation.last_message_at < timestamp),
        )
        .update(
            {
                Conversation.last_message_at: timestamp,
                Conversation.last_message_preview: (text or "")[:PREVIEW_LENGTH] or None,
            },
            synchronize_session=False,
        )
    )
    return updated == 1


def increment_unread(db: Session, conversation_id: int) -> None:
    db.query(Conversation).filter(Conversation.id == conversation_id).update(
        {Conversation.unread_count: Conversation.unread_count + 1},
        synchronize_session=False,
    )


def reset_unread(db: Session, conversation_id: int) -> None:
    db.query(Conversation).filter(Conversation.id == conversation_id).update(
        {Conversation.unread_count: 0},
        synchronize_session=False,
    )


# =============================================================================
# Messages
# =============================================================================


def insert_message(
    db: Session,
    owner_id: str,
    conversation_id: int,
    remote_message_id: str,
    direction: MessageDirection,
    sender_id: Optional[str],
    recipient_id: Optional[str],
    text: Optional[str],
    remote_timestamp: Optional[datetime],
    attachments: Optional[List[Dict[str, Any]]] = None,
) -> bool:
    """Insert a message if its provider id is new. Returns True only when a row was added."""
    stmt = insert_for(db, Message).values(
        owner_id=owner_id,
        conversation_id=conversation_id,
        remote_message_id=remote_message_id,
        direction=direction.value,
        sender_id=sender_id,
        recipient_id=recipient_id,
        text=text,
        attachments=attachments,
        remote_timestamp=remote_timestamp,
        created_at=datetime.utcnow(),
    )
    stmt = stmt.on_conflict_do_nothing(index_elements=["owner_id", "remote_message_id"])
    return db.execute(stmt).rowcount == 1


# =============================================================================
# Comments
# =============================================================================


def upsert_comment(
    db: Session,
    owner_id: str,
    media_id: str,
    comment: Dict[str, Any],
    parent_comment_id: Optional[str] = None,
) -> None:
    """
    Store a comment as read from the provider.

    Content fields are refreshed on conflict; reply bookkeeping is left alone.
    """
    now = datetime.utcnow()
    author = comment.get("from") or {}
    content = {
        "parent_comment_id": parent_comment_id,
        "author_id": author.get("id"),
        "author_username": author.get("username") or comment.get("username"),
        "text": comment.get("text"),
        "remote_timestamp": parse_timestamp(comment.get("timestamp")),
        "updated_at": now,
    }
    stmt = insert_for(db, Comment).values(
        owner_id=owner_id,
        remote_media_id=str(media_id),
        remote_comment_id=str(comment["id"]),
        replied=False,
        created_at=now,
        **content,
    )
    excluded = stmt.excluded
    table = Comment.__table__
    stmt = stmt.on_conflict_do_update(
        index_elements=["owner_id", "remote_media_id", "remote_comment_id"],
        set_={
            **{key: getattr(excluded, key) for key in ("text", "remote_timestamp", "updated_at")},
            "parent_comment_id": func.coalesce(excluded.parent_comment_id, table.c.parent_comment_id),
            "author_id": func.coalesce(excluded.author_id, table.c.author_id),
            "author_username": func.coalesce(excluded.author_username, table.c.author_username),
        },
    )
    db.execute(stmt)


def mark_comment_replied(
    db: Session,
    owner_id: str,
    comment_id: str,
    reply_text: Optional[str],
    reply_remote_id: Optional[str],
    replied_at: Optional[datetime] = None,
) -> int:
    """Record that the account replied to a comment."""
    return (
        db.query(Comment)
        .filter(Comment.owner_id == owner_id, Comment.remote_comment_id == str(comment_id))
        .update(
            {
                Comment.replied: True,
                Comment.replied_at: replied_at or datetime.utcnow(),
                Comment.reply_text: reply_text,
                Comment.reply_status: ReplyStatus.SENT.value,
                Comment.reply_remote_id: reply_remote_id,
            },
            synchronize_session=False,
        )
    )


# =============================================================================
# Sync health
# =============================================================================


def update_sync_state(db: Session, owner_id: str, values: Dict[str, Any]) -> None:
    """Upsert the owner's SyncState row, touching only the given columns."""
    stmt = insert_for(db, SyncState).values(owner_id=owner_id, provider=PROVIDER, **values)
    stmt = stmt.on_conflict_do_update(
        index_elements=["owner_id", "provider"],
        set_=values,
    )
    db.execute(stmt)
