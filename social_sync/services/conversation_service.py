"""
Conversation Service - DM inbox reads

Handles:
- Conversation listing (inbox)
- Message thread retrieval
- Mark-read (unread counter reset)
"""

import logging
from typing import Callable
from datetime import datetime
from sqlalchemy import desc, func
from sqlalchemy.orm import Session

from database.models import Conversation, Message
from ..errors import NotFoundError
from ..models import (
    MessageDirection,
    ConversationResponse,
    ConversationListResponse,
    MessageResponse,
    MessageListResponse,
)
from .social_records import PROVIDER, reset_unread

logger = logging.getLogger(__name__)


class ConversationService:
    """
    Service for the Instagram DM inbox.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def _get_conversation(self, db: Session, owner_id: str, conversation_id: int) -> Conversation:
        conversation = (
            db.query(Conversation)
            .filter(Conversation.id == conversation_id, Conversation.owner_id == owner_id)
            .first()
        )
        if not conversation:
            raise NotFoundError("Conversation not found")
        return conversation

    # =========================================================================
    # Inbox (Conversation List)
    # =========================================================================

    def get_inbox(
        self,
        owner_id: str,
        unread_only: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> ConversationListResponse:
        """
        Get the DM inbox for an owner.

        Args:
            owner_id: Owning account
            unread_only: Only show conversations with unread messages
            limit: Max results
            offset: Pagination offset

        Returns:
            Conversations ordered by latest activity, with unread totals
        """
        db = self.session_factory()
        try:
            query = db.query(Conversation).filter(
                Conversation.owner_id == owner_id,
                Conversation.provider == PROVIDER,
            )

            if unread_only:
                query = query.filter(Conversation.unread_count > 0)

            total = query.count()
            unread_count = (
                db.query(func.coalesce(func.sum(Conversation.unread_count), 0))
                .filter(Conversation.owner_id == owner_id, Conversation.provider == PROVIDER)
                .scalar()
            )

            conversations = (
                query.order_by(desc(Conversation.last_message_at))
                .offset(offset)
                .limit(limit)
                .all()
            )

            return ConversationListResponse(
                conversations=[ConversationResponse.model_validate(c) for c in conversations],
                total=total,
                unread_count=int(unread_count or 0),
            )

        finally:
            db.close()

    # =========================================================================
    # Message Thread
    # =========================================================================

    def get_messages(
        self, owner_id: str, conversation_id: int, limit: int = 100
    ) -> MessageListResponse:
        """Messages of one conversation, oldest first (latest `limit`)."""
        db = self.session_factory()
        try:
            conversation = self._get_conversation(db, owner_id, conversation_id)
            query = db.query(Message).filter(
                Message.owner_id == owner_id,
                Message.conversation_id == conversation.id,
            )
            total = query.count()
            latest = (
                query.order_by(desc(Message.remote_timestamp), desc(Message.id))
                .limit(limit)
                .all()
            )

            return MessageListResponse(
                conversation=ConversationResponse.model_validate(conversation),
                messages=[MessageResponse.model_validate(m) for m in reversed(latest)],
                total=total,
            )

        finally:
            db.close()

    def mark_read(self, owner_id: str, conversation_id: int) -> int:
        """
        Mark inbound messages read and reset the unread counter.

        Returns:
            Number of messages newly marked read
        """
        db = self.session_factory()
        try:
            conversation = self._get_conversation(db, owner_id, conversation_id)
            marked = (
                db.query(Message)
                .filter(
                    Message.owner_id == owner_id,
                    Message.conversation_id == conversation.id,
                    Message.direction == MessageDirection.INBOUND.value,
                    Message.read_at.is_(None),
                )
                .update({Message.read_at: datetime.utcnow()}, synchronize_session=False)
            )
            reset_unread(db, conversation.id)
            db.commit()

            logger.info(f"Marked conversation {conversation_id} read ({marked} messages)")
            return marked

        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
