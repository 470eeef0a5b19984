"""
Reply Relay - outbound comment replies and DMs

Checks the granted scope before touching the network, posts through the
Graph API, then records the result locally. Local bookkeeping is best
effort: the remote write already happened, and the next sync reconciles.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from database.models import Comment, Conversation
from ..clients.instagram_graph import InstagramGraphClient
from ..config import SCOPE_MANAGE_COMMENTS, SCOPE_MANAGE_MESSAGES, has_scope
from ..errors import AuthError, ProviderError, ScopePermissionError, InvalidRequestError, NotFoundError
from ..models import MessageDirection, ReplyStatus
from .credential_store import CredentialStore, StoredConnection
from .token_manager import TokenManager
from .social_records import insert_message, advance_last_message, reset_unread, mark_comment_replied

logger = logging.getLogger(__name__)

COMMENT_MAX_LENGTH = 2200
MESSAGE_MAX_LENGTH = 1000

# Graph API codes for "permission not granted" (10 and the 200-299 range)
PERMISSION_ERROR_CODES = {10} | set(range(200, 300))


def clean_text(text: Optional[str], max_length: int) -> str:
    """Strip and validate outbound text."""
    text = (text or "").strip()
    if not text:
        raise InvalidRequestError("Text is required")
    if len(text) > max_length:
        raise InvalidRequestError(f"Text exceeds {max_length} characters")
    return text


class ReplyRelay:
    """Posts replies and DMs on behalf of the connected account."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        store: CredentialStore,
        tokens: TokenManager,
        graph: InstagramGraphClient,
    ):
        self.session_factory = session_factory
        self.store = store
        self.tokens = tokens
        self.graph = graph

    def _require_scope(self, owner_id: str, scope: str) -> StoredConnection:
        conn = self.store.get(owner_id)
        if conn is None:
            raise AuthError(AuthError.NO_CONNECTION, "Instagram account not connected")
        if not has_scope(conn.scopes, scope):
            raise ScopePermissionError(scope)
        return conn

    def _translate(self, owner_id: str, error: Exception, scope: str) -> Exception:
        if isinstance(error, AuthError):
            self.tokens.invalidate(owner_id, error.message)
            return error
        if isinstance(error, ProviderError) and error.provider_code in PERMISSION_ERROR_CODES:
            return ScopePermissionError(scope, error.message)
        return error

    # =========================================================================
    # Comments
    # =========================================================================

    async def reply_to_comment(self, owner_id: str, comment_id: str, text: str) -> str:
        """
        Reply to a comment on the account's media.

        Returns:
            Provider id of the new reply

        Raises:
            InvalidRequestError, ScopePermissionError, AuthError, ProviderError
        """
        text = clean_text(text, COMMENT_MAX_LENGTH)
        if not comment_id:
            raise InvalidRequestError("comment_id is required")
        self._require_scope(owner_id, SCOPE_MANAGE_COMMENTS)

        grant = await self.tokens.get_valid_token(owner_id, SCOPE_MANAGE_COMMENTS)
        try:
            remote_id = await self.graph.reply_to_comment(grant.access_token, comment_id, text)
        except (AuthError, ProviderError) as e:
            self._record_reply_failure(owner_id, comment_id)
            raise self._translate(owner_id, e, SCOPE_MANAGE_COMMENTS)

        try:
            db = self.session_factory()
            try:
                mark_comment_replied(db, owner_id, comment_id, text, remote_id, datetime.utcnow())
                db.commit()
            finally:
                db.close()
        except Exception as e:
            logger.warning(f"Reply {remote_id} posted but local comment update failed: {e}")

        return remote_id

    def _record_reply_failure(self, owner_id: str, comment_id: str) -> None:
        try:
            db = self.session_factory()
            try:
                db.query(Comment).filter(
                    Comment.owner_id == owner_id,
                    Comment.remote_comment_id == str(comment_id),
                    Comment.replied.is_(False),
                ).update({Comment.reply_status: ReplyStatus.FAILED.value}, synchronize_session=False)
                db.commit()
            finally:
                db.close()
        except Exception as e:
            logger.warning(f"Could not record failed reply on comment {comment_id}: {e}")

    # =========================================================================
    # Direct messages
    # =========================================================================

    async def send_message(self, owner_id: str, conversation_id: int, text: str) -> str:
        """
        Send a DM into a stored conversation.

        Returns:
            Provider message id
        """
        text = clean_text(text, MESSAGE_MAX_LENGTH)
        self._require_scope(owner_id, SCOPE_MANAGE_MESSAGES)

        db = self.session_factory()
        try:
            conversation = (
                db.query(Conversation)
                .filter(Conversation.id == conversation_id, Conversation.owner_id == owner_id)
                .first()
            )
            recipient_id = conversation.participant_id if conversation else None
        finally:
            db.close()
        if recipient_id is None:
            raise NotFoundError("Conversation not found")

        grant = await self.tokens.get_valid_token(owner_id, SCOPE_MANAGE_MESSAGES)
        try:
            remote_id = await self.graph.send_message(
                grant.access_token, grant.remote_account_id, recipient_id, text
            )
        except (AuthError, ProviderError) as e:
            raise self._translate(owner_id, e, SCOPE_MANAGE_MESSAGES)

        try:
            sent_at = datetime.utcnow()
            db = self.session_factory()
            try:
                insert_message(
                    db,
                    owner_id,
                    conversation_id,
                    remote_id,
                    MessageDirection.OUTBOUND,
                    grant.remote_account_id,
                    recipient_id,
                    text,
                    sent_at,
                )
                advance_last_message(db, conversation_id, sent_at, text)
                reset_unread(db, conversation_id)
                db.commit()
            finally:
                db.close()
        except Exception as e:
            logger.warning(f"Message {remote_id} sent but local store update failed: {e}")

        return remote_id
