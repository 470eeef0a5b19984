"""
Sync Orchestrator - cursor-paginated pulls from the Graph API

Used both for full catch-up syncs and for live feed paging. Pull sync is
the source of truth: it is safe to run at any time and reconciles whatever
webhooks missed. Every page read is merged into the local store.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List, Dict, Any, Callable, Awaitable, Set

from sqlalchemy.orm import Session

from database.models import Comment, SyncState
from ..clients.instagram_graph import InstagramGraphClient, next_cursor
from ..config import SocialSyncSettings, SCOPE_MANAGE_MESSAGES, scope_delta
from ..errors import SocialSyncError, AuthError
from ..models import FeedStatus, MessageDirection, SyncStateResponse
from .credential_store import CredentialStore
from .identity_cache import IdentityCache
from .token_manager import TokenManager
from .social_records import (
    PROVIDER,
    parse_timestamp,
    upsert_conversation,
    insert_message,
    advance_last_message,
    upsert_comment,
    mark_comment_replied,
    update_sync_state,
)

logger = logging.getLogger(__name__)


@dataclass
class SyncPage:
    items: List[Dict[str, Any]]
    next_cursor: Optional[str] = None


@dataclass
class CollectedFeed:
    """Outcome of paging through one feed."""

    items: List[Dict[str, Any]]
    error: Optional[SocialSyncError] = None
    pages_fetched: int = 0
    # Where the next pass would continue; None once the feed is drained
    resume_cursor: Optional[str] = None

    @property
    def complete(self) -> bool:
        return self.error is None


@dataclass
class SyncResult:
    items: List[Dict[str, Any]]
    error: Optional[str] = None
    error_type: Optional[str] = None
    pages_fetched: int = 0
    complete: bool = False
    granted_scopes: List[str] = field(default_factory=list)
    missing_scopes: List[str] = field(default_factory=list)


@dataclass
class InboxSyncResult:
    conversations: int = 0
    messages_inserted: int = 0
    identities_resolved: int = 0
    error: Optional[str] = None


@dataclass
class CachedFeed:
    """Last-known-good comments grouped by media, plus sync health."""

    items: List[Dict[str, Any]]
    sync_state: Optional[SyncStateResponse] = None


def feed_status(
    items: List[Dict[str, Any]], error_type: Optional[str], from_cache: bool = False
) -> FeedStatus:
    """
    Health label the dashboard uses to pick what to render.

    error_type is the failing SocialSyncError's type, None after a clean sync.
    """
    if error_type == AuthError.type:
        return FeedStatus.RECONNECT_REQUIRED
    if error_type is None:
        return FeedStatus.OK if items else FeedStatus.EMPTY
    if not items:
        return FeedStatus.EMPTY
    return FeedStatus.STALE if from_cache else FeedStatus.PARTIAL


class SyncOrchestrator:
    """Pulls media comments and DM conversations into the local store."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        store: CredentialStore,
        tokens: TokenManager,
        graph: InstagramGraphClient,
        identities: IdentityCache,
        settings: SocialSyncSettings,
    ):
        self.session_factory = session_factory
        self.store = store
        self.tokens = tokens
        self.graph = graph
        self.identities = identities
        self.settings = settings

    # =========================================================================
    # Paging
    # =========================================================================

    async def _collect(
        self,
        fetch_page: Callable[[Optional[str]], Awaitable[SyncPage]],
        max_pages: int,
    ) -> CollectedFeed:
        """
        Follow cursors until the feed ends, a page fails, or max_pages is hit.

        Items are deduplicated by id because the provider may repeat items
        across pages when the feed changes mid-pass. A failed page keeps
        everything collected before it.
        """
        items: List[Dict[str, Any]] = []
        seen: Set[str] = set()
        cursor: Optional[str] = None
        pages = 0

        while pages < max_pages:
            try:
                page = await fetch_page(cursor)
            except SocialSyncError as e:
                logger.warning(f"Sync stopped after {pages} page(s): {e.message}")
                return CollectedFeed(items, e, pages, cursor)

            pages += 1
            for item in page.items:
                item_id = item.get("id")
                if item_id is None or item_id in seen:
                    continue
                seen.add(item_id)
                items.append(item)

            cursor = page.next_cursor
            if cursor is None:
                break

        return CollectedFeed(items, None, pages, cursor)

    # =========================================================================
    # Media comments
    # =========================================================================

    async def sync_page(
        self,
        owner_id: str,
        cursor: Optional[str] = None,
        limit_media: Optional[int] = None,
        limit_comments: Optional[int] = None,
        limit_replies: Optional[int] = None,
    ) -> SyncPage:
        """Fetch one page of media with nested comments/replies and merge it locally."""
        grant = await self.tokens.get_valid_token(owner_id)
        try:
            result = await self.graph.list_media_with_comments(
                grant.access_token,
                limit_media or self.settings.feed_media_limit,
                limit_comments or self.settings.feed_comments_limit,
                limit_replies or self.settings.feed_replies_limit,
                after=cursor,
            )
        except AuthError as e:
            self.tokens.invalidate(owner_id, e.message)
            raise

        media = result.get("data") or []
        self._store_comments(owner_id, grant.remote_account_id, media)
        self._annotate_replies(owner_id, media)
        return SyncPage(media, next_cursor(result))

    def _store_comments(self, owner_id: str, account_id: str, media: List[Dict[str, Any]]) -> None:
        db = self.session_factory()
        try:
            for item in media:
                media_id = item.get("id")
                if not media_id:
                    continue
                for comment in (item.get("comments") or {}).get("data") or []:
                    if not comment.get("id"):
                        continue
                    upsert_comment(db, owner_id, media_id, comment)
                    for reply in (comment.get("replies") or {}).get("data") or []:
                        if not reply.get("id"):
                            continue
                        upsert_comment(db, owner_id, media_id, reply, parent_comment_id=comment["id"])
                        if str((reply.get("from") or {}).get("id")) == account_id:
                            mark_comment_replied(
                                db,
                                owner_id,
                                comment["id"],
                                reply.get("text"),
                                reply["id"],
                                parse_timestamp(reply.get("timestamp")),
                            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _annotate_replies(self, owner_id: str, media: List[Dict[str, Any]]) -> None:
        """Attach local reply bookkeeping to the provider's comment dicts."""
        comments = [
            comment
            for item in media
            for comment in (item.get("comments") or {}).get("data") or []
            if comment.get("id")
        ]
        if not comments:
            return
        db = self.session_factory()
        try:
            rows = (
                db.query(Comment)
                .filter(
                    Comment.owner_id == owner_id,
                    Comment.remote_comment_id.in_([str(c["id"]) for c in comments]),
                )
                .all()
            )
            state = {row.remote_comment_id: row for row in rows}
        finally:
            db.close()

        for comment in comments:
            row = state.get(str(comment["id"]))
            comment["replied"] = bool(row and row.replied)
            comment["reply_text"] = row.reply_text if row else None
            comment["reply_status"] = row.reply_status if row else None

    async def full_sync(self, owner_id: str, max_pages: Optional[int] = None) -> SyncResult:
        """
        Page through the whole media feed.

        Never raises for provider failures once a connection exists: the
        result carries what was collected plus the error. SyncState is
        updated either way.
        """
        conn = self.store.get(owner_id)
        if conn is None:
            raise AuthError(AuthError.NO_CONNECTION, "Instagram account not connected")
        granted, missing = scope_delta(conn.scopes)

        collected = await self._collect(
            lambda cursor: self.sync_page(owner_id, cursor),
            max_pages or self.settings.full_sync_max_pages,
        )
        self._record_sync_state(owner_id, collected, granted, missing)

        logger.info(
            f"Full sync for owner {owner_id}: {len(collected.items)} items over "
            f"{collected.pages_fetched} page(s), complete={collected.complete}"
        )
        return SyncResult(
            items=collected.items,
            error=collected.error.message if collected.error else None,
            error_type=collected.error.type if collected.error else None,
            pages_fetched=collected.pages_fetched,
            complete=collected.complete,
            granted_scopes=granted,
            missing_scopes=missing,
        )

    def _record_sync_state(
        self, owner_id: str, collected: CollectedFeed, granted: List[str], missing: List[str]
    ) -> None:
        now = datetime.utcnow()
        values = {
            "last_attempt_at": now,
            "last_error": collected.error.message if collected.error else None,
            "granted_scopes": granted,
            "missing_scopes": missing,
            "cursor": collected.resume_cursor,
            "items_synced": len(collected.items),
        }
        if collected.complete:
            values["last_synced_at"] = now

        db = self.session_factory()
        try:
            update_sync_state(db, owner_id, values)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def get_sync_state(self, owner_id: str) -> Optional[SyncStateResponse]:
        db = self.session_factory()
        try:
            row = (
                db.query(SyncState)
                .filter(SyncState.owner_id == owner_id, SyncState.provider == PROVIDER)
                .first()
            )
            return SyncStateResponse.model_validate(row) if row else None
        finally:
            db.close()

    def cached_feed(self, owner_id: str) -> CachedFeed:
        """Stored comments grouped per media, newest media activity first."""
        db = self.session_factory()
        try:
            rows = (
                db.query(Comment)
                .filter(Comment.owner_id == owner_id)
                .order_by(Comment.remote_timestamp.desc())
                .all()
            )
        finally:
            db.close()

        media: Dict[str, Dict[str, Any]] = {}
        top_level: Dict[str, Dict[str, Any]] = {}
        replies: List[Comment] = []
        for row in rows:
            if row.parent_comment_id:
                replies.append(row)
                continue
            item = media.setdefault(row.remote_media_id, {"id": row.remote_media_id, "comments": {"data": []}})
            comment = _comment_dict(row)
            comment["replies"] = {"data": []}
            item["comments"]["data"].append(comment)
            top_level[row.remote_comment_id] = comment

        for row in reversed(replies):
            parent = top_level.get(row.parent_comment_id)
            if parent is not None:
                parent["replies"]["data"].append(_comment_dict(row))

        return CachedFeed(list(media.values()), self.get_sync_state(owner_id))

    # =========================================================================
    # Inbox
    # =========================================================================

    async def sync_inbox(self, owner_id: str, max_pages: Optional[int] = None) -> InboxSyncResult:
        """
        Pull DM conversations with their recent messages.

        Conversations merge with webhook-created threads by participant.
        Pulled messages never touch unread counters.
        """
        grant = await self.tokens.get_valid_token(owner_id, SCOPE_MANAGE_MESSAGES)
        account_id = grant.remote_account_id
        participants: Set[str] = set()
        inserted = {"messages": 0}

        async def fetch(cursor: Optional[str]) -> SyncPage:
            page_grant = await self.tokens.get_valid_token(owner_id, SCOPE_MANAGE_MESSAGES)
            try:
                result = await self.graph.list_conversations(page_grant.access_token, after=cursor)
            except AuthError as e:
                self.tokens.invalidate(owner_id, e.message)
                raise
            conversations = result.get("data") or []
            inserted["messages"] += self._store_conversations(
                owner_id, account_id, conversations, participants
            )
            return SyncPage(conversations, next_cursor(result))

        collected = await self._collect(fetch, max_pages or self.settings.full_sync_max_pages)

        refreshed = await self.identities.resolve_and_apply(owner_id, sorted(participants))

        logger.info(
            f"Inbox sync for owner {owner_id}: {len(collected.items)} conversations, "
            f"{inserted['messages']} new messages"
        )
        return InboxSyncResult(
            conversations=len(collected.items),
            messages_inserted=inserted["messages"],
            identities_resolved=refreshed.resolved,
            error=collected.error.message if collected.error else None,
        )

    def _store_conversations(
        self,
        owner_id: str,
        account_id: str,
        conversations: List[Dict[str, Any]],
        participants: Set[str],
    ) -> int:
        inserted = 0
        db = self.session_factory()
        try:
            for conv in conversations:
                others = [
                    p for p in (conv.get("participants") or {}).get("data") or []
                    if p.get("id") and str(p["id"]) != account_id
                ]
                if not conv.get("id") or not others:
                    continue
                participant = others[0]
                participant_id = str(participant["id"])
                participants.add(participant_id)

                conversation_id = upsert_conversation(
                    db,
                    owner_id,
                    participant_id,
                    str(conv["id"]),
                    participant_username=participant.get("username"),
                    participant_avatar_url=participant.get("profile_pic"),
                )

                for message in (conv.get("messages") or {}).get("data") or []:
                    if not message.get("id"):
                        continue
                    sender_id = str((message.get("from") or {}).get("id") or "") or None
                    recipients = (message.get("to") or {}).get("data") or []
                    recipient_id = str(recipients[0].get("id")) if recipients else None
                    direction = (
                        MessageDirection.OUTBOUND if sender_id == account_id else MessageDirection.INBOUND
                    )
                    timestamp = parse_timestamp(message.get("created_time"))
                    attachments = (message.get("attachments") or {}).get("data")
                    if insert_message(
                        db,
                        owner_id,
                        conversation_id,
                        str(message["id"]),
                        direction,
                        sender_id,
                        recipient_id,
                        message.get("message"),
                        timestamp,
                        attachments=attachments,
                    ):
                        inserted += 1
                    advance_last_message(
                        db,
                        conversation_id,
                        timestamp,
                        message.get("message") or ("[attachment]" if attachments else None),
                    )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        return inserted


def _comment_dict(row: Comment) -> Dict[str, Any]:
    return {
        "id": row.remote_comment_id,
        "text": row.text,
        "timestamp": row.remote_timestamp.isoformat() if row.remote_timestamp else None,
        "from": {"id": row.author_id, "username": row.author_username},
        "replied": bool(row.replied),
        "reply_text": row.reply_text,
        "reply_status": row.reply_status,
    }
