"""
Social Sync API Routes

FastAPI routes for:
- Webhooks (receive DMs and comments from Meta)
- OAuth (connect / disconnect Instagram)
- Feed (full sync, live paging, comment replies)
- Inbox (pull sync, conversations, messages, DMs, identity refresh)
"""

import json
import logging
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, HTTPException, Request, Response, Query, Depends

from .config import (
    SCOPE_MANAGE_MESSAGES,
    get_webhook_callback_url,
    has_scope,
    is_oauth_configured,
    scope_delta,
)
from .engine import SocialSyncEngine
from .errors import AuthError
from .models import (
    ConnectionStatus,
    OAuthUrlResponse,
    ConnectionStatusResponse,
    FeedSyncRequest,
    FeedSyncResponse,
    FeedPageResponse,
    FeedPaging,
    CommentReplyRequest,
    SendMessageRequest,
    ReplyResponse,
    MarkReadRequest,
    ConversationListResponse,
    MessageListResponse,
    InboxSyncResponse,
    IdentityRefreshResponse,
    WebhookEventResponse,
    WebhookStatusResponse,
)
from .services.sync_orchestrator import feed_status

logger = logging.getLogger(__name__)

# Create router
social_router = APIRouter(prefix="/api", tags=["Social Sync"])


# =============================================================================
# Dependencies
# =============================================================================


def get_user_id(request: Request) -> str:
    """Extract user ID from request headers."""
    user_id = request.headers.get("x-user-id") or request.headers.get("x-clerk-user-id")
    if not user_id:
        raise HTTPException(status_code=401, detail="User ID required")
    return user_id


def get_engine(request: Request) -> SocialSyncEngine:
    """Engine built by the application lifespan."""
    return request.app.state.sync_engine


# =============================================================================
# Webhook Routes
# =============================================================================


@social_router.get("/webhooks/instagram")
async def verify_webhook(request: Request, engine: SocialSyncEngine = Depends(get_engine)):
    """Instagram webhook verification endpoint."""
    params = request.query_params
    challenge = engine.webhooks.verify_challenge(
        params.get("hub.mode"),
        params.get("hub.verify_token"),
        params.get("hub.challenge"),
    )

    if challenge is not None:
        logger.info("Webhook verified successfully")
        return Response(content=challenge, media_type="text/plain")

    raise HTTPException(status_code=403, detail="Verification failed")


@social_router.post("/webhooks/instagram", response_model=WebhookEventResponse)
async def receive_webhook(request: Request, engine: SocialSyncEngine = Depends(get_engine)):
    """Receive DM and comment events from Meta."""
    # Raw body for signature verification
    body = await request.body()
    signature = request.headers.get("X-Hub-Signature-256", "")

    if not engine.webhooks.verify_signature(body, signature):
        logger.warning("Invalid webhook signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Webhook body must be a JSON object")

    # Always 200 after a valid signature so Meta does not retry-storm
    try:
        result = await engine.webhooks.handle_payload(payload)
    except Exception as e:
        logger.error(f"Error processing Instagram webhook: {e}", exc_info=True)
        return WebhookEventResponse(success=True, failed=1)

    return WebhookEventResponse(success=True, **asdict(result))


# =============================================================================
# OAuth Routes
# =============================================================================


@social_router.get("/social/instagram/oauth/url", response_model=OAuthUrlResponse)
async def get_oauth_url(
    user_id: str = Depends(get_user_id),
    engine: SocialSyncEngine = Depends(get_engine),
):
    """Get the Instagram consent URL."""
    if not is_oauth_configured(engine.settings):
        raise HTTPException(status_code=503, detail="Instagram OAuth is not configured")

    url, state = await engine.oauth.get_authorization_url(user_id)
    return OAuthUrlResponse(url=url, state=state)


@social_router.get("/social/instagram/oauth/callback")
async def handle_oauth_callback(
    code: str,
    state: str,
    engine: SocialSyncEngine = Depends(get_engine),
):
    """Complete Instagram OAuth and save the connection."""
    connection = await engine.oauth.handle_callback(code, state)
    _, missing = scope_delta(connection.scopes)
    return {
        "success": True,
        "username": connection.username,
        "remote_account_id": connection.remote_account_id,
        "granted_scopes": list(connection.scopes),
        "missing_scopes": missing,
    }


@social_router.post("/social/instagram/disconnect")
async def disconnect(
    user_id: str = Depends(get_user_id),
    engine: SocialSyncEngine = Depends(get_engine),
):
    """Disconnect Instagram and remove synced data."""
    removed = engine.oauth.disconnect(user_id)
    return {"success": True, "disconnected": removed}


@social_router.get("/social/instagram/status", response_model=ConnectionStatusResponse)
async def get_status(
    user_id: str = Depends(get_user_id),
    engine: SocialSyncEngine = Depends(get_engine),
):
    """Effective connection status plus sync health."""
    status = engine.tokens.connection_status(user_id)
    connection = engine.store.get(user_id)
    if connection is None:
        return ConnectionStatusResponse(status=status, connected=False)

    granted, missing = scope_delta(connection.scopes)
    return ConnectionStatusResponse(
        status=status,
        connected=status in (ConnectionStatus.CONNECTED, ConnectionStatus.MISSING_PERMISSIONS),
        remote_account_id=connection.remote_account_id,
        username=connection.username,
        token_expires_at=connection.expires_at,
        granted_scopes=granted,
        missing_scopes=missing,
        status_reason=connection.status_reason,
        sync_state=engine.sync.get_sync_state(user_id),
    )


@social_router.get("/social/instagram/webhook/status", response_model=WebhookStatusResponse)
async def get_webhook_status(
    user_id: str = Depends(get_user_id),
    engine: SocialSyncEngine = Depends(get_engine),
):
    """Webhook setup and delivery health, to tell silent webhooks from an empty inbox."""
    connection = engine.store.get(user_id)
    if connection is None:
        raise AuthError(AuthError.NO_CONNECTION, "Instagram account not connected")

    state = engine.webhooks.webhook_health(user_id)
    verified_at = state.webhook_verified_at if state else None
    return WebhookStatusResponse(
        has_messages_permission=has_scope(connection.scopes, SCOPE_MANAGE_MESSAGES),
        webhook_verified_at=verified_at,
        last_webhook_event_at=state.last_webhook_event_at if state else None,
        last_webhook_error=state.last_webhook_error if state else None,
        callback_url=get_webhook_callback_url(engine.settings),
        is_configured=verified_at is not None,
    )


# =============================================================================
# Feed Routes
# =============================================================================


@social_router.post("/social/instagram/sync", response_model=FeedSyncResponse)
async def sync_feed(
    request: Optional[FeedSyncRequest] = None,
    user_id: str = Depends(get_user_id),
    engine: SocialSyncEngine = Depends(get_engine),
):
    """
    Full sync of media comments.

    Falls back to last-known-good data when the sync fails and something
    was synced before.
    """
    max_pages = request.max_pages if request else None
    try:
        result = await engine.sync.full_sync(user_id, max_pages=max_pages)
    except AuthError as e:
        cached = engine.sync.cached_feed(user_id)
        if not cached.items:
            raise
        return FeedSyncResponse(
            success=False,
            status=feed_status(cached.items, e.type, from_cache=True),
            items=cached.items,
            error=e.message,
            error_type=e.type,
            sync_state=cached.sync_state,
        )

    items = result.items
    from_cache = False
    if result.error and not items:
        cached = engine.sync.cached_feed(user_id)
        items, from_cache = cached.items, bool(cached.items)

    return FeedSyncResponse(
        success=result.complete,
        status=feed_status(items, result.error_type, from_cache=from_cache),
        items=items,
        error=result.error,
        error_type=result.error_type,
        pages_fetched=result.pages_fetched,
        complete=result.complete,
        granted_scopes=result.granted_scopes,
        missing_scopes=result.missing_scopes,
        sync_state=engine.sync.get_sync_state(user_id),
    )


@social_router.get("/social/instagram/feed", response_model=FeedPageResponse)
async def get_feed_page(
    after: Optional[str] = None,
    limit_media: Optional[int] = Query(None, ge=1, le=50),
    limit_comments: Optional[int] = Query(None, ge=1, le=50),
    limit_replies: Optional[int] = Query(None, ge=1, le=50),
    user_id: str = Depends(get_user_id),
    engine: SocialSyncEngine = Depends(get_engine),
):
    """One live page of media with nested comments and replies."""
    page = await engine.sync.sync_page(
        user_id,
        cursor=after,
        limit_media=limit_media,
        limit_comments=limit_comments,
        limit_replies=limit_replies,
    )
    return FeedPageResponse(items=page.items, paging=FeedPaging(after=page.next_cursor))


@social_router.post("/social/instagram/comments/reply", response_model=ReplyResponse)
async def reply_to_comment(
    request: CommentReplyRequest,
    user_id: str = Depends(get_user_id),
    engine: SocialSyncEngine = Depends(get_engine),
):
    """Reply to a comment."""
    remote_id = await engine.relay.reply_to_comment(user_id, request.comment_id, request.text)
    return ReplyResponse(success=True, remote_id=remote_id)


# =============================================================================
# Inbox Routes
# =============================================================================


@social_router.post("/social/instagram/inbox/sync", response_model=InboxSyncResponse)
async def sync_inbox(
    user_id: str = Depends(get_user_id),
    engine: SocialSyncEngine = Depends(get_engine),
):
    """Pull DM conversations and messages."""
    result = await engine.sync.sync_inbox(user_id)
    return InboxSyncResponse(success=result.error is None, **asdict(result))


@social_router.get("/social/instagram/inbox/conversations", response_model=ConversationListResponse)
async def list_conversations(
    unread_only: bool = False,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_user_id),
    engine: SocialSyncEngine = Depends(get_engine),
):
    """Inbox conversation list."""
    return engine.conversations.get_inbox(user_id, unread_only=unread_only, limit=limit, offset=offset)


@social_router.get(
    "/social/instagram/inbox/conversations/{conversation_id}/messages",
    response_model=MessageListResponse,
)
async def list_messages(
    conversation_id: int,
    limit: int = Query(100, ge=1, le=500),
    user_id: str = Depends(get_user_id),
    engine: SocialSyncEngine = Depends(get_engine),
):
    """Messages of one conversation."""
    return engine.conversations.get_messages(user_id, conversation_id, limit=limit)


@social_router.post("/social/instagram/inbox/mark-read")
async def mark_read(
    request: MarkReadRequest,
    user_id: str = Depends(get_user_id),
    engine: SocialSyncEngine = Depends(get_engine),
):
    """Reset a conversation's unread counter."""
    marked = engine.conversations.mark_read(user_id, request.conversation_id)
    return {"success": True, "marked": marked}


@social_router.post("/social/instagram/inbox/send", response_model=ReplyResponse)
async def send_message(
    request: SendMessageRequest,
    user_id: str = Depends(get_user_id),
    engine: SocialSyncEngine = Depends(get_engine),
):
    """Send a DM into a conversation."""
    remote_id = await engine.relay.send_message(user_id, request.conversation_id, request.text)
    return ReplyResponse(success=True, remote_id=remote_id)


@social_router.post("/social/instagram/inbox/refresh-identities", response_model=IdentityRefreshResponse)
async def refresh_identities(
    user_id: str = Depends(get_user_id),
    engine: SocialSyncEngine = Depends(get_engine),
):
    """Re-resolve every known participant except the account itself."""
    result = await engine.identities.refresh_all(user_id)
    return IdentityRefreshResponse(success=True, **asdict(result))
