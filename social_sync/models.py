"""
Pydantic models for Social Sync API requests and responses.

Covers: Connection status, Feed sync, Comment replies, Inbox, Webhooks
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum


# =============================================================================
# Enums
# =============================================================================


class ConnectionStatus(str, Enum):
    """Effective state of a provider connection."""
    CONNECTED = "connected"
    EXPIRED = "expired"
    MISSING_PERMISSIONS = "missing_permissions"
    NEEDS_REAUTH = "needs_reauth"
    NOT_CONNECTED = "not_connected"


class MessageDirection(str, Enum):
    """Message direction relative to the connected account."""
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class ReplyStatus(str, Enum):
    """Outcome of an outbound comment reply."""
    SENT = "sent"
    FAILED = "failed"


class FeedStatus(str, Enum):
    """Feed health the dashboard renders."""
    OK = "ok"
    PARTIAL = "partial"  # some pages failed, partial data returned
    STALE = "stale"  # sync failed, last-known-good data returned
    RECONNECT_REQUIRED = "reconnect_required"
    EMPTY = "empty"  # nothing synced yet


# =============================================================================
# Connection Models
# =============================================================================


class OAuthUrlResponse(BaseModel):
    """Consent URL for connecting an Instagram account."""
    url: str
    state: str


class SyncStateResponse(BaseModel):
    """Sync health for one connection."""
    last_synced_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    granted_scopes: List[str] = []
    missing_scopes: List[str] = []
    items_synced: int = 0

    model_config = ConfigDict(from_attributes=True)


class ConnectionStatusResponse(BaseModel):
    """Effective connection status plus sync health."""
    status: ConnectionStatus
    connected: bool
    remote_account_id: Optional[str] = None
    username: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    granted_scopes: List[str] = []
    missing_scopes: List[str] = []
    status_reason: Optional[str] = None
    sync_state: Optional[SyncStateResponse] = None


class WebhookStatusResponse(BaseModel):
    """Whether webhooks are set up and arriving for a connection."""
    has_messages_permission: bool
    webhook_verified_at: Optional[datetime] = None
    last_webhook_event_at: Optional[datetime] = None
    last_webhook_error: Optional[str] = None
    callback_url: str
    is_configured: bool


# =============================================================================
# Feed Models
# =============================================================================


class FeedSyncRequest(BaseModel):
    """Trigger a full feed sync."""
    max_pages: Optional[int] = Field(None, ge=1, le=50)


class FeedPaging(BaseModel):
    after: Optional[str] = None


class FeedPageResponse(BaseModel):
    """One page of media with nested comments and replies."""
    items: List[Dict[str, Any]]
    paging: FeedPaging


class FeedSyncResponse(BaseModel):
    """Result of a full sync, or last-known-good data when it failed."""
    success: bool
    status: FeedStatus
    items: List[Dict[str, Any]]
    error: Optional[str] = None
    error_type: Optional[str] = None
    pages_fetched: int = 0
    complete: bool = False
    granted_scopes: List[str] = []
    missing_scopes: List[str] = []
    sync_state: Optional[SyncStateResponse] = None


# =============================================================================
# Reply Models
# =============================================================================


class CommentReplyRequest(BaseModel):
    """Reply to a comment on one of the account's media."""
    comment_id: str
    text: str


class SendMessageRequest(BaseModel):
    """Send a DM into an existing conversation."""
    conversation_id: int
    text: str


class ReplyResponse(BaseModel):
    """Outcome of a reply or DM."""
    success: bool
    remote_id: str


# =============================================================================
# Inbox Models
# =============================================================================


class MarkReadRequest(BaseModel):
    conversation_id: int


class ConversationResponse(BaseModel):
    """Conversation in the inbox list."""
    id: int
    remote_conversation_id: str
    participant_id: str
    participant_name: Optional[str] = None
    participant_username: Optional[str] = None
    participant_avatar_url: Optional[str] = None
    last_message_at: Optional[datetime] = None
    last_message_preview: Optional[str] = None
    unread_count: int = 0

    model_config = ConfigDict(from_attributes=True)


class ConversationListResponse(BaseModel):
    """Inbox conversation list."""
    conversations: List[ConversationResponse]
    total: int
    unread_count: int


class MessageResponse(BaseModel):
    """Message in a conversation thread."""
    id: int
    remote_message_id: str
    direction: MessageDirection
    sender_id: Optional[str] = None
    recipient_id: Optional[str] = None
    text: Optional[str] = None
    attachments: Optional[List[Dict[str, Any]]] = None
    remote_timestamp: Optional[datetime] = None
    read_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class MessageListResponse(BaseModel):
    """Messages of one conversation, oldest first."""
    conversation: ConversationResponse
    messages: List[MessageResponse]
    total: int


class InboxSyncResponse(BaseModel):
    """Result of an inbox pull sync."""
    success: bool
    conversations: int
    messages_inserted: int
    identities_resolved: int
    error: Optional[str] = None


class IdentityRefreshResponse(BaseModel):
    """Result of a bulk identity re-resolution."""
    success: bool
    attempted: int
    resolved: int
    skipped: int


# =============================================================================
# Webhook Models
# =============================================================================


class WebhookEventResponse(BaseModel):
    """Acknowledgement returned to the provider after event delivery."""
    success: bool
    processed: int = 0
    inserted: int = 0
    dropped: int = 0
    failed: int = 0
