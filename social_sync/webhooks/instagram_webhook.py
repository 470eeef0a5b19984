"""
Instagram Webhook Handler - DMs and comments pushed by Meta

Handles:
- Direct messages (inbound, and echoes of messages the account sent)
- Comments and live comments on the account's media

Webhook URL: POST /api/webhooks/instagram
Verification: GET /api/webhooks/instagram?hub.mode=subscribe&hub.verify_token=...

Webhooks are a hint, not the source of truth: every mutation is an
idempotent upsert keyed by the provider's id, and pull sync reconciles
anything that was missed.
"""

import logging
import hmac
import hashlib
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, List, Tuple, Callable

from sqlalchemy.orm import Session

from database.models import Comment, SyncState
from ..config import SocialSyncSettings
from ..models import MessageDirection
from ..services.credential_store import CredentialStore, StoredConnection
from ..services.identity_cache import IdentityCache
from ..services.social_records import (
    PROVIDER,
    placeholder_conversation_id,
    parse_timestamp,
    upsert_conversation,
    insert_message,
    advance_last_message,
    increment_unread,
    reset_unread,
    upsert_comment,
    mark_comment_replied,
    update_sync_state,
)

logger = logging.getLogger(__name__)

# Top-level "object" values that carry Instagram events
SUPPORTED_OBJECTS = ("instagram", "page")

COMMENT_FIELDS = ("comments", "live_comments")


def _as_list(value: Any) -> Optional[List[Any]]:
    """Missing means empty; anything but a list is malformed (None)."""
    if value is None:
        return []
    return value if isinstance(value, list) else None


class WebhookEventKind(str, Enum):
    """Closed set of events the ingestor normalizes."""
    MESSAGE = "message"
    COMMENT = "comment"


class EventOutcome(str, Enum):
    INSERTED = "inserted"
    DUPLICATE = "duplicate"
    DROPPED = "dropped"


@dataclass(frozen=True)
class WebhookEvent:
    kind: WebhookEventKind
    account_id: str  # entry.id: the Instagram account the event belongs to
    payload: Dict[str, Any]
    time: Optional[Any] = None


@dataclass
class WebhookIngestResult:
    processed: int = 0
    inserted: int = 0
    dropped: int = 0
    failed: int = 0


class InstagramWebhookHandler:
    """
    Verifies and applies Instagram webhook deliveries.

    Each event kind maps to exactly one apply function; construction fails
    if a kind has no handler.
    """

    def __init__(
        self,
        settings: SocialSyncSettings,
        store: CredentialStore,
        session_factory: Callable[[], Session],
        identities: IdentityCache,
    ):
        self.settings = settings
        self.store = store
        self.session_factory = session_factory
        self.identities = identities

        self._handlers = {
            WebhookEventKind.MESSAGE: self._apply_message,
            WebhookEventKind.COMMENT: self._apply_comment,
        }
        missing = set(WebhookEventKind) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No webhook handler for event kinds: {sorted(k.value for k in missing)}")

    # =========================================================================
    # Verification
    # =========================================================================

    def verify_challenge(
        self, mode: Optional[str], token: Optional[str], challenge: Optional[str]
    ) -> Optional[str]:
        """Return the challenge to echo, or None if the handshake is rejected."""
        expected = self.settings.instagram_webhook_verify_token
        if mode != "subscribe" or not expected or not token or challenge is None:
            return None
        if not hmac.compare_digest(token, expected):
            return None
        self._stamp_verified()
        return challenge

    def _stamp_verified(self) -> None:
        # The subscription is app-wide, so every connected owner is now verified
        now = datetime.utcnow()
        db = self.session_factory()
        try:
            for owner_id in self.store.owner_ids():
                update_sync_state(db, owner_id, {"webhook_verified_at": now})
            db.commit()
        except Exception as e:
            db.rollback()
            logger.warning(f"Could not record webhook verification: {e}")
        finally:
            db.close()

    def _record_delivery(self, owner_id: str, error: Optional[str]) -> None:
        db = self.session_factory()
        try:
            update_sync_state(
                db,
                owner_id,
                {"last_webhook_event_at": datetime.utcnow(), "last_webhook_error": error},
            )
            db.commit()
        except Exception as e:
            db.rollback()
            logger.warning(f"Could not record webhook delivery for owner {owner_id}: {e}")
        finally:
            db.close()

    def webhook_health(self, owner_id: str) -> Optional[SyncState]:
        """SyncState row carrying the owner's webhook stamps, if any."""
        db = self.session_factory()
        try:
            return (
                db.query(SyncState)
                .filter(SyncState.owner_id == owner_id, SyncState.provider == PROVIDER)
                .first()
            )
        finally:
            db.close()

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        """
        Verify webhook signature from Meta.

        Args:
            payload: Raw request body, exactly as received
            signature: X-Hub-Signature-256 header value

        Returns:
            True if the signature is valid, or no signing secret is configured
        """
        secret = self.settings.instagram_webhook_secret
        if not secret:
            return True
        if not signature or not signature.startswith("sha256="):
            return False

        expected_signature = hmac.new(
            secret.encode(),
            payload,
            hashlib.sha256,
        ).hexdigest()

        # Signature format: sha256=...
        provided = signature[len("sha256="):]

        return hmac.compare_digest(expected_signature, provided)

    # =========================================================================
    # Parsing
    # =========================================================================

    def parse_events(self, payload: Dict[str, Any]) -> Tuple[List[WebhookEvent], int]:
        """Walk the delivery envelope into typed events; returns (events, skipped count)."""
        events: List[WebhookEvent] = []
        skipped = 0

        entries = _as_list(payload.get("entry"))
        if entries is None:
            logger.warning("Ignoring webhook with a malformed entry list")
            return events, 1

        object_type = payload.get("object")
        if object_type not in SUPPORTED_OBJECTS:
            logger.warning(f"Ignoring webhook for unsupported object type: {object_type}")
            return events, len(entries)

        for entry in entries:
            if not isinstance(entry, dict) or entry.get("id") is None:
                skipped += 1
                continue
            account_id = str(entry["id"])
            messaging = _as_list(entry.get("messaging"))
            changes = _as_list(entry.get("changes"))
            if messaging is None or changes is None:
                logger.warning(f"Skipping malformed webhook entry for account {account_id}")
                skipped += 1
                continue

            for item in messaging:
                if isinstance(item, dict) and isinstance(item.get("message"), dict):
                    events.append(
                        WebhookEvent(WebhookEventKind.MESSAGE, account_id, item, item.get("timestamp"))
                    )
                else:
                    # Reads, reactions and postbacks are not stored
                    skipped += 1

            for change in changes:
                if isinstance(change, dict) and change.get("field") in COMMENT_FIELDS:
                    events.append(
                        WebhookEvent(
                            WebhookEventKind.COMMENT,
                            account_id,
                            change.get("value") or {},
                            entry.get("time"),
                        )
                    )
                else:
                    skipped += 1

        return events, skipped

    # =========================================================================
    # Delivery
    # =========================================================================

    async def handle_payload(self, payload: Dict[str, Any]) -> WebhookIngestResult:
        """
        Apply a verified webhook delivery.

        Failures of individual events are logged and counted, never raised,
        so the provider is always acknowledged.
        """
        events, skipped = self.parse_events(payload)
        result = WebhookIngestResult(dropped=skipped)
        # Last error per owner seen in this delivery; None when everything applied
        delivered: Dict[str, Optional[str]] = {}

        for event in events:
            conn = self.store.find_by_remote_account(event.account_id)
            if conn is None:
                logger.warning(
                    f"Dropping {event.kind.value} webhook for unknown Instagram account {event.account_id}"
                )
                result.dropped += 1
                continue

            delivered.setdefault(conn.owner_id, None)
            try:
                outcome = await self._handlers[event.kind](conn, event)
            except Exception as e:
                logger.error(
                    f"Error applying {event.kind.value} webhook for account {event.account_id}: {e}",
                    exc_info=True,
                )
                delivered[conn.owner_id] = f"{event.kind.value}: {e}"
                result.failed += 1
                continue

            if outcome == EventOutcome.DROPPED:
                result.dropped += 1
                continue
            result.processed += 1
            if outcome == EventOutcome.INSERTED:
                result.inserted += 1

        for owner_id, error in delivered.items():
            self._record_delivery(owner_id, error)

        logger.info(
            f"Webhook processed={result.processed} inserted={result.inserted} "
            f"dropped={result.dropped} failed={result.failed}"
        )
        return result

    async def _apply_message(self, conn: StoredConnection, event: WebhookEvent) -> EventOutcome:
        item = event.payload
        message = item["message"]
        mid = message.get("mid")
        if not mid:
            logger.warning(f"Dropping message webhook without mid for account {conn.remote_account_id}")
            return EventOutcome.DROPPED

        account_id = conn.remote_account_id
        sender_id = str((item.get("sender") or {}).get("id") or "") or None
        recipient_id = str((item.get("recipient") or {}).get("id") or "") or None

        outbound = bool(message.get("is_echo")) or sender_id == account_id
        direction = MessageDirection.OUTBOUND if outbound else MessageDirection.INBOUND
        participant_id = recipient_id if outbound else sender_id
        if not participant_id or participant_id == account_id:
            logger.warning(f"Dropping message {mid}: no participant other than the account")
            return EventOutcome.DROPPED

        text = message.get("text")
        attachments = message.get("attachments")
        timestamp = parse_timestamp(event.time) or datetime.utcnow()

        db = self.session_factory()
        try:
            conversation_id = upsert_conversation(
                db,
                conn.owner_id,
                participant_id,
                placeholder_conversation_id(account_id, participant_id),
            )
            inserted = insert_message(
                db,
                conn.owner_id,
                conversation_id,
                mid,
                direction,
                sender_id,
                recipient_id,
                text,
                timestamp,
                attachments=attachments,
            )
            if inserted:
                advance_last_message(
                    db, conversation_id, timestamp, text or ("[attachment]" if attachments else None)
                )
                if outbound:
                    reset_unread(db, conversation_id)
                else:
                    increment_unread(db, conversation_id)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        if inserted and not outbound:
            await self._resolve_participant(conn.owner_id, participant_id)

        return EventOutcome.INSERTED if inserted else EventOutcome.DUPLICATE

    async def _resolve_participant(self, owner_id: str, participant_id: str) -> None:
        try:
            identity = await self.identities.resolve(owner_id, participant_id)
            if identity and identity.name:
                self.identities.apply_to_conversations(owner_id, identity)
        except Exception as e:
            logger.warning(f"Identity resolution after webhook failed for {participant_id}: {e}")

    async def _apply_comment(self, conn: StoredConnection, event: WebhookEvent) -> EventOutcome:
        value = event.payload
        comment_id = value.get("id")
        media_id = (value.get("media") or {}).get("id")
        if not comment_id or not media_id:
            logger.warning(f"Dropping comment webhook without comment/media id for {conn.remote_account_id}")
            return EventOutcome.DROPPED

        author = value.get("from") or {}
        parent_id = value.get("parent_id")
        timestamp = parse_timestamp(value.get("timestamp") or event.time) or datetime.utcnow()
        comment = {
            "id": str(comment_id),
            "text": value.get("text"),
            "timestamp": timestamp.isoformat(),
            "from": {"id": author.get("id"), "username": author.get("username")},
        }

        db = self.session_factory()
        try:
            existed = (
                db.query(Comment.id)
                .filter(
                    Comment.owner_id == conn.owner_id,
                    Comment.remote_media_id == str(media_id),
                    Comment.remote_comment_id == str(comment_id),
                )
                .first()
                is not None
            )
            upsert_comment(db, conn.owner_id, media_id, comment, parent_comment_id=parent_id)

            # The account answering a comment elsewhere (app, web) marks the parent replied
            if parent_id and str(author.get("id")) == conn.remote_account_id:
                mark_comment_replied(
                    db, conn.owner_id, parent_id, value.get("text"), str(comment_id), timestamp
                )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        return EventOutcome.DUPLICATE if existed else EventOutcome.INSERTED
