"""
Identity Cache - resolves opaque Instagram user ids to display identities

Entries are scoped to the connected Instagram account that can see the user.
Lookups are served from the cache while fresh; ids the provider keeps
refusing are parked behind a per-id circuit breaker so they are never
retried. The provider call is capped at a couple of seconds so callers
never stall on identity data.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Callable, Iterable, List

import httpx
from sqlalchemy.orm import Session

from database.database import insert_for
from database.models import IdentityCacheEntry, Conversation, Message
from ..clients.instagram_graph import InstagramGraphClient
from ..config import SocialSyncSettings
from ..errors import AuthError, ProviderError
from .token_manager import TokenManager

logger = logging.getLogger(__name__)

# Webhook-created threads use a synthetic id until sync adopts the real one
PLACEHOLDER_PREFIX = "conv_"


@dataclass(frozen=True)
class Identity:
    """Resolved display data for a remote user id."""

    remote_user_id: str
    username: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    last_fetched_at: Optional[datetime] = None
    fail_count: int = 0

    @property
    def name(self) -> Optional[str]:
        return self.display_name or self.username


@dataclass
class IdentityRefreshResult:
    attempted: int = 0
    resolved: int = 0
    skipped: int = 0


def _to_identity(row: IdentityCacheEntry) -> Identity:
    return Identity(
        remote_user_id=row.remote_user_id,
        username=row.username,
        display_name=row.display_name,
        avatar_url=row.avatar_url,
        last_fetched_at=row.last_fetched_at,
        fail_count=row.fail_count or 0,
    )


class IdentityCache:
    """TTL + failure-backoff cache in front of the profile endpoint."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        graph: InstagramGraphClient,
        tokens: TokenManager,
        settings: SocialSyncSettings,
    ):
        self.session_factory = session_factory
        self.graph = graph
        self.tokens = tokens
        self.ttl = timedelta(days=settings.identity_cache_ttl_days)
        self.max_failures = settings.identity_max_failures
        self.timeout = settings.identity_timeout_seconds

    # =========================================================================
    # Cache rows
    # =========================================================================

    def _load(self, account_scope: str, remote_user_id: str) -> Optional[Identity]:
        db = self.session_factory()
        try:
            row = (
                db.query(IdentityCacheEntry)
                .filter(
                    IdentityCacheEntry.account_scope == account_scope,
                    IdentityCacheEntry.remote_user_id == remote_user_id,
                )
                .first()
            )
            return _to_identity(row) if row else None
        finally:
            db.close()

    def _is_fresh(self, entry: Identity, now: datetime) -> bool:
        if not entry.name or entry.last_fetched_at is None:
            return False
        return now - entry.last_fetched_at < self.ttl

    def _record_success(self, account_scope: str, identity: Identity) -> None:
        values = {
            "username": identity.username,
            "display_name": identity.display_name,
            "avatar_url": identity.avatar_url,
            "last_fetched_at": identity.last_fetched_at,
            "fail_count": 0,
        }
        db = self.session_factory()
        try:
            stmt = insert_for(db, IdentityCacheEntry).values(
                account_scope=account_scope,
                remote_user_id=identity.remote_user_id,
                **values,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["account_scope", "remote_user_id"],
                set_=values,
            )
            db.execute(stmt)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _record_failure(self, account_scope: str, remote_user_id: str) -> None:
        now = datetime.utcnow()
        table = IdentityCacheEntry.__table__
        db = self.session_factory()
        try:
            stmt = insert_for(db, IdentityCacheEntry).values(
                account_scope=account_scope,
                remote_user_id=remote_user_id,
                fail_count=1,
                last_failed_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["account_scope", "remote_user_id"],
                set_={"fail_count": table.c.fail_count + 1, "last_failed_at": now},
            )
            db.execute(stmt)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # =========================================================================
    # Resolution
    # =========================================================================

    async def resolve(
        self, owner_id: str, remote_user_id: str, force: bool = False
    ) -> Optional[Identity]:
        """
        Resolve a remote user id for the owner's connected account.

        Args:
            owner_id: Owning account
            remote_user_id: Instagram-scoped user id (never the account's own id)
            force: Skip the TTL check; the circuit breaker still applies

        Returns:
            Fresh or last-known identity, or None when nothing is known
        """
        conn = self.tokens.store.get(owner_id)
        if conn is None or not remote_user_id:
            return None
        account_scope = conn.remote_account_id
        remote_user_id = str(remote_user_id)
        if remote_user_id == account_scope:
            return None

        now = datetime.utcnow()
        entry = self._load(account_scope, remote_user_id)

        if entry and not force and self._is_fresh(entry, now):
            logger.debug(f"Identity cache hit for {remote_user_id}")
            return entry

        if entry and entry.fail_count >= self.max_failures:
            logger.debug(
                f"Identity {remote_user_id} skipped after {entry.fail_count} failed lookups"
            )
            return entry

        stage = {"token": True}

        async def lookup():
            grant = await self.tokens.get_valid_token(owner_id)
            stage["token"] = False
            return await self.graph.get_user_profile(grant.access_token, remote_user_id)

        try:
            # One budget covers a token refresh and the profile call
            profile = await asyncio.wait_for(lookup(), timeout=self.timeout)
        except AuthError as e:
            # Not the user's fault; the breaker only counts per-id refusals
            logger.info(f"Identity lookup for {remote_user_id} skipped: {e.message}")
            return entry
        except asyncio.TimeoutError:
            if stage["token"]:
                logger.info(f"Identity lookup for {remote_user_id} skipped: token refresh timed out")
                return entry
            logger.info(f"Identity lookup timed out for {remote_user_id}")
            self._record_failure(account_scope, remote_user_id)
            return entry
        except (ProviderError, httpx.HTTPError) as e:
            logger.info(f"Identity lookup failed for {remote_user_id}: {e!r}")
            self._record_failure(account_scope, remote_user_id)
            return entry

        identity = Identity(
            remote_user_id=remote_user_id,
            username=profile.get("username"),
            display_name=profile.get("name"),
            avatar_url=profile.get("profile_pic"),
            last_fetched_at=now,
        )
        if not identity.name:
            logger.info(f"Identity lookup for {remote_user_id} returned no name")
            self._record_failure(account_scope, remote_user_id)
            return entry

        self._record_success(account_scope, identity)
        return identity

    def apply_to_conversations(self, owner_id: str, identity: Identity) -> int:
        """Copy resolved display data onto the owner's conversations with that user."""
        values = {Conversation.participant_name: identity.name}
        # Missing profile fields never blank out what sync already stored
        if identity.username:
            values[Conversation.participant_username] = identity.username
        if identity.avatar_url:
            values[Conversation.participant_avatar_url] = identity.avatar_url

        db = self.session_factory()
        try:
            updated = (
                db.query(Conversation)
                .filter(
                    Conversation.owner_id == owner_id,
                    Conversation.participant_id == identity.remote_user_id,
                )
                .update(values, synchronize_session=False)
            )
            db.commit()
            return updated
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    async def resolve_and_apply(
        self, owner_id: str, remote_user_ids: Iterable[str], force: bool = False
    ) -> IdentityRefreshResult:
        """Resolve each id once and update the conversations that show it."""
        result = IdentityRefreshResult()
        seen = set()
        for remote_user_id in remote_user_ids:
            if not remote_user_id or remote_user_id in seen:
                continue
            seen.add(remote_user_id)
            result.attempted += 1
            identity = await self.resolve(owner_id, remote_user_id, force=force)
            if identity and identity.name:
                self.apply_to_conversations(owner_id, identity)
                result.resolved += 1
            else:
                result.skipped += 1
        return result

    # =========================================================================
    # Bulk refresh
    # =========================================================================

    def known_participants(self, owner_id: str, self_id: str, days: int = 30) -> List[str]:
        """Participant ids from recent messages and all conversations, minus the account itself."""
        since = datetime.utcnow() - timedelta(days=days)
        db = self.session_factory()
        try:
            ids = set()
            for (participant_id,) in db.query(Conversation.participant_id).filter(
                Conversation.owner_id == owner_id
            ):
                ids.add(participant_id)
            recent = db.query(Message.sender_id, Message.recipient_id).filter(
                Message.owner_id == owner_id,
                Message.created_at >= since,
            )
            for sender_id, recipient_id in recent:
                ids.update((sender_id, recipient_id))
        finally:
            db.close()

        return sorted(
            i for i in ids
            if i and i != self_id and not i.startswith(PLACEHOLDER_PREFIX)
        )

    async def refresh_all(self, owner_id: str) -> IdentityRefreshResult:
        """Force re-resolution of every known participant (TTL bypassed, breaker honoured)."""
        conn = self.tokens.store.get(owner_id)
        if conn is None:
            raise AuthError(AuthError.NO_CONNECTION, "Instagram account not connected")
        ids = self.known_participants(owner_id, conn.remote_account_id)
        result = await self.resolve_and_apply(owner_id, ids, force=True)
        logger.info(
            f"Identity refresh for owner {owner_id}: {result.resolved}/{result.attempted} resolved"
        )
        return result
