"""
Token Manager - hands out usable access tokens

Checks scope and expiry before returning a token and refreshes through
the provider when the token is expired or about to expire. Refreshes are
serialized per connection: an asyncio.Lock inside the process and a
conditional update guarded by the ciphertext we read across processes.
Losers of either race re-read the fresh token instead of refreshing again.
"""

import asyncio
import logging
import weakref
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Tuple

from ..clients.instagram_graph import InstagramGraphClient
from ..config import SocialSyncSettings, OAUTH_SCOPES, has_scope, scope_delta
from ..errors import AuthError, ProviderError
from ..models import ConnectionStatus
from .credential_store import CredentialStore, StoredConnection

logger = logging.getLogger(__name__)

# Long-lived Instagram tokens last 60 days
DEFAULT_TOKEN_LIFETIME_SECONDS = 5184000

# ig_refresh_token only accepts tokens at least a day old
MIN_TOKEN_AGE = timedelta(hours=24)


@dataclass(frozen=True)
class TokenGrant:
    """A token the caller may use right now."""

    access_token: str
    remote_account_id: str
    scopes: Tuple[str, ...]
    expires_at: Optional[datetime] = None


def _grant(conn: StoredConnection) -> TokenGrant:
    return TokenGrant(
        access_token=conn.access_token,
        remote_account_id=conn.remote_account_id,
        scopes=conn.scopes,
        expires_at=conn.expires_at,
    )


class TokenManager:
    """Validates and refreshes stored credentials."""

    def __init__(
        self,
        store: CredentialStore,
        graph: InstagramGraphClient,
        settings: SocialSyncSettings,
    ):
        self.store = store
        self.graph = graph
        self.refresh_window = timedelta(days=settings.token_refresh_window_days)
        # Entries live only while a refresh holds or waits on them
        self._locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, connection_id: int) -> asyncio.Lock:
        lock = self._locks.get(connection_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[connection_id] = lock
        return lock

    def _needs_refresh(self, conn: StoredConnection, now: datetime) -> bool:
        if conn.expires_at is None:
            return False
        if conn.is_expired(now):
            return True
        if conn.expires_at - now > self.refresh_window:
            return False
        # A token issued shorter than the window would otherwise refresh on every call
        recently_refreshed = (
            conn.last_refreshed_at is not None and now - conn.last_refreshed_at < MIN_TOKEN_AGE
        )
        return not recently_refreshed

    async def get_valid_token(
        self, owner_id: str, required_scope: Optional[str] = None
    ) -> TokenGrant:
        """
        Return a usable token for the owner's connection.

        Args:
            owner_id: Owning account
            required_scope: Scope the caller's operation needs, checked
                before any network call

        Raises:
            AuthError: no_connection, missing_scope or expired
        """
        conn = self.store.get(owner_id)
        if conn is None:
            raise AuthError(AuthError.NO_CONNECTION, "Instagram account not connected")

        if required_scope and not has_scope(conn.scopes, required_scope):
            raise AuthError(
                AuthError.MISSING_SCOPE,
                f"Instagram connection is missing the {required_scope} permission",
                required_scope=required_scope,
            )

        if conn.status == ConnectionStatus.NEEDS_REAUTH.value:
            raise AuthError(
                AuthError.EXPIRED,
                conn.status_reason or "Instagram token is no longer valid. Please reconnect.",
            )

        if conn.access_token is None:
            self.store.set_status(
                conn.id, ConnectionStatus.NEEDS_REAUTH, "Stored token could not be decrypted"
            )
            raise AuthError(AuthError.EXPIRED, "Stored Instagram token is unreadable. Please reconnect.")

        if not self._needs_refresh(conn, datetime.utcnow()):
            return _grant(conn)

        return await self._refresh(conn)

    async def _refresh(self, seen: StoredConnection) -> TokenGrant:
        async with self._lock_for(seen.id):
            conn = self.store.get_by_id(seen.id)
            if conn is None:
                raise AuthError(AuthError.NO_CONNECTION, "Instagram account not connected")

            now = datetime.utcnow()
            if conn.access_token and not self._needs_refresh(conn, now):
                # Another request refreshed while we waited for the lock
                return _grant(conn)

            if not conn.refresh_token:
                if not conn.is_expired(now):
                    return _grant(conn)
                self.store.set_status(
                    conn.id,
                    ConnectionStatus.EXPIRED,
                    "Token expired and no refresh token is stored",
                    expected_ciphertext=conn.access_ciphertext,
                )
                raise AuthError(AuthError.EXPIRED, "Instagram token has expired. Please reconnect.")

            try:
                result = await self.graph.refresh_access_token(conn.refresh_token)
            except (AuthError, ProviderError) as e:
                if not conn.is_expired(now):
                    logger.warning(
                        f"Proactive token refresh failed for connection {conn.id}, "
                        f"current token still valid until {conn.expires_at}: {e.message}"
                    )
                    return _grant(conn)
                logger.error(f"Token refresh failed for connection {conn.id}: {e.message}")
                self.store.set_status(
                    conn.id,
                    ConnectionStatus.NEEDS_REAUTH,
                    f"Token refresh failed: {e.message}",
                    expected_ciphertext=conn.access_ciphertext,
                )
                raise AuthError(
                    AuthError.EXPIRED,
                    "Instagram token has expired and could not be refreshed. Please reconnect.",
                )

            new_token = result["access_token"]
            expires_in = int(result.get("expires_in") or DEFAULT_TOKEN_LIFETIME_SECONDS)
            expires_at = datetime.utcnow() + timedelta(seconds=expires_in)
            # A refreshed long-lived token is also the next refresh credential
            new_refresh = result.get("refresh_token") or new_token

            swapped = self.store.swap_token(
                conn.id, conn.access_ciphertext, new_token, new_refresh, expires_at
            )
            if not swapped:
                winner = self.store.get_by_id(conn.id)
                if winner and winner.access_token and not winner.is_expired():
                    logger.info(f"Connection {conn.id} was refreshed concurrently, using stored token")
                    return _grant(winner)
                raise AuthError(AuthError.EXPIRED, "Instagram token could not be refreshed. Please reconnect.")

            logger.info(f"Refreshed Instagram token for connection {conn.id}, expires {expires_at.isoformat()}")
            return TokenGrant(
                access_token=new_token,
                remote_account_id=conn.remote_account_id,
                scopes=conn.scopes,
                expires_at=expires_at,
            )

    def invalidate(self, owner_id: str, reason: str) -> None:
        """Mark the connection needs_reauth after the provider rejected its token."""
        conn = self.store.get(owner_id)
        if conn is None:
            return
        self.store.set_status(conn.id, ConnectionStatus.NEEDS_REAUTH, reason)
        logger.warning(f"Marked connection {conn.id} for owner {owner_id} needs_reauth: {reason}")

    def connection_status(self, owner_id: str) -> ConnectionStatus:
        """Effective status without touching the network."""
        conn = self.store.get(owner_id)
        if conn is None:
            return ConnectionStatus.NOT_CONNECTED
        if conn.status == ConnectionStatus.NEEDS_REAUTH.value or conn.access_token is None:
            return ConnectionStatus.NEEDS_REAUTH
        if conn.status == ConnectionStatus.EXPIRED.value or conn.is_expired():
            return ConnectionStatus.EXPIRED
        if scope_delta(conn.scopes, OAUTH_SCOPES)[1]:
            return ConnectionStatus.MISSING_PERMISSIONS
        return ConnectionStatus.CONNECTED
