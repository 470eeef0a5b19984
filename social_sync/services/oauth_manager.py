"""
OAuth Manager for Instagram Business Login

Connect: consent URL with a one-time state kept in Redis.
Callback: code -> short-lived token -> long-lived token -> profile -> Connection.
"""

import secrets
import logging
import json
from typing import Optional, Dict, Any, Tuple, List, Union
from datetime import datetime, timedelta
from urllib.parse import urlencode

from ..clients.instagram_graph import InstagramGraphClient
from ..config import SocialSyncSettings, OAUTH_SCOPES, get_oauth_redirect_uri
from ..errors import InvalidRequestError, ProviderError
from .credential_store import CredentialStore, StoredConnection
from .token_manager import DEFAULT_TOKEN_LIFETIME_SECONDS

logger = logging.getLogger(__name__)

# OAuth state expiration (15 minutes)
STATE_EXPIRATION_SECONDS = 900

# Short-lived tokens from the code exchange last one hour
SHORT_LIVED_TOKEN_SECONDS = 3600


def parse_permissions(value: Union[str, List[str], None]) -> List[str]:
    """Granted permissions arrive as a comma-separated string or a list."""
    if not value:
        return []
    if isinstance(value, str):
        value = value.split(",")
    return [str(scope).strip() for scope in value if str(scope).strip()]


class InstagramOAuthManager:
    """
    Manages the OAuth2 flow for connecting an Instagram professional account.
    """

    def __init__(
        self,
        settings: SocialSyncSettings,
        graph: InstagramGraphClient,
        store: CredentialStore,
        redis_client=None,
    ):
        """
        Initialize the OAuth manager.

        Args:
            redis_client: Optional Redis client. If not provided, will create one.
        """
        self.settings = settings
        self.graph = graph
        self.store = store
        self.redis = redis_client

    async def _get_redis(self):
        """Get or create Redis client."""
        if self.redis is None:
            import redis.asyncio as aioredis
            self.redis = aioredis.from_url(self.settings.redis_url)
        return self.redis

    async def _store_state(self, state: str, data: Dict[str, Any]) -> None:
        """Store OAuth state in Redis."""
        redis = await self._get_redis()
        key = f"oauth:instagram:state:{state}"
        await redis.setex(key, STATE_EXPIRATION_SECONDS, json.dumps(data))

    async def _get_and_delete_state(self, state: str) -> Optional[Dict[str, Any]]:
        """Get OAuth state from Redis and delete it (one-time use)."""
        redis = await self._get_redis()
        key = f"oauth:instagram:state:{state}"
        data = await redis.get(key)
        if data:
            await redis.delete(key)
            return json.loads(data)
        return None

    async def get_authorization_url(self, owner_id: str) -> Tuple[str, str]:
        """
        Generate the Instagram consent URL.

        Args:
            owner_id: Owning account starting the connection

        Returns:
            Tuple of (authorization_url, state)
        """
        state = secrets.token_urlsafe(32)

        await self._store_state(
            state,
            {
                "user_id": owner_id,
                "platform": "instagram",
                "created_at": datetime.utcnow().isoformat(),
            },
        )

        params = {
            "client_id": self.settings.instagram_app_id,
            "redirect_uri": get_oauth_redirect_uri(self.settings),
            "scope": ",".join(OAUTH_SCOPES),
            "response_type": "code",
            "state": state,
        }
        url = f"{self.settings.instagram_authorize_url}?{urlencode(params)}"

        logger.info(f"Generated Instagram OAuth URL for owner {owner_id}")
        return url, state

    async def handle_callback(self, code: str, state: str) -> StoredConnection:
        """
        Complete the OAuth flow and save the connection.

        Raises:
            InvalidRequestError: If state is invalid or expired
            ProviderError: If the provider rejects the code
        """
        state_data = await self._get_and_delete_state(state)
        if not state_data:
            raise InvalidRequestError("Invalid or expired OAuth state")

        if state_data.get("platform") != "instagram":
            raise InvalidRequestError("State platform mismatch")

        owner_id = state_data["user_id"]

        short = await self.graph.exchange_code(code, get_oauth_redirect_uri(self.settings))
        scopes = parse_permissions(short.get("permissions"))
        access_token = short["access_token"]
        expires_in = SHORT_LIVED_TOKEN_SECONDS
        refresh_token = None

        try:
            long_lived = await self.graph.exchange_long_lived_token(access_token)
            access_token = long_lived.get("access_token", access_token)
            expires_in = int(long_lived.get("expires_in") or DEFAULT_TOKEN_LIFETIME_SECONDS)
            # Long-lived tokens refresh themselves via ig_refresh_token
            refresh_token = access_token
        except ProviderError as e:
            logger.warning(f"Long-lived token exchange failed for owner {owner_id}, keeping short-lived token: {e.message}")

        profile = await self.graph.get_profile(access_token)
        remote_account_id = str(profile.get("user_id") or profile.get("id") or short.get("user_id"))

        connection = self.store.save(
            owner_id=owner_id,
            remote_account_id=remote_account_id,
            username=profile.get("username"),
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=datetime.utcnow() + timedelta(seconds=expires_in),
            scopes=scopes,
        )

        logger.info(f"Instagram OAuth completed for owner {owner_id} (@{profile.get('username')})")
        return connection

    def disconnect(self, owner_id: str) -> bool:
        """Remove the owner's connection and synced data."""
        return self.store.delete(owner_id)
