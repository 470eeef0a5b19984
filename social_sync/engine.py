"""
Component wiring for the sync engine.

Every component receives its collaborators explicitly; one engine is built
per application and handed to routes through a FastAPI dependency.
"""

from dataclasses import dataclass
from typing import Callable

import httpx
from sqlalchemy.orm import Session

from .clients.instagram_graph import InstagramGraphClient
from .config import SocialSyncSettings
from .services.conversation_service import ConversationService
from .services.credential_store import CredentialStore
from .services.identity_cache import IdentityCache
from .services.oauth_manager import InstagramOAuthManager
from .services.reply_relay import ReplyRelay
from .services.sync_orchestrator import SyncOrchestrator
from .services.token_encryption import TokenEncryptionService
from .services.token_manager import TokenManager
from .webhooks.instagram_webhook import InstagramWebhookHandler


@dataclass
class SocialSyncEngine:
    settings: SocialSyncSettings
    graph: InstagramGraphClient
    store: CredentialStore
    tokens: TokenManager
    identities: IdentityCache
    webhooks: InstagramWebhookHandler
    sync: SyncOrchestrator
    relay: ReplyRelay
    oauth: InstagramOAuthManager
    conversations: ConversationService


def build_engine(
    settings: SocialSyncSettings,
    session_factory: Callable[[], Session],
    http_client: httpx.AsyncClient,
    redis_client=None,
) -> SocialSyncEngine:
    """Construct all components around shared HTTP, database and Redis clients."""
    graph = InstagramGraphClient(http_client, settings)
    store = CredentialStore(session_factory, TokenEncryptionService(settings.encryption_key))
    tokens = TokenManager(store, graph, settings)
    identities = IdentityCache(session_factory, graph, tokens, settings)

    return SocialSyncEngine(
        settings=settings,
        graph=graph,
        store=store,
        tokens=tokens,
        identities=identities,
        webhooks=InstagramWebhookHandler(settings, store, session_factory, identities),
        sync=SyncOrchestrator(session_factory, store, tokens, graph, identities, settings),
        relay=ReplyRelay(session_factory, store, tokens, graph),
        oauth=InstagramOAuthManager(settings, graph, store, redis_client),
        conversations=ConversationService(session_factory),
    )
