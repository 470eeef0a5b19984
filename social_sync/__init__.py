"""
Social Sync - Instagram integration sync engine

This package provides:
- OAuth connection management with encrypted token storage and refresh
- Signed webhook ingestion for DMs and comments
- Cursor-paginated pull sync of media comments and DM conversations
- Participant identity resolution with TTL and failure backoff
- Comment replies and DMs with permission pre-checks

Architecture:
- clients/: Instagram Graph API client
- services/: Business logic (tokens, identities, sync, replies, inbox)
- webhooks/: Instagram webhook handler
- routes.py: FastAPI endpoints
- config.py: Settings and scopes
"""

__version__ = "0.1.0"

from .config import get_social_sync_settings, SocialSyncSettings

__all__ = ["get_social_sync_settings", "SocialSyncSettings", "__version__"]
