"""
Social Sync Business Logic

- credential_store: encrypted OAuth credentials per owner
- token_manager: valid tokens, refresh, re-auth status
- identity_cache: user id -> display identity with TTL and backoff
- sync_orchestrator: paginated feed and inbox pulls
- reply_relay: comment replies and DMs
- oauth_manager: Instagram Business Login
- conversation_service: inbox reads and mark-read
"""

__all__ = []
