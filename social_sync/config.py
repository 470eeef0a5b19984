"""
Social Sync Configuration

Settings for the Instagram Graph API integration: OAuth app credentials,
webhook secrets, timeouts, cache policy and feed page sizes.
"""

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional, Iterable


# =============================================================================
# Instagram OAuth Scopes
# =============================================================================

SCOPE_BASIC = "instagram_business_basic"
SCOPE_MANAGE_COMMENTS = "instagram_manage_comments"
SCOPE_MANAGE_MESSAGES = "instagram_business_manage_messages"
SCOPE_MANAGE_INSIGHTS = "instagram_business_manage_insights"
SCOPE_CONTENT_PUBLISH = "instagram_business_content_publish"

# Requested on the consent screen
OAUTH_SCOPES = [
    SCOPE_BASIC,
    SCOPE_MANAGE_COMMENTS,
    SCOPE_MANAGE_MESSAGES,
]

# Compared against granted scopes for sync diagnostics
REQUIRED_SCOPES = [
    SCOPE_BASIC,
    SCOPE_MANAGE_COMMENTS,
    SCOPE_MANAGE_MESSAGES,
    SCOPE_MANAGE_INSIGHTS,
    SCOPE_CONTENT_PUBLISH,
]

# The provider reports some permissions under two names depending on the login flow
SCOPE_ALIASES = {
    SCOPE_MANAGE_COMMENTS: {SCOPE_MANAGE_COMMENTS, "instagram_business_manage_comments"},
    SCOPE_MANAGE_MESSAGES: {SCOPE_MANAGE_MESSAGES, "instagram_manage_messages"},
    SCOPE_BASIC: {SCOPE_BASIC, "instagram_basic"},
}


def has_scope(granted: Optional[Iterable[str]], required: str) -> bool:
    """Check whether a granted scope list satisfies a required scope."""
    accepted = SCOPE_ALIASES.get(required, {required})
    return any(scope.strip() in accepted for scope in (granted or []))


def scope_delta(granted: Optional[Iterable[str]], required: Iterable[str] = REQUIRED_SCOPES):
    """Split required scopes into (granted, missing) lists."""
    granted = list(granted or [])
    present = [scope for scope in required if has_scope(granted, scope)]
    missing = [scope for scope in required if not has_scope(granted, scope)]
    return present, missing


# =============================================================================
# Settings Class
# =============================================================================


class SocialSyncSettings(BaseSettings):
    """Settings for the Instagram sync engine."""

    # ==========================================================================
    # Instagram App (Business Login)
    # ==========================================================================

    instagram_app_id: Optional[str] = None
    instagram_app_secret: Optional[str] = None

    instagram_graph_url: str = "https://graph.instagram.com"
    instagram_api_version: str = "v21.0"
    instagram_authorize_url: str = "https://www.instagram.com/oauth/authorize"
    instagram_token_url: str = "https://api.instagram.com/oauth/access_token"

    # ==========================================================================
    # Webhooks
    # ==========================================================================

    # Echoed back during the hub.challenge handshake
    instagram_webhook_verify_token: Optional[str] = None

    # HMAC-SHA256 signing secret for X-Hub-Signature-256 (skip check when unset)
    instagram_webhook_secret: Optional[str] = None

    # ==========================================================================
    # Provider calls
    # ==========================================================================

    provider_timeout_seconds: float = 10.0
    rate_limit_max_retries: int = 3
    rate_limit_base_delay: float = 1.0

    # Refresh tokens expiring within this many days
    token_refresh_window_days: int = 7

    # ==========================================================================
    # Identity cache
    # ==========================================================================

    identity_cache_ttl_days: int = 7
    identity_max_failures: int = 5
    identity_timeout_seconds: float = 2.0

    # ==========================================================================
    # Feed paging
    # ==========================================================================

    feed_media_limit: int = 12
    feed_comments_limit: int = 20
    feed_replies_limit: int = 20
    full_sync_max_pages: int = 10

    # ==========================================================================
    # General Settings
    # ==========================================================================

    # Base URL for OAuth redirect and webhook callbacks
    app_base_url: str = "http://localhost:8000"

    database_url: str = Field(
        default="sqlite:///./social_sync.db",
        validation_alias=AliasChoices("database_url", "DATABASE_URL", "POSTGRES_URI"),
    )

    # Fernet key for tokens at rest
    encryption_key: Optional[str] = None

    # Redis URL for OAuth state
    redis_url: str = "redis://localhost:6379"

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="",
        case_sensitive=False,
        env_file=".env",
        extra="ignore",
    )

    @property
    def graph_base_url(self) -> str:
        return f"{self.instagram_graph_url.rstrip('/')}/{self.instagram_api_version}"

    @property
    def clean_base_url(self) -> str:
        return self.app_base_url.rstrip("/")


# Singleton instance
_settings: Optional[SocialSyncSettings] = None


def get_social_sync_settings() -> SocialSyncSettings:
    """Get the social sync settings singleton."""
    global _settings
    if _settings is None:
        _settings = SocialSyncSettings()
    return _settings


# =============================================================================
# Helper Functions
# =============================================================================


def is_oauth_configured(settings: Optional[SocialSyncSettings] = None) -> bool:
    """Check if Instagram app credentials are configured."""
    settings = settings or get_social_sync_settings()
    return bool(settings.instagram_app_id and settings.instagram_app_secret)


def get_oauth_redirect_uri(settings: Optional[SocialSyncSettings] = None) -> str:
    """Redirect URI registered with the Instagram app."""
    settings = settings or get_social_sync_settings()
    return f"{settings.clean_base_url}/api/social/instagram/oauth/callback"


def get_webhook_callback_url(settings: Optional[SocialSyncSettings] = None) -> str:
    """Callback URL to paste into the app's webhook configuration."""
    settings = settings or get_social_sync_settings()
    return f"{settings.clean_base_url}/api/webhooks/instagram"
