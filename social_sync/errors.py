"""
Error taxonomy for the sync engine.

Every error carries a `type` and `code` so routes can render a structured
body the dashboard uses to pick between "reconnect required", "missing
permission" and "provider unavailable" states.
"""

from typing import Any, Dict, Optional


class SocialSyncError(Exception):
    """Base class for caller-facing sync engine errors."""

    type = "error"
    http_status = 500

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message, "type": self.type}
        if self.code is not None:
            body["code"] = self.code
        return body


class AuthError(SocialSyncError):
    """No usable credential: no connection, expired token or missing scope."""

    type = "auth_error"
    http_status = 401

    NO_CONNECTION = "no_connection"
    EXPIRED = "expired"
    MISSING_SCOPE = "missing_scope"

    def __init__(self, code: str, message: str, required_scope: Optional[str] = None):
        super().__init__(message, code)
        self.required_scope = required_scope

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["requiresReconnect"] = True
        if self.required_scope:
            body["requiredPermission"] = self.required_scope
        return body


class ScopePermissionError(SocialSyncError):
    """The connection lacks the scope a write action needs."""

    type = "permission_error"
    http_status = 403

    def __init__(self, required_permission: str, message: Optional[str] = None):
        super().__init__(
            message or f"Permission denied: {required_permission} required",
            "missing_permission",
        )
        self.required_permission = required_permission

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["requiredPermission"] = self.required_permission
        return body


class ProviderError(SocialSyncError):
    """Provider-side failure, with the provider's status and message verbatim."""

    type = "provider_error"
    http_status = 502

    def __init__(
        self,
        status: int,
        message: str,
        provider_code: Optional[Any] = None,
        provider_type: Optional[str] = None,
    ):
        super().__init__(message, str(provider_code) if provider_code is not None else None)
        self.status = status
        self.provider_code = provider_code
        self.provider_type = provider_type

    @property
    def is_rate_limited(self) -> bool:
        return self.status == 429 or str(self.provider_code) in ("4", "17", "32", "613")

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["status"] = self.status
        return body


class InvalidRequestError(SocialSyncError):
    """Malformed caller input."""

    type = "validation_error"
    http_status = 400

    def __init__(self, message: str):
        super().__init__(message, "invalid_request")


class NotFoundError(SocialSyncError):
    """Local record not found within the caller's scope."""

    type = "not_found"
    http_status = 404

    def __init__(self, message: str):
        super().__init__(message, "not_found")
