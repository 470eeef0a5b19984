"""
Instagram Graph Client - typed access to the Instagram Graph API

Uses graph.instagram.com with Instagram Business Login tokens.
The HTTP client is injected so one connection pool is shared per process
and tests can swap in a mock transport.

Docs:
- Business Login: https://developers.facebook.com/docs/instagram-platform/instagram-api-with-instagram-login
- Comments: https://developers.facebook.com/docs/instagram-platform/comment-moderation
- Messaging: https://developers.facebook.com/docs/instagram-platform/instagram-api-with-instagram-login/messaging-api
"""

import asyncio
import json
import logging
from typing import Optional, Dict, Any

import httpx

from ..config import SocialSyncSettings
from ..errors import AuthError, ProviderError

logger = logging.getLogger(__name__)

# Graph API OAuthException: token invalid, expired or revoked
TOKEN_ERROR_CODE = 190

# Fields requested for each comment and nested reply
COMMENT_FIELDS = "id,text,timestamp,from{id,username}"
MEDIA_FIELDS = "id,caption,media_type,media_url,thumbnail_url,permalink,timestamp,comments_count"
PARTICIPANT_FIELDS = "id,username,profile_pic"
MESSAGE_FIELDS = "id,from,to,message,created_time,attachments"


def next_cursor(result: Dict[str, Any]) -> Optional[str]:
    """Continuation cursor of a Graph list response, None on the last page."""
    paging = result.get("paging") or {}
    if not paging.get("next"):
        return None
    return (paging.get("cursors") or {}).get("after")


class InstagramGraphClient:
    """
    Client for the Instagram Graph API.

    Every call carries an explicit timeout. HTTP 429 is retried with
    exponential backoff; any other failure becomes a ProviderError, and
    a rejected token (code 190) becomes AuthError(expired).
    """

    def __init__(self, http_client: httpx.AsyncClient, settings: SocialSyncSettings):
        self.http = http_client
        self.settings = settings
        self.base_url = settings.graph_base_url
        self.timeout = settings.provider_timeout_seconds

    # =========================================================================
    # Transport
    # =========================================================================

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    async def _request(
        self,
        method: str,
        path: str,
        access_token: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Issue one Graph API call and return the decoded JSON object."""
        url = self._url(path)
        query = {k: v for k, v in (params or {}).items() if v is not None}
        if access_token and data is None:
            query["access_token"] = access_token
        form = None
        if data is not None:
            form = {k: v for k, v in data.items() if v is not None}
            if access_token:
                form["access_token"] = access_token

        attempts = max(1, self.settings.rate_limit_max_retries)
        for attempt in range(attempts):
            try:
                response = await self.http.request(
                    method, url, params=query, data=form, timeout=self.timeout
                )
            except httpx.TimeoutException:
                logger.error(f"Instagram API timeout: {method} {path}")
                raise ProviderError(
                    504,
                    "Request timeout. Instagram API is taking too long to respond.",
                    "TIMEOUT",
                )
            except httpx.HTTPError as e:
                logger.error(f"Instagram API network error: {method} {path}: {e}")
                raise ProviderError(
                    0,
                    str(e) or "Network error connecting to Instagram API",
                    "FETCH_ERROR",
                    "NetworkError",
                )

            if response.status_code == 429 and attempt < attempts - 1:
                delay = self.settings.rate_limit_base_delay * (2 ** attempt)
                logger.warning(f"Instagram API rate limited on {path}, retrying in {delay:.1f}s")
                await asyncio.sleep(delay)
                continue

            return self._parse(response, path)

    def _parse(self, response: httpx.Response, path: str) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            snippet = response.text[:200]
            logger.error(f"Instagram API returned non-JSON ({response.status_code}) for {path}: {snippet}")
            raise ProviderError(
                response.status_code if response.status_code >= 400 else 502,
                f"Invalid response from Instagram API: {snippet}",
            )

        # Some endpoints answer 200 with an error object
        error = data.get("error") if isinstance(data, dict) else None
        if error or response.status_code >= 400:
            error = error if isinstance(error, dict) else {}
            code = error.get("code")
            message = error.get("message") or f"Instagram API error: {response.reason_phrase}"
            logger.error(
                f"Instagram API error on {path}: status={response.status_code} "
                f"code={code} type={error.get('type')} message={message}"
            )
            if code == TOKEN_ERROR_CODE:
                raise AuthError(
                    AuthError.EXPIRED,
                    "Access token has expired. Please reconnect your Instagram account.",
                )
            status = response.status_code if response.status_code >= 400 else 400
            raise ProviderError(status, message, code, error.get("type"))

        if not isinstance(data, dict):
            raise ProviderError(502, "Unexpected response shape from Instagram API")
        return data

    # =========================================================================
    # OAuth
    # =========================================================================

    async def exchange_code(self, code: str, redirect_uri: str) -> Dict[str, Any]:
        """
        Exchange an authorization code for a short-lived token.

        Returns:
            Dict with access_token, user_id and permissions
        """
        result = await self._request(
            "POST",
            self.settings.instagram_token_url,
            data={
                "client_id": self.settings.instagram_app_id,
                "client_secret": self.settings.instagram_app_secret,
                "grant_type": "authorization_code",
                "redirect_uri": redirect_uri,
                "code": code,
            },
        )
        # Newer responses wrap the grant in a data list
        if isinstance(result.get("data"), list) and result["data"]:
            result = result["data"][0]
        if not result.get("access_token"):
            raise ProviderError(400, "No access token in code exchange response")
        return result

    async def exchange_long_lived_token(self, short_lived_token: str) -> Dict[str, Any]:
        """Swap a short-lived token for a 60-day long-lived token."""
        return await self._request(
            "GET",
            f"{self.settings.instagram_graph_url.rstrip('/')}/access_token",
            params={
                "grant_type": "ig_exchange_token",
                "client_secret": self.settings.instagram_app_secret,
                "access_token": short_lived_token,
            },
        )

    async def refresh_access_token(self, long_lived_token: str) -> Dict[str, Any]:
        """Refresh a long-lived token; returns access_token and expires_in."""
        result = await self._request(
            "GET",
            f"{self.settings.instagram_graph_url.rstrip('/')}/refresh_access_token",
            params={
                "grant_type": "ig_refresh_token",
                "access_token": long_lived_token,
            },
        )
        if not result.get("access_token"):
            raise ProviderError(400, "No access token in refresh response")
        return result

    # =========================================================================
    # Profiles
    # =========================================================================

    async def get_profile(self, access_token: str) -> Dict[str, Any]:
        """Connected account's own profile."""
        return await self._request(
            "GET",
            "me",
            access_token=access_token,
            params={"fields": "id,user_id,username,name,profile_picture_url"},
        )

    async def get_user_profile(self, access_token: str, user_id: str) -> Dict[str, Any]:
        """Profile of a messaging user (IGSID) visible to the connected account."""
        return await self._request(
            "GET",
            str(user_id),
            access_token=access_token,
            params={"fields": "name,username,profile_pic"},
        )

    # =========================================================================
    # Media & Comments
    # =========================================================================

    async def list_media_with_comments(
        self,
        access_token: str,
        limit_media: int,
        limit_comments: int,
        limit_replies: int,
        after: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        One page of media with nested comments and replies.

        Field expansion fetches comments and their replies in the same
        round trip as the media list.
        """
        comment_fields = f"{COMMENT_FIELDS},replies.limit({limit_replies}){{{COMMENT_FIELDS}}}"
        fields = f"{MEDIA_FIELDS},comments.limit({limit_comments}){{{comment_fields}}}"
        return await self._request(
            "GET",
            "me/media",
            access_token=access_token,
            params={"fields": fields, "limit": limit_media, "after": after},
        )

    async def reply_to_comment(self, access_token: str, comment_id: str, text: str) -> str:
        """Post a reply under a comment; returns the new comment id."""
        result = await self._request(
            "POST",
            f"{comment_id}/replies",
            access_token=access_token,
            data={"message": text},
        )
        remote_id = result.get("id")
        if not remote_id:
            raise ProviderError(502, "Reply response did not include an id")
        logger.info(f"Replied to comment {comment_id}: {remote_id}")
        return remote_id

    # =========================================================================
    # Messaging
    # =========================================================================

    async def list_conversations(
        self,
        access_token: str,
        limit: int = 20,
        message_limit: int = 20,
        after: Optional[str] = None,
    ) -> Dict[str, Any]:
        """One page of DM conversations with participants and recent messages."""
        fields = (
            f"id,updated_time,participants{{{PARTICIPANT_FIELDS}}},"
            f"messages.limit({message_limit}){{{MESSAGE_FIELDS}}}"
        )
        return await self._request(
            "GET",
            "me/conversations",
            access_token=access_token,
            params={"platform": "instagram", "fields": fields, "limit": limit, "after": after},
        )

    async def send_message(
        self, access_token: str, account_id: str, recipient_id: str, text: str
    ) -> str:
        """Send a text DM; returns the provider message id."""
        result = await self._request(
            "POST",
            f"{account_id}/messages",
            access_token=access_token,
            data={
                "recipient": json.dumps({"id": recipient_id}),
                "message": json.dumps({"text": text}),
            },
        )
        remote_id = result.get("message_id") or result.get("id")
        if not remote_id:
            raise ProviderError(502, "Send response did not include a message id")
        logger.info(f"Instagram DM sent to {recipient_id}: {remote_id}")
        return remote_id
