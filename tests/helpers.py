"""
Test doubles and payload builders shared across test modules.
"""

import hashlib
import hmac
import json
from typing import Any, Dict, List, Optional, Tuple

import httpx

from social_sync.config import SCOPE_BASIC, SCOPE_MANAGE_COMMENTS, SCOPE_MANAGE_MESSAGES

GRAPH = "/v21.0"
ACCOUNT_ID = "17841400000000001"
OWNER_ID = "user_owner_1"
ALL_SCOPES = [SCOPE_BASIC, SCOPE_MANAGE_COMMENTS, SCOPE_MANAGE_MESSAGES]


class GraphRecorder:
    """
    httpx.MockTransport handler that answers canned responses by
    (method, path) and records every request it sees.

    A route's responder may be a dict (200 JSON), an httpx.Response, a
    callable taking the request, or a list of those consumed in order
    (the last one repeats).
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.routes: Dict[Tuple[str, str], Any] = {}

    def add(self, method: str, path: str, responder: Any) -> None:
        self.routes[(method.upper(), path)] = responder

    def calls(self, path: Optional[str] = None, method: Optional[str] = None) -> List[httpx.Request]:
        return [
            r for r in self.requests
            if (path is None or r.url.path == path) and (method is None or r.method == method)
        ]

    def __call__(self, request: httpx.Request):
        self.requests.append(request)
        responder = self.routes.get((request.method, request.url.path))
        if responder is None:
            return httpx.Response(
                404,
                json={"error": {"message": f"No route for {request.method} {request.url.path}", "code": 100}},
            )
        if isinstance(responder, list):
            responder = responder.pop(0) if len(responder) > 1 else responder[0]
        if isinstance(responder, httpx.Response):
            # Fresh copy so a canned response can be served more than once
            return httpx.Response(responder.status_code, headers=responder.headers, content=responder.content)
        if isinstance(responder, dict):
            return httpx.Response(200, json=responder)
        return responder(request)


class FakeRedis:
    """The subset of redis.asyncio used for OAuth state."""

    def __init__(self):
        self.data: Dict[str, str] = {}
        self.ttls: Dict[str, int] = {}

    async def setex(self, key: str, ttl: int, value: str) -> None:
        self.data[key] = value
        self.ttls[key] = ttl

    async def get(self, key: str):
        return self.data.get(key)

    async def delete(self, key: str) -> None:
        self.data.pop(key, None)
        self.ttls.pop(key, None)


def form_data(request: httpx.Request) -> Dict[str, str]:
    """Decode a form-encoded request body."""
    return dict(httpx.QueryParams(request.content.decode()))


def graph_page(items: List[Dict[str, Any]], after: Optional[str] = None) -> Dict[str, Any]:
    """Graph list response; `after` set means another page follows."""
    page: Dict[str, Any] = {"data": items}
    if after:
        page["paging"] = {
            "cursors": {"before": "b", "after": after},
            "next": f"https://graph.instagram.com{GRAPH}/me/media?after={after}",
        }
    else:
        page["paging"] = {"cursors": {"before": "b", "after": "last"}}
    return page


def graph_error(status: int, message: str, code: int, error_type: str = "OAuthException") -> httpx.Response:
    return httpx.Response(
        status,
        json={"error": {"message": message, "type": error_type, "code": code, "fbtrace_id": "trace"}},
    )


def media(media_id: str, comments: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    return {
        "id": media_id,
        "caption": f"post {media_id}",
        "media_type": "IMAGE",
        "permalink": f"https://instagram.com/p/{media_id}",
        "timestamp": "2024-05-01T10:00:00+0000",
        "comments_count": len(comments or []),
        "comments": {"data": comments or []},
    }


def comment(
    comment_id: str,
    text: str = "nice!",
    author_id: str = "ig_user_9",
    username: str = "fan_9",
    replies: Optional[List[Dict[str, Any]]] = None,
    timestamp: str = "2024-05-01T11:00:00+0000",
) -> Dict[str, Any]:
    data = {
        "id": comment_id,
        "text": text,
        "timestamp": timestamp,
        "from": {"id": author_id, "username": username},
    }
    if replies is not None:
        data["replies"] = {"data": replies}
    return data


def dm_event(
    mid: Optional[str],
    sender: str,
    recipient: str,
    text: str = "hello",
    timestamp: int = 1714557600000,
    is_echo: bool = False,
) -> Dict[str, Any]:
    message: Dict[str, Any] = {"text": text}
    if mid is not None:
        message["mid"] = mid
    if is_echo:
        message["is_echo"] = True
    return {
        "sender": {"id": sender},
        "recipient": {"id": recipient},
        "timestamp": timestamp,
        "message": message,
    }


def envelope(account_id: str, messaging=None, changes=None, object_type: str = "instagram") -> Dict[str, Any]:
    entry: Dict[str, Any] = {"id": account_id, "time": 1714557600}
    if messaging is not None:
        entry["messaging"] = messaging
    if changes is not None:
        entry["changes"] = changes
    return {"object": object_type, "entry": [entry]}


def signed(body: Dict[str, Any], secret: str = "hook-secret") -> Tuple[bytes, str]:
    """Serialize a webhook body and compute its X-Hub-Signature-256 header."""
    raw = json.dumps(body).encode()
    digest = hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()
    return raw, f"sha256={digest}"
