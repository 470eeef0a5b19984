"""
Tests for token validation and refresh.
"""

import asyncio
from datetime import datetime, timedelta

import httpx
import pytest

from database.models import Connection
from social_sync.config import SCOPE_BASIC, SCOPE_MANAGE_COMMENTS, SCOPE_MANAGE_MESSAGES
from social_sync.errors import AuthError
from social_sync.models import ConnectionStatus

from helpers import OWNER_ID, graph_error

REFRESH_PATH = "/refresh_access_token"


def refreshed(token: str = "token-new", expires_in: int = 5184000) -> dict:
    return {"access_token": token, "token_type": "bearer", "expires_in": expires_in}


def backdate_refresh(session_factory, connection_id: int, days: int) -> None:
    db = session_factory()
    try:
        db.query(Connection).filter(Connection.id == connection_id).update(
            {Connection.last_refreshed_at: datetime.utcnow() - timedelta(days=days)}
        )
        db.commit()
    finally:
        db.close()


class TestGetValidToken:
    @pytest.mark.asyncio
    async def test_no_connection(self, engine, graph_api):
        with pytest.raises(AuthError) as exc:
            await engine.tokens.get_valid_token(OWNER_ID)
        assert exc.value.code == AuthError.NO_CONNECTION
        assert graph_api.requests == []

    @pytest.mark.asyncio
    async def test_valid_token_returned_without_network(self, engine, graph_api, connect):
        connect()
        grant = await engine.tokens.get_valid_token(OWNER_ID, SCOPE_MANAGE_COMMENTS)
        assert grant.access_token == "token-current"
        assert graph_api.requests == []

    @pytest.mark.asyncio
    async def test_missing_scope_fails_before_network(self, engine, graph_api, connect):
        connect(scopes=[SCOPE_BASIC], expires_at=datetime.utcnow() - timedelta(days=1))
        graph_api.add("GET", REFRESH_PATH, refreshed())

        with pytest.raises(AuthError) as exc:
            await engine.tokens.get_valid_token(OWNER_ID, SCOPE_MANAGE_MESSAGES)

        assert exc.value.code == AuthError.MISSING_SCOPE
        assert exc.value.required_scope == SCOPE_MANAGE_MESSAGES
        assert graph_api.requests == []

    @pytest.mark.asyncio
    async def test_scope_alias_accepted(self, engine, connect):
        connect(scopes=[SCOPE_BASIC, "instagram_business_manage_comments"])
        grant = await engine.tokens.get_valid_token(OWNER_ID, SCOPE_MANAGE_COMMENTS)
        assert grant.access_token == "token-current"

    @pytest.mark.asyncio
    async def test_expired_token_refreshed_once(self, engine, graph_api, connect):
        connect(expires_at=datetime.utcnow() - timedelta(hours=1))
        graph_api.add("GET", REFRESH_PATH, refreshed())

        first = await engine.tokens.get_valid_token(OWNER_ID)
        second = await engine.tokens.get_valid_token(OWNER_ID)

        assert first.access_token == "token-new"
        assert second.access_token == "token-new"
        assert len(graph_api.calls(REFRESH_PATH)) == 1
        request = graph_api.calls(REFRESH_PATH)[0]
        assert request.url.params["grant_type"] == "ig_refresh_token"
        assert request.url.params["access_token"] == "token-current"

        stored = engine.store.get(OWNER_ID)
        assert stored.access_token == "token-new"
        assert stored.refresh_token == "token-new"
        assert stored.expires_at > datetime.utcnow() + timedelta(days=59)
        assert stored.status == ConnectionStatus.CONNECTED.value

    @pytest.mark.asyncio
    async def test_token_inside_window_refreshed_proactively(self, engine, graph_api, connect, session_factory):
        conn = connect(expires_at=datetime.utcnow() + timedelta(days=2))
        backdate_refresh(session_factory, conn.id, days=58)
        graph_api.add("GET", REFRESH_PATH, refreshed())

        grant = await engine.tokens.get_valid_token(OWNER_ID)

        assert grant.access_token == "token-new"

    @pytest.mark.asyncio
    async def test_short_lived_refresh_not_repeated(self, engine, graph_api, connect):
        connect(expires_at=datetime.utcnow() - timedelta(hours=1))
        graph_api.add("GET", REFRESH_PATH, refreshed(expires_in=86400))

        first = await engine.tokens.get_valid_token(OWNER_ID)
        second = await engine.tokens.get_valid_token(OWNER_ID)

        assert first.access_token == second.access_token == "token-new"
        assert len(graph_api.calls(REFRESH_PATH)) == 1

    @pytest.mark.asyncio
    async def test_fresh_token_inside_window_not_refreshed(self, engine, graph_api, connect):
        connect(expires_at=datetime.utcnow() + timedelta(days=2))

        grant = await engine.tokens.get_valid_token(OWNER_ID)

        assert grant.access_token == "token-current"
        assert graph_api.requests == []

    @pytest.mark.asyncio
    async def test_proactive_refresh_failure_keeps_current_token(self, engine, graph_api, connect, session_factory):
        conn = connect(expires_at=datetime.utcnow() + timedelta(days=2))
        backdate_refresh(session_factory, conn.id, days=58)
        graph_api.add("GET", REFRESH_PATH, graph_error(500, "Service temporarily unavailable", 2, "OAuthException"))

        grant = await engine.tokens.get_valid_token(OWNER_ID)

        assert grant.access_token == "token-current"
        assert engine.store.get(OWNER_ID).status == ConnectionStatus.CONNECTED.value

    @pytest.mark.asyncio
    async def test_refresh_failure_on_expired_token_needs_reauth(self, engine, graph_api, connect):
        connect(expires_at=datetime.utcnow() - timedelta(hours=1))
        graph_api.add("GET", REFRESH_PATH, graph_error(400, "Error validating access token", 190))

        with pytest.raises(AuthError) as exc:
            await engine.tokens.get_valid_token(OWNER_ID)

        assert exc.value.code == AuthError.EXPIRED
        assert engine.store.get(OWNER_ID).status == ConnectionStatus.NEEDS_REAUTH.value

        # Later calls fail fast without another refresh attempt
        with pytest.raises(AuthError):
            await engine.tokens.get_valid_token(OWNER_ID)
        assert len(graph_api.calls(REFRESH_PATH)) == 1

    @pytest.mark.asyncio
    async def test_expired_without_refresh_token(self, engine, graph_api, connect):
        connect(expires_at=datetime.utcnow() - timedelta(hours=1), refresh_token=None)

        with pytest.raises(AuthError) as exc:
            await engine.tokens.get_valid_token(OWNER_ID)

        assert exc.value.code == AuthError.EXPIRED
        assert engine.store.get(OWNER_ID).status == ConnectionStatus.EXPIRED.value
        assert graph_api.requests == []

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self, engine, graph_api, connect):
        connect(expires_at=datetime.utcnow() - timedelta(hours=1))

        async def slow_refresh(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(0.01)
            return httpx.Response(200, json=refreshed())

        graph_api.add("GET", REFRESH_PATH, slow_refresh)

        grants = await asyncio.gather(
            *(engine.tokens.get_valid_token(OWNER_ID) for _ in range(5))
        )

        assert {g.access_token for g in grants} == {"token-new"}
        assert len(graph_api.calls(REFRESH_PATH)) == 1
        assert len(engine.tokens._locks) == 0

    @pytest.mark.asyncio
    async def test_undecryptable_token_needs_reauth(self, engine, graph_api, connect, session_factory):
        conn = connect()
        db = session_factory()
        try:
            db.query(Connection).filter(Connection.id == conn.id).update(
                {Connection.encrypted_access_token: "not-a-fernet-token"}
            )
            db.commit()
        finally:
            db.close()

        with pytest.raises(AuthError) as exc:
            await engine.tokens.get_valid_token(OWNER_ID)

        assert exc.value.code == AuthError.EXPIRED
        assert engine.store.get(OWNER_ID).status == ConnectionStatus.NEEDS_REAUTH.value


class TestCredentialStore:
    def test_swap_with_stale_ciphertext_is_rejected(self, engine, connect):
        conn = connect()

        assert engine.store.swap_token(conn.id, conn.access_ciphertext, "token-a", "token-a", None)
        assert not engine.store.swap_token(conn.id, conn.access_ciphertext, "token-b", "token-b", None)
        assert engine.store.get(OWNER_ID).access_token == "token-a"

    def test_save_replaces_existing_connection(self, engine, connect):
        first = connect()
        engine.tokens.invalidate(OWNER_ID, "revoked")
        second = connect(access_token="token-fresh")

        assert second.id == first.id
        assert second.access_token == "token-fresh"
        assert second.status == ConnectionStatus.CONNECTED.value
        assert second.status_reason is None

    def test_tokens_encrypted_at_rest(self, engine, connect, session_factory):
        connect(access_token="plain-secret")
        db = session_factory()
        try:
            row = db.query(Connection).first()
            assert "plain-secret" not in row.encrypted_access_token
        finally:
            db.close()

    def test_find_by_remote_account(self, engine, connect):
        connect(account_id="178400099")
        assert engine.store.find_by_remote_account("178400099").owner_id == OWNER_ID
        assert engine.store.find_by_remote_account("unknown") is None


class TestConnectionStatus:
    def test_not_connected(self, engine):
        assert engine.tokens.connection_status(OWNER_ID) == ConnectionStatus.NOT_CONNECTED

    def test_connected(self, engine, connect):
        connect()
        assert engine.tokens.connection_status(OWNER_ID) == ConnectionStatus.CONNECTED

    def test_missing_permissions(self, engine, connect):
        connect(scopes=[SCOPE_BASIC])
        assert engine.tokens.connection_status(OWNER_ID) == ConnectionStatus.MISSING_PERMISSIONS

    def test_expired(self, engine, connect):
        connect(expires_at=datetime.utcnow() - timedelta(minutes=5))
        assert engine.tokens.connection_status(OWNER_ID) == ConnectionStatus.EXPIRED

    def test_invalidate_marks_needs_reauth(self, engine, connect):
        connect()
        engine.tokens.invalidate(OWNER_ID, "Provider rejected token")

        stored = engine.store.get(OWNER_ID)
        assert stored.status == ConnectionStatus.NEEDS_REAUTH.value
        assert stored.status_reason == "Provider rejected token"
        assert engine.tokens.connection_status(OWNER_ID) == ConnectionStatus.NEEDS_REAUTH
