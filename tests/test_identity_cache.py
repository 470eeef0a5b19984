"""
Tests for identity resolution: TTL, circuit breaker and timeouts.
"""

import asyncio
from datetime import datetime, timedelta

import httpx
import pytest

from database.models import Conversation, IdentityCacheEntry, Message
from social_sync.errors import AuthError

from helpers import ACCOUNT_ID, GRAPH, OWNER_ID, graph_error

USER_ID = "ig_user_42"
PROFILE_PATH = f"{GRAPH}/{USER_ID}"


def profile(name="Jane Doe", username="jane.doe"):
    return {"name": name, "username": username, "profile_pic": "https://cdn.example.com/jane.jpg", "id": USER_ID}


def seed_entry(session_factory, **values):
    db = session_factory()
    try:
        db.add(
            IdentityCacheEntry(
                account_scope=values.pop("account_scope", ACCOUNT_ID),
                remote_user_id=values.pop("remote_user_id", USER_ID),
                **values,
            )
        )
        db.commit()
    finally:
        db.close()


def load_entry(session_factory, remote_user_id=USER_ID):
    db = session_factory()
    try:
        return (
            db.query(IdentityCacheEntry)
            .filter(
                IdentityCacheEntry.account_scope == ACCOUNT_ID,
                IdentityCacheEntry.remote_user_id == remote_user_id,
            )
            .first()
        )
    finally:
        db.close()


class TestResolve:
    @pytest.mark.asyncio
    async def test_miss_fetches_and_caches(self, engine, graph_api, connect, session_factory):
        connect()
        graph_api.add("GET", PROFILE_PATH, profile())

        identity = await engine.identities.resolve(OWNER_ID, USER_ID)

        assert identity.name == "Jane Doe"
        assert identity.username == "jane.doe"
        assert identity.avatar_url == "https://cdn.example.com/jane.jpg"
        request = graph_api.calls(PROFILE_PATH)[0]
        assert request.url.params["fields"] == "name,username,profile_pic"

        entry = load_entry(session_factory)
        assert entry.display_name == "Jane Doe"
        assert entry.fail_count == 0

        again = await engine.identities.resolve(OWNER_ID, USER_ID)
        assert again.name == "Jane Doe"
        assert len(graph_api.calls(PROFILE_PATH)) == 1

    @pytest.mark.asyncio
    async def test_fresh_entry_makes_no_network_call(self, engine, graph_api, connect, session_factory):
        connect()
        seed_entry(
            session_factory,
            display_name="Cached Name",
            username="cached",
            last_fetched_at=datetime.utcnow() - timedelta(days=1),
        )

        identity = await engine.identities.resolve(OWNER_ID, USER_ID)

        assert identity.name == "Cached Name"
        assert graph_api.requests == []

    @pytest.mark.asyncio
    async def test_stale_entry_refetched(self, engine, graph_api, connect, session_factory):
        connect()
        seed_entry(
            session_factory,
            display_name="Old Name",
            last_fetched_at=datetime.utcnow() - timedelta(days=8),
        )
        graph_api.add("GET", PROFILE_PATH, profile(name="New Name"))

        identity = await engine.identities.resolve(OWNER_ID, USER_ID)

        assert identity.name == "New Name"
        assert load_entry(session_factory).display_name == "New Name"

    @pytest.mark.asyncio
    async def test_entry_without_name_is_not_a_hit(self, engine, graph_api, connect, session_factory):
        connect()
        seed_entry(session_factory, last_fetched_at=datetime.utcnow())
        graph_api.add("GET", PROFILE_PATH, profile())

        identity = await engine.identities.resolve(OWNER_ID, USER_ID)

        assert identity.name == "Jane Doe"
        assert len(graph_api.calls(PROFILE_PATH)) == 1

    @pytest.mark.asyncio
    async def test_failures_count_until_breaker_opens(self, engine, graph_api, connect, session_factory):
        connect()
        graph_api.add("GET", PROFILE_PATH, graph_error(400, "User consent is required to access user profile", 230))

        for _ in range(5):
            identity = await engine.identities.resolve(OWNER_ID, USER_ID)
            assert identity is None or identity.name is None
        assert load_entry(session_factory).fail_count == 5
        assert len(graph_api.calls(PROFILE_PATH)) == 5

        for _ in range(10):
            await engine.identities.resolve(OWNER_ID, USER_ID)
        assert len(graph_api.calls(PROFILE_PATH)) == 5

    @pytest.mark.asyncio
    async def test_open_breaker_makes_no_network_call(self, engine, graph_api, connect, session_factory):
        connect()
        seed_entry(session_factory, fail_count=5, last_failed_at=datetime.utcnow())
        graph_api.add("GET", PROFILE_PATH, profile())

        for _ in range(20):
            await engine.identities.resolve(OWNER_ID, USER_ID)
            await engine.identities.resolve(OWNER_ID, USER_ID, force=True)

        assert graph_api.requests == []

    @pytest.mark.asyncio
    async def test_force_bypasses_ttl(self, engine, graph_api, connect, session_factory):
        connect()
        seed_entry(session_factory, display_name="Cached", last_fetched_at=datetime.utcnow())
        graph_api.add("GET", PROFILE_PATH, profile(name="Renamed"))

        identity = await engine.identities.resolve(OWNER_ID, USER_ID, force=True)

        assert identity.name == "Renamed"

    @pytest.mark.asyncio
    async def test_failure_returns_last_known_identity(self, engine, graph_api, connect, session_factory):
        connect()
        seed_entry(
            session_factory,
            display_name="Last Known",
            last_fetched_at=datetime.utcnow() - timedelta(days=30),
        )
        graph_api.add("GET", PROFILE_PATH, graph_error(500, "An unexpected error has occurred", 2))

        identity = await engine.identities.resolve(OWNER_ID, USER_ID)

        assert identity.name == "Last Known"
        assert load_entry(session_factory).fail_count == 1

    @pytest.mark.asyncio
    async def test_profile_without_name_counts_as_failure(self, engine, graph_api, connect, session_factory):
        connect()
        graph_api.add("GET", PROFILE_PATH, {"id": USER_ID})

        assert await engine.identities.resolve(OWNER_ID, USER_ID) is None
        assert load_entry(session_factory).fail_count == 1

    @pytest.mark.asyncio
    async def test_slow_provider_times_out(self, settings, session_factory, http_client, redis_client, graph_api, connect):
        from social_sync.engine import build_engine

        slow_settings = settings.model_copy(update={"identity_timeout_seconds": 0.05})
        engine = build_engine(slow_settings, session_factory, http_client, redis_client)

        async def stall(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(1)
            return httpx.Response(200, json=profile())

        graph_api.add("GET", PROFILE_PATH, stall)
        connect()

        assert await engine.identities.resolve(OWNER_ID, USER_ID) is None
        assert load_entry(session_factory).fail_count == 1

    @pytest.mark.asyncio
    async def test_slow_token_refresh_shares_the_budget(
        self, settings, session_factory, http_client, redis_client, graph_api, connect
    ):
        from social_sync.engine import build_engine

        slow_settings = settings.model_copy(update={"identity_timeout_seconds": 0.05})
        engine = build_engine(slow_settings, session_factory, http_client, redis_client)

        async def stall(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(1)
            return httpx.Response(200, json={"access_token": "token-new", "expires_in": 5184000})

        graph_api.add("GET", "/refresh_access_token", stall)
        connect(expires_at=datetime.utcnow() - timedelta(hours=1))

        loop = asyncio.get_running_loop()
        started = loop.time()
        assert await engine.identities.resolve(OWNER_ID, USER_ID) is None
        assert loop.time() - started < 0.5
        # A stalled refresh is not the user's fault
        assert load_entry(session_factory) is None
        assert graph_api.calls(PROFILE_PATH) == []

    @pytest.mark.asyncio
    async def test_own_account_id_never_resolved(self, engine, graph_api, connect):
        connect()
        assert await engine.identities.resolve(OWNER_ID, ACCOUNT_ID) is None
        assert graph_api.requests == []

    @pytest.mark.asyncio
    async def test_not_connected_returns_none(self, engine, graph_api):
        assert await engine.identities.resolve(OWNER_ID, USER_ID) is None
        assert graph_api.requests == []

    @pytest.mark.asyncio
    async def test_rejected_token_is_not_counted_against_user(self, engine, graph_api, connect, session_factory):
        connect()
        graph_api.add("GET", PROFILE_PATH, graph_error(401, "Error validating access token", 190))

        assert await engine.identities.resolve(OWNER_ID, USER_ID) is None
        assert load_entry(session_factory) is None


class TestRefreshAll:
    @pytest.mark.asyncio
    async def test_not_connected_raises(self, engine):
        with pytest.raises(AuthError):
            await engine.identities.refresh_all(OWNER_ID)

    @pytest.mark.asyncio
    async def test_skips_self_and_placeholders(self, engine, graph_api, connect, session_factory):
        connect()
        db = session_factory()
        try:
            conv = Conversation(
                owner_id=OWNER_ID,
                provider="instagram",
                remote_conversation_id="t_100",
                participant_id=USER_ID,
            )
            db.add(conv)
            db.flush()
            db.add(
                Message(
                    owner_id=OWNER_ID,
                    conversation_id=conv.id,
                    remote_message_id="m_1",
                    direction="inbound",
                    sender_id=USER_ID,
                    recipient_id=ACCOUNT_ID,
                    text="hi",
                    created_at=datetime.utcnow(),
                )
            )
            db.add(
                Conversation(
                    owner_id=OWNER_ID,
                    provider="instagram",
                    remote_conversation_id="conv_x",
                    participant_id="conv_placeholder",
                )
            )
            db.commit()
        finally:
            db.close()
        graph_api.add("GET", PROFILE_PATH, profile())

        result = await engine.identities.refresh_all(OWNER_ID)

        assert result.attempted == 1
        assert result.resolved == 1
        assert [r.url.path for r in graph_api.requests] == [PROFILE_PATH]

        db = session_factory()
        try:
            conv = db.query(Conversation).filter(Conversation.participant_id == USER_ID).one()
            assert conv.participant_name == "Jane Doe"
            assert conv.participant_username == "jane.doe"
        finally:
            db.close()
