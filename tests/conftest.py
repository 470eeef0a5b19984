"""
Shared fixtures: in-memory SQLite, a recording Graph API transport and an
in-memory Redis double.
"""

from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional

import httpx
import pytest
from cryptography.fernet import Fernet

from database.database import Base, create_db_engine, create_session_factory, init_db
from social_sync.config import SocialSyncSettings
from social_sync.engine import build_engine

from helpers import ACCOUNT_ID, ALL_SCOPES, OWNER_ID, FakeRedis, GraphRecorder


@pytest.fixture
def settings() -> SocialSyncSettings:
    return SocialSyncSettings(
        _env_file=None,
        instagram_app_id="app-id",
        instagram_app_secret="app-secret",
        instagram_webhook_verify_token="verify-me",
        instagram_webhook_secret="hook-secret",
        encryption_key=Fernet.generate_key().decode(),
        database_url="sqlite://",
        app_base_url="https://app.example.com/",
        rate_limit_base_delay=0.0,
    )


@pytest.fixture
def session_factory():
    db_engine = create_db_engine("sqlite://")
    init_db(db_engine)
    yield create_session_factory(db_engine)
    Base.metadata.drop_all(db_engine)
    db_engine.dispose()


@pytest.fixture
def graph_api() -> GraphRecorder:
    return GraphRecorder()


@pytest.fixture
def http_client(graph_api) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(graph_api))


@pytest.fixture
def redis_client() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def engine(settings, session_factory, http_client, redis_client):
    return build_engine(settings, session_factory, http_client, redis_client)


@pytest.fixture
def connect(engine) -> Callable[..., Any]:
    """Save a connection for an owner, valid for 50 days by default."""

    def _connect(
        owner_id: str = OWNER_ID,
        account_id: str = ACCOUNT_ID,
        scopes: Optional[List[str]] = None,
        expires_at: Optional[datetime] = None,
        access_token: str = "token-current",
        refresh_token: Optional[str] = "token-current",
    ):
        return engine.store.save(
            owner_id=owner_id,
            remote_account_id=account_id,
            username="acme_cafe",
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at or datetime.utcnow() + timedelta(days=50),
            scopes=ALL_SCOPES if scopes is None else scopes,
        )

    return _connect
