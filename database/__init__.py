from .models import Connection, Conversation, Message, Comment, IdentityCacheEntry, SyncState
from .database import (
    Base,
    create_db_engine,
    create_session_factory,
    init_db,
    insert_for,
)

__all__ = [
    "Connection",
    "Conversation",
    "Message",
    "Comment",
    "IdentityCacheEntry",
    "SyncState",
    "Base",
    "create_db_engine",
    "create_session_factory",
    "init_db",
    "insert_for",
]
