"""
Credential Store - persisted OAuth credentials per (owner, provider)

The single source of truth for whether an owner is usably authenticated.
Tokens are encrypted at rest; this is the only module that decrypts them.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, List, Tuple, Callable

from cryptography.fernet import InvalidToken
from sqlalchemy.orm import Session

from database.database import insert_for
from database.models import Connection, Conversation, Message, Comment, SyncState
from ..models import ConnectionStatus
from .token_encryption import TokenEncryptionService

logger = logging.getLogger(__name__)

PROVIDER = "instagram"


@dataclass(frozen=True)
class StoredConnection:
    """Decrypted, read-only view of a Connection row."""

    id: int
    owner_id: str
    remote_account_id: str
    username: Optional[str]
    access_token: Optional[str]  # None when the stored ciphertext can't be decrypted
    refresh_token: Optional[str]
    expires_at: Optional[datetime]
    scopes: Tuple[str, ...]
    status: str
    status_reason: Optional[str]
    # Ciphertext as read; guards conditional token swaps
    access_ciphertext: str
    last_refreshed_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or datetime.utcnow())


class CredentialStore:
    """Reads and writes Connection rows."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        encryption: TokenEncryptionService,
        provider: str = PROVIDER,
    ):
        self.session_factory = session_factory
        self.encryption = encryption
        self.provider = provider

    def _decrypt(self, ciphertext: Optional[str]) -> Optional[str]:
        if not ciphertext:
            return None
        try:
            return self.encryption.decrypt(ciphertext)
        except InvalidToken:
            return None

    def _to_stored(self, row: Connection) -> StoredConnection:
        return StoredConnection(
            id=row.id,
            owner_id=row.owner_id,
            remote_account_id=row.remote_account_id,
            username=row.remote_username,
            access_token=self._decrypt(row.encrypted_access_token),
            refresh_token=self._decrypt(row.encrypted_refresh_token),
            expires_at=row.token_expires_at,
            scopes=tuple(row.scopes or []),
            status=row.status,
            status_reason=row.status_reason,
            access_ciphertext=row.encrypted_access_token,
            last_refreshed_at=row.last_refreshed_at,
        )

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, owner_id: str) -> Optional[StoredConnection]:
        """Connection for an owner, or None when not connected."""
        db = self.session_factory()
        try:
            row = (
                db.query(Connection)
                .filter(Connection.owner_id == owner_id, Connection.provider == self.provider)
                .first()
            )
            return self._to_stored(row) if row else None
        finally:
            db.close()

    def get_by_id(self, connection_id: int) -> Optional[StoredConnection]:
        db = self.session_factory()
        try:
            row = db.query(Connection).filter(Connection.id == connection_id).first()
            return self._to_stored(row) if row else None
        finally:
            db.close()

    def find_by_remote_account(self, remote_account_id: str) -> Optional[StoredConnection]:
        """Route a webhook entry to its owner by the provider account id."""
        db = self.session_factory()
        try:
            row = (
                db.query(Connection)
                .filter(
                    Connection.provider == self.provider,
                    Connection.remote_account_id == str(remote_account_id),
                )
                .order_by(Connection.updated_at.desc())
                .first()
            )
            return self._to_stored(row) if row else None
        finally:
            db.close()

    def owner_ids(self) -> List[str]:
        """Owners with a stored connection for this provider."""
        db = self.session_factory()
        try:
            rows = db.query(Connection.owner_id).filter(Connection.provider == self.provider).all()
            return [owner_id for (owner_id,) in rows]
        finally:
            db.close()

    # =========================================================================
    # Writes
    # =========================================================================

    def save(
        self,
        owner_id: str,
        remote_account_id: str,
        username: Optional[str],
        access_token: str,
        refresh_token: Optional[str],
        expires_at: Optional[datetime],
        scopes: List[str],
    ) -> StoredConnection:
        """Create or replace the owner's connection (OAuth callback)."""
        now = datetime.utcnow()
        values = {
            "remote_account_id": str(remote_account_id),
            "remote_username": username,
            "encrypted_access_token": self.encryption.encrypt(access_token),
            "encrypted_refresh_token": self.encryption.encrypt(refresh_token) if refresh_token else None,
            "token_expires_at": expires_at,
            "scopes": list(scopes),
            "status": ConnectionStatus.CONNECTED.value,
            "status_reason": None,
            "updated_at": now,
            "last_refreshed_at": now,
        }

        db = self.session_factory()
        try:
            stmt = insert_for(db, Connection).values(
                owner_id=owner_id,
                provider=self.provider,
                created_at=now,
                **values,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["owner_id", "provider"],
                set_=values,
            )
            db.execute(stmt)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info(f"Saved {self.provider} connection for owner {owner_id} (account {remote_account_id})")
        return self.get(owner_id)

    def swap_token(
        self,
        connection_id: int,
        expected_ciphertext: str,
        access_token: str,
        refresh_token: Optional[str],
        expires_at: Optional[datetime],
    ) -> bool:
        """
        Replace the token only if the row still holds the ciphertext we read.

        Returns False when another writer refreshed first; callers re-read.
        """
        now = datetime.utcnow()
        db = self.session_factory()
        try:
            updated = (
                db.query(Connection)
                .filter(
                    Connection.id == connection_id,
                    Connection.encrypted_access_token == expected_ciphertext,
                )
                .update(
                    {
                        Connection.encrypted_access_token: self.encryption.encrypt(access_token),
                        Connection.encrypted_refresh_token: (
                            self.encryption.encrypt(refresh_token) if refresh_token else None
                        ),
                        Connection.token_expires_at: expires_at,
                        Connection.status: ConnectionStatus.CONNECTED.value,
                        Connection.status_reason: None,
                        Connection.last_refreshed_at: now,
                        Connection.updated_at: now,
                    },
                    synchronize_session=False,
                )
            )
            db.commit()
            return updated == 1
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def set_status(
        self,
        connection_id: int,
        status: ConnectionStatus,
        reason: Optional[str] = None,
        expected_ciphertext: Optional[str] = None,
    ) -> bool:
        """Move a connection to a new status, optionally guarded by the token we read."""
        db = self.session_factory()
        try:
            query = db.query(Connection).filter(Connection.id == connection_id)
            if expected_ciphertext is not None:
                query = query.filter(Connection.encrypted_access_token == expected_ciphertext)
            updated = query.update(
                {
                    Connection.status: status.value,
                    Connection.status_reason: reason,
                    Connection.updated_at: datetime.utcnow(),
                },
                synchronize_session=False,
            )
            db.commit()
            return updated == 1
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def delete(self, owner_id: str) -> bool:
        """Disconnect: remove the connection and the owner's synced data."""
        db = self.session_factory()
        try:
            deleted = (
                db.query(Connection)
                .filter(Connection.owner_id == owner_id, Connection.provider == self.provider)
                .delete(synchronize_session=False)
            )
            db.query(Message).filter(Message.owner_id == owner_id).delete(synchronize_session=False)
            db.query(Conversation).filter(
                Conversation.owner_id == owner_id, Conversation.provider == self.provider
            ).delete(synchronize_session=False)
            db.query(Comment).filter(Comment.owner_id == owner_id).delete(synchronize_session=False)
            db.query(SyncState).filter(
                SyncState.owner_id == owner_id, SyncState.provider == self.provider
            ).delete(synchronize_session=False)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        if deleted:
            logger.info(f"Disconnected {self.provider} for owner {owner_id}")
        return bool(deleted)
