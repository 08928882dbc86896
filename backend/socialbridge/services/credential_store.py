"""Credential store - the single read/write path for provider credentials

Tokens are encrypted with Fernet before they touch the database. Every write
replaces access token, refresh token and expiry inside one transaction so a
reader never sees a new access token paired with a stale expiry.
"""
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from socialbridge.db.session import SessionLocal, session_scope
from socialbridge.models.provider_credential import ProviderCredentialRecord
from socialbridge.utils.encryption import decrypt, encrypt

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderCredential:
    """Decrypted view of one (user, provider) credential"""
    user_id: int
    provider: str
    access_token: str
    refresh_token: Optional[str] = None
    access_token_expires_at: Optional[datetime] = None
    account_ids: Dict[str, str] = field(default_factory=dict)

    def expires_within(self, seconds: float, now: Optional[datetime] = None) -> bool:
        """True when the access token expires less than `seconds` from now"""
        if self.access_token_expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return (self.access_token_expires_at - now).total_seconds() <= seconds

    def public_view(self) -> Dict:
        """Client-safe summary; tokens are reduced to presence flags"""
        return {
            "provider": self.provider,
            "connected": True,
            "expires_at": self.access_token_expires_at.isoformat() if self.access_token_expires_at else None,
            "has_refresh_token": bool(self.refresh_token),
            "account_ids": dict(self.account_ids),
        }


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo on the way back
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_domain(record: ProviderCredentialRecord) -> ProviderCredential:
    return ProviderCredential(
        user_id=record.user_id,
        provider=record.provider,
        access_token=decrypt(record.access_token),
        refresh_token=decrypt(record.refresh_token) if record.refresh_token else None,
        access_token_expires_at=_as_utc(record.access_token_expires_at),
        account_ids={str(k): str(v) for k, v in (record.account_ids or {}).items()},
    )


class CredentialStore:
    """Durable per-user-per-provider credential store backed by SQLAlchemy"""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    def _find(self, db: Session, user_id: int, provider: str) -> Optional[ProviderCredentialRecord]:
        return db.query(ProviderCredentialRecord).filter(
            ProviderCredentialRecord.user_id == user_id,
            ProviderCredentialRecord.provider == provider
        ).first()

    def get(self, user_id: int, provider: str) -> Optional[ProviderCredential]:
        """Return the stored credential or None when the user never connected"""
        with session_scope(self._session_factory) as db:
            record = self._find(db, user_id, provider)
            return _to_domain(record) if record else None

    def upsert(self, credential: ProviderCredential, keep_refresh_token: bool = False) -> ProviderCredential:
        """Create or overwrite the single record for (user, provider)

        Args:
            credential: Values to store. All token fields are written together.
            keep_refresh_token: When True and `credential.refresh_token` is None,
                the stored refresh token survives (providers that do not rotate).

        Returns:
            The credential as stored
        """
        with session_scope(self._session_factory) as db:
            try:
                stored = self._write(db, credential, keep_refresh_token)
            except IntegrityError:
                # Lost an insert race on the unique (user_id, provider) key; the row exists now
                db.rollback()
                stored = self._write(db, credential, keep_refresh_token)
        logger.debug(f"Stored {credential.provider} credential for user {credential.user_id}")
        return stored

    def _write(self, db: Session, credential: ProviderCredential, keep_refresh_token: bool) -> ProviderCredential:
        record = self._find(db, credential.user_id, credential.provider)
        encrypted_access = encrypt(credential.access_token)
        encrypted_refresh = encrypt(credential.refresh_token)
        expires_at = _as_utc(credential.access_token_expires_at)

        if record:
            record.access_token = encrypted_access
            if encrypted_refresh is not None or not keep_refresh_token:
                record.refresh_token = encrypted_refresh
            record.access_token_expires_at = expires_at
            record.account_ids = dict(credential.account_ids)
            record.updated_at = datetime.now(timezone.utc)
        else:
            record = ProviderCredentialRecord(
                user_id=credential.user_id,
                provider=credential.provider,
                access_token=encrypted_access,
                refresh_token=encrypted_refresh,
                access_token_expires_at=expires_at,
                account_ids=dict(credential.account_ids)
            )
            db.add(record)

        db.commit()
        db.refresh(record)
        return _to_domain(record)

    def update_account_ids(self, user_id: int, provider: str, account_ids: Dict[str, str]) -> Optional[ProviderCredential]:
        """Merge provider account identifiers into an existing credential"""
        with session_scope(self._session_factory) as db:
            record = self._find(db, user_id, provider)
            if not record:
                return None
            # Reassign so SQLAlchemy notices the JSON change
            record.account_ids = {**(record.account_ids or {}), **account_ids}
            db.commit()
            db.refresh(record)
            return _to_domain(record)

    def clear(self, user_id: int, provider: str) -> bool:
        """Remove stored tokens. Returns False when nothing was stored."""
        with session_scope(self._session_factory) as db:
            deleted = db.query(ProviderCredentialRecord).filter(
                ProviderCredentialRecord.user_id == user_id,
                ProviderCredentialRecord.provider == provider
            ).delete(synchronize_session=False)
            db.commit()
        return deleted > 0

    def list_for_user(self, user_id: int) -> List[ProviderCredential]:
        with session_scope(self._session_factory) as db:
            records = db.query(ProviderCredentialRecord).filter(
                ProviderCredentialRecord.user_id == user_id
            ).order_by(ProviderCredentialRecord.provider).all()
            return [_to_domain(record) for record in records]

    def list_expiring(self, before: datetime) -> List[ProviderCredential]:
        """Credentials with a refresh token whose access token expires before `before`"""
        before = _as_utc(before)
        with session_scope(self._session_factory) as db:
            records = db.query(ProviderCredentialRecord).filter(
                ProviderCredentialRecord.refresh_token.isnot(None),
                ProviderCredentialRecord.access_token_expires_at.isnot(None),
                ProviderCredentialRecord.access_token_expires_at < before
            ).all()
            return [_to_domain(record) for record in records]


def with_new_tokens(
    credential: ProviderCredential,
    access_token: str,
    expires_at: Optional[datetime],
    refresh_token: Optional[str] = None,
) -> ProviderCredential:
    """Copy of a credential carrying freshly issued tokens"""
    return replace(
        credential,
        access_token=access_token,
        access_token_expires_at=expires_at,
        refresh_token=refresh_token or credential.refresh_token,
    )
