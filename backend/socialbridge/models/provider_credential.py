"""ProviderCredentialRecord model"""
from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, JSON, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from socialbridge.models.base import Base


class ProviderCredentialRecord(Base):
    """Provider OAuth credentials (encrypted), at most one per user and provider"""
    __tablename__ = "provider_credentials"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    provider = Column(String(20), nullable=False)  # facebook, instagram, tiktok, gmail, whatsapp
    access_token = Column(Text, nullable=False)  # Encrypted
    refresh_token = Column(Text)  # Encrypted
    access_token_expires_at = Column(DateTime(timezone=True))
    account_ids = Column(JSON, nullable=False, default=dict)  # Provider-specific account identifiers
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc))

    # Relationship
    user = relationship("User", back_populates="provider_credentials")

    __table_args__ = (
        UniqueConstraint('user_id', 'provider', name='uq_provider_credentials_user_provider'),
    )
