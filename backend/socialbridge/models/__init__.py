"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from socialbridge.models.base import Base
from socialbridge.models.user import User
from socialbridge.models.provider_credential import ProviderCredentialRecord

# Export all for convenience
__all__ = ["Base", "User", "ProviderCredentialRecord"]
