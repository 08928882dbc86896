from socialbridge.providers.client import ProviderClient, TokenGrant
from socialbridge.providers.descriptor import DESCRIPTORS, ProviderDescriptor
from socialbridge.providers.registry import build_providers, get_provider

__all__ = ["ProviderClient", "TokenGrant", "DESCRIPTORS", "ProviderDescriptor", "build_providers", "get_provider"]
