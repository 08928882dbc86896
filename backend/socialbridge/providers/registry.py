"""Provider lookup: descriptors combined with client credentials from settings"""
from typing import Callable, Dict, Optional

import httpx

from socialbridge.core.config import PROVIDER_NAMES, Settings, settings as default_settings
from socialbridge.core.errors import UnknownProvider
from socialbridge.providers.client import ProviderClient, default_http_client
from socialbridge.providers.descriptor import DESCRIPTORS


def build_providers(
    settings: Optional[Settings] = None,
    http_client_factory: Callable[[], httpx.AsyncClient] = default_http_client,
) -> Dict[str, ProviderClient]:
    """One ProviderClient per supported provider, configured or not"""
    settings = settings or default_settings
    providers = {}
    for name in PROVIDER_NAMES:
        config = settings.provider_credentials(name)
        providers[name] = ProviderClient(
            DESCRIPTORS[name],
            client_id=config["client_id"],
            client_secret=config["client_secret"],
            redirect_uri=config["redirect_uri"],
            scopes=config["scopes"],
            http_client_factory=http_client_factory,
        )
    return providers


def get_provider(providers: Dict[str, ProviderClient], name: str) -> ProviderClient:
    provider = providers.get((name or "").lower())
    if provider is None:
        raise UnknownProvider(name)
    return provider
