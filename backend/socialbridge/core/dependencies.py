"""Process-wide service wiring and the FastAPI dependencies that expose it"""
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import httpx
from sqlalchemy.orm import Session

from socialbridge.db.session import SessionLocal
from socialbridge.providers.client import ProviderClient, default_http_client
from socialbridge.providers.registry import build_providers
from socialbridge.services.credential_store import CredentialStore
from socialbridge.services.oauth_service import OAuthFlowController
from socialbridge.services.refresh_service import CredentialRefreshService
from socialbridge.services.state_registry import StateRegistry, build_state_registry

logger = logging.getLogger(__name__)


@dataclass
class Services:
    registry: StateRegistry
    store: CredentialStore
    providers: Dict[str, ProviderClient]
    flow_controller: OAuthFlowController
    refresh_service: CredentialRefreshService


def build_services(
    session_factory: Callable[[], Session] = SessionLocal,
    http_client_factory: Callable[[], httpx.AsyncClient] = default_http_client,
    registry: Optional[StateRegistry] = None,
) -> Services:
    registry = registry or build_state_registry()
    store = CredentialStore(session_factory)
    providers = build_providers(http_client_factory=http_client_factory)
    refresh_service = CredentialRefreshService(store, providers)
    return Services(
        registry=registry,
        store=store,
        providers=providers,
        flow_controller=OAuthFlowController(registry, store, providers, refresh_service),
        refresh_service=refresh_service,
    )


_services: Optional[Services] = None


def get_services() -> Services:
    """Shared services, built on first use"""
    global _services
    if _services is None:
        _services = build_services()
        logger.info(f"Services built with {type(_services.registry).__name__}")
    return _services


def set_services(services: Optional[Services]) -> None:
    """Replace the shared services (tests hand in SQLite and mock transports)"""
    global _services
    _services = services


def get_flow_controller() -> OAuthFlowController:
    return get_services().flow_controller


def get_refresh_service() -> CredentialRefreshService:
    return get_services().refresh_service


def get_credential_store() -> CredentialStore:
    return get_services().store
