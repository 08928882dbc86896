"""Provider connect routes: login, callback, disconnect and connection status"""
import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse

from socialbridge.core.config import PROVIDER_NAMES, settings
from socialbridge.core.dependencies import get_credential_store, get_flow_controller
from socialbridge.core.errors import SocialBridgeError
from socialbridge.core.security import require_auth
from socialbridge.schemas.oauth import AuthUrlResponse, ConnectionsResponse, ConnectionStatus
from socialbridge.services.credential_store import CredentialStore
from socialbridge.services.oauth_service import OAuthFlowController

router = APIRouter(prefix="/api/auth", tags=["oauth"])
oauth_logger = logging.getLogger("oauth")


def wants_json(request: Request) -> bool:
    """Callbacks answer with a frontend redirect unless the caller asks for JSON"""
    if not settings.FRONTEND_URL:
        return True
    if request.query_params.get("format") == "json":
        return True
    return "application/json" in request.headers.get("Accept", "")


def frontend_redirect(provider: str, status: str, code: Optional[str] = None) -> RedirectResponse:
    params = {"provider": provider, "status": status}
    if code:
        params["code"] = code
    return RedirectResponse(f"{settings.FRONTEND_URL.rstrip('/')}/integrations?{urlencode(params)}")


# Registered before the /{provider}/... routes so "connections" is never read as a provider
@router.get("/connections", response_model=ConnectionsResponse)
def list_connections(user_id: int = Depends(require_auth), store: CredentialStore = Depends(get_credential_store)):
    """Connection status for every provider; tokens are never included"""
    stored = {credential.provider: credential for credential in store.list_for_user(user_id)}
    connections = []
    for provider in PROVIDER_NAMES:
        credential = stored.get(provider)
        if credential:
            connections.append(ConnectionStatus(**credential.public_view()))
        else:
            connections.append(ConnectionStatus(provider=provider, connected=False))
    return ConnectionsResponse(connections=connections)


@router.get("/{provider}/login", response_model=AuthUrlResponse)
async def provider_login(
    provider: str,
    user_id: int = Depends(require_auth),
    controller: OAuthFlowController = Depends(get_flow_controller),
):
    """Start a connect flow; the frontend navigates to the returned URL"""
    return {"authUrl": await controller.start(user_id, provider)}


@router.get("/{provider}/callback")
async def provider_callback(
    provider: str,
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
    controller: OAuthFlowController = Depends(get_flow_controller),
):
    """Provider redirect target. Identity comes from `state`, not from any session cookie."""
    try:
        result = await controller.complete(provider, code, state, error, error_description)
    except SocialBridgeError as e:
        if wants_json(request):
            raise
        oauth_logger.info(f"{provider} callback failed with {e.error_code}, redirecting to frontend")
        return frontend_redirect(provider, "error", e.error_code)

    if wants_json(request):
        return result.to_dict()
    return frontend_redirect(result.provider, "connected")


@router.post("/{provider}/disconnect")
async def provider_disconnect(
    provider: str,
    user_id: int = Depends(require_auth),
    controller: OAuthFlowController = Depends(get_flow_controller),
):
    removed = await controller.disconnect(user_id, provider)
    return {"provider": provider, "disconnected": removed}
