"""Gated pass-through routes, one read per provider"""
from fastapi import APIRouter, Depends, Query

from socialbridge.core.access_gate import ProviderAccess, require_provider_access
from socialbridge.core.dependencies import get_services
from socialbridge.providers import resources

router = APIRouter(prefix="/api", tags=["proxy"])


async def _call(access: ProviderAccess, fetch, limit: int):
    provider = get_services().providers[access.provider]
    async with provider.http_client_factory() as client:
        return await fetch(client, access.access_token, access.account_ids, limit=limit)


@router.get("/facebook/campaigns")
async def facebook_campaigns(
    limit: int = Query(25, ge=1, le=100),
    access: ProviderAccess = Depends(require_provider_access("facebook")),
):
    return await _call(access, resources.list_facebook_campaigns, limit)


@router.get("/instagram/media")
async def instagram_media(
    limit: int = Query(25, ge=1, le=100),
    access: ProviderAccess = Depends(require_provider_access("instagram")),
):
    return await _call(access, resources.list_instagram_media, limit)


@router.get("/tiktok/videos")
async def tiktok_videos(
    limit: int = Query(20, ge=1, le=20),
    access: ProviderAccess = Depends(require_provider_access("tiktok")),
):
    return await _call(access, resources.list_tiktok_videos, limit)


@router.get("/gmail/messages")
async def gmail_messages(
    limit: int = Query(25, ge=1, le=100),
    access: ProviderAccess = Depends(require_provider_access("gmail")),
):
    return await _call(access, resources.list_gmail_messages, limit)


@router.get("/whatsapp/phone-numbers")
async def whatsapp_phone_numbers(
    limit: int = Query(25, ge=1, le=100),
    access: ProviderAccess = Depends(require_provider_access("whatsapp")),
):
    return await _call(access, resources.list_whatsapp_phone_numbers, limit)
