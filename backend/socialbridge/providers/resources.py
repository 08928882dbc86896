"""Read-only provider calls behind the gated proxy routes

Responses are passed through untouched; no attempt is made to normalize the
providers' data models.
"""
from typing import Any, Dict

import httpx

from socialbridge.core.config import GRAPH_API_BASE
from socialbridge.core.errors import SocialBridgeError
from socialbridge.providers.client import get_json

TIKTOK_VIDEO_LIST_URL = "https://open.tiktokapis.com/v2/video/list/"
GMAIL_MESSAGES_URL = "https://gmail.googleapis.com/gmail/v1/users/me/messages"


def _require_account_id(provider: str, account_ids: Dict[str, str], key: str) -> str:
    value = account_ids.get(key)
    if not value:
        raise SocialBridgeError(
            f"No {key} recorded for this {provider} connection. Reconnect to refresh it.",
            error_code="ACCOUNT_NOT_RESOLVED",
            status_code=409,
            details={"provider": provider, "connect_url": f"/api/auth/{provider}/login"},
        )
    return value


async def list_facebook_campaigns(client: httpx.AsyncClient, access_token: str,
                                  account_ids: Dict[str, str], limit: int = 25) -> Dict[str, Any]:
    ad_account_id = _require_account_id("facebook", account_ids, "ad_account_id")
    return await get_json(client, "facebook", f"{GRAPH_API_BASE}/{ad_account_id}/campaigns", access_token,
                          params={"fields": "id,name,status,objective", "limit": limit})


async def list_instagram_media(client: httpx.AsyncClient, access_token: str,
                               account_ids: Dict[str, str], limit: int = 25) -> Dict[str, Any]:
    ig_id = _require_account_id("instagram", account_ids, "instagram_business_account_id")
    return await get_json(client, "instagram", f"{GRAPH_API_BASE}/{ig_id}/media", access_token,
                          params={"fields": "id,caption,media_type,permalink,timestamp", "limit": limit})


async def list_tiktok_videos(client: httpx.AsyncClient, access_token: str,
                             account_ids: Dict[str, str], limit: int = 20) -> Dict[str, Any]:
    # TikTok caps max_count at 20
    return await get_json(client, "tiktok", TIKTOK_VIDEO_LIST_URL, access_token,
                          params={"fields": "id,title,create_time,share_url"},
                          method="POST", json_body={"max_count": min(limit, 20)})


async def list_gmail_messages(client: httpx.AsyncClient, access_token: str,
                              account_ids: Dict[str, str], limit: int = 25) -> Dict[str, Any]:
    return await get_json(client, "gmail", GMAIL_MESSAGES_URL, access_token, params={"maxResults": limit})


async def list_whatsapp_phone_numbers(client: httpx.AsyncClient, access_token: str,
                                      account_ids: Dict[str, str], limit: int = 25) -> Dict[str, Any]:
    waba_id = _require_account_id("whatsapp", account_ids, "waba_id")
    return await get_json(client, "whatsapp", f"{GRAPH_API_BASE}/{waba_id}/phone_numbers", access_token,
                          params={"fields": "id,display_phone_number,verified_name", "limit": limit})
