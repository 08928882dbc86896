"""Best-effort account metadata lookups run after a successful connect

Each fetcher returns the provider account identifiers later calls need
(ad account, page, WhatsApp Business Account...). Any failure surfaces as
MetadataFetchFailed, which the flow controller logs without failing the flow.
"""
from typing import Awaitable, Callable, Dict, Optional

import httpx

from socialbridge.core.config import GRAPH_API_BASE
from socialbridge.core.errors import MetadataFetchFailed, ProviderApiError
from socialbridge.providers.client import ProviderClient, TokenGrant, get_json

TIKTOK_USER_INFO_URL = "https://open.tiktokapis.com/v2/user/info/"
GMAIL_PROFILE_URL = "https://gmail.googleapis.com/gmail/v1/users/me/profile"

Fetcher = Callable[[httpx.AsyncClient, TokenGrant], Awaitable[Dict[str, str]]]


def _first_id(payload: Dict) -> Optional[str]:
    data = payload.get("data") or []
    if not isinstance(data, list) or not data or not isinstance(data[0], dict):
        return None
    return str(data[0]["id"]) if data[0].get("id") else None


async def fetch_facebook(client: httpx.AsyncClient, grant: TokenGrant) -> Dict[str, str]:
    token = grant.access_token
    ad_accounts = await get_json(client, "facebook", f"{GRAPH_API_BASE}/me/adaccounts", token,
                                 params={"fields": "id,name,account_status", "limit": 25})
    businesses = await get_json(client, "facebook", f"{GRAPH_API_BASE}/me/businesses", token,
                                params={"fields": "id,name", "limit": 25})
    pages = await get_json(client, "facebook", f"{GRAPH_API_BASE}/me/accounts", token,
                           params={"fields": "id,name", "limit": 25})
    ids = {
        "ad_account_id": _first_id(ad_accounts),
        "business_id": _first_id(businesses),
        "page_id": _first_id(pages),
    }
    return {key: value for key, value in ids.items() if value}


async def fetch_instagram(client: httpx.AsyncClient, grant: TokenGrant) -> Dict[str, str]:
    pages = await get_json(client, "instagram", f"{GRAPH_API_BASE}/me/accounts", grant.access_token,
                           params={"fields": "id,name,instagram_business_account"})
    # The first Page linked to an Instagram Business Account wins
    for page in pages.get("data", []):
        business_account = page.get("instagram_business_account") or {}
        if business_account.get("id"):
            return {"page_id": str(page["id"]), "instagram_business_account_id": str(business_account["id"])}
    raise MetadataFetchFailed("instagram", "No Facebook Page linked to an Instagram Business Account")


async def fetch_whatsapp(client: httpx.AsyncClient, grant: TokenGrant) -> Dict[str, str]:
    token = grant.access_token
    businesses = await get_json(client, "whatsapp", f"{GRAPH_API_BASE}/me/businesses", token,
                                params={"fields": "id,name"})
    business_id = _first_id(businesses)
    if not business_id:
        raise MetadataFetchFailed("whatsapp", "No business portfolio available to this user")

    accounts = await get_json(client, "whatsapp",
                              f"{GRAPH_API_BASE}/{business_id}/owned_whatsapp_business_accounts", token,
                              params={"fields": "id,name"})
    ids = {"business_id": business_id}
    waba_id = _first_id(accounts)
    if waba_id:
        ids["waba_id"] = waba_id
    return ids


async def fetch_tiktok(client: httpx.AsyncClient, grant: TokenGrant) -> Dict[str, str]:
    ids = {}
    if grant.extra.get("open_id"):
        ids["open_id"] = grant.extra["open_id"]
    payload = await get_json(client, "tiktok", TIKTOK_USER_INFO_URL, grant.access_token,
                             params={"fields": "open_id,union_id,display_name"})
    user = (payload.get("data") or {}).get("user") or {}
    for key in ("open_id", "union_id"):
        if user.get(key):
            ids[key] = str(user[key])
    return ids


async def fetch_gmail(client: httpx.AsyncClient, grant: TokenGrant) -> Dict[str, str]:
    profile = await get_json(client, "gmail", GMAIL_PROFILE_URL, grant.access_token)
    if not profile.get("emailAddress"):
        raise MetadataFetchFailed("gmail", "Gmail profile has no emailAddress")
    return {"email_address": profile["emailAddress"]}


FETCHERS: Dict[str, Fetcher] = {
    "facebook": fetch_facebook,
    "instagram": fetch_instagram,
    "whatsapp": fetch_whatsapp,
    "tiktok": fetch_tiktok,
    "gmail": fetch_gmail,
}


async def fetch_account_ids(provider: ProviderClient, grant: TokenGrant) -> Dict[str, str]:
    """Run the provider's metadata fetcher

    Raises:
        MetadataFetchFailed: lookup failed or returned nothing usable
    """
    fetcher = FETCHERS.get(provider.name)
    if fetcher is None:
        return dict(grant.extra)
    try:
        async with provider.http_client_factory() as client:
            return await fetcher(client, grant)
    except ProviderApiError as e:
        raise MetadataFetchFailed(provider.name, e.message)
    except (KeyError, TypeError, AttributeError, ValueError) as e:
        # A 200 whose body is not shaped the way the fetcher expects
        raise MetadataFetchFailed(provider.name, f"Unexpected {provider.name} response: {type(e).__name__} {e}")
