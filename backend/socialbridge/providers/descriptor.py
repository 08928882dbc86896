"""Static per-provider OAuth descriptors"""
from dataclasses import dataclass, field
from typing import Mapping, Tuple

from socialbridge.core.config import GRAPH_API_BASE, settings

FACEBOOK_DIALOG_URL = f"https://www.facebook.com/{settings.GRAPH_API_VERSION}/dialog/oauth"
GRAPH_TOKEN_URL = f"{GRAPH_API_BASE}/oauth/access_token"


@dataclass(frozen=True)
class ProviderDescriptor:
    """Everything the generic flow needs to know about one provider

    Attributes:
        name: Provider key used in URLs and storage
        authorize_url: Consent screen the browser is sent to
        token_url: Endpoint for code exchange (and refresh, when supported)
        default_scopes: Scopes requested unless <P>_SCOPES overrides them
        scope_separator: How the provider wants the scope list joined
        client_id_param: Query/form name of the client id ("client_key" for TikTok)
        token_request_method: GET for the Graph API, POST (form body) otherwise
        authorize_params: Extra fixed query parameters for the consent URL
        supports_long_lived_exchange: Swap the short-lived token for a long-lived one
        supports_refresh: Provider issues refresh tokens
    """
    name: str
    authorize_url: str
    token_url: str
    default_scopes: Tuple[str, ...]
    scope_separator: str = ","
    client_id_param: str = "client_id"
    token_request_method: str = "POST"
    authorize_params: Mapping[str, str] = field(default_factory=dict)
    supports_long_lived_exchange: bool = False
    supports_refresh: bool = False


FACEBOOK = ProviderDescriptor(
    name="facebook",
    authorize_url=FACEBOOK_DIALOG_URL,
    token_url=GRAPH_TOKEN_URL,
    default_scopes=(
        "ads_management",
        "ads_read",
        "business_management",
        "pages_show_list",
        "pages_read_engagement",
    ),
    token_request_method="GET",
    supports_long_lived_exchange=True,
)

INSTAGRAM = ProviderDescriptor(
    name="instagram",
    authorize_url=FACEBOOK_DIALOG_URL,
    token_url=GRAPH_TOKEN_URL,
    default_scopes=(
        "instagram_basic",
        "instagram_content_publish",
        "instagram_manage_messages",
        "instagram_manage_comments",
        "instagram_manage_insights",
        "pages_show_list",
        "pages_read_engagement",
        "business_management",
    ),
    token_request_method="GET",
    supports_long_lived_exchange=True,
)

WHATSAPP = ProviderDescriptor(
    name="whatsapp",
    authorize_url=FACEBOOK_DIALOG_URL,
    token_url=GRAPH_TOKEN_URL,
    default_scopes=(
        "whatsapp_business_management",
        "whatsapp_business_messaging",
        "business_management",
    ),
    token_request_method="GET",
    supports_long_lived_exchange=True,
)

TIKTOK = ProviderDescriptor(
    name="tiktok",
    authorize_url="https://www.tiktok.com/v2/auth/authorize/",
    token_url="https://open.tiktokapis.com/v2/oauth/token/",
    default_scopes=(
        "user.info.basic",
        "user.info.stats",
        "video.publish",
        "video.list",
    ),
    client_id_param="client_key",
    supports_refresh=True,
)

GMAIL = ProviderDescriptor(
    name="gmail",
    authorize_url="https://accounts.google.com/o/oauth2/v2/auth",
    token_url="https://oauth2.googleapis.com/token",
    default_scopes=(
        "https://www.googleapis.com/auth/gmail.send",
        "https://www.googleapis.com/auth/gmail.readonly",
    ),
    scope_separator=" ",
    # Without prompt=consent Google only returns a refresh token on the first grant
    authorize_params={"access_type": "offline", "prompt": "consent", "include_granted_scopes": "true"},
    supports_refresh=True,
)

DESCRIPTORS = {d.name: d for d in (FACEBOOK, INSTAGRAM, TIKTOK, GMAIL, WHATSAPP)}
