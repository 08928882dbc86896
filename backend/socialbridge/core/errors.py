"""Error taxonomy for the OAuth and credential lifecycle

Every error raised by the flow controller, the refresh service or the access
gate derives from SocialBridgeError. The FastAPI exception handler in main.py
renders them as ``{"error": <code>, "message": ..., **details}``.
"""
from typing import Any, Dict, Optional


class SocialBridgeError(Exception):
    """Base error carrying a machine-readable code and an HTTP status"""

    error_code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        if status_code:
            self.status_code = status_code
        self.details = details or {}

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        """Client-facing payload (never includes secrets)"""
        return {"error": self.error_code, "message": self.message, **self.details}


class InvalidState(SocialBridgeError):
    """State token missing, unknown, expired or already consumed"""

    error_code = "INVALID_STATE"
    status_code = 401

    def __init__(self, message: str = "Invalid or expired OAuth state. Please restart the connect flow.", **kwargs):
        super().__init__(message, **kwargs)


class ProviderDenied(SocialBridgeError):
    """Provider redirected back with an error parameter"""

    error_code = "PROVIDER_DENIED"
    status_code = 400

    def __init__(self, provider: str, error: str, description: Optional[str] = None):
        super().__init__(
            description or error,
            details={"provider": provider, "provider_error": error},
        )
        self.provider = provider


class TokenExchangeFailed(SocialBridgeError):
    """Code-for-token or long-lived exchange failed"""

    error_code = "TOKEN_EXCHANGE_FAILED"
    status_code = 400

    def __init__(self, provider: str, message: str, upstream_status: Optional[int] = None):
        # Provider rejected the request (bad code, redirect mismatch): 400.
        # Network error, timeout or provider 5xx: 502.
        status = 400 if upstream_status is not None and upstream_status < 500 else 502
        super().__init__(message, status_code=status, details={"provider": provider})
        self.provider = provider
        self.upstream_status = upstream_status


class NotConnected(SocialBridgeError):
    """No credential on file for this user and provider"""

    error_code = "NOT_CONNECTED"
    status_code = 401

    def __init__(self, provider: str):
        super().__init__(
            f"No {provider} account connected.",
            details={"provider": provider, "connect_url": f"/api/auth/{provider}/login"},
        )
        self.provider = provider


class RefreshFailed(SocialBridgeError):
    """Access token expired and could not be renewed"""

    error_code = "REAUTH_REQUIRED"
    status_code = 401

    def __init__(self, provider: str, reason: str):
        super().__init__(
            f"{provider} connection expired. Please reconnect.",
            details={"provider": provider, "connect_url": f"/api/auth/{provider}/login"},
        )
        self.provider = provider
        self.reason = reason


class MetadataFetchFailed(SocialBridgeError):
    """Account metadata lookup failed; logged only, never fails a flow"""

    error_code = "METADATA_FETCH_FAILED"
    status_code = 502

    def __init__(self, provider: str, message: str):
        super().__init__(message, details={"provider": provider})
        self.provider = provider


class ProviderNotConfigured(SocialBridgeError):
    error_code = "PROVIDER_NOT_CONFIGURED"
    status_code = 503

    def __init__(self, provider: str, missing: str):
        super().__init__(
            f"{provider} OAuth is not configured. Missing {missing}.",
            details={"provider": provider},
        )
        self.provider = provider


class UnknownProvider(SocialBridgeError):
    error_code = "UNKNOWN_PROVIDER"
    status_code = 404

    def __init__(self, provider: str):
        super().__init__(f"Unknown provider: {provider}", details={"provider": provider})
        self.provider = provider


class ProviderApiError(SocialBridgeError):
    """A provider API call made on the user's behalf failed"""

    error_code = "PROVIDER_API_ERROR"
    status_code = 502

    def __init__(self, provider: str, message: str, upstream_status: Optional[int] = None):
        super().__init__(message, details={"provider": provider, "upstream_status": upstream_status})
        self.provider = provider
        self.upstream_status = upstream_status


class NotAuthenticated(SocialBridgeError):
    """No application session on the request"""

    error_code = "NOT_AUTHENTICATED"
    status_code = 401

    def __init__(self, message: str = "Not authenticated. Please log in."):
        super().__init__(message)
