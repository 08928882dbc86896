"""Pydantic schemas for provider connections"""
from typing import Dict, List, Optional

from pydantic import BaseModel


class AuthUrlResponse(BaseModel):
    authUrl: str


class ConnectionStatus(BaseModel):
    provider: str
    connected: bool
    expires_at: Optional[str] = None
    has_refresh_token: bool = False
    account_ids: Dict[str, str] = {}


class ConnectionsResponse(BaseModel):
    connections: List[ConnectionStatus]
