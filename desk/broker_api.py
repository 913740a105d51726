"""
broker_api.py — Broker credentials and Zerodha OAuth.

A user stores one or more broker API key/secret pairs; live trading and
backtests against real data additionally need a completed OAuth login
(Zerodha Kite Connect), whose state is exposed by oauth_status().
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from loguru import logger

from api_client import ApiClient


@dataclass
class BrokerInfo:
    type: str
    name: str
    description: str = ""
    logo_url: Optional[str] = None
    website: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BrokerInfo":
        return cls(
            type=data.get("type", ""),
            name=data.get("name", ""),
            description=data.get("description") or "",
            logo_url=data.get("logo_url"),
            website=data.get("website"),
        )


@dataclass
class BrokerCredentials:
    id: str
    broker_type: str
    api_key: str
    is_active: bool = True
    label: Optional[str] = None
    api_secret: Optional[str] = None  # only returned by the /full endpoint
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BrokerCredentials":
        return cls(
            id=str(data.get("id", "")),
            broker_type=data.get("broker_type", ""),
            api_key=data.get("api_key", ""),
            is_active=bool(data.get("is_active", True)),
            label=data.get("label"),
            api_secret=data.get("api_secret"),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )

    @property
    def masked_key(self) -> str:
        if len(self.api_key) <= 4:
            return "****"
        return f"{'*' * (len(self.api_key) - 4)}{self.api_key[-4:]}"


@dataclass
class OAuthStatus:
    is_connected: bool
    has_credentials: bool
    has_tokens: bool
    expires_at: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OAuthStatus":
        return cls(
            is_connected=bool(data.get("is_connected", False)),
            has_credentials=bool(data.get("has_credentials", False)),
            has_tokens=bool(data.get("has_tokens", False)),
            expires_at=data.get("expires_at"),
        )


# ─── Credentials ──────────────────────────────────────────────────────────────

async def list_brokers(client: ApiClient) -> List[BrokerInfo]:
    data = await client.get("/api/broker-credentials/brokers")
    return [BrokerInfo.from_dict(b) for b in data or []]


async def list_credentials(
    client: ApiClient,
    broker_type: Optional[str] = None,
    include_inactive: bool = False,
) -> List[BrokerCredentials]:
    params = {"broker_type": broker_type, "include_inactive": include_inactive or None}
    data = await client.get("/api/broker-credentials", params)
    return [BrokerCredentials.from_dict(c) for c in data or []]


async def get_credentials(client: ApiClient, credentials_id: str, full: bool = False) -> BrokerCredentials:
    suffix = "/full" if full else ""
    data = await client.get(f"/api/broker-credentials/{credentials_id}{suffix}")
    return BrokerCredentials.from_dict(data or {})


async def create_credentials(
    client: ApiClient,
    broker_type: str,
    api_key: str,
    api_secret: str,
    label: Optional[str] = None,
    is_active: bool = True,
) -> BrokerCredentials:
    if not api_key or not api_secret:
        raise ValueError("api_key and api_secret are required")
    data = await client.post(
        "/api/broker-credentials",
        {
            "broker_type": broker_type,
            "api_key": api_key,
            "api_secret": api_secret,
            "is_active": is_active,
            "label": label,
        },
    )
    creds = BrokerCredentials.from_dict(data or {})
    logger.info(f"Stored {broker_type} credentials {creds.id}")
    return creds


async def update_credentials(client: ApiClient, credentials_id: str, updates: Dict[str, Any]) -> BrokerCredentials:
    data = await client.put(f"/api/broker-credentials/{credentials_id}", updates)
    return BrokerCredentials.from_dict(data or {})


async def delete_credentials(client: ApiClient, credentials_id: str) -> None:
    await client.delete(f"/api/broker-credentials/{credentials_id}")
    logger.info(f"Deleted broker credentials {credentials_id}")


# ─── Zerodha OAuth ────────────────────────────────────────────────────────────

async def initiate_zerodha_oauth(client: ApiClient, credentials_id: Optional[str] = None) -> str:
    """Return the Kite login URL the user must open in a browser."""
    data = await client.get("/api/zerodha/oauth/initiate", {"credentials_id": credentials_id})
    return (data or {}).get("login_url", "")


async def oauth_status(client: ApiClient, credentials_id: Optional[str] = None) -> OAuthStatus:
    data = await client.get("/api/zerodha/oauth/status", {"credentials_id": credentials_id})
    return OAuthStatus.from_dict(data or {})


async def refresh_zerodha_token(client: ApiClient) -> Dict[str, Any]:
    return await client.post("/api/zerodha/oauth/refresh") or {}
