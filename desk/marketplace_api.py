"""
marketplace_api.py — Third-party data/API integrations the user can switch on.

Each integration type has at most one status record per user; toggle_api()
creates it on first use and patches it afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from loguru import logger

from api_client import ApiClient


@dataclass
class MarketplaceApi:
    type: str
    name: str
    description: str = ""
    requires_credentials: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MarketplaceApi":
        return cls(
            type=data.get("type") or data.get("api_type", ""),
            name=data.get("name", ""),
            description=data.get("description") or "",
            requires_credentials=bool(data.get("requires_credentials", False)),
        )


@dataclass
class MarketplaceApiStatus:
    id: str
    api_type: str
    is_enabled: bool
    credentials: Dict[str, str] = field(default_factory=dict)
    updated_at: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MarketplaceApiStatus":
        return cls(
            id=str(data.get("id", "")),
            api_type=data.get("api_type", ""),
            is_enabled=bool(data.get("is_enabled", False)),
            credentials=data.get("credentials") or {},
            updated_at=data.get("updated_at", ""),
        )


async def list_apis(client: ApiClient) -> List[MarketplaceApi]:
    data = await client.get("/api/marketplace/apis")
    return [MarketplaceApi.from_dict(a) for a in data or []]


async def list_statuses(client: ApiClient, api_type: Optional[str] = None) -> List[MarketplaceApiStatus]:
    data = await client.get("/api/marketplace/status", {"api_type": api_type})
    return [MarketplaceApiStatus.from_dict(s) for s in data or []]


async def get_status(client: ApiClient, status_id: str) -> MarketplaceApiStatus:
    data = await client.get(f"/api/marketplace/status/{status_id}")
    return MarketplaceApiStatus.from_dict(data or {})


async def get_status_by_type(client: ApiClient, api_type: str) -> Optional[MarketplaceApiStatus]:
    statuses = await list_statuses(client, api_type)
    return statuses[0] if statuses else None


async def toggle_api(
    client: ApiClient,
    api_type: str,
    is_enabled: bool,
    credentials: Optional[Dict[str, str]] = None,
) -> MarketplaceApiStatus:
    """Enable or disable an integration, creating its status record if needed."""
    payload: Dict[str, Any] = {"is_enabled": is_enabled}
    if credentials:
        payload["credentials"] = credentials

    existing = await get_status_by_type(client, api_type)
    if existing is not None:
        data = await client.patch(f"/api/marketplace/status/{existing.id}", payload)
    else:
        data = await client.post("/api/marketplace/status", {"api_type": api_type, **payload})

    state = "enabled" if is_enabled else "disabled"
    logger.info(f"Marketplace API {api_type} {state}")
    return MarketplaceApiStatus.from_dict(data or {})


async def delete_status(client: ApiClient, status_id: str) -> None:
    await client.delete(f"/api/marketplace/status/{status_id}")
