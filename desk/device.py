"""
device.py — Device identity and the devices API.

The device id itself is generated and persisted by session.py; this module
describes the machine to the backend and manages the user's device list
(track, list, revoke).

Usage:
    info = get_device_info(sessions.current.device_id)
    await track_device(client, info)
    devices = await list_devices(client, include_revoked=True)
"""

from __future__ import annotations

import platform
import sys
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from api_client import ApiClient


APP_VERSION = "0.1.0"


@dataclass(frozen=True)
class DeviceInfo:
    """What this client reports about itself."""
    device_id: str
    device_name: str
    user_agent: str
    os_version: str
    platform: str = "cli"
    app_version: Optional[str] = APP_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class Device:
    """A device registered against the user's account."""
    id: str
    device_id: str
    platform: str
    device_name: str
    last_active_at: str = ""
    created_at: str = ""
    is_revoked: bool = False
    os_version: Optional[str] = None
    app_version: Optional[str] = None
    ip_address: Optional[str] = None
    revoked_at: Optional[str] = None
    revoked_reason: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Device":
        return cls(
            id=str(data.get("id", "")),
            device_id=data.get("device_id", ""),
            platform=data.get("platform", ""),
            device_name=data.get("device_name", ""),
            last_active_at=data.get("last_active_at", ""),
            created_at=data.get("created_at", ""),
            is_revoked=bool(data.get("is_revoked", False)),
            os_version=data.get("os_version"),
            app_version=data.get("app_version"),
            ip_address=data.get("ip_address"),
            revoked_at=data.get("revoked_at"),
            revoked_reason=data.get("revoked_reason"),
        )


def get_device_info(device_id: str) -> DeviceInfo:
    system = platform.system() or "Unknown"
    release = platform.release()
    return DeviceInfo(
        device_id=device_id,
        device_name=platform.node() or "Unknown",
        user_agent=f"algodesk/{APP_VERSION} Python/{platform.python_version()} ({sys.platform})",
        os_version=f"{system} {release}".strip(),
    )


# ─── Devices API ──────────────────────────────────────────────────────────────

async def track_device(client: ApiClient, info: DeviceInfo) -> Device:
    data = await client.post("/api/devices/track", info.to_dict())
    return Device.from_dict(data or {})


async def list_devices(client: ApiClient, include_revoked: bool = False) -> List[Device]:
    data = await client.get("/api/devices", {"include_revoked": include_revoked})
    return [Device.from_dict(d) for d in (data or {}).get("devices", [])]


async def get_device(client: ApiClient, device_id: str) -> Device:
    data = await client.get(f"/api/devices/{device_id}")
    return Device.from_dict(data or {})


async def revoke_device(client: ApiClient, device_id: str, reason: Optional[str] = None) -> None:
    await client.request(
        "DELETE", f"/api/devices/{device_id}", json={"reason": reason} if reason else None
    )


async def revoke_all_devices(client: ApiClient, reason: Optional[str] = None) -> None:
    """Force logout everywhere except this device."""
    await client.post(
        "/api/devices/revoke-all",
        {"reason": reason or "User requested logout from all devices"},
    )
