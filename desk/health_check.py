"""
health_check.py — Backend reachability probes.

Used by `algodesk health` to tell "backend down" apart from "auth route
missing" apart from "credentials wrong" before anyone tries to log in. The
probes go straight through the underlying httpx client so that an expected
401 does not clear the stored session.

Usage:
    results = await run_health_checks(client)
    for r in results:
        print(r.name, r.success, r.message)
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
from loguru import logger

from api_client import ApiClient, extract_detail


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class HealthCheckResult:
    name: str
    success: bool
    message: str
    backend_url: str
    status: Optional[int] = None
    timestamp: str = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


async def check_backend_health(client: ApiClient) -> HealthCheckResult:
    """Any HTTP answer from the backend root counts as reachable."""
    url = client.config.api_url
    try:
        response = await client.http.get("/")
    except httpx.HTTPError as exc:
        logger.warning(f"Backend {url} unreachable: {exc}")
        return HealthCheckResult("backend", False, f"Backend is not reachable: {exc}", url)

    if response.status_code >= 500:
        return HealthCheckResult(
            "backend", False, f"Backend error: {extract_detail(response)}", url, response.status_code
        )
    return HealthCheckResult(
        "backend", True, "Backend is reachable and responding", url, response.status_code
    )


async def check_auth_endpoint(client: ApiClient) -> HealthCheckResult:
    """
    POST a dummy token to /api/auth/login. 400/401 means the route exists and
    rejected the token, which is the healthy outcome.
    """
    url = f"{client.config.api_url}/api/auth/login"
    try:
        response = await client.http.post("/api/auth/login", json={"id_token": "test-token"})
    except httpx.HTTPError as exc:
        logger.warning(f"Auth endpoint {url} unreachable: {exc}")
        return HealthCheckResult("auth", False, f"Auth endpoint is not reachable: {exc}", url)

    status = response.status_code
    if status < 400:
        return HealthCheckResult("auth", True, "Auth endpoint is reachable", url, status)
    if status in (400, 401):
        return HealthCheckResult("auth", True, "Auth endpoint exists and is responding", url, status)
    if status == 404:
        return HealthCheckResult("auth", False, "Auth endpoint not found - check backend routes", url, status)
    if status >= 500:
        return HealthCheckResult("auth", False, "Backend server error - check backend logs", url, status)
    return HealthCheckResult("auth", False, extract_detail(response), url, status)


async def run_health_checks(client: ApiClient) -> List[HealthCheckResult]:
    backend = await check_backend_health(client)
    if not backend.success:
        return [backend]
    return [backend, await check_auth_endpoint(client)]
