"""Access control for the relay's operations port."""

from __future__ import annotations

import hmac
from ipaddress import ip_address
from typing import Optional

from fastapi import HTTPException, Request, status

# hostnames reported by in-process ASGI transports instead of an address
LOCAL_HOSTNAMES = frozenset({"localhost", "testclient"})


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    scheme, _, credentials = (authorization or "").strip().partition(" ")
    if scheme.lower() != "bearer" or not credentials.strip():
        return None
    return credentials.strip()


def is_loopback(host: Optional[str]) -> bool:
    if not host:
        return False
    try:
        return ip_address(host).is_loopback
    except ValueError:
        return host in LOCAL_HOSTNAMES


def require_metrics_access(request: Request, token: Optional[str]) -> None:
    """Scrapers present ``metrics_token`` as a bearer token; without one only loopback clients get in."""
    if token:
        presented = bearer_token(request.headers.get("authorization"))
        if presented is None or not hmac.compare_digest(presented.encode(), token.encode()):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid metrics token")
        return

    if not is_loopback(request.client.host if request.client else None):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Metrics access restricted to localhost")
