# consent_vault/ip_lookup.py
from __future__ import annotations

from typing import Optional

import httpx
import structlog

logger = structlog.get_logger()


class IpLookup:
    """Best-effort public IP lookup (ipify-style JSON ``{"ip": ...}``).

    Returns None on any failure; consent is recorded either way.
    """

    def __init__(self, url: str, timeout: float = 3.0, transport: Optional[httpx.BaseTransport] = None):
        self.url = url
        self.timeout = timeout
        self._transport = transport

    def __call__(self) -> Optional[str]:
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                resp = client.get(self.url)
                resp.raise_for_status()
                ip = resp.json().get("ip")
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            logger.debug("ip_lookup_unavailable", url=self.url, error=str(e))
            return None
        return ip or None
