"""Public IP lookup used to confirm where traffic leaves the tailnet."""

import logging
import time
from typing import Any, Callable, Optional

import requests

from tailscale_tui.models import EgressInfo

logger = logging.getLogger(__name__)

# Exit node changes move the egress IP, so cached answers go stale quickly.
CACHE_TTL = 30
REQUEST_TIMEOUT = 5


def _from_geojs(data: dict[str, Any]) -> Optional[EgressInfo]:
    ip = data.get("ip")
    if not ip:
        return None
    return EgressInfo(
        ip=str(ip),
        country=str(data.get("country") or data.get("country_code") or ""),
        city=str(data.get("city") or ""),
        organization=str(data.get("organization_name") or ""),
    )


def _from_ip_api(data: dict[str, Any]) -> Optional[EgressInfo]:
    ip = data.get("query")
    if not ip or data.get("status") == "fail":
        return None
    return EgressInfo(
        ip=str(ip),
        country=str(data.get("country") or ""),
        city=str(data.get("city") or ""),
        organization=str(data.get("isp") or ""),
    )


def _from_ipapi_co(data: dict[str, Any]) -> Optional[EgressInfo]:
    ip = data.get("ip")
    if not ip or data.get("error"):
        return None
    return EgressInfo(
        ip=str(ip),
        country=str(data.get("country_name") or ""),
        city=str(data.get("city") or ""),
        organization=str(data.get("org") or ""),
    )


ENDPOINTS: list[tuple[str, Callable[[dict[str, Any]], Optional[EgressInfo]]]] = [
    ("https://get.geojs.io/v1/ip/geo.json", _from_geojs),
    ("http://ip-api.com/json/?fields=status,query,country,city,isp", _from_ip_api),
    ("https://ipapi.co/json/", _from_ipapi_co),
]


class EgressChecker:
    """Looks up this machine's public IP, trying each endpoint in turn."""

    def __init__(self, session: Optional[requests.Session] = None, ttl: float = CACHE_TTL) -> None:
        self.session = session or requests.Session()
        self.ttl = ttl
        self._cached: Optional[EgressInfo] = None
        self._cached_at = 0.0

    def invalidate(self) -> None:
        self._cached = None

    def lookup(self) -> Optional[EgressInfo]:
        now = time.monotonic()
        if self._cached is not None and now - self._cached_at < self.ttl:
            return self._cached
        for url, parse in ENDPOINTS:
            try:
                response = self.session.get(url, timeout=REQUEST_TIMEOUT)
                response.raise_for_status()
                data = response.json()
            except (requests.RequestException, ValueError) as exc:
                logger.info("Egress lookup via %s failed: %s", url, exc)
                continue
            info = parse(data) if isinstance(data, dict) else None
            if info is not None:
                self._cached = info
                self._cached_at = now
                return info
        return None
