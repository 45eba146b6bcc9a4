"""Client IP detection for requests behind reverse proxies.

X-Forwarded-For is only honoured when the direct peer is a trusted proxy;
the rightmost address that is not itself a trusted proxy is the client.
The result is recorded on audit entries.
"""

import ipaddress
import logging
from functools import lru_cache

from fastapi import Request

from checkin.core.config import settings

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def _trusted_proxy_networks() -> tuple[ipaddress.IPv4Network | ipaddress.IPv6Network, ...]:
    networks = []
    for entry in settings.TRUSTED_PROXY_IPS.split(","):
        entry = entry.strip()
        if not entry:
            continue
        try:
            # A bare address becomes a /32 or /128 network
            networks.append(ipaddress.ip_network(entry, strict=False))
        except ValueError as e:
            logger.warning(f"Invalid trusted proxy IP/network '{entry}': {e}")
    return tuple(networks)


def _is_trusted_proxy(ip_str: str) -> bool:
    try:
        ip_addr = ipaddress.ip_address(ip_str)
    except ValueError:
        return False
    return any(ip_addr in network for network in _trusted_proxy_networks())


def get_client_ip(request: Request) -> str:
    """
    Get the real client IP address from a request.

    Returns:
        Client IP address string, or "unknown" if it cannot be determined
    """
    direct_ip = request.client.host if request.client else None
    if not direct_ip:
        return "unknown"

    if not _is_trusted_proxy(direct_ip):
        return direct_ip

    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        for ip in reversed([part.strip() for part in forwarded.split(",")]):
            try:
                ipaddress.ip_address(ip)
            except ValueError:
                logger.warning(f"Invalid IP in X-Forwarded-For: {ip}")
                continue
            if not _is_trusted_proxy(ip):
                return ip

    return direct_ip


def clear_trusted_proxy_cache() -> None:
    """Clear the cached trusted proxy networks (settings changed, tests)."""
    _trusted_proxy_networks.cache_clear()
