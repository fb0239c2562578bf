"""Rate limiting for Sobek backend.

Buckets are per client IP. The leftmost ``X-Forwarded-For`` hop is used only
when the request arrives from one of ``Settings.trusted_proxy_cidrs``.
"""

import ipaddress
from functools import lru_cache

from slowapi import Limiter
from slowapi.util import get_remote_address

from .config import get_settings
from .logging_config import get_logger

logger = get_logger("sobek.rate_limit")

# Per-route limits
CRON_LIMIT = "30/minute"
ADMIN_LIMIT = "20/minute"
ORDER_WRITE_LIMIT = "20/minute"
READ_LIMIT = "120/minute"

Network = ipaddress.IPv4Network | ipaddress.IPv6Network


@lru_cache
def parse_networks(cidrs: tuple[str, ...]) -> tuple[Network, ...]:
    networks = []
    for cidr in cidrs:
        try:
            networks.append(ipaddress.ip_network(cidr.strip(), strict=False))
        except ValueError:
            logger.warning(f"Ignoring invalid trusted proxy CIDR: {cidr!r}")
    return tuple(networks)


def is_trusted_proxy(ip: str, cidrs: tuple[str, ...] | None = None) -> bool:
    if cidrs is None:
        cidrs = tuple(get_settings().trusted_proxy_cidrs)
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return any(addr in net for net in parse_networks(cidrs))


def client_ip_key(request) -> str:
    """Rate-limit key: the caller's IP, looking through trusted proxies."""
    peer = get_remote_address(request)
    if not is_trusted_proxy(peer):
        return peer
    hops = [h.strip() for h in request.headers.get("x-forwarded-for", "").split(",")]
    return hops[0] or peer


limiter = Limiter(key_func=client_ip_key)
