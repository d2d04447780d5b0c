from __future__ import annotations
import hashlib
import ipaddress
import logging
from typing import List, Tuple

from starlette.requests import Request

logger = logging.getLogger(__name__)

Network = ipaddress.IPv4Network | ipaddress.IPv6Network


def parse_cidrs(csv: str) -> List[Network]:
    """
    Parse a comma-separated CIDR list into ipaddress network objects.
    Invalid tokens are logged and skipped.
    """
    nets: List[Network] = []
    for part in (csv or "").split(","):
        p = part.strip()
        if not p:
            continue
        try:
            nets.append(ipaddress.ip_network(p, strict=False))
        except ValueError:
            logger.warning("ignoring invalid trusted proxy cidr %r", p)
    return nets


def is_trusted(ip: str, trusted: List[Network]) -> bool:
    try:
        ipobj = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return any(ipobj in net for net in trusted)


def hash_ip(ip: str, salt: str) -> str:
    return hashlib.sha256((salt + ip).encode("utf-8")).hexdigest()[:16]


def get_client_ip(request: Request, trusted: List[Network]) -> str:
    """Left-most X-Forwarded-For entry, but only when the socket peer is a trusted proxy."""
    remote = request.client.host if request.client else ""
    xff = request.headers.get("x-forwarded-for")
    if xff and is_trusted(remote, trusted):
        first = xff.split(",")[0].strip()
        try:
            ipaddress.ip_address(first)
            return first
        except ValueError:
            return remote
    return remote


def get_client_info(request: Request, settings) -> Tuple[str, str]:
    """(client ip, salted hash). The hash is what the engine uses as source id."""
    ip = get_client_ip(request, parse_cidrs(settings.TRUSTED_PROXY_CIDRS))
    return ip, hash_ip(ip, settings.IP_SALT)
