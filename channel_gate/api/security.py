"""
Request authenticity: gateway push source check and admin API key.
"""
import hmac
import ipaddress
import logging

from fastapi import Header, HTTPException
from starlette.requests import Request

from channel_gate.core.config import settings

logger = logging.getLogger(__name__)


def get_client_ip(request: Request) -> str:
    """
    Client IP. X-Forwarded-For is honoured only when the direct peer is a trusted proxy;
    the last hop (the one the proxy appended) is taken, earlier entries are client-controlled.
    """
    direct = request.client.host if request.client else ""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded and direct in settings.trusted_proxy_ips_set:
        hops = [h.strip() for h in forwarded.split(",") if h.strip()]
        if hops:
            return hops[-1]
    return direct


def ip_in_networks(ip: str, networks: list[str]) -> bool:
    """False for unparsable addresses and for an empty network list."""
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    for net in networks:
        try:
            if addr in ipaddress.ip_network(net, strict=False):
                return True
        except ValueError:
            logger.warning("invalid_webhook_network", extra={"error": net})
    return False


def is_gateway_source(request: Request) -> bool:
    return ip_in_networks(get_client_ip(request), settings.yookassa_webhook_networks_list)


def require_admin_key(x_admin_key: str | None = Header(None)) -> None:
    """Admin routes are closed when ADMIN_API_KEY is not configured."""
    expected = settings.admin_api_key
    if not expected or not x_admin_key or not hmac.compare_digest(x_admin_key, expected):
        raise HTTPException(status_code=401, detail="Invalid admin key")
