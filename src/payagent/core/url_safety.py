"""Outbound URL checks for webhook targets.

Only HTTPS URLs whose host resolves exclusively to public addresses are
accepted. Resolution happens at registration time and again before each
delivery, since DNS answers can change in between.
"""

import asyncio
import ipaddress
import socket
from typing import Optional
from urllib.parse import urlsplit

from payagent.config import config
from payagent.exceptions import UnsafeUrlError
from payagent.logging_utils import get_logger

logger = get_logger(__name__)

BLOCKED_HOSTNAMES = {"localhost", "localhost.localdomain", "ip6-localhost", "ip6-loopback"}


def is_public_address(address: str) -> bool:
    try:
        ip = ipaddress.ip_address(address.split("%", 1)[0])
    except ValueError:
        return False
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return not (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_multicast
        or ip.is_reserved
        or ip.is_unspecified
    )


async def resolve_host(host: str) -> list[str]:
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, None, type=socket.SOCK_STREAM)
    return sorted({info[4][0] for info in infos})


async def check_url(url: str, allow_private: Optional[bool] = None) -> None:
    """Raise UnsafeUrlError unless ``url`` is a safe webhook target.

    Args:
        url: Candidate webhook URL.
        allow_private: Skip the scheme and address checks (local development).
            Defaults to config.webhook_allow_private_urls.
    """
    if allow_private is None:
        allow_private = config.webhook_allow_private_urls

    try:
        parts = urlsplit(url)
    except ValueError as e:
        raise UnsafeUrlError(f"Invalid URL: {url!r}") from e

    host = (parts.hostname or "").lower()
    if not host or parts.scheme not in ("https", "http"):
        raise UnsafeUrlError("URL must be an absolute http(s) URL")

    if allow_private:
        return

    if parts.scheme != "https":
        raise UnsafeUrlError("Webhook URL must use HTTPS")

    if host in BLOCKED_HOSTNAMES or host.endswith(".localhost"):
        raise UnsafeUrlError("Webhook URL must not point to localhost")

    try:
        addresses = await resolve_host(host)
    except (socket.gaierror, UnicodeError) as e:
        raise UnsafeUrlError(f"Could not resolve host {host!r}") from e

    if not addresses:
        raise UnsafeUrlError(f"Could not resolve host {host!r}")

    blocked = [address for address in addresses if not is_public_address(address)]
    if blocked:
        logger.warning(f"Rejected webhook host {host}: non-public address {blocked[0]}")
        raise UnsafeUrlError("Webhook URL resolves to a private or reserved address")


async def is_safe_url(url: str, allow_private: Optional[bool] = None) -> bool:
    try:
        await check_url(url, allow_private)
    except UnsafeUrlError:
        return False
    return True
