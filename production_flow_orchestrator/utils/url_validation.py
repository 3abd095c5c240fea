"""
Outgoing webhook URL validation.

Rejects URLs that would let a webhook configuration reach internal services:
non-HTTP schemes, embedded credentials, loopback, private, link-local and
cloud metadata hosts.
"""

import ipaddress
from typing import Optional, Tuple
from urllib.parse import urlsplit

BLOCKED_HOSTNAMES = {
    "localhost",
    "localhost.localdomain",
    "metadata",
    "metadata.google.internal",
    "instance-data",
}

BLOCKED_SUFFIXES = (".localhost", ".local", ".internal")


def _blocked_address(hostname: str) -> bool:
    try:
        address = ipaddress.ip_address(hostname.strip("[]"))
    except ValueError:
        return False
    return (
        address.is_loopback
        or address.is_private
        or address.is_link_local
        or address.is_unspecified
        or address.is_multicast
        or address.is_reserved
    )


def validate_webhook_url(url: str, allow_private: bool = False) -> Tuple[bool, Optional[str]]:
    """
    Check a webhook target URL.

    Args:
        url: Target URL from the webhook configuration
        allow_private: Permit loopback/private hosts (local development)

    Returns:
        ``(True, None)`` when the URL may be used, else ``(False, reason)``
    """
    try:
        parsed = urlsplit(url)
        port = parsed.port
    except ValueError:
        return False, "Invalid URL format"

    if parsed.scheme not in ("http", "https"):
        return False, "Only HTTP/HTTPS protocols are allowed"

    hostname = (parsed.hostname or "").lower()
    if not hostname:
        return False, "URL has no host"

    if parsed.username or parsed.password:
        return False, "Credentials in URLs are not allowed"

    if port == 0:
        return False, "Invalid port"

    if allow_private:
        return True, None

    if hostname in BLOCKED_HOSTNAMES or hostname.endswith(BLOCKED_SUFFIXES):
        return False, "Private/localhost URLs are not allowed"

    if _blocked_address(hostname):
        return False, "Private/localhost URLs are not allowed"

    return True, None
