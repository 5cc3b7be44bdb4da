"""Outbound webhook delivery for the automation ``webhook`` action."""

import ipaddress
import logging
import re
from typing import Any, Dict
from urllib.parse import urlparse

import httpx

from ..errors import ActionConfigError

logger = logging.getLogger(__name__)

_BLOCKED_HOSTNAMES = {"localhost", "localhost.localdomain", "metadata.google.internal"}
_BLOCKED_SUFFIXES = (".internal", ".local", ".localhost")
_NUMERIC_HOST_RE = re.compile(r"^(0x[0-9a-f]+|\d+)(\.(0x[0-9a-f]+|\d+))*$", re.IGNORECASE)


def validate_webhook_url(url: str) -> str:
    """Reject non-http(s) URLs and hosts that point into private networks.

    Returns the URL unchanged when it is acceptable.

    Raises:
        ActionConfigError: the URL is invalid or targets a blocked host
    """
    if not isinstance(url, str) or not url.strip():
        raise ActionConfigError("Webhook URL is required")
    try:
        parsed = urlparse(url.strip())
    except ValueError as e:
        raise ActionConfigError(f"Invalid webhook URL: {e}") from e

    if parsed.scheme not in ("http", "https"):
        raise ActionConfigError("Webhook URL must use http or https")
    host = (parsed.hostname or "").lower().rstrip(".")
    if not host:
        raise ActionConfigError("Webhook URL has no host")
    if host in _BLOCKED_HOSTNAMES or host.endswith(_BLOCKED_SUFFIXES):
        raise ActionConfigError(f"Webhook host is not allowed: {host}")

    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        # Non-canonical numeric hosts (0x7f.1, 0177.0.0.1, 2130706433)
        if _NUMERIC_HOST_RE.match(host):
            raise ActionConfigError(f"Webhook host is not allowed: {host}")
        return url

    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped:
        address = address.ipv4_mapped
    if (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_reserved
        or address.is_multicast
        or address.is_unspecified
    ):
        raise ActionConfigError(f"Webhook host is not allowed: {host}")
    return url


class HttpWebhookSender:
    """POST JSON payloads to user-configured webhook URLs.

    Args:
        timeout: Request timeout in seconds (default 30).
    """

    def __init__(self, timeout: int = 30):
        self._timeout = timeout

    async def post(self, url: str, payload: Dict[str, Any]) -> int:
        validate_webhook_url(url)
        async with httpx.AsyncClient(timeout=self._timeout, follow_redirects=False) as client:
            response = await client.post(
                url,
                json=payload,
                headers={"User-Agent": "crmflow-automations/1.0"},
            )
        logger.info(f"Webhook POST {url} -> {response.status_code}")
        return response.status_code
