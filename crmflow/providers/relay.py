"""HTTP mail relay - delivers outreach email through a JSON relay endpoint."""

import logging
from typing import Optional

import httpx

from ..errors import MailError
from ..models import OutboundEmail

logger = logging.getLogger(__name__)


class HttpMailSender:
    """Send rendered messages via HTTP POST to a mail relay.

    The relay receives ``{to, subject, html, text, sender_id, metadata}`` and
    answers with ``{"message_id": ...}``. Rate limits, 5xx responses and
    network errors are transient; any other 4xx is permanent.

    Args:
        relay_url: URL to POST messages to.
        api_key: Optional bearer token for the relay.
        timeout: Request timeout in seconds (default 30).
    """

    def __init__(self, relay_url: str, api_key: Optional[str] = None, timeout: int = 30):
        self._relay_url = relay_url
        self._api_key = api_key
        self._timeout = timeout

    async def send(self, message: OutboundEmail) -> Optional[str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        payload = {
            "to": message.to,
            "subject": message.subject,
            "html": message.body_html,
            "text": message.body_text,
            "sender_id": message.sender_id,
            "metadata": {"project_id": message.project_id, **message.metadata},
        }

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(self._relay_url, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise MailError(f"Mail relay timed out: {e}", transient=True) from e
        except httpx.TransportError as e:
            raise MailError(f"Mail relay unreachable: {e}", transient=True) from e

        if response.status_code == 429 or response.status_code >= 500:
            logger.warning(f"Mail relay returned {response.status_code} for {message.to}")
            raise MailError(
                f"Mail relay error: {response.status_code}",
                transient=True,
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            logger.error(f"Mail relay rejected message: {response.status_code} - {response.text}")
            raise MailError(
                f"Mail relay rejected message: {response.status_code}",
                transient=False,
                status_code=response.status_code,
            )

        try:
            message_id = response.json().get("message_id")
        except ValueError:
            message_id = None
        logger.info(f"Mail relay accepted message {message_id} for project {message.project_id}")
        return message_id
