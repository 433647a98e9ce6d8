# /dmfy/services/messenger_service.py

import abc
import logging
from typing import Optional

import httpx
import tenacity

from dmfy.config.settings import settings
from dmfy.flows.errors import DeliveryError
from dmfy.utils.alerting import alerting_service
from dmfy.utils.circuit_breaker import CircuitBreaker, CircuitOpenError

logger = logging.getLogger(__name__)

# Messenger rejects text messages longer than this
MAX_TEXT_LENGTH = 2000

# Graph API error code for an invalid or expired access token
OAUTH_EXCEPTION_CODE = 190


def _json_object(response: httpx.Response) -> dict:
    """Decoded response body, or {} when it is not a JSON object."""
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


class MessageDispatcher(abc.ABC):
    """Outbound delivery boundary used by the flow engine."""

    @abc.abstractmethod
    async def send(self, recipient_id: str, text: str) -> Optional[str]:
        """
        Deliver one text message.

        Returns:
            The platform message id when the platform reports one.

        Raises:
            DeliveryError: if the message could not be delivered.
        """

    async def close(self) -> None:
        pass


class GraphAPIDispatcher(MessageDispatcher):
    """Sends replies through the Graph API Send API (Messenger and Instagram)."""

    def __init__(self, page_access_token: Optional[str], messages_url: str):
        self.page_access_token = page_access_token
        self.messages_url = messages_url
        self.http_client = httpx.AsyncClient(timeout=10.0)
        self.circuit_breaker = CircuitBreaker("graph_api")

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type((httpx.RequestError, httpx.TimeoutException)),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=0.5, min=0.5, max=2),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def resilient_api_call(self, func, *args, **kwargs):
        return await self.circuit_breaker.call(func, *args, **kwargs)

    async def send(self, recipient_id: str, text: str) -> Optional[str]:
        if not self.page_access_token:
            logger.error("Missing PAGE_ACCESS_TOKEN, cannot send message.")
            raise DeliveryError("PAGE_ACCESS_TOKEN is not configured", recipient_id=recipient_id)

        payload = {
            "recipient": {"id": recipient_id},
            "messaging_type": "RESPONSE",
            "message": {"text": text[:MAX_TEXT_LENGTH]},
        }
        try:
            response = await self.resilient_api_call(
                self.http_client.post,
                self.messages_url,
                params={"access_token": self.page_access_token},
                json=payload,
            )
        except (httpx.HTTPError, CircuitOpenError) as e:
            logger.error(f"graph_send_network_error to {recipient_id}: {e}")
            raise DeliveryError(f"Network error while sending message: {e}", recipient_id=recipient_id) from e

        body = _json_object(response)
        if response.status_code == 200:
            message_id = body.get("message_id")
            logger.info(f"Message sent to {recipient_id}, mid: {message_id}")
            return message_id

        error = body.get("error")
        if not isinstance(error, dict):
            error = {}
        error_message = error.get("message") or response.text or "Unknown error"
        logger.error(f"graph_send_failed to {recipient_id}: {response.status_code} - {error_message}")

        if response.status_code == 401 or error.get("code") == OAUTH_EXCEPTION_CODE:
            await alerting_service.send_critical_alert(
                "Graph API authentication failed", {"recipient_id": recipient_id, "error": error_message}
            )

        raise DeliveryError(
            f"Graph API rejected message: {error_message}",
            recipient_id=recipient_id,
            status_code=response.status_code,
        )

    async def close(self) -> None:
        await self.http_client.aclose()


# Globally accessible instance
messenger_service = GraphAPIDispatcher(settings.page_access_token, settings.messages_url)
