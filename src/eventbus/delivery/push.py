"""
Module: push.py
Description: Push event delivery to subscriber webhooks.

Implements the Notifier contract over HTTP: a batch of CloudEvents is
POSTed to the webhook of the subscriber connection. Ordinary failures
(timeouts, network errors, non-2xx responses) are reported as
NotifyResult(success=False) rather than raised.

Response interpretation:
- 2xx with an empty or non-object body: success
- 2xx with a JSON object: parsed as a NotifyResult ({"success": ...,
  "retryAfter": ..., "results": {...}}), success defaults to True
- 429 / 503 with a Retry-After header in seconds: soft defer
- anything else: failure with the status code and a truncated body
"""

from typing import Callable, Dict, List, Mapping, Optional, Union

import httpx
from pydantic import ValidationError

from eventbus.models.event import CloudEvent
from eventbus.models.notify import NotifyResult
from eventbus.utils.logger import get_logger

logger = get_logger(__name__)

CLOUDEVENTS_BATCH_CONTENT_TYPE = "application/cloudevents-batch+json"
DEFER_STATUS_CODES = frozenset({429, 503})

EndpointResolver = Callable[[str], Optional[str]]


def endpoint_resolver(
    endpoints: Optional[Mapping[str, str]] = None,
    url_template: Optional[str] = None,
) -> EndpointResolver:
    """
    Build a connection id -> webhook URL resolver.

    Explicit endpoints win over the template.

    Args:
        endpoints: Fixed mapping of connection ids to URLs
        url_template: Template containing '{connection_id}'

    Returns:
        Resolver returning the URL, or None for unknown connections
    """
    mapping = dict(endpoints or {})

    def resolve(connection_id: str) -> Optional[str]:
        if connection_id in mapping:
            return mapping[connection_id]
        if url_template:
            return url_template.format(connection_id=connection_id)
        return None

    return resolve


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        # HTTP-date form is not supported
        return None
    return seconds if seconds > 0 else None


class WebhookNotifier:
    """
    HTTP notifier pushing CloudEvents batches to subscriber webhooks.

    Handles delivery attempts with proper timeout and error handling for
    network issues.
    """

    def __init__(
        self,
        resolver: Union[EndpointResolver, Mapping[str, str]],
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize webhook notifier.

        Args:
            resolver: Connection id -> URL resolver, or a plain mapping
            timeout_seconds: HTTP timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)

        Raises:
            ValueError: If timeout_seconds is not positive
        """
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")

        if isinstance(resolver, Mapping):
            resolver = endpoint_resolver(endpoints=resolver)

        self.resolver = resolver
        self.timeout = httpx.Timeout(timeout_seconds, connect=min(timeout_seconds, 5.0))
        self._transport = transport

        logger.info("Webhook notifier initialized", timeout_seconds=timeout_seconds)

    async def notify(self, connection_id: str, events: List[CloudEvent]) -> NotifyResult:
        """
        Deliver a batch of events to a subscriber via HTTP POST.

        Args:
            connection_id: Subscriber connection
            events: CloudEvents to deliver

        Returns:
            NotifyResult describing the outcome
        """
        url = self.resolver(connection_id)
        if not url:
            logger.warning("No webhook endpoint for connection", connection_id=connection_id)
            return NotifyResult(success=False, error=f"No webhook endpoint for connection {connection_id}")

        body: Dict[str, object] = {"events": [event.to_dict() for event in events]}

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                logger.debug(
                    "Attempting webhook delivery",
                    connection_id=connection_id,
                    webhook_url=url,
                    event_count=len(events)
                )

                response = await client.post(
                    url,
                    json=body,
                    headers={'Content-Type': CLOUDEVENTS_BATCH_CONTENT_TYPE}
                )

            except httpx.TimeoutException:
                logger.warning("Webhook delivery timeout", connection_id=connection_id, webhook_url=url)
                return NotifyResult(success=False, error="Webhook delivery timed out")

            except httpx.NetworkError as e:
                logger.warning("Webhook delivery network error", connection_id=connection_id, error=str(e))
                return NotifyResult(success=False, error=f"Network error: {e}")

            except httpx.HTTPError as e:
                logger.error(
                    "Webhook delivery failed",
                    connection_id=connection_id,
                    error=str(e),
                    error_type=type(e).__name__
                )
                return NotifyResult(success=False, error=str(e) or type(e).__name__)

        return self._interpret(connection_id, response)

    def _interpret(self, connection_id: str, response: httpx.Response) -> NotifyResult:
        if response.status_code in DEFER_STATUS_CODES:
            retry_after = _parse_retry_after(response.headers.get('Retry-After'))
            if retry_after is not None:
                logger.info(
                    "Subscriber requested deferral",
                    connection_id=connection_id,
                    status_code=response.status_code,
                    retry_after_seconds=retry_after
                )
                return NotifyResult(success=False, retry_after=retry_after)

        if not response.is_success:
            logger.warning(
                "Webhook delivery HTTP error",
                connection_id=connection_id,
                status_code=response.status_code,
                response=response.text[:500]  # Truncate large responses
            )
            return NotifyResult(
                success=False,
                error=f"HTTP {response.status_code}: {response.text[:500]}"
            )

        if not response.content:
            return NotifyResult(success=True)

        try:
            payload = response.json()
        except ValueError:
            return NotifyResult(success=True)

        if not isinstance(payload, dict):
            return NotifyResult(success=True)

        try:
            return NotifyResult.model_validate({"success": True, **payload})
        except ValidationError as e:
            logger.warning(
                "Unreadable subscriber response",
                connection_id=connection_id,
                error=str(e)
            )
            return NotifyResult(success=True)
