"""
Email delivery provider client.

Messages are scheduled rather than sent: the provider holds each message until
its send time, which lets an enqueued message still be cancelled through its
batch id.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Optional

import httpx

from cohort_scheduler.config.settings import settings
from cohort_scheduler.utils.datetime_utils import to_utc
from cohort_scheduler.utils.errors import DeliveryError
from cohort_scheduler.utils.logging import get_logger

logger = get_logger()


@dataclass(frozen=True)
class ScheduleReceipt:
    correlation_id: str
    batch_id: Optional[str] = None


class DeliveryProvider(ABC):
    @abstractmethod
    def schedule(
        self,
        recipient: str,
        sender: str,
        subject: str,
        body: str,
        scheduled_at: datetime,
    ) -> ScheduleReceipt:
        """Hand a message to the provider for sending at `scheduled_at`. Raises DeliveryError."""

    @abstractmethod
    def cancel(self, receipt: ScheduleReceipt) -> None:
        """Cancel a scheduled message. Raises DeliveryError."""

    def close(self) -> None:
        """Release network resources held by the provider."""

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


class SendGridDeliveryProvider(DeliveryProvider):
    """
    SendGrid v3 client. The X-Message-Id response header is the correlation id.

    The underlying httpx.Client is opened on the first request and kept until
    `close()`, so one provider instance reuses its connection pool.
    """

    def __init__(
        self,
        api_key: str = settings.SENDGRID_API_KEY,
        base_url: str = settings.SENDGRID_BASE_URL,
        timeout: float = settings.SENDGRID_TIMEOUT,
        client: Optional[httpx.Client] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout
        self._client = client

    @property
    def client(self) -> httpx.Client:
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
            )
        return self._client

    def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            self._client.close()

    def schedule(
        self,
        recipient: str,
        sender: str,
        subject: str,
        body: str,
        scheduled_at: datetime,
    ) -> ScheduleReceipt:
        batch_id = self._create_batch()
        payload = {
            "personalizations": [{"to": [{"email": recipient}]}],
            "from": {"email": sender},
            "subject": subject,
            "content": [{"type": "text/html", "value": body}],
            "send_at": int(to_utc(scheduled_at).timestamp()),
            "batch_id": batch_id,
        }

        response = self._post("/mail/send", payload)
        message_id = response.headers.get("X-Message-Id")
        if not message_id:
            raise DeliveryError(
                "Provider accepted the message but returned no X-Message-Id",
                status_code=response.status_code,
            )

        logger.info(
            f"Scheduled message {message_id} to {recipient} for {scheduled_at.isoformat()}"
        )
        return ScheduleReceipt(correlation_id=message_id, batch_id=batch_id)

    def cancel(self, receipt: ScheduleReceipt) -> None:
        if not receipt.batch_id:
            raise DeliveryError(
                f"Message {receipt.correlation_id} has no batch id and cannot be cancelled"
            )
        self._post(
            "/user/scheduled_sends", {"batch_id": receipt.batch_id, "status": "cancel"}
        )
        logger.info(f"Cancelled scheduled message {receipt.correlation_id}")

    def _create_batch(self) -> str:
        response = self._post("/mail/batch", None)
        try:
            batch_id = response.json().get("batch_id")
        except ValueError:
            batch_id = None
        if not batch_id:
            raise DeliveryError("Provider did not return a batch id")
        return batch_id

    def _post(self, path: str, payload: Optional[dict]) -> httpx.Response:
        try:
            response = self.client.post(path, json=payload)
        except httpx.TimeoutException:
            raise DeliveryError(f"Timeout calling provider {path}")
        except httpx.HTTPError as e:
            raise DeliveryError(
                f"Connection error calling provider {path}: {e.__class__.__name__}"
            )

        if not 200 <= response.status_code < 300:
            raise DeliveryError(
                f"Provider error {response.status_code} on {path}: {_error_detail(response)}",
                status_code=response.status_code,
            )
        return response


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]
    errors = data.get("errors") if isinstance(data, dict) else None
    if errors and isinstance(errors, list):
        return "; ".join(str(e.get("message", e)) for e in errors if isinstance(e, dict))
    return str(data)[:200]


@lru_cache(maxsize=None)
def get_delivery_provider() -> DeliveryProvider:
    """Process-wide delivery provider, shared by requests and tasks"""
    return SendGridDeliveryProvider()


def close_delivery_provider() -> None:
    """Close the shared provider, if one was created, and forget it"""
    if get_delivery_provider.cache_info().currsize:
        get_delivery_provider().close()
    get_delivery_provider.cache_clear()
