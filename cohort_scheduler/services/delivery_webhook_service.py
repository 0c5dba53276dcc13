"""
Translation of SendGrid event webhook batches into delivery state machine callbacks.

SendGrid posts a JSON array of events. Each carries `sg_event_id` (unique per
event, used for replay detection), `sg_message_id` (the X-Message-Id returned
at send time plus a filter suffix), `event` and a unix `timestamp`.
"""

import hmac
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends
from sqlalchemy.orm import Session

from cohort_scheduler.db.models import DeliveryEventType
from cohort_scheduler.db.session import get_sync_session
from cohort_scheduler.services.delivery_provider import DeliveryProvider
from cohort_scheduler.services.delivery_state_machine import DeliveryStateMachine
from cohort_scheduler.utils.logging import get_logger

logger = get_logger()

SENDGRID_EVENT_TYPES = {
    "processed": DeliveryEventType.SENT,
    "delivered": DeliveryEventType.DELIVERED,
    "open": DeliveryEventType.OPENED,
    "click": DeliveryEventType.CLICKED,
    "dropped": DeliveryEventType.FAILED,
    "bounce": DeliveryEventType.FAILED,
}


def verify_webhook_token(token: Optional[str], secret: str) -> bool:
    """Check the shared webhook token; an empty secret disables the check."""
    if not secret:
        return True
    if not token:
        return False
    return hmac.compare_digest(token.encode("utf-8"), secret.encode("utf-8"))


def correlation_id_from(sg_message_id: str) -> str:
    """Strip SendGrid's filter suffix ('<x-message-id>.filterXXXX...') from a message id."""
    return sg_message_id.split(".", 1)[0]


class DeliveryWebhookService:
    def __init__(self, db_session: Session, provider: Optional[DeliveryProvider] = None):
        self.db = db_session
        self.machine = DeliveryStateMachine(db_session, provider)

    def handle_events(self, events: List[Dict[str, Any]]) -> Dict[str, int]:
        """Apply a batch of provider events and commit. Returns per-outcome counts."""
        counts = {"applied": 0, "replayed": 0, "ignored": 0}

        for raw in events:
            event_type = SENDGRID_EVENT_TYPES.get(raw.get("event", ""))
            event_id = raw.get("sg_event_id")
            message_id = raw.get("sg_message_id")

            if event_type is None or not event_id or not message_id:
                counts["ignored"] += 1
                continue

            occurred_at = _parse_timestamp(raw.get("timestamp"))
            applied = self.machine.apply_provider_event(
                provider_event_id=event_id,
                provider_message_id=correlation_id_from(message_id),
                event_type=event_type,
                occurred_at=occurred_at,
                reason=raw.get("reason") or raw.get("response"),
                payload=raw,
            )
            counts["applied" if applied else "replayed"] += 1

        self.db.commit()
        logger.info(
            f"Processed {len(events)} delivery events: {counts['applied']} applied, "
            f"{counts['replayed']} replayed, {counts['ignored']} ignored"
        )
        return counts


def _parse_timestamp(value: Any) -> datetime:
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return datetime.now(timezone.utc)


# Dependency injection for service provider
def get_delivery_webhook_service(
    db: Session = Depends(get_sync_session),
) -> DeliveryWebhookService:
    """Dependency to provide DeliveryWebhookService instance"""
    return DeliveryWebhookService(db)
