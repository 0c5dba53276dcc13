from dataclasses import dataclass
from datetime import datetime
from functools import partial
from typing import Any, Dict, Optional
import enum

from sqlalchemy import select, func, and_, exists
from sqlalchemy.orm import Session

from cohort_scheduler.config.settings import settings
from cohort_scheduler.db.models import (
    ActionInstance,
    ActionStatus,
    ActionType,
    DeliveryAttempt,
    DeliveryEvent,
    DeliveryEventType,
    DeliveryRecord,
    DeliveryStatus,
)
from cohort_scheduler.db.custom_types import parse_uuid
from cohort_scheduler.db.store import insert_or_get_existing, touch
from cohort_scheduler.services.delivery_provider import (
    DeliveryProvider,
    ScheduleReceipt,
    get_delivery_provider,
)
from cohort_scheduler.services.state_transitions import (
    ACTION_TRANSITIONS,
    DELIVERY_TRANSITIONS,
    DONE_ACTION_STATUSES,
    can_transition,
    transition,
)
from cohort_scheduler.utils.datetime_utils import Clock, SystemClock, to_naive_utc, to_utc
from cohort_scheduler.utils.errors import DeliveryError
from cohort_scheduler.utils.logging import get_logger

logger = get_logger()


class EnqueueResult(enum.Enum):
    ENQUEUED = "enqueued"
    RETRY = "retry"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class EnqueueOutcome:
    result: EnqueueResult
    attempt_number: int = 0
    retry_delay: Optional[int] = None
    error: Optional[str] = None


# Success callbacks only ever move a message forward along this order
SUCCESS_RANK = {
    DeliveryStatus.ENQUEUED: 0,
    DeliveryStatus.SENT: 1,
    DeliveryStatus.DELIVERED: 2,
    DeliveryStatus.OPENED: 3,
    DeliveryStatus.CLICKED: 4,
}

EVENT_TIMESTAMP_FIELDS = {
    DeliveryEventType.SENT: "sent_at",
    DeliveryEventType.DELIVERED: "delivered_at",
    DeliveryEventType.OPENED: "opened_at",
    DeliveryEventType.CLICKED: "clicked_at",
    DeliveryEventType.FAILED: "failed_at",
}


class DeliveryStateMachine:
    """
    Drives send_message actions from pending through enqueue and provider callbacks.

    Enqueue attempts are logged in delivery_attempts; the retry ceiling counts
    those rows. Provider callbacks are logged in delivery_events keyed by the
    provider's event id, so a replayed callback changes nothing.
    """

    def __init__(
        self,
        db_session: Session,
        provider: Optional[DeliveryProvider] = None,
        clock: Optional[Clock] = None,
        max_attempts: int = settings.DELIVERY_MAX_ATTEMPTS,
        retry_base_delay: int = settings.DELIVERY_RETRY_BASE_DELAY,
        retry_max_delay: int = settings.DELIVERY_RETRY_MAX_DELAY,
        sender: str = settings.SENDER_EMAIL,
    ):
        self.db = db_session
        self._provider = provider
        self.clock = clock or SystemClock()
        self.max_attempts = max_attempts
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.sender = sender

    @property
    def provider(self) -> DeliveryProvider:
        if self._provider is None:
            self._provider = get_delivery_provider()
        return self._provider

    def retry_delay(self, attempt_number: int) -> int:
        """Exponential backoff in seconds after the given failed attempt"""
        return min(
            self.retry_base_delay * 2 ** (attempt_number - 1), self.retry_max_delay
        )

    # Enqueue
    def attempt_enqueue(self, action_instance_id: str) -> EnqueueOutcome:
        """
        Make one attempt to hand a pending send_message action to the provider.

        Returns:
            EnqueueOutcome: ENQUEUED on success, RETRY with a delay while below
                the attempt ceiling, FAILED once the ceiling is reached, and
                SKIPPED when the action is not a pending message
        """
        now = self.clock.now()
        instance_id = parse_uuid(action_instance_id)
        instance = None
        if instance_id is not None:
            instance = self.db.execute(
                select(ActionInstance)
                .where(ActionInstance.id == instance_id)
                .with_for_update()
            ).scalar_one_or_none()

        if instance is None:
            logger.warning(f"Action instance {action_instance_id} not found")
            return EnqueueOutcome(EnqueueResult.SKIPPED)

        template = instance.action_template
        if template.action_type != ActionType.SEND_MESSAGE:
            return EnqueueOutcome(EnqueueResult.SKIPPED)

        if instance.status != ActionStatus.PENDING:
            logger.info(
                f"Action instance {instance.id} is {instance.status.value}, not enqueuing"
            )
            return EnqueueOutcome(EnqueueResult.SKIPPED)

        attempts = self.count_attempts(instance.id)
        if attempts >= self.max_attempts:
            transition(instance, ActionStatus.FAILED_TO_ENQUEUE, ACTION_TRANSITIONS, now)
            self.db.flush()
            return EnqueueOutcome(EnqueueResult.FAILED, attempt_number=attempts)

        attempt_number = attempts + 1
        recipient = instance.user.email
        scheduled_at = max(to_utc(instance.action_datetime), now)

        try:
            receipt = self.provider.schedule(
                recipient=recipient,
                sender=self.sender,
                subject=template.message_subject,
                body=template.message_body,
                scheduled_at=scheduled_at,
            )
        except DeliveryError as e:
            self._record_attempt(instance.id, attempt_number, False, e.message, now)

            if attempt_number >= self.max_attempts:
                transition(
                    instance, ActionStatus.FAILED_TO_ENQUEUE, ACTION_TRANSITIONS, now
                )
                self.db.flush()
                logger.error(
                    f"Giving up on action instance {instance.id} after "
                    f"{attempt_number} attempts: {e.message}"
                )
                return EnqueueOutcome(
                    EnqueueResult.FAILED, attempt_number=attempt_number, error=e.message
                )

            delay = self.retry_delay(attempt_number)
            self.db.flush()
            logger.warning(
                f"Enqueue attempt {attempt_number}/{self.max_attempts} for action "
                f"instance {instance.id} failed, retrying in {delay}s: {e.message}"
            )
            return EnqueueOutcome(
                EnqueueResult.RETRY,
                attempt_number=attempt_number,
                retry_delay=delay,
                error=e.message,
            )

        self._record_attempt(instance.id, attempt_number, True, None, now)
        record = DeliveryRecord(
            action_instance_id=instance.id,
            status=DeliveryStatus.ENQUEUED,
            provider_message_id=receipt.correlation_id,
            provider_batch_id=receipt.batch_id,
            sender=self.sender,
            recipient=recipient,
            subject=template.message_subject,
            body=template.message_body,
            enqueued_at=to_naive_utc(now),
            scheduled_at=to_naive_utc(scheduled_at),
        )
        self.db.add(record)
        transition(instance, ActionStatus.ENQUEUED, ACTION_TRANSITIONS, now)
        self.db.flush()

        logger.info(
            f"Enqueued action instance {instance.id} as provider message "
            f"{receipt.correlation_id}"
        )
        self.reconcile_pending_events(record)
        return EnqueueOutcome(EnqueueResult.ENQUEUED, attempt_number=attempt_number)

    def count_attempts(self, action_instance_id: str) -> int:
        result = self.db.execute(
            select(func.count(DeliveryAttempt.id)).where(
                DeliveryAttempt.action_instance_id == action_instance_id
            )
        )
        return result.scalar_one()

    def _record_attempt(
        self,
        action_instance_id: str,
        attempt_number: int,
        succeeded: bool,
        error_message: Optional[str],
        now: datetime,
    ) -> DeliveryAttempt:
        attempt = DeliveryAttempt(
            action_instance_id=action_instance_id,
            attempt_number=attempt_number,
            succeeded=succeeded,
            error_message=error_message,
            attempted_at=to_naive_utc(now),
        )
        self.db.add(attempt)
        return attempt

    # Provider callbacks
    def apply_provider_event(
        self,
        provider_event_id: str,
        provider_message_id: str,
        event_type: DeliveryEventType,
        occurred_at: datetime,
        reason: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Record a provider callback and apply it if its message is known.

        Returns:
            bool: False if this event id was already recorded (replay), else True
        """
        event = DeliveryEvent(
            provider_event_id=provider_event_id,
            provider_message_id=provider_message_id,
            event_type=event_type,
            occurred_at=to_naive_utc(occurred_at),
            received_at=to_naive_utc(self.clock.now()),
            reason=reason,
            payload=payload,
        )
        event, created = insert_or_get_existing(
            self.db, event, partial(self.find_event, provider_event_id)
        )
        if not created:
            logger.info(f"Ignoring replayed provider event {provider_event_id}")
            return False

        record = self.find_record(provider_message_id)
        if record is None:
            logger.info(
                f"Provider event {provider_event_id} for unknown message "
                f"{provider_message_id} stored for reconciliation"
            )
            return True

        self._apply_event(record, event)
        self.db.flush()
        return True

    def reconcile_pending_events(self, record: DeliveryRecord) -> int:
        """Apply callbacks that arrived before the record existed, in occurrence order"""
        result = self.db.execute(
            select(DeliveryEvent)
            .where(
                and_(
                    DeliveryEvent.provider_message_id == record.provider_message_id,
                    DeliveryEvent.applied_at.is_(None),
                )
            )
            .order_by(DeliveryEvent.occurred_at.asc())
        )
        events = result.scalars().all()
        for event in events:
            self._apply_event(record, event)

        if events:
            self.db.flush()
            logger.info(
                f"Reconciled {len(events)} stored events for message "
                f"{record.provider_message_id}"
            )
        return len(events)

    def reconcile_orphaned_events(self, limit: Optional[int] = None) -> int:
        """
        Apply stored callbacks whose message record has since been created.

        A callback that raced the enqueue commit is stored unapplied and the
        enqueue may not see it; this sweep picks those up.

        Returns:
            int: number of events applied
        """
        pending = exists().where(
            and_(
                DeliveryEvent.provider_message_id == DeliveryRecord.provider_message_id,
                DeliveryEvent.applied_at.is_(None),
            )
        )
        query = (
            select(DeliveryRecord)
            .where(pending)
            .order_by(DeliveryRecord.created_at.asc())
        )
        if limit is not None:
            query = query.limit(limit)

        records = self.db.execute(query).scalars().all()
        return sum(self.reconcile_pending_events(record) for record in records)

    def _apply_event(self, record: DeliveryRecord, event: DeliveryEvent) -> None:
        now = self.clock.now()
        instance = record.action_instance

        if event.event_type == DeliveryEventType.FAILED:
            target_record, target_action = (
                DeliveryStatus.FAILED_TO_SEND,
                ActionStatus.FAILED_TO_SEND,
            )
            if can_transition(DELIVERY_TRANSITIONS, record.status, target_record):
                record.failed_at = event.occurred_at
                record.failure_reason = event.reason
        else:
            target_record = DeliveryStatus(event.event_type.value)
            target_action = ActionStatus(event.event_type.value)

            field = EVENT_TIMESTAMP_FIELDS[event.event_type]
            if getattr(record, field) is None:
                setattr(record, field, event.occurred_at)

            current_rank = SUCCESS_RANK.get(record.status)
            if current_rank is not None and SUCCESS_RANK[target_record] > current_rank:
                # A later success implies the message left the provider
                if record.sent_at is None:
                    record.sent_at = event.occurred_at
            else:
                target_record = None

        if target_record is not None and can_transition(
            DELIVERY_TRANSITIONS, record.status, target_record
        ):
            transition(record, target_record, DELIVERY_TRANSITIONS, now)
            if can_transition(ACTION_TRANSITIONS, instance.status, target_action):
                transition(instance, target_action, ACTION_TRANSITIONS, now)
        else:
            logger.info(
                f"Provider event {event.provider_event_id} ({event.event_type.value}) "
                f"superseded by current status {record.status.value}"
            )
            touch(record, now)

        event.applied_at = to_naive_utc(now)

    def find_event(self, provider_event_id: str) -> Optional[DeliveryEvent]:
        result = self.db.execute(
            select(DeliveryEvent).where(
                DeliveryEvent.provider_event_id == provider_event_id
            )
        )
        return result.scalar_one_or_none()

    def find_record(self, provider_message_id: str) -> Optional[DeliveryRecord]:
        result = self.db.execute(
            select(DeliveryRecord).where(
                DeliveryRecord.provider_message_id == provider_message_id
            )
        )
        return result.scalar_one_or_none()

    # Cancellation
    def cancel(self, instance: ActionInstance, now: Optional[datetime] = None) -> bool:
        """
        Cancel an action that has not gone out yet.

        Pending actions are cancelled locally. Enqueued messages are cancelled
        at the provider first and stay enqueued if the provider refuses.
        """
        now = now or self.clock.now()

        if instance.status == ActionStatus.PENDING:
            transition(instance, ActionStatus.CANCELED, ACTION_TRANSITIONS, now)
            self.db.flush()
            return True

        if instance.status != ActionStatus.ENQUEUED:
            return False

        record = self.db.execute(
            select(DeliveryRecord).where(
                DeliveryRecord.action_instance_id == instance.id
            )
        ).scalar_one_or_none()
        if record is not None:
            try:
                self.provider.cancel(
                    ScheduleReceipt(
                        correlation_id=record.provider_message_id,
                        batch_id=record.provider_batch_id,
                    )
                )
            except DeliveryError as e:
                logger.warning(
                    f"Provider refused to cancel message {record.provider_message_id}: "
                    f"{e.message}"
                )
                return False
            transition(record, DeliveryStatus.CANCELED, DELIVERY_TRANSITIONS, now)

        transition(instance, ActionStatus.CANCELED, ACTION_TRANSITIONS, now)
        self.db.flush()
        return True

    @staticmethod
    def is_done(instance: ActionInstance) -> bool:
        return instance.status in DONE_ACTION_STATUSES
