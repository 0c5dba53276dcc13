from typing import List, Optional
from datetime import datetime, date, time
from sqlalchemy import (
    String,
    Boolean,
    Integer,
    Text,
    ForeignKey,
    Index,
    func,
    text,
    UniqueConstraint,
    CheckConstraint,
    DateTime,
    Date,
    Time,
    JSON,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, validates
import enum

from pydantic import EmailStr, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from cohort_scheduler.db.custom_types import StringUUID, StatusEnum, new_uuid
from cohort_scheduler.utils.datetime_utils import get_zone, naive_utc_now
from cohort_scheduler.utils.errors import ValidationError

_email_adapter = TypeAdapter(EmailStr)


class Base(DeclarativeBase):
    pass


# Enums
class TemplateStatus(enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class GroupAssignmentStatus(enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELED = "canceled"


class SubGroupAssignmentStatus(enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELED = "canceled"


class ActionType(enum.Enum):
    DISPLAY_INFORMATION = "display_information"
    SEND_MESSAGE = "send_message"


class ActionStatus(enum.Enum):
    PENDING = "pending"
    DISPLAYED = "displayed"
    ENQUEUED = "enqueued"
    FAILED_TO_ENQUEUE = "failed_to_enqueue"
    SENT = "sent"
    DELIVERED = "delivered"
    OPENED = "opened"
    CLICKED = "clicked"
    FAILED_TO_SEND = "failed_to_send"
    CANCELED = "canceled"


class DeliveryStatus(enum.Enum):
    ENQUEUED = "enqueued"
    SENT = "sent"
    DELIVERED = "delivered"
    OPENED = "opened"
    CLICKED = "clicked"
    FAILED_TO_SEND = "failed_to_send"
    CANCELED = "canceled"


class DeliveryEventType(enum.Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    OPENED = "opened"
    CLICKED = "clicked"
    FAILED = "failed"


# Base mixin
class AuditMixin:
    """Mixin for common audit fields. updated_at is written explicitly by every write path."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=naive_utc_now, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=naive_utc_now, server_default=func.now(), nullable=False
    )


# Models
class User(Base, AuditMixin):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(StringUUID, primary_key=True, default=new_uuid)
    email: Mapped[str] = mapped_column(String(320), unique=True)  # RFC 5321 max length
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")

    # Relationships
    group_assignments: Mapped[List["GroupAssignment"]] = relationship(
        back_populates="user"
    )
    sub_group_assignments: Mapped[List["SubGroupAssignment"]] = relationship(
        back_populates="user"
    )
    action_instances: Mapped[List["ActionInstance"]] = relationship(
        back_populates="user"
    )

    @validates("timezone")
    def validate_timezone(self, _key, value: str) -> str:
        get_zone(value)
        return value

    @validates("email")
    def validate_email(self, _key, value: str) -> str:
        try:
            _email_adapter.validate_python(value)
        except PydanticValidationError:
            raise ValidationError(f"Invalid email address: {value!r}", "INVALID_EMAIL")
        return value

    __table_args__ = (Index("idx_users_email", "email"),)


class Group(Base, AuditMixin):
    __tablename__ = "groups"

    id: Mapped[str] = mapped_column(StringUUID, primary_key=True, default=new_uuid)
    group_name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[TemplateStatus] = mapped_column(
        StatusEnum(TemplateStatus), default=TemplateStatus.ACTIVE, nullable=False
    )
    # Lookup reference only, set when a newer version replaces this row
    superseded_by_id: Mapped[Optional[str]] = mapped_column(
        StringUUID, ForeignKey("groups.id"), nullable=True
    )

    # Relationships
    sub_groups: Mapped[List["SubGroup"]] = relationship(
        back_populates="group", order_by="SubGroup.assignment_order"
    )
    group_assignments: Mapped[List["GroupAssignment"]] = relationship(
        back_populates="group"
    )

    __table_args__ = (
        Index(
            "uq_groups_active_name",
            "group_name",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        Index("idx_groups_status", "status"),
    )


class GroupAssignment(Base, AuditMixin):
    __tablename__ = "group_assignments"

    id: Mapped[str] = mapped_column(StringUUID, primary_key=True, default=new_uuid)
    user_id: Mapped[str] = mapped_column(
        StringUUID, ForeignKey("users.id"), nullable=False
    )
    group_id: Mapped[str] = mapped_column(
        StringUUID, ForeignKey("groups.id"), nullable=False
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[GroupAssignmentStatus] = mapped_column(
        StatusEnum(GroupAssignmentStatus),
        default=GroupAssignmentStatus.ACTIVE,
        nullable=False,
    )
    # Set when this enrollment replaces a paused one
    restarted_from_id: Mapped[Optional[str]] = mapped_column(
        StringUUID, ForeignKey("group_assignments.id"), nullable=True
    )

    # Relationships
    user: Mapped["User"] = relationship(back_populates="group_assignments")
    group: Mapped["Group"] = relationship(back_populates="group_assignments")
    sub_group_assignments: Mapped[List["SubGroupAssignment"]] = relationship(
        back_populates="group_assignment"
    )

    __table_args__ = (
        Index(
            "uq_group_assignments_open_enrollment",
            "user_id",
            "group_id",
            unique=True,
            postgresql_where=text("status IN ('active', 'paused')"),
            sqlite_where=text("status IN ('active', 'paused')"),
        ),
        Index("idx_group_assignments_user", "user_id"),
        Index("idx_group_assignments_status", "status"),
    )


class SubGroup(Base, AuditMixin):
    __tablename__ = "sub_groups"

    id: Mapped[str] = mapped_column(StringUUID, primary_key=True, default=new_uuid)
    group_id: Mapped[str] = mapped_column(
        StringUUID, ForeignKey("groups.id"), nullable=False
    )
    sub_group_name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[TemplateStatus] = mapped_column(
        StatusEnum(TemplateStatus), default=TemplateStatus.ACTIVE, nullable=False
    )
    assignment_order: Mapped[int] = mapped_column(Integer, nullable=False)
    start_date_days_offset: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )
    # 0 = Sunday ... 6 = Saturday
    start_date_day_of_week: Mapped[Optional[int]] = mapped_column(
        Integer, nullable=True
    )

    # Relationships
    group: Mapped["Group"] = relationship(back_populates="sub_groups")
    action_templates: Mapped[List["ActionTemplate"]] = relationship(
        back_populates="sub_group"
    )
    sub_group_assignments: Mapped[List["SubGroupAssignment"]] = relationship(
        back_populates="sub_group"
    )

    __table_args__ = (
        CheckConstraint(
            "assignment_order > 0", name="ck_sub_groups_assignment_order_positive"
        ),
        CheckConstraint(
            "start_date_days_offset >= 0", name="ck_sub_groups_offset_non_negative"
        ),
        CheckConstraint(
            "start_date_day_of_week IS NULL OR "
            "(start_date_day_of_week >= 0 AND start_date_day_of_week <= 6)",
            name="ck_sub_groups_day_of_week_range",
        ),
        Index(
            "uq_sub_groups_active_order",
            "group_id",
            "assignment_order",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        Index(
            "uq_sub_groups_active_name",
            "group_id",
            "sub_group_name",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )


class SubGroupAssignment(Base, AuditMixin):
    __tablename__ = "sub_group_assignments"

    id: Mapped[str] = mapped_column(StringUUID, primary_key=True, default=new_uuid)
    user_id: Mapped[str] = mapped_column(
        StringUUID, ForeignKey("users.id"), nullable=False
    )
    sub_group_id: Mapped[str] = mapped_column(
        StringUUID, ForeignKey("sub_groups.id"), nullable=False
    )
    group_assignment_id: Mapped[str] = mapped_column(
        StringUUID, ForeignKey("group_assignments.id"), nullable=False
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[SubGroupAssignmentStatus] = mapped_column(
        StatusEnum(SubGroupAssignmentStatus),
        default=SubGroupAssignmentStatus.PENDING,
        nullable=False,
    )

    # Relationships
    user: Mapped["User"] = relationship(back_populates="sub_group_assignments")
    sub_group: Mapped["SubGroup"] = relationship(back_populates="sub_group_assignments")
    group_assignment: Mapped["GroupAssignment"] = relationship(
        back_populates="sub_group_assignments"
    )
    action_instances: Mapped[List["ActionInstance"]] = relationship(
        back_populates="sub_group_assignment"
    )

    __table_args__ = (
        Index(
            "uq_sub_group_assignments_open",
            "user_id",
            "sub_group_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'active')"),
            sqlite_where=text("status IN ('pending', 'active')"),
        ),
        Index("idx_sub_group_assignments_due", "status", "start_date"),
        Index("idx_sub_group_assignments_group_assignment", "group_assignment_id"),
    )


class ActionTemplate(Base, AuditMixin):
    __tablename__ = "action_templates"

    id: Mapped[str] = mapped_column(StringUUID, primary_key=True, default=new_uuid)
    sub_group_id: Mapped[str] = mapped_column(
        StringUUID, ForeignKey("sub_groups.id"), nullable=False
    )
    status: Mapped[TemplateStatus] = mapped_column(
        StatusEnum(TemplateStatus), default=TemplateStatus.ACTIVE, nullable=False
    )
    action_type: Mapped[ActionType] = mapped_column(
        StatusEnum(ActionType), nullable=False
    )
    action_datetime_days_offset: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )
    time_of_day_local: Mapped[time] = mapped_column(Time, nullable=False)
    message_subject: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    message_body: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Relationships
    sub_group: Mapped["SubGroup"] = relationship(back_populates="action_templates")
    action_instances: Mapped[List["ActionInstance"]] = relationship(
        back_populates="action_template"
    )

    __table_args__ = (
        CheckConstraint(
            "action_datetime_days_offset >= 0",
            name="ck_action_templates_offset_non_negative",
        ),
        CheckConstraint(
            "action_type != 'send_message' OR "
            "(message_subject IS NOT NULL AND message_body IS NOT NULL)",
            name="ck_action_templates_message_content",
        ),
        Index(
            "uq_action_templates_active_slot",
            "sub_group_id",
            "action_type",
            "action_datetime_days_offset",
            "time_of_day_local",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )


class ActionInstance(Base, AuditMixin):
    __tablename__ = "action_instances"

    id: Mapped[str] = mapped_column(StringUUID, primary_key=True, default=new_uuid)
    user_id: Mapped[str] = mapped_column(
        StringUUID, ForeignKey("users.id"), nullable=False
    )
    action_template_id: Mapped[str] = mapped_column(
        StringUUID, ForeignKey("action_templates.id"), nullable=False
    )
    sub_group_assignment_id: Mapped[str] = mapped_column(
        StringUUID, ForeignKey("sub_group_assignments.id"), nullable=False
    )
    action_datetime: Mapped[datetime] = mapped_column(
        DateTime, nullable=False
    )  # naive UTC
    status: Mapped[ActionStatus] = mapped_column(
        StatusEnum(ActionStatus), default=ActionStatus.PENDING, nullable=False
    )

    # Relationships
    user: Mapped["User"] = relationship(back_populates="action_instances")
    action_template: Mapped["ActionTemplate"] = relationship(
        back_populates="action_instances"
    )
    sub_group_assignment: Mapped["SubGroupAssignment"] = relationship(
        back_populates="action_instances"
    )
    delivery_record: Mapped[Optional["DeliveryRecord"]] = relationship(
        back_populates="action_instance", uselist=False
    )
    delivery_attempts: Mapped[List["DeliveryAttempt"]] = relationship(
        back_populates="action_instance", order_by="DeliveryAttempt.attempt_number"
    )

    __table_args__ = (
        Index(
            "uq_action_instances_user_template",
            "user_id",
            "action_template_id",
            unique=True,
            postgresql_where=text("status != 'canceled'"),
            sqlite_where=text("status != 'canceled'"),
        ),
        Index("idx_action_instances_due", "status", "action_datetime"),
        Index("idx_action_instances_sub_group_assignment", "sub_group_assignment_id"),
    )


class DeliveryRecord(Base, AuditMixin):
    __tablename__ = "delivery_records"

    id: Mapped[str] = mapped_column(StringUUID, primary_key=True, default=new_uuid)
    action_instance_id: Mapped[str] = mapped_column(
        StringUUID, ForeignKey("action_instances.id"), unique=True, nullable=False
    )
    status: Mapped[DeliveryStatus] = mapped_column(
        StatusEnum(DeliveryStatus), default=DeliveryStatus.ENQUEUED, nullable=False
    )
    # Correlation id returned by the provider
    provider_message_id: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False
    )
    provider_batch_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )
    sender: Mapped[str] = mapped_column(String(320), nullable=False)
    recipient: Mapped[str] = mapped_column(String(320), nullable=False)
    subject: Mapped[str] = mapped_column(String(255), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    enqueued_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    opened_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    clicked_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Relationships
    action_instance: Mapped["ActionInstance"] = relationship(
        back_populates="delivery_record"
    )

    __table_args__ = (Index("idx_delivery_records_status", "status"),)


class DeliveryAttempt(Base):
    """Append-only log of provider scheduling attempts for one action instance."""

    __tablename__ = "delivery_attempts"

    id: Mapped[str] = mapped_column(StringUUID, primary_key=True, default=new_uuid)
    action_instance_id: Mapped[str] = mapped_column(
        StringUUID, ForeignKey("action_instances.id"), nullable=False
    )
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    succeeded: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    attempted_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    # Relationships
    action_instance: Mapped["ActionInstance"] = relationship(
        back_populates="delivery_attempts"
    )

    __table_args__ = (
        UniqueConstraint(
            "action_instance_id",
            "attempt_number",
            name="uq_delivery_attempts_instance_attempt",
        ),
        CheckConstraint("attempt_number > 0", name="ck_delivery_attempts_positive"),
    )


class DeliveryEvent(Base):
    """Append-only log of provider callbacks. applied_at is NULL until reconciled."""

    __tablename__ = "delivery_events"

    id: Mapped[str] = mapped_column(StringUUID, primary_key=True, default=new_uuid)
    provider_event_id: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False
    )
    provider_message_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[DeliveryEventType] = mapped_column(
        StatusEnum(DeliveryEventType), nullable=False
    )
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    received_at: Mapped[datetime] = mapped_column(
        DateTime, default=naive_utc_now, nullable=False
    )
    applied_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    __table_args__ = (
        Index(
            "idx_delivery_events_unapplied", "provider_message_id", "applied_at"
        ),
    )
