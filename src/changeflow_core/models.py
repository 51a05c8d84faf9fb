"""SQLAlchemy database models."""
from datetime import datetime, timezone
from uuid import uuid4
import enum

from sqlalchemy import (
    Column,
    String,
    Text,
    DateTime,
    ForeignKey,
    Enum,
    Boolean,
    JSON,
    Uuid,
    Index,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship, declarative_base

# Base class for all models
Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation used by every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enum_column_type(enum_cls):
    # Use values_callable to serialize enum values (lowercase) instead of names (UPPERCASE)
    return Enum(enum_cls, values_callable=lambda obj: [e.value for e in obj])


class ChangeStatus(str, enum.Enum):
    """Lifecycle status enum for changes.

    Valid states:
    - draft: Initial state, being prepared by the requester
    - pending: Submitted for manager approval
    - approved: Approved, waiting for its scheduled start
    - in_progress: Being carried out
    - completed / failed: Outcome reported by the assignee (terminal)
    - cancelled: Rejected (terminal)
    """

    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ApprovalStatus(str, enum.Enum):
    """Approval record status enum."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ApprovalDecision(str, enum.Enum):
    """Decision submitted by an approver."""

    APPROVE = "approve"
    REJECT = "reject"


class AutomationType(str, enum.Enum):
    """Scheduled action kinds held in the automation ledger."""

    AUTO_START = "auto_start"
    COMPLETION_PROMPT = "completion_prompt"


class CompletionOutcome(str, enum.Enum):
    """Outcome reported by the assignee of an in-progress change."""

    COMPLETED = "completed"
    FAILED = "failed"


class MemberRole(str, enum.Enum):
    """Organization member role enum."""

    OWNER = "owner"
    ADMIN = "admin"
    MANAGER = "manager"
    MEMBER = "member"
    VIEWER = "viewer"


# Roles allowed to approve, reject and cancel automations ("manager or above")
APPROVER_ROLES = frozenset({MemberRole.OWNER, MemberRole.ADMIN, MemberRole.MANAGER})


class NotificationType(str, enum.Enum):
    """Notification kinds emitted by the change workflow."""

    CHANGE_APPROVAL_REQUEST = "change_approval_request"
    CHANGE_APPROVED = "change_approved"
    CHANGE_REJECTED = "change_rejected"
    CHANGE_AUTO_STARTED = "change_auto_started"
    CHANGE_COMPLETION_PROMPT = "change_completion_prompt"
    CHANGE_COMPLETED = "change_completed"
    CHANGE_FAILED = "change_failed"
    CHANGE_AUTOMATION_CANCELLED = "change_automation_cancelled"


class User(Base):
    """Organization member that can request, approve or carry out changes."""

    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid4)
    organization_id = Column(Uuid, nullable=False, index=True)
    email = Column(String(255), nullable=False, unique=True)
    full_name = Column(String(200), nullable=True)
    role = Column(_enum_column_type(MemberRole), nullable=False, default=MemberRole.MEMBER)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<User {self.email} ({self.role.value if self.role else None})>"


class Change(Base):
    """A unit of planned work moving through approval and execution.

    `status` is owned by the lifecycle engine; nothing else writes it.
    """

    __tablename__ = "changes"

    id = Column(Uuid, primary_key=True, default=uuid4)
    organization_id = Column(Uuid, nullable=False, index=True)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(_enum_column_type(ChangeStatus), nullable=False, default=ChangeStatus.DRAFT, index=True)

    # Scheduling: auto-start time and completion check time
    scheduled_for = Column(DateTime, nullable=True)
    estimated_end_time = Column(DateTime, nullable=True)

    requested_by = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    assigned_to = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)

    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    # Relationships
    requester = relationship("User", foreign_keys=[requested_by])
    assignee = relationship("User", foreign_keys=[assigned_to])
    approval = relationship("ChangeApproval", back_populates="change", uselist=False, cascade="all, delete-orphan")
    automations = relationship("ChangeAutomation", back_populates="change", cascade="all, delete-orphan")
    completion_responses = relationship("ChangeCompletionResponse", back_populates="change", cascade="all, delete-orphan")
    status_history = relationship(
        "ChangeStatusHistory",
        back_populates="change",
        cascade="all, delete-orphan",
        order_by="ChangeStatusHistory.changed_at",
    )

    def __repr__(self) -> str:
        return f"<Change {self.id}: {self.title[:30]} [{self.status.value if self.status else None}]>"


class ChangeApproval(Base):
    """Approval decision trail; one row per change, upserted."""

    __tablename__ = "change_approvals"

    id = Column(Uuid, primary_key=True, default=uuid4)
    organization_id = Column(Uuid, nullable=False, index=True)
    change_id = Column(Uuid, ForeignKey("changes.id", ondelete="CASCADE"), nullable=False, unique=True)
    status = Column(_enum_column_type(ApprovalStatus), nullable=False, default=ApprovalStatus.PENDING)
    requested_by = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    approved_by = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    comments = Column(Text, nullable=True)
    requested_at = Column(DateTime, nullable=False, default=utcnow)
    responded_at = Column(DateTime, nullable=True)

    change = relationship("Change", back_populates="approval")

    def __repr__(self) -> str:
        return f"<ChangeApproval {self.change_id} [{self.status.value if self.status else None}]>"


class ChangeAutomation(Base):
    """One-shot scheduled action tied to a change.

    `executed` flips false -> true exactly once; executed rows are never
    processed again.
    """

    __tablename__ = "change_automations"
    __table_args__ = (
        Index("ix_change_automations_due", "executed", "scheduled_for"),
    )

    id = Column(Uuid, primary_key=True, default=uuid4)
    organization_id = Column(Uuid, nullable=False, index=True)
    change_id = Column(Uuid, ForeignKey("changes.id", ondelete="CASCADE"), nullable=False, index=True)
    automation_type = Column(_enum_column_type(AutomationType), nullable=False)
    scheduled_for = Column(DateTime, nullable=False)
    executed = Column(Boolean, nullable=False, default=False)
    executed_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    change = relationship("Change", back_populates="automations")

    def __repr__(self) -> str:
        state = "executed" if self.executed else "pending"
        return f"<ChangeAutomation {self.automation_type.value if self.automation_type else None} {self.change_id} {state}>"


class ChangeCompletionResponse(Base):
    """Terminal outcome reported by the assignee (append-only)."""

    __tablename__ = "change_completion_responses"

    id = Column(Uuid, primary_key=True, default=uuid4)
    organization_id = Column(Uuid, nullable=False, index=True)
    change_id = Column(Uuid, ForeignKey("changes.id", ondelete="CASCADE"), nullable=False, index=True)
    responded_by = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    outcome = Column(_enum_column_type(CompletionOutcome), nullable=False)
    notes = Column(Text, nullable=True)
    responded_at = Column(DateTime, nullable=False, default=utcnow)

    change = relationship("Change", back_populates="completion_responses")
    responder = relationship("User", foreign_keys=[responded_by])


class ChangeStatusHistory(Base):
    """Audit row for every status write (append-only)."""

    __tablename__ = "change_status_history"

    id = Column(Uuid, primary_key=True, default=uuid4)
    change_id = Column(Uuid, ForeignKey("changes.id", ondelete="CASCADE"), nullable=False, index=True)
    from_status = Column(_enum_column_type(ChangeStatus), nullable=True)
    to_status = Column(_enum_column_type(ChangeStatus), nullable=False)
    changed_by = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    changed_by_system = Column(Boolean, nullable=False, default=False)
    reason = Column(Text, nullable=True)
    changed_at = Column(DateTime, nullable=False, default=utcnow)

    change = relationship("Change", back_populates="status_history")


class Notification(Base):
    """In-app notification for one user."""

    __tablename__ = "notifications"

    id = Column(Uuid, primary_key=True, default=uuid4)
    organization_id = Column(Uuid, nullable=False, index=True)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    change_id = Column(Uuid, ForeignKey("changes.id", ondelete="CASCADE"), nullable=True, index=True)
    type = Column(_enum_column_type(NotificationType), nullable=False)
    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)
    data = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)
    read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Comment(Base):
    """Audit comment on a change; system comments have no author."""

    __tablename__ = "comments"

    id = Column(Uuid, primary_key=True, default=uuid4)
    organization_id = Column(Uuid, nullable=False, index=True)
    change_id = Column(Uuid, ForeignKey("changes.id", ondelete="CASCADE"), nullable=False, index=True)
    author_id = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    is_system = Column(Boolean, nullable=False, default=False)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
