"""Pydantic schemas for request/response validation."""
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field, ConfigDict, field_validator

from .models import (
    ChangeStatus,
    ApprovalStatus,
    ApprovalDecision,
    AutomationType,
    CompletionOutcome,
)


def _to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Timestamps are stored as naive UTC; convert offset-aware input."""
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# Change Schemas

class ChangeCreate(BaseModel):
    """Schema for creating a new change (starts in draft)."""

    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    assigned_to: Optional[UUID] = Field(None, description="User carrying the change out")
    scheduled_for: Optional[datetime] = Field(None, description="When the approved change should auto-start")
    estimated_end_time: Optional[datetime] = Field(None, description="When to ask the assignee for an outcome")

    @field_validator("scheduled_for", "estimated_end_time")
    @classmethod
    def _normalize_timestamps(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _to_naive_utc(value)


class ChangeResponse(BaseModel):
    """Schema for change response."""

    id: UUID
    organization_id: UUID
    title: str
    description: Optional[str] = None
    status: ChangeStatus
    scheduled_for: Optional[datetime] = None
    estimated_end_time: Optional[datetime] = None
    requested_by: Optional[UUID] = None
    assigned_to: Optional[UUID] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class StatusHistoryEntry(BaseModel):
    """Schema for one status history row."""

    id: UUID
    from_status: Optional[ChangeStatus] = None
    to_status: ChangeStatus
    changed_by: Optional[UUID] = None
    changed_by_system: bool = False
    reason: Optional[str] = None
    changed_at: datetime

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class StatusHistoryResponse(BaseModel):
    """Schema for the status history of a change."""

    change_id: UUID
    status_history: list[StatusHistoryEntry]


# Approval Schemas

class ApprovalDecisionRequest(BaseModel):
    """Schema for approving or rejecting a change."""

    action: ApprovalDecision = Field(..., description="approve or reject")
    comments: Optional[str] = Field(None, max_length=2000)


class ApprovalResponse(BaseModel):
    """Schema for approval record response."""

    id: UUID
    change_id: UUID
    status: ApprovalStatus
    requested_by: Optional[UUID] = None
    approved_by: Optional[UUID] = None
    comments: Optional[str] = None
    requested_at: datetime
    responded_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class ApprovalRequestResult(BaseModel):
    """Schema for POST /changes/{id}/approval."""

    message: str
    approval: ApprovalResponse
    managers_notified: int = 0


class ApprovalDecisionResult(BaseModel):
    """Schema for PUT /changes/{id}/approval."""

    message: str
    action: ApprovalDecision
    change_status: ChangeStatus
    approval: ApprovalResponse
    automations_scheduled: int = 0

    model_config = ConfigDict(use_enum_values=True)


class ApprovalEnvelope(BaseModel):
    """Schema for GET /changes/{id}/approval."""

    approval: Optional[ApprovalResponse] = None


# Completion Schemas

class CompletionReport(BaseModel):
    """Schema for reporting the outcome of an in-progress change."""

    outcome: CompletionOutcome = Field(..., description="completed or failed")
    notes: Optional[str] = Field(None, max_length=5000)


class CompletionResponseItem(BaseModel):
    """Schema for a stored completion response."""

    id: UUID
    change_id: UUID
    responded_by: Optional[UUID] = None
    outcome: CompletionOutcome
    notes: Optional[str] = None
    responded_at: datetime

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class CompletionResult(BaseModel):
    """Schema for POST /changes/{id}/completion."""

    message: str
    response: CompletionResponseItem
    new_status: ChangeStatus

    model_config = ConfigDict(use_enum_values=True)


class CompletionEnvelope(BaseModel):
    """Schema for GET /changes/{id}/completion."""

    response: Optional[CompletionResponseItem] = None


# Automation Schemas

class AutomationCancelRequest(BaseModel):
    """Schema for cancelling the pending automations of a change."""

    reason: Optional[str] = Field(None, max_length=500)


class AutomationCancelResult(BaseModel):
    """Schema for DELETE /changes/{id}/automations."""

    message: str
    cancelled: int


class AutomationItem(BaseModel):
    """Schema for an automation ledger row."""

    id: UUID
    change_id: UUID
    automation_type: AutomationType
    scheduled_for: datetime
    executed: bool
    executed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class AutomationStatusResponse(BaseModel):
    """Schema for GET /automation/status."""

    pending: list[AutomationItem]
    recent: list[AutomationItem]
    timestamp: datetime


class SweepResponse(BaseModel):
    """Schema for POST /automation/sweep."""

    success: bool = True
    autoStarted: int
    completionPrompts: int
    skipped: int
    errors: list[str]
    timestamp: datetime
