from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field, field_validator

from app.services.status_graph import ActorRole, ApplicationStatus


class InterviewPayload(BaseModel):
    scheduled_at: datetime
    notes: str | None = Field(default=None, max_length=2000)

    @field_validator("scheduled_at")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class ApplicationCreateRequest(BaseModel):
    internship_id: str = Field(min_length=1)
    cover_letter: str | None = Field(default=None, max_length=10000)
    resume_url: str | None = None
    answers: dict[str, Any] = Field(default_factory=dict)


class TransitionRequestIn(BaseModel):
    target_status: ApplicationStatus
    expected_status: ApplicationStatus | None = None
    interview: InterviewPayload | None = None
    reason: str | None = Field(default=None, max_length=500)


class InterviewScheduleOut(BaseModel):
    scheduled_at: datetime
    notes: str | None = None


class ApplicationOut(BaseModel):
    id: str
    student_id: str
    internship_id: str
    employer_id: str
    status: ApplicationStatus
    version: int
    cover_letter: str | None = None
    resume_url: str | None = None
    answers: dict[str, Any] = Field(default_factory=dict)
    interview: InterviewScheduleOut | None = None
    created_at: datetime
    updated_at: datetime


class StatusHistoryEntryOut(BaseModel):
    at: datetime
    from_status: ApplicationStatus | None = None
    to_status: ApplicationStatus
    actor_role: ActorRole
    actor_id: str | None = None
    reason: str | None = None


class ActionOut(BaseModel):
    target_status: ApplicationStatus
    label: str
    icon: str
    confirm_required: bool
    enabled: bool
    block_reason: str | None = None
    block_message: str | None = None
    payload_schema: dict[str, Any] | None = None
