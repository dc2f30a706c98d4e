from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

KycStatus = Literal["pending", "under_review", "approved", "rejected"]


class KycRecordOut(BaseModel):
    employer_id: str
    status: KycStatus
    reason: str | None = None
    updated_at: datetime


class KycStatusPatchRequest(BaseModel):
    status: KycStatus
    reason: str | None = Field(default=None, max_length=500)
