from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

PostingStatus = Literal["draft", "published", "closed"]


class PostingCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=20000)
    application_deadline: datetime


class PostingOut(BaseModel):
    id: str
    employer_id: str
    title: str
    description: str | None = None
    status: PostingStatus
    application_deadline: datetime
    published_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
