"""
Pydantic schemas for in-product notifications and upload events.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class DashboardNotificationOut(BaseModel):
    id: int
    rule_id: Optional[int] = None
    title: str
    message: str
    severity: str
    category: str
    is_read: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class FileUploadEventIn(BaseModel):
    file_name: str = Field(min_length=1, max_length=1024)
    file_size_bytes: int = Field(ge=0)
    file_url: Optional[str] = None
