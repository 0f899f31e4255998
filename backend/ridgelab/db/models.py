from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from sqlmodel import Field, SQLModel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RunStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED)


class NotificationType(str, Enum):
    PROCESSING_COMPLETE = "processing_complete"
    PROCESSING_ERROR = "processing_error"
    QUALITY_ALERT = "quality_alert"
    SYSTEM_ALERT = "system_alert"


class ProcessingRun(SQLModel, table=True):
    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True, index=True)
    case_id: Optional[str] = Field(default=None, index=True)
    sample_id: Optional[str] = Field(default=None, index=True)
    original_image_key: str
    original_image_url: str
    original_width: Optional[int] = None
    original_height: Optional[int] = None
    original_size_bytes: Optional[int] = None
    original_format: Optional[str] = None
    original_filename: Optional[str] = None
    processed_image_key: Optional[str] = None
    processed_image_url: Optional[str] = None
    status: RunStatus = Field(default=RunStatus.PROCESSING, index=True)
    prompt_version: Optional[str] = None
    prompt_text: Optional[str] = None
    noise_seed: Optional[int] = None
    processing_time_ms: Optional[int] = None
    quality_metrics_json: Optional[str] = None
    oracle_report_json: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now, index=True)
    completed_at: Optional[datetime] = None


class NotificationLog(SQLModel, table=True):
    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True, index=True)
    type: NotificationType = Field(index=True)
    title: str
    content: str
    related_run_id: Optional[str] = Field(default=None, foreign_key="processingrun.id", index=True)
    sent: bool = False
    sent_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now, index=True)
