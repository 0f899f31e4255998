from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator


class OracleReport(BaseModel):
    assessment: str
    recommendations: list[str] = Field(default_factory=list)
    notes: str = ""
    confidence: float = Field(ge=0.0, le=1.0)


class QualityMetricsRead(BaseModel):
    texture_uniformity: float = Field(ge=0.0, le=1.0)
    edge_preservation: float = Field(ge=0.0, le=1.0)
    contrast_ratio: float = Field(ge=0.0, le=1.0)
    ridge_clarity: float = Field(ge=0.0, le=1.0)
    background_cleanness: float = Field(ge=0.0, le=1.0)
    overall_score: float = Field(ge=0.0, le=1.0)


class ImageUploadResponse(BaseModel):
    key: str
    url: str
    width: int
    height: int
    size_bytes: int
    format: Optional[str] = None


class ApplyTextureRequest(BaseModel):
    source_key: str = Field(min_length=1)
    case_id: Optional[str] = Field(default=None, max_length=255)
    sample_id: Optional[str] = Field(default=None, max_length=255)
    original_filename: Optional[str] = Field(default=None, max_length=255)
    enable_oracle: bool = True
    send_notification: bool = True
    seed: Optional[int] = Field(default=None, ge=0)

    @field_validator("source_key")
    @classmethod
    def _validate_source_key(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("source_key must not be blank.")
        return stripped


class ApplyTextureResponse(BaseModel):
    run_id: str
    persisted: bool
    status: str
    processed_image_url: str
    processing_time_ms: int
    prompt_version: str
    noise_seed: int
    quality_metrics: QualityMetricsRead
    oracle_report: Optional[OracleReport] = None
    oracle_status: str
    message: str


class ProcessingRunRead(BaseModel):
    id: str
    case_id: Optional[str]
    sample_id: Optional[str]
    status: str
    original_image_key: str
    original_image_url: str
    original_width: Optional[int]
    original_height: Optional[int]
    original_size_bytes: Optional[int]
    original_format: Optional[str]
    original_filename: Optional[str]
    processed_image_url: Optional[str]
    prompt_version: Optional[str]
    noise_seed: Optional[int]
    processing_time_ms: Optional[int]
    quality_metrics: Optional[QualityMetricsRead] = None
    oracle_report: Optional[OracleReport] = None
    error_code: Optional[str]
    error_message: Optional[str]
    created_at: datetime
    completed_at: Optional[datetime]


class PromptInfo(BaseModel):
    version: str
    prompt: str
