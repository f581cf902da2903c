import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

# --------------------------
# Local records
# --------------------------
class PendingJob(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    template_id: str
    template_name: str
    original_asset_path: str
    created_at: datetime = Field(default_factory=utcnow)

class ProjectStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

class Project(BaseModel):
    # legacy index files were written with camelCase keys
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    template_id: str = Field(validation_alias=AliasChoices("template_id", "templateId"))
    template_name: str = Field(validation_alias=AliasChoices("template_name", "templateName"))
    created_at: datetime = Field(
        default_factory=utcnow, validation_alias=AliasChoices("created_at", "createdAt")
    )
    status: ProjectStatus = ProjectStatus.COMPLETED
    job_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("job_id", "jobId"))

    @field_validator("status", mode="before")
    @classmethod
    def _status_any_case(cls, v):
        # older builds wrote "Completed", "Processing", "Failed"
        return v.lower() if isinstance(v, str) else v

# --------------------------
# Wire shapes (POST process image)
# --------------------------
class ProcessImageRequest(BaseModel):
    template_id: str
    image_base64: str

class ProcessedDimensions(BaseModel):
    width: int
    height: int

class ProcessImageMetadata(BaseModel):
    template_id: str
    template_name: str
    model_used: str
    generation_time_ms: int
    processed_dimensions: ProcessedDimensions

class ProcessImageResponse(BaseModel):
    processed_image_base64: str
    metadata: ProcessImageMetadata

class ProcessImageEnvelope(BaseModel):
    success: Optional[bool] = None
    data: ProcessImageResponse

# --------------------------
# Normalized decode result
# --------------------------
class ProcessedResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    image_payload: str
    template_id: str = ""
    template_name: str = ""
    model_used: str = ""
    generation_time_ms: int = 0
    processed_width: int = 0
    processed_height: int = 0
