import time
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field


def now_ms() -> int:
    return int(time.time() * 1000)


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.DONE, JobStatus.ERROR)


class TranscodeStrategy(str, Enum):
    REMUX = "remux"        # stream copy into the target container
    REENCODE = "reencode"  # decode and recompress with fixed parameters


class MediaRecord(BaseModel):
    """Metadata for one uploaded file.

    Attributes are snake_case; the persisted/wire keys keep the names used by
    existing data files (``filename``, ``originalName``, ``mime``, ``size``,
    ``createdAt``).
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str
    stored_filename: str = Field(alias="filename")
    original_name: str = Field(alias="originalName")
    mime_type: str = Field(default="application/octet-stream", alias="mime")
    size_bytes: int = Field(default=0, ge=0, alias="size")
    created_at: int = Field(default_factory=now_ms, alias="createdAt")
    converted: bool = False

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class TranscodeJob(BaseModel):
    """In-memory state of one conversion. Never persisted."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    status: JobStatus = JobStatus.QUEUED
    progress_percent: int = Field(default=0, ge=0, le=100, alias="progress")
    message: str = "queued"
    started_at: Optional[int] = Field(default=None, alias="startedAt")  # epoch ms
    elapsed_seconds: int = Field(default=0, ge=0, alias="elapsed")
    eta_seconds: Optional[int] = Field(default=None, alias="eta")
    timemark: Optional[str] = None
    estimated: bool = False  # progress derived from output size, not encoder position

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)
