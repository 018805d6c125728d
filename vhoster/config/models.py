from enum import Enum
from pathlib import Path
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator


class StrategyMode(str, Enum):
    AUTO = "auto"
    REMUX = "remux"
    REENCODE = "reencode"


class ServerConfig(BaseModel):
    """HTTP and status-channel listener configuration."""
    host: str = "0.0.0.0"
    port: int = Field(default=3000, ge=0, le=65535)
    ws_port: int = Field(default=3001, ge=0, le=65535)
    public_base_url: Optional[str] = None  # Else built from the Host header

    @field_validator("public_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip().rstrip("/")
        return v or None


class StorageConfig(BaseModel):
    uploads_dir: Path = Path("uploads")
    data_file: Path = Path("data.json")
    chunk_size: int = Field(default=64 * 1024, ge=1024)
    placeholder_image: Optional[Path] = None


class TranscodeConfig(BaseModel):
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    strategy: StrategyMode = StrategyMode.AUTO
    # .mkv is deliberately absent: MKV uploads are converted for browser/embed support
    supported_extensions: List[str] = Field(default_factory=lambda: [".mp4", ".mov", ".webm"])
    target_extension: str = ".mp4"
    poll_interval_s: float = Field(default=0.8, ge=0.1, le=5.0)
    max_workers: int = Field(default=2, ge=1, le=16)
    timeout_s: Optional[float] = Field(default=None, gt=0)

    # Re-encode parameters (used when remux is rejected or codecs are not web-playable)
    video_codec: str = "libx264"
    preset: str = "veryfast"
    crf: int = Field(default=23, ge=0, le=51)
    audio_codec: str = "aac"
    audio_bitrate: str = "128k"

    @field_validator("supported_extensions")
    @classmethod
    def normalize_extensions(cls, v: List[str]) -> List[str]:
        return [(ext if ext.startswith(".") else f".{ext}").lower() for ext in v]

    @field_validator("target_extension")
    @classmethod
    def normalize_target(cls, v: str) -> str:
        return (v if v.startswith(".") else f".{v}").lower()


class WebhookConfig(BaseModel):
    timeout_s: float = Field(default=10.0, gt=0)
    description: str = "Uploaded via Video Hoster"


class LoggingConfig(BaseModel):
    debug: bool = False
    log_path: Optional[Path] = None


class AppConfig(BaseModel):
    server: ServerConfig = Field(default_factory=ServerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    transcode: TranscodeConfig = Field(default_factory=TranscodeConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
