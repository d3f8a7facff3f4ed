from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator


class UrlRequest(BaseModel):
    url: str = Field(..., min_length=1)

    @field_validator("url")
    @classmethod
    def _http_url(cls, value: str) -> str:
        value = value.strip()
        if not value.lower().startswith(("http://", "https://")):
            raise ValueError("URL must start with http:// or https://")
        return value


class FormatRequest(UrlRequest):
    # clients send either "format" or "formatId"
    format_id: str = Field("best", validation_alias=AliasChoices("format", "formatId"))


class DownloadRequest(UrlRequest):
    format_id: str = Field("best", validation_alias=AliasChoices("formatId", "format"))
    filename: Optional[str] = None
    priority: Literal["low", "normal", "high"] = "normal"


class DetectResponse(BaseModel):
    success: bool = True
    platform: str
    mediaType: Optional[str] = None


class DownloadAccepted(BaseModel):
    success: bool = True
    jobId: str
    platform: str
    statusUrl: str
    message: str = "Download queued"


class QueueStats(BaseModel):
    active: int
    waiting: int
    completed: int
    failed: int
    delayed: int
    paused: int


class QueueStatsResponse(BaseModel):
    success: bool = True
    queue: QueueStats


class JobStatusResponse(BaseModel):
    success: bool = True
    job: Dict[str, Any]


class FileListResponse(BaseModel):
    success: bool = True
    files: List[Dict[str, Any]]
    count: int
