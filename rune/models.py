"""
Data models for the Rune library core.
"""

import base64
import binascii
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Generic, List, Optional, TypeVar
from pydantic import BaseModel, Field

from .errors import RuneError, ValidationError


TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def format_timestamp(value: datetime) -> str:
    """Render a timestamp as fixed-width UTC text so text order equals time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


class TagStatus(str, Enum):
    """Lifecycle of the AI tags of a single image."""
    PENDING = "pending"
    GENERATING = "generating"
    COMPLETE = "complete"
    FAILED = "failed"


# Valid per-image transitions: status -> statuses it may move to
TAG_STATUS_TRANSITIONS = {
    TagStatus.PENDING: {TagStatus.GENERATING},
    TagStatus.GENERATING: {TagStatus.COMPLETE, TagStatus.FAILED},
    TagStatus.COMPLETE: set(),
    TagStatus.FAILED: {TagStatus.PENDING},
}


def transition_sources(target: TagStatus) -> List[TagStatus]:
    """Statuses an image may move to ``target`` from."""
    return [status for status, allowed in TAG_STATUS_TRANSITIONS.items() if target in allowed]


class ImageRecord(BaseModel):
    """An image stored in the library."""
    id: str
    original_name: str
    stored_name: str
    file_path: str
    added_at: datetime
    bytes: int = Field(ge=0)
    ai_tags: Optional[str] = None
    ai_tag_status: TagStatus = TagStatus.PENDING

    @property
    def tag_list(self) -> List[str]:
        """The AI tags split into individual keywords."""
        if not self.ai_tags:
            return []
        return [tag.strip() for tag in self.ai_tags.split(",") if tag.strip()]


class SearchCursor(BaseModel):
    """Continuation point of a descending (added_at, id) scan."""
    added_at: str
    id: str

    @classmethod
    def from_record(cls, record: ImageRecord) -> "SearchCursor":
        return cls(added_at=format_timestamp(record.added_at), id=record.id)

    def to_token(self) -> str:
        """Encode the cursor as an opaque string."""
        raw = json.dumps([self.added_at, self.id], separators=(",", ":"))
        return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii")

    @classmethod
    def from_token(cls, token: str) -> "SearchCursor":
        """Decode a token produced by ``to_token``."""
        try:
            raw = base64.urlsafe_b64decode(token.encode("ascii"))
            added_at, image_id = json.loads(raw.decode("utf-8"))
        except (binascii.Error, UnicodeError, ValueError, TypeError) as e:
            raise ValidationError(f"Malformed search cursor: {e}", "Invalid search cursor.")
        if not isinstance(added_at, str) or not isinstance(image_id, str):
            raise ValidationError("Malformed search cursor: wrong field types", "Invalid search cursor.")
        try:
            parse_timestamp(added_at)
        except ValueError:
            raise ValidationError(f"Malformed search cursor timestamp: {added_at!r}", "Invalid search cursor.")
        return cls(added_at=added_at, id=image_id)


class SearchResult(BaseModel):
    """One page of search results."""
    items: List[ImageRecord] = []
    next_cursor: Optional[SearchCursor] = None


class RuntimeState(str, Enum):
    NOT_INSTALLED = "not-installed"
    DOWNLOADING_BINARY = "downloading-binary"
    DOWNLOADING_MODEL = "downloading-model"
    READY = "ready"
    RUNNING = "running"
    ERROR = "error"


class RuntimeStatus(BaseModel):
    """Derived state of the local inference runtime."""
    binary_installed: bool = False
    model_installed: bool = False
    server_running: bool = False
    status: RuntimeState = RuntimeState.NOT_INSTALLED
    model: Optional[str] = None
    error: Optional[str] = None


class DownloadKind(str, Enum):
    BINARY = "binary"
    MODEL = "model"


class DownloadPhase(str, Enum):
    DOWNLOADING = "downloading"
    COMPLETE = "complete"
    ERROR = "error"


class DownloadProgress(BaseModel):
    """Progress report of a binary download or model pull."""
    kind: DownloadKind
    percent: int = Field(default=0, ge=0, le=100)
    downloaded: int = 0
    total: int = 0
    phase: DownloadPhase = DownloadPhase.DOWNLOADING
    error: Optional[str] = None


class TaggingQueueStatus(BaseModel):
    """Snapshot of the tagging queue."""
    is_processing: bool = False
    is_paused: bool = False
    pending: int = 0
    completed: int = 0
    failed: int = 0
    current_image_id: Optional[str] = None


class ImageTagsUpdated(BaseModel):
    """Event emitted whenever an image's tag status changes."""
    id: str
    ai_tags: Optional[str] = None
    ai_tag_status: TagStatus


class VlModelInfo(BaseModel):
    """A vision-language model offered for download."""
    name: str
    label: str
    size: str


AVAILABLE_VL_MODELS: List[VlModelInfo] = [
    VlModelInfo(name="qwen2.5vl:3b", label="Qwen2.5-VL 3B", size="3.2 GB"),
    VlModelInfo(name="moondream", label="Moondream 2", size="1.7 GB"),
    VlModelInfo(name="gemma3:4b", label="Gemma 3 4B", size="3.3 GB"),
    VlModelInfo(name="llava:7b", label="LLaVA 7B", size="4.7 GB"),
]


T = TypeVar("T")


class OperationResult(BaseModel, Generic[T]):
    """Outcome of a boundary call: either data or a user-facing error."""
    ok: bool
    data: Optional[T] = None
    error: Optional[str] = None
    code: Optional[str] = None

    @classmethod
    def success(cls, data: Optional[T] = None) -> "OperationResult[T]":
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, error: Exception) -> "OperationResult[T]":
        if isinstance(error, RuneError):
            return cls(ok=False, error=error.user_message, code=error.code)
        return cls(ok=False, error="Unexpected error.", code="internal")
