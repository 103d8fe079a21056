"""Conversion data model: input files, settings, per-file results and batch runs."""
import mimetypes
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from converter.config import (
    DEFAULT_FILENAME_PATTERN,
    DEFAULT_QUALITY,
    IMAGE_OUTPUT_FORMATS,
    VIDEO_OUTPUT_FORMATS,
)


class BatchState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"


class MediaType(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


class SupportedFormats:
    IMAGE = list(IMAGE_OUTPUT_FORMATS)
    VIDEO = list(VIDEO_OUTPUT_FORMATS)


class MediaFile:
    """Read-only input file. Content is loaded on first access and cached."""

    def __init__(self, name: str, size: int, mime_type: str, loader: Callable[[], bytes]):
        self._name = name
        self._size = size
        self._mime_type = (mime_type or "").lower()
        self._loader = loader
        self._content: Optional[bytes] = None

    @classmethod
    def from_bytes(cls, name: str, data: bytes, mime_type: Optional[str] = None) -> "MediaFile":
        if mime_type is None:
            mime_type = mimetypes.guess_type(name)[0] or ""
        return cls(name, len(data), mime_type, lambda: data)

    @classmethod
    def from_path(cls, path: Path, mime_type: Optional[str] = None) -> "MediaFile":
        path = Path(path)
        if mime_type is None:
            mime_type = mimetypes.guess_type(path.name)[0] or ""
        return cls(path.name, path.stat().st_size, mime_type, path.read_bytes)

    @property
    def name(self) -> str:
        return self._name

    @property
    def size(self) -> int:
        return self._size

    @property
    def mime_type(self) -> str:
        return self._mime_type

    @property
    def extension(self) -> str:
        if "." not in self._name:
            return ""
        return self._name.rsplit(".", 1)[1].lower()

    @property
    def media_type(self) -> Optional[MediaType]:
        if self._mime_type.startswith("image/"):
            return MediaType.IMAGE
        if self._mime_type.startswith("video/"):
            return MediaType.VIDEO
        return None

    def read(self) -> bytes:
        if self._content is None:
            self._content = self._loader()
        return self._content

    def __repr__(self) -> str:
        return f"MediaFile(name={self._name!r}, size={self._size}, mime_type={self._mime_type!r})"


@dataclass(frozen=True)
class ResizeSpec:
    width: Optional[int] = None
    height: Optional[int] = None
    aspect_locked: bool = True

    @property
    def is_set(self) -> bool:
        return self.width is not None or self.height is not None


@dataclass(frozen=True)
class FilterSpec:
    """Brightness/contrast/saturation offsets in percent; 0 means unchanged."""
    brightness: int = 0
    contrast: int = 0
    saturation: int = 0

    @property
    def is_identity(self) -> bool:
        return self.brightness == 0 and self.contrast == 0 and self.saturation == 0

    def as_css(self) -> str:
        return (
            f"brightness({100 + self.brightness}%) "
            f"contrast({100 + self.contrast}%) "
            f"saturate({100 + self.saturation}%)"
        )


@dataclass(frozen=True)
class ConversionSettings:
    """Immutable settings for one batch run, passed explicitly to every stage."""
    image_format: str = "webp"
    video_format: str = "mp4"
    quality: float = DEFAULT_QUALITY
    resize: ResizeSpec = field(default_factory=ResizeSpec)
    filters: FilterSpec = field(default_factory=FilterSpec)
    filename_pattern: str = DEFAULT_FILENAME_PATTERN

    def __post_init__(self):
        object.__setattr__(self, "image_format", (self.image_format or "").lower())
        object.__setattr__(self, "video_format", (self.video_format or "").lower())
        if self.image_format not in IMAGE_OUTPUT_FORMATS:
            raise ValueError(f"Unsupported image format: {self.image_format}")
        if self.video_format not in VIDEO_OUTPUT_FORMATS:
            raise ValueError(f"Unsupported video format: {self.video_format}")
        if not 0.0 <= self.quality <= 1.0:
            raise ValueError(f"Quality must be between 0.0 and 1.0, got {self.quality}")
        if not self.filename_pattern:
            object.__setattr__(self, "filename_pattern", DEFAULT_FILENAME_PATTERN)

    def format_for(self, media_type: MediaType) -> str:
        return self.video_format if media_type == MediaType.VIDEO else self.image_format


@dataclass
class ConversionResult:
    name: str
    data: bytes
    original_name: str
    original_size: int
    converted_size: int
    format: str
    mime_type: str
    dimensions: tuple[int, int]
    original_dimensions: Optional[tuple[int, int]] = None
    duration: Optional[float] = None  # seconds, video only
    is_video: bool = False
    requires_server_conversion: bool = False

    @property
    def compression_ratio(self) -> float:
        if self.original_size <= 0:
            return 0.0
        return round((1.0 - self.converted_size / self.original_size) * 100.0, 1)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "original_name": self.original_name,
            "original_size": self.original_size,
            "converted_size": self.converted_size,
            "format": self.format.upper(),
            "mime_type": self.mime_type,
            "dimensions": list(self.dimensions),
            "original_dimensions": list(self.original_dimensions) if self.original_dimensions else None,
            "duration": self.duration,
            "compression_ratio": self.compression_ratio,
            "is_video": self.is_video,
            "requires_server_conversion": self.requires_server_conversion,
        }


@dataclass
class FileOutcome:
    index: int
    filename: str
    result: Optional[ConversionResult] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.result is not None


@dataclass
class BatchRun:
    """Mutable state of one run. Owned by the orchestrator until finalized."""
    files: list[MediaFile]
    settings: ConversionSettings
    current_index: int = 0
    outcomes: list[FileOutcome] = field(default_factory=list)
    started_at: float = field(default_factory=time.perf_counter)
    finished_at: Optional[float] = None
    cancelled: bool = False

    @property
    def elapsed(self) -> float:
        end = self.finished_at if self.finished_at is not None else time.perf_counter()
        return end - self.started_at

    @property
    def finalized(self) -> bool:
        return self.finished_at is not None


@dataclass(frozen=True)
class BatchSummary:
    results: list[ConversionResult]
    outcomes: list[FileOutcome]
    success_count: int
    failure_count: int
    duration_seconds: float
    cancelled: bool = False
