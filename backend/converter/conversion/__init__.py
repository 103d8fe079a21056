from .errors import (
    AlreadyRunningError,
    ConversionError,
    DecodeError,
    EncodeError,
    EngineLoadError,
    MediaReadError,
    TranscodeError,
    UnsupportedInputError,
)
from .models import (
    BatchState,
    BatchSummary,
    ConversionResult,
    ConversionSettings,
    FilterSpec,
    MediaFile,
    MediaType,
    ResizeSpec,
    SupportedFormats,
)
from .service import BatchOrchestrator, CancelToken, get_orchestrator

__all__ = [
    "AlreadyRunningError",
    "BatchOrchestrator",
    "BatchState",
    "BatchSummary",
    "CancelToken",
    "ConversionError",
    "ConversionResult",
    "ConversionSettings",
    "DecodeError",
    "EncodeError",
    "EngineLoadError",
    "FilterSpec",
    "MediaFile",
    "MediaReadError",
    "MediaType",
    "ResizeSpec",
    "SupportedFormats",
    "TranscodeError",
    "UnsupportedInputError",
    "get_orchestrator",
]
