"""
Conversion errors.

Per-file errors (decode, encode, media read, unsupported input) are caught by
the batch orchestrator and counted; they never abort a run.
"""
from typing import Optional


class ConversionError(Exception):
    """Base exception for conversion pipeline errors."""

    def __init__(self, message: str, filename: Optional[str] = None):
        self.message = message
        self.filename = filename
        super().__init__(self.message)


class UnsupportedInputError(ConversionError):
    """File is neither an image nor a video."""


class DecodeError(ConversionError):
    """Image bytes could not be decoded."""


class EncodeError(ConversionError):
    """Pixel data could not be encoded to the target format."""


class TranscodeError(ConversionError):
    """The transcoding engine failed on a file; triggers the passthrough fallback."""

    def __init__(self, message: str, filename: Optional[str] = None, command=None, output=None):
        super().__init__(message, filename)
        self.command = command
        self.output = output


class MediaReadError(ConversionError):
    """Dimensions/duration could not be probed, even on the fallback path."""


class EngineLoadError(ConversionError):
    """The transcoding engine failed to initialize."""


class AlreadyRunningError(ConversionError):
    """A batch was requested while another one is running."""


class EmptyBatchError(ConversionError):
    """No files were supplied to a batch."""
