"""
Batch orchestration: converts files one at a time, yielding to the event loop
between files so the host stays responsive.
"""
import asyncio
import logging
import time
from typing import Callable, Iterable, Optional

from converter.config import LARGE_BATCH_BYTES, LARGE_FILE_BYTES
from converter.conversion.errors import (
    AlreadyRunningError,
    ConversionError,
    EmptyBatchError,
    UnsupportedInputError,
)
from converter.conversion.formats import resolve_file_format
from converter.conversion.image import convert_image
from converter.conversion.models import (
    BatchRun,
    BatchState,
    BatchSummary,
    ConversionResult,
    ConversionSettings,
    FileOutcome,
    MediaFile,
    MediaType,
)
from converter.conversion.naming import truncate_file_name
from converter.conversion.report import summary_message
from converter.conversion.video import VideoTranscoder

logger = logging.getLogger("converter.service")

ProgressHandler = Callable[[float, str], None]


class CancelToken:
    """Checked by the orchestrator at every yield point."""

    def __init__(self):
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


def select_media_files(files: Iterable[MediaFile]) -> list[MediaFile]:
    """Keep image/video files, warn about large selections. Raises UnsupportedInputError if nothing is left."""
    files = list(files)
    media_files = [f for f in files if f.media_type is not None]
    if not media_files:
        raise UnsupportedInputError(
            "no valid image or video files found. supported formats: png, jpeg, webp, gif, bmp, mp4, webm, avi, mov"
        )
    rejected = len(files) - len(media_files)
    if rejected:
        logger.warning("%s unsupported file%s skipped", rejected, "s" if rejected > 1 else "")
    total_size = sum(f.size for f in media_files)
    if total_size > LARGE_BATCH_BYTES:
        logger.info("Large batch detected (%s bytes) - processing may take a while", total_size)
    large = [f for f in media_files if f.size > LARGE_FILE_BYTES]
    if large:
        logger.info("%s large file%s detected - conversion may take longer", len(large), "s" if len(large) > 1 else "")
    return media_files


def suggest_output_format(files: Iterable[MediaFile], media_type: MediaType = MediaType.IMAGE) -> str:
    if media_type == MediaType.VIDEO:
        return "mp4"
    formats = [resolve_file_format(f) for f in files if f.media_type == MediaType.IMAGE]
    unique = set(formats)
    if "png" in unique and len(formats) == 1:
        return "png"
    if formats and unique <= {"jpg", "jpeg"}:
        return "jpeg"
    return "webp"


class BatchOrchestrator:
    """Runs one batch at a time; a second run_batch while running is rejected."""

    def __init__(self, transcoder: Optional[VideoTranscoder] = None, image_converter=convert_image):
        self.transcoder = transcoder or VideoTranscoder()
        self.image_converter = image_converter
        self.state = BatchState.IDLE
        self.run: Optional[BatchRun] = None
        self.progress: float = 0.0
        self.message: str = ""
        self._on_progress: Optional[ProgressHandler] = None

    def _report(self, percent: float, message: str) -> None:
        self.progress = percent
        self.message = message
        if self._on_progress:
            self._on_progress(percent, message)

    async def run_batch(
        self,
        files: list[MediaFile],
        settings: ConversionSettings,
        on_progress: Optional[ProgressHandler] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> BatchSummary:
        if self.state == BatchState.RUNNING:
            raise AlreadyRunningError("conversion already in progress")
        if not files:
            raise EmptyBatchError("please select files first")
        # Claimed before the first await.
        self.state = BatchState.RUNNING
        self._on_progress = on_progress
        run = BatchRun(files=list(files), settings=settings)
        self.run = run
        self._report(0.0, "preparing...")
        try:
            use_engine = True
            if any(f.media_type == MediaType.VIDEO for f in run.files):
                self._report(0.0, "preparing video converter... please wait")
                use_engine = await self.transcoder.engine_manager.try_load()
                if not use_engine:
                    logger.warning("Video conversion unavailable - will rename only")

            total = len(run.files)
            for i, file in enumerate(run.files):
                if cancel_token is not None and cancel_token.cancelled:
                    run.cancelled = True
                    logger.warning("Batch cancelled after %s of %s files", i, total)
                    break
                run.current_index = i
                percent = (i + 1) / total * 100.0
                self._report(percent, f"processing {i + 1}/{total}: {truncate_file_name(file.name, 30)}")

                outcome = FileOutcome(index=i, filename=file.name)
                try:
                    outcome.result = await self._convert_one(file, settings, i, use_engine, percent)
                except ConversionError as e:
                    logger.error("Failed to convert %s: %s", file.name, e.message)
                    outcome.error = e.message
                except Exception as e:
                    logger.exception("Failed to convert %s: %s", file.name, e)
                    outcome.error = str(e)
                run.outcomes.append(outcome)

                await asyncio.sleep(0)
        finally:
            run.finished_at = time.perf_counter()
            self.state = BatchState.COMPLETED
            self._on_progress = None
            # results leave through the summary only
            self.run = None

        results = [o.result for o in run.outcomes if o.result is not None]
        summary = BatchSummary(
            results=results,
            outcomes=list(run.outcomes),
            success_count=len(results),
            failure_count=len(run.outcomes) - len(results),
            duration_seconds=run.elapsed,
            cancelled=run.cancelled,
        )
        self.progress = 100.0
        self.message = "conversion complete!"
        if on_progress:
            on_progress(100.0, self.message)
        logger.info(summary_message(summary))
        return summary

    async def _convert_one(
        self,
        file: MediaFile,
        settings: ConversionSettings,
        index: int,
        use_engine: bool,
        percent: float,
    ) -> ConversionResult:
        media_type = file.media_type
        if media_type == MediaType.IMAGE:
            return await self.image_converter(
                file,
                settings.image_format,
                settings.quality,
                settings.filters,
                settings.resize,
                index,
                settings.filename_pattern,
            )
        if media_type == MediaType.VIDEO:
            def relay(fraction: float, _elapsed: float) -> None:
                if fraction > 0:
                    self._report(percent, f"converting video... {round(fraction * 100)}%")

            return await self.transcoder.convert_video(
                file,
                settings.video_format,
                settings.resize,
                settings.quality,
                index,
                settings.filename_pattern,
                use_engine=use_engine,
                on_progress=relay,
            )
        raise UnsupportedInputError(f"unsupported file type: {file.mime_type or file.name}", file.name)


async def run_batch(
    files: list[MediaFile],
    settings: ConversionSettings,
    on_progress: Optional[ProgressHandler] = None,
) -> BatchSummary:
    """Convenience wrapper around the process-wide orchestrator."""
    return await get_orchestrator().run_batch(files, settings, on_progress)


# Singleton
_orchestrator: Optional[BatchOrchestrator] = None


def get_orchestrator() -> BatchOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = BatchOrchestrator()
    return _orchestrator
