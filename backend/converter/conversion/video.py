"""
Video stage: real transcode through the engine, or passthrough when it cannot.

The passthrough result keeps the original bytes and sets
requires_server_conversion=True so callers know no transcoding happened.
"""
import asyncio
import logging
from datetime import datetime
from typing import Optional

from converter.config import DEFAULT_FILENAME_PATTERN
from converter.conversion.engine import EngineManager, FFmpegEngine, ProgressCallback, get_engine_manager
from converter.conversion.errors import EngineLoadError, MediaReadError, TranscodeError
from converter.conversion.formats import resolve_file_format, video_mime_type_for
from converter.conversion.models import ConversionResult, MediaFile, ResizeSpec
from converter.conversion.naming import output_name
from converter.conversion.probe import FFprobeProber
from converter.conversion.resize import round_half_up

logger = logging.getLogger("converter.video")

AUDIO_BITRATE = "128k"


def build_codec_args(
    input_name: str,
    output_name: str,
    target_format: str,
    quality: float,
    resize: Optional[ResizeSpec] = None,
) -> list[str]:
    """ffmpeg arguments for the target container. Lower crf/q:v means better quality."""
    args = ["-i", input_name]
    fmt = target_format.lower()
    if fmt in ("mp4", "mov"):
        args += [
            "-c:v", "libx264", "-preset", "medium",
            "-crf", str(round_half_up(51 - quality * 51)),
            "-c:a", "aac", "-b:a", AUDIO_BITRATE,
        ]
        if fmt == "mov":
            args += ["-movflags", "+faststart"]
    elif fmt == "webm":
        args += [
            "-c:v", "libvpx-vp9",
            "-crf", str(round_half_up(63 - quality * 63)),
            "-b:v", "0",
            "-c:a", "libopus", "-b:a", AUDIO_BITRATE,
        ]
    elif fmt == "avi":
        args += [
            "-c:v", "mpeg4",
            "-q:v", str(round_half_up(31 - quality * 29)),
            "-c:a", "libmp3lame", "-b:a", AUDIO_BITRATE,
        ]
    else:
        args += ["-c:v", "libx264", "-c:a", "aac"]

    if resize is not None and resize.is_set:
        # -2: derive from the aspect ratio, kept even for the encoders
        width = resize.width if resize.width else -2
        height = resize.height if resize.height else -2
        args += ["-vf", f"scale={width}:{height}"]

    args += ["-y", output_name]
    return args


class VideoTranscoder:
    def __init__(self, engine_manager: Optional[EngineManager] = None, prober=None):
        self.engine_manager = engine_manager or get_engine_manager()
        self.prober = prober or FFprobeProber()

    async def convert_video(
        self,
        file: MediaFile,
        target_format: str,
        resize: ResizeSpec,
        quality: float,
        index: int,
        filename_pattern: str = DEFAULT_FILENAME_PATTERN,
        now: Optional[datetime] = None,
        use_engine: bool = True,
        on_progress: Optional[ProgressCallback] = None,
    ) -> ConversionResult:
        target_format = target_format.lower()
        name = output_name(filename_pattern, file.name, index, target_format, now)

        result = None
        if use_engine:
            try:
                engine = await self.engine_manager.ensure_ready()
            except EngineLoadError as e:
                logger.warning("Engine unavailable for %s, renaming only: %s", file.name, e)
            else:
                try:
                    result = await self._transcode(engine, file, name, target_format, resize, quality, on_progress)
                except (TranscodeError, MediaReadError, OSError) as e:
                    logger.warning("FFmpeg conversion error for %s, falling back: %s", file.name, e)
        if result is None:
            result = await self._passthrough(file, name, target_format)
        return result

    async def _transcode(
        self,
        engine: FFmpegEngine,
        file: MediaFile,
        name: str,
        target_format: str,
        resize: ResizeSpec,
        quality: float,
        on_progress: Optional[ProgressCallback],
    ) -> ConversionResult:
        try:
            data = file.read()
        except OSError as e:
            raise MediaReadError(f"failed to read video: {file.name} ({e})", file.name) from e
        input_name = engine.unique_name("input", file.extension or resolve_file_format(file))
        work_output = engine.unique_name("output", target_format)

        try:
            await engine.write_input(input_name, data)
            await asyncio.sleep(0)
            args = build_codec_args(input_name, work_output, target_format, quality, resize)
            logger.info("Converting %s to %s", file.name, target_format)
            await engine.exec(args, on_progress=on_progress)
            output = await engine.read_output(work_output)
        finally:
            await self._cleanup(engine, input_name, work_output)

        info = await self.prober.probe_bytes(output, name)
        result = ConversionResult(
            name=name,
            data=output,
            original_name=file.name,
            original_size=file.size,
            converted_size=len(output),
            format=target_format,
            mime_type=video_mime_type_for(target_format),
            dimensions=info.dimensions,
            duration=info.duration,
            is_video=True,
        )
        logger.info("Converted %s to %s (%s -> %s bytes)", file.name, target_format, file.size, result.converted_size)
        return result

    @staticmethod
    async def _cleanup(engine: FFmpegEngine, *names: str) -> None:
        for working_name in names:
            try:
                await engine.delete_file(working_name)
            except FileNotFoundError:
                logger.debug("Working file %s already gone", working_name)
            except (OSError, TranscodeError) as e:
                logger.warning("Cleanup warning for %s: %s", working_name, e)

    async def _passthrough(self, file: MediaFile, name: str, target_format: str) -> ConversionResult:
        await asyncio.sleep(0)
        try:
            data = file.read()
        except OSError as e:
            raise MediaReadError(f"failed to read video: {file.name} ({e})", file.name) from e
        info = await self.prober.probe_bytes(data, file.name)
        return ConversionResult(
            name=name,
            data=data,
            original_name=file.name,
            original_size=file.size,
            converted_size=file.size,
            format=target_format,
            mime_type=file.mime_type or video_mime_type_for(target_format),
            dimensions=info.dimensions,
            duration=info.duration,
            is_video=True,
            requires_server_conversion=True,
        )


async def convert_video(
    file: MediaFile,
    target_format: str,
    resize: ResizeSpec,
    quality: float,
    index: int,
    filename_pattern: str = DEFAULT_FILENAME_PATTERN,
) -> ConversionResult:
    """Convert one video with the process-wide engine."""
    return await VideoTranscoder().convert_video(file, target_format, resize, quality, index, filename_pattern)
