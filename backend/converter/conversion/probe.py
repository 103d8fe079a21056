"""Video metadata (dimensions, duration) from ffprobe."""
import asyncio
import json
import logging
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from converter.config import FFPROBE_BINARY, PROBE_TIMEOUT
from converter.conversion.errors import MediaReadError

logger = logging.getLogger("converter.probe")


@dataclass(frozen=True)
class MediaInfo:
    width: int
    height: int
    duration: Optional[float] = None

    @property
    def dimensions(self) -> tuple[int, int]:
        return self.width, self.height


def extract_media_info(probe_output: Optional[dict[str, Any]], filename: str = "") -> MediaInfo:
    """First video stream size plus container duration. Raises MediaReadError if there is no video stream."""
    if not probe_output:
        raise MediaReadError(f"failed to load video: {filename}", filename)
    width = height = None
    for stream in probe_output.get("streams", []):
        if stream.get("codec_type") == "video" and stream.get("width") and stream.get("height"):
            width = int(stream["width"])
            height = int(stream["height"])
            break
    if width is None or height is None:
        raise MediaReadError(f"no video stream in {filename}", filename)

    duration = None
    raw = (probe_output.get("format") or {}).get("duration")
    if raw not in (None, "", "N/A"):
        try:
            duration = float(raw)
        except (TypeError, ValueError):
            duration = None
    return MediaInfo(width=width, height=height, duration=duration)


class FFprobeProber:
    def __init__(self, binary: str = FFPROBE_BINARY):
        self.binary = binary

    async def probe_path(self, path: Path, filename: Optional[str] = None) -> MediaInfo:
        filename = filename or Path(path).name
        executable = shutil.which(self.binary)
        if not executable:
            raise MediaReadError(f"{self.binary} not found; cannot read {filename}", filename)
        cmd = [
            executable, "-v", "error",
            "-show_entries", "stream=codec_type,width,height:format=duration",
            "-of", "json", str(path),
        ]
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            out, err = await asyncio.wait_for(proc.communicate(), timeout=PROBE_TIMEOUT)
        except asyncio.TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise MediaReadError(f"probing {filename} timed out", filename) from e
        except OSError as e:
            raise MediaReadError(f"could not run {executable}: {e}", filename) from e
        if proc.returncode != 0:
            logger.debug("ffprobe stderr for %s: %s", filename, err.decode(errors="replace"))
            raise MediaReadError(f"failed to load video: {filename}", filename)
        try:
            payload = json.loads(out.decode(errors="replace") or "{}")
        except json.JSONDecodeError as e:
            raise MediaReadError(f"unreadable probe output for {filename}", filename) from e
        return extract_media_info(payload, filename)

    async def probe_bytes(self, data: bytes, filename: str) -> MediaInfo:
        suffix = "." + filename.rsplit(".", 1)[1] if "." in filename else ""
        with tempfile.TemporaryDirectory(prefix="probe_") as tmp:
            path = Path(tmp) / f"media{suffix}"
            await asyncio.to_thread(path.write_bytes, data)
            return await self.probe_path(path, filename)
