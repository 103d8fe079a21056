"""
Transcoding engine: an ffmpeg process driven through a private working directory.

The engine is loaded lazily, once per process, through EngineManager:

    UNINITIALIZED -> LOADING -> READY
    UNINITIALIZED -> LOADING -> FAILED (a later call may retry)

Concurrent callers await the same in-flight load instead of starting another.
"""
import asyncio
import itertools
import logging
import re
import shutil
import tempfile
import time
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from converter.config import ENGINE_LOAD_TIMEOUT, ENGINE_WORK_DIR, FFMPEG_BINARY, TRANSCODE_TIMEOUT
from converter.conversion.errors import EngineLoadError, TranscodeError

logger = logging.getLogger("converter.engine")

# (fraction 0-1, seconds of media processed)
ProgressCallback = Callable[[float, float], None]

_DURATION_RE = re.compile(r"Duration:\s*(\d+):(\d+):(\d+(?:\.\d+)?)")


def _hms_to_seconds(h: str, m: str, s: str) -> float:
    return int(h) * 3600 + int(m) * 60 + float(s)


class EngineState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


class FFmpegEngine:
    """ffmpeg wrapper with a per-engine working namespace (a temp directory)."""

    def __init__(self, binary: str = FFMPEG_BINARY, work_root: Path = ENGINE_WORK_DIR):
        self.binary = binary
        self.work_root = Path(work_root)
        self.work_dir: Optional[Path] = None
        self.version: Optional[str] = None
        self._executable: Optional[str] = None
        self._counter = itertools.count(1)

    @property
    def loaded(self) -> bool:
        return self.work_dir is not None

    async def load(self) -> bool:
        if self.loaded:
            return True
        executable = shutil.which(self.binary)
        if not executable:
            raise EngineLoadError(f"{self.binary} not found. Install ffmpeg for video conversion.")
        try:
            proc = await asyncio.create_subprocess_exec(
                executable, "-hide_banner", "-version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise EngineLoadError(f"could not start {executable}: {e}") from e
        try:
            out, err = await asyncio.wait_for(proc.communicate(), timeout=ENGINE_LOAD_TIMEOUT)
        except asyncio.TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise EngineLoadError(f"{executable} -version timed out after {ENGINE_LOAD_TIMEOUT}s") from e
        if proc.returncode != 0:
            raise EngineLoadError(f"{executable} -version failed: {err.decode(errors='replace').strip()}")
        self.version = out.decode(errors="replace").splitlines()[0] if out else "unknown"
        self.work_root.mkdir(parents=True, exist_ok=True)
        self.work_dir = Path(tempfile.mkdtemp(prefix="engine_", dir=self.work_root))
        self._executable = executable
        logger.info("Transcoding engine loaded: %s (work dir %s)", self.version, self.work_dir)
        return True

    def _path(self, name: str) -> Path:
        if self.work_dir is None:
            raise TranscodeError("engine is not loaded")
        path = (self.work_dir / name).resolve()
        if path.parent != self.work_dir.resolve():
            raise TranscodeError(f"invalid working file name: {name}")
        return path

    def unique_name(self, prefix: str, extension: str) -> str:
        return f"{prefix}_{int(time.time() * 1000)}_{next(self._counter)}.{extension or 'bin'}"

    async def write_input(self, name: str, data: bytes) -> None:
        try:
            await asyncio.to_thread(self._path(name).write_bytes, data)
        except OSError as e:
            raise TranscodeError(f"could not write working file {name}: {e}") from e

    async def read_output(self, name: str) -> bytes:
        path = self._path(name)
        if not path.is_file():
            raise TranscodeError(f"engine produced no output file {name}")
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as e:
            raise TranscodeError(f"could not read working file {name}: {e}") from e

    async def delete_file(self, name: str) -> None:
        await asyncio.to_thread(self._path(name).unlink)

    async def exec(self, args: list[str], on_progress: Optional[ProgressCallback] = None) -> None:
        """Run ffmpeg with `args` inside the working directory."""
        if self._executable is None or self.work_dir is None:
            raise TranscodeError("engine is not loaded")
        cmd = [self._executable, "-hide_banner", "-nostdin", "-nostats", "-progress", "pipe:1", *args]
        logger.debug("Command: %s", " ".join(cmd))
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(self.work_dir),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise TranscodeError(f"could not start ffmpeg: {e}", command=cmd) from e

        duration: list[Optional[float]] = [None]
        stderr_tail: list[str] = []

        async def read_log():
            async for raw in proc.stderr:
                line = raw.decode(errors="replace").rstrip()
                if not line:
                    continue
                logger.debug("[ffmpeg] %s", line)
                stderr_tail.append(line)
                del stderr_tail[:-20]
                if duration[0] is None:
                    m = _DURATION_RE.search(line)
                    if m:
                        duration[0] = _hms_to_seconds(*m.groups())

        async def read_progress():
            async for raw in proc.stdout:
                key, _, value = raw.decode(errors="replace").strip().partition("=")
                if on_progress is None:
                    continue
                if key in ("out_time_us", "out_time_ms") and value.lstrip("-").isdigit():
                    seconds = max(0, int(value)) / 1_000_000
                    if duration[0]:
                        on_progress(min(1.0, seconds / duration[0]), seconds)
                elif key == "progress" and value == "end":
                    on_progress(1.0, duration[0] or 0.0)

        try:
            await asyncio.wait_for(
                asyncio.gather(read_log(), read_progress(), proc.wait()),
                timeout=TRANSCODE_TIMEOUT,
            )
        except asyncio.TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise TranscodeError(f"ffmpeg timed out after {TRANSCODE_TIMEOUT}s", command=cmd) from e
        if proc.returncode != 0:
            output = "\n".join(stderr_tail)
            raise TranscodeError(
                f"ffmpeg exited with code {proc.returncode}: {stderr_tail[-1] if stderr_tail else 'no output'}",
                command=cmd,
                output=output,
            )

    def close(self) -> None:
        if self.work_dir is not None:
            shutil.rmtree(self.work_dir, ignore_errors=True)
            self.work_dir = None


class EngineManager:
    """Holds the process-wide engine and its load state."""

    def __init__(self, factory: Callable[[], FFmpegEngine] = FFmpegEngine):
        self._factory = factory
        self.state = EngineState.UNINITIALIZED
        self.failure: Optional[str] = None
        self._engine: Optional[FFmpegEngine] = None
        self._loading: Optional[asyncio.Future] = None

    @property
    def engine(self) -> Optional[FFmpegEngine]:
        return self._engine if self.state == EngineState.READY else None

    async def ensure_ready(self) -> FFmpegEngine:
        """Return the loaded engine, loading it if needed. Raises EngineLoadError."""
        if self.state == EngineState.READY:
            return self._engine
        if self.state != EngineState.LOADING:
            # No await between the check and the assignment: one load in flight.
            self.state = EngineState.LOADING
            self.failure = None
            self._loading = asyncio.ensure_future(self._load())
        return await asyncio.shield(self._loading)

    async def try_load(self) -> bool:
        try:
            await self.ensure_ready()
            return True
        except EngineLoadError:
            return False

    async def _load(self) -> FFmpegEngine:
        logger.info("Loading video converter engine...")
        engine = self._factory()
        try:
            await engine.load()
        except EngineLoadError as e:
            self._fail(str(e))
            raise
        except Exception as e:
            self._fail(str(e))
            raise EngineLoadError(f"failed to load engine: {e}") from e
        self._engine = engine
        self.state = EngineState.READY
        self._loading = None
        logger.info("Video converter ready")
        return engine

    def _fail(self, reason: str) -> None:
        self.state = EngineState.FAILED
        self.failure = reason
        self._loading = None
        logger.warning("Video conversion unavailable - using fallback: %s", reason)

    def shutdown(self) -> None:
        if self._engine is not None:
            self._engine.close()
        self._engine = None
        self.state = EngineState.UNINITIALIZED


# Singleton
_engine_manager: Optional[EngineManager] = None


def get_engine_manager() -> EngineManager:
    global _engine_manager
    if _engine_manager is None:
        _engine_manager = EngineManager()
    return _engine_manager
