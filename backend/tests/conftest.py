import io
import os
import tempfile

# Must be set before converter.config is imported
_TMP = tempfile.mkdtemp(prefix="converter-tests-")
os.environ.setdefault("OUTPUT_DIR", os.path.join(_TMP, "outputs"))
os.environ.setdefault("BATCH_ZIP_DIR", os.path.join(_TMP, "zips"))
os.environ.setdefault("ENGINE_WORK_DIR", os.path.join(_TMP, "work"))
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import pytest
from PIL import Image

from converter import db
from converter.conversion.errors import EngineLoadError, MediaReadError, TranscodeError
from converter.conversion.models import MediaFile
from converter.conversion.probe import MediaInfo


def make_image_bytes(fmt: str = "PNG", size=(100, 50), mode: str = "RGB", color=(200, 100, 50)) -> bytes:
    if mode == "RGBA" and len(color) == 3:
        color = (*color, 128)
    img = Image.new(mode, size, color)
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


def image_file(name: str = "photo.png", **kwargs) -> MediaFile:
    return MediaFile.from_bytes(name, make_image_bytes(**kwargs))


def video_file(name: str = "clip.mov", data: bytes = b"\x00\x00\x00\x14ftypqt  fake-video") -> MediaFile:
    return MediaFile.from_bytes(name, data, "video/quicktime" if name.endswith(".mov") else None)


class FakeEngine:
    """In-memory stand-in for FFmpegEngine."""

    def __init__(self, output: bytes = b"converted-video", fail_exec: bool = False, progress=()):
        self.output = output
        self.fail_exec = fail_exec
        self.progress = list(progress)
        self.files: dict[str, bytes] = {}
        self.commands: list[list[str]] = []
        self.loads = 0
        self._n = 0

    async def load(self) -> bool:
        self.loads += 1
        return True

    def unique_name(self, prefix: str, extension: str) -> str:
        self._n += 1
        return f"{prefix}_{self._n}.{extension}"

    async def write_input(self, name: str, data: bytes) -> None:
        self.files[name] = data

    async def read_output(self, name: str) -> bytes:
        if name not in self.files:
            raise TranscodeError(f"engine produced no output file {name}")
        return self.files[name]

    async def delete_file(self, name: str) -> None:
        if name not in self.files:
            raise FileNotFoundError(name)
        del self.files[name]

    async def exec(self, args, on_progress=None) -> None:
        self.commands.append(list(args))
        for fraction in self.progress:
            if on_progress:
                on_progress(fraction, fraction * 10)
        if self.fail_exec:
            raise TranscodeError("ffmpeg exited with code 1: Unknown encoder", command=args)
        self.files[args[-1]] = self.output

    def close(self) -> None:
        self.files.clear()


class FakeEngineManager:
    def __init__(self, engine=None, error=None):
        self._engine = engine
        self.error = error
        self.calls = 0

    async def ensure_ready(self):
        self.calls += 1
        if self.error:
            raise EngineLoadError(self.error)
        return self._engine

    async def try_load(self) -> bool:
        try:
            await self.ensure_ready()
            return True
        except EngineLoadError:
            return False


class FakeProber:
    def __init__(self, info=None, error=None):
        self.info = info or MediaInfo(width=1280, height=720, duration=12.5)
        self.error = error
        self.probed: list[str] = []

    async def probe_bytes(self, data: bytes, filename: str) -> MediaInfo:
        self.probed.append(filename)
        if self.error:
            raise MediaReadError(self.error, filename)
        return self.info


@pytest.fixture
def memory_db(monkeypatch):
    """Fresh in-memory database for each test."""
    monkeypatch.setattr(db.app_config, "DATABASE_URL", "sqlite:///:memory:")
    monkeypatch.setattr(db, "_engine", None)
    db.init_db()
    yield db
    db.get_engine().dispose()
