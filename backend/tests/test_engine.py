import asyncio
import stat
import sys

import pytest

from converter.conversion.engine import EngineManager, EngineState, FFmpegEngine
from converter.conversion.errors import EngineLoadError, TranscodeError

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="uses a shell script as ffmpeg")


class SlowEngine:
    """Counts loads; yields a few times so concurrent callers overlap."""

    instances = 0

    def __init__(self, fail: bool = False):
        SlowEngine.instances += 1
        self.fail = fail
        self.closed = False

    async def load(self):
        for _ in range(3):
            await asyncio.sleep(0)
        if self.fail:
            raise EngineLoadError("ffmpeg not found")
        return True

    def close(self):
        self.closed = True


def test_concurrent_callers_share_one_load():
    SlowEngine.instances = 0
    manager = EngineManager(factory=SlowEngine)

    async def main():
        return await asyncio.gather(*(manager.ensure_ready() for _ in range(5)))

    engines = asyncio.run(main())
    assert SlowEngine.instances == 1
    assert all(e is engines[0] for e in engines)
    assert manager.state == EngineState.READY
    assert manager.engine is engines[0]


def test_ready_engine_is_reused():
    SlowEngine.instances = 0
    manager = EngineManager(factory=SlowEngine)

    async def main():
        first = await manager.ensure_ready()
        second = await manager.ensure_ready()
        return first, second

    first, second = asyncio.run(main())
    assert first is second
    assert SlowEngine.instances == 1


def test_failed_load_reaches_all_waiters_and_can_retry():
    attempts = []

    def factory():
        attempts.append(1)
        return SlowEngine(fail=len(attempts) == 1)

    manager = EngineManager(factory=factory)

    async def main():
        results = await asyncio.gather(*(manager.ensure_ready() for _ in range(3)), return_exceptions=True)
        assert all(isinstance(r, EngineLoadError) for r in results)
        assert manager.state == EngineState.FAILED
        assert "ffmpeg not found" in manager.failure
        assert manager.engine is None
        return await manager.try_load()

    assert asyncio.run(main()) is True
    assert len(attempts) == 2
    assert manager.state == EngineState.READY
    assert manager.failure is None


def test_try_load_reports_failure():
    manager = EngineManager(factory=lambda: SlowEngine(fail=True))
    assert asyncio.run(manager.try_load()) is False
    assert manager.state == EngineState.FAILED


def test_unexpected_load_error_is_wrapped():
    class Broken:
        async def load(self):
            raise RuntimeError("boom")

    manager = EngineManager(factory=Broken)
    with pytest.raises(EngineLoadError, match="boom"):
        asyncio.run(manager.ensure_ready())
    assert manager.state == EngineState.FAILED


def test_shutdown_closes_engine():
    manager = EngineManager(factory=SlowEngine)
    engine = asyncio.run(manager.ensure_ready())
    manager.shutdown()
    assert engine.closed
    assert manager.state == EngineState.UNINITIALIZED


def test_missing_binary_fails_to_load(tmp_path):
    engine = FFmpegEngine(binary="definitely-not-an-ffmpeg-binary", work_root=tmp_path)
    with pytest.raises(EngineLoadError, match="not found"):
        asyncio.run(engine.load())
    assert not engine.loaded


def test_working_names_stay_inside_work_dir(tmp_path):
    engine = FFmpegEngine(work_root=tmp_path)
    engine.work_dir = tmp_path
    with pytest.raises(TranscodeError):
        engine._path("../escape.mp4")
    assert engine.unique_name("input", "mov") != engine.unique_name("input", "mov")


def test_working_file_roundtrip(tmp_path):
    engine = FFmpegEngine(work_root=tmp_path)
    engine.work_dir = tmp_path

    async def main():
        await engine.write_input("input_1.mov", b"data")
        data = await engine.read_output("input_1.mov")
        await engine.delete_file("input_1.mov")
        return data

    assert asyncio.run(main()) == b"data"
    with pytest.raises(TranscodeError, match="no output"):
        asyncio.run(engine.read_output("missing.mp4"))
    with pytest.raises(FileNotFoundError):
        asyncio.run(engine.delete_file("missing.mp4"))


def test_write_failure_becomes_transcode_error(tmp_path):
    engine = FFmpegEngine(work_root=tmp_path)
    engine.work_dir = tmp_path / "removed"
    with pytest.raises(TranscodeError, match="could not write working file input_1.mov"):
        asyncio.run(engine.write_input("input_1.mov", b"data"))


def _fake_ffmpeg(tmp_path, body: str):
    script = tmp_path / "ffmpeg"
    script.write_text("#!/bin/sh\n" + body)
    script.chmod(script.stat().st_mode | stat.S_IEXEC)
    engine = FFmpegEngine(work_root=tmp_path)
    engine.work_dir = tmp_path
    engine._executable = str(script)
    return engine


@posix_only
def test_exec_reports_progress(tmp_path):
    engine = _fake_ffmpeg(
        tmp_path,
        'echo "  Duration: 00:00:10.00, start: 0.000000, bitrate: 1 kb/s" >&2\n'
        "sleep 0.5\n"
        'echo "out_time_us=5000000"\n'
        'echo "progress=continue"\n'
        'echo "progress=end"\n',
    )
    calls = []
    asyncio.run(engine.exec(["-i", "in.mov", "out.mp4"], on_progress=lambda f, s: calls.append((f, s))))
    assert (0.5, 5.0) in calls
    assert calls[-1] == (1.0, 10.0)


@posix_only
def test_exec_nonzero_exit_raises(tmp_path):
    engine = _fake_ffmpeg(tmp_path, 'echo "Unknown encoder libfoo" >&2\nexit 1\n')
    with pytest.raises(TranscodeError) as exc:
        asyncio.run(engine.exec(["-i", "in.mov", "out.mp4"]))
    assert "Unknown encoder libfoo" in exc.value.output
    assert exc.value.command[-1] == "out.mp4"


def test_exec_requires_loaded_engine(tmp_path):
    engine = FFmpegEngine(work_root=tmp_path)
    with pytest.raises(TranscodeError, match="not loaded"):
        asyncio.run(engine.exec(["-version"]))
