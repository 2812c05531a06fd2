"""
Change Detector Tests

Tests for content deduplication, upload cooldown and watch lifecycle.
"""

import asyncio
import time

import pytest

from scribey_companion.errors import DecodeError, PathError
from scribey_companion.watcher import ChangeDetector


class RecordingPipeline:
    def __init__(self, result=True):
        self.result = result
        self.calls = []

    def __call__(self, path, text):
        self.calls.append((path, text))
        return self.result


class SlowObserver:
    """Observer whose join blocks the calling thread for a while."""

    def __init__(self):
        self.stopped = False

    def stop(self):
        self.stopped = True

    def join(self, timeout=None):
        time.sleep(0.2)


@pytest.fixture
def saved_variables(tmp_path):
    path = tmp_path / "Scribey.lua"
    path.write_text("ScribeyDB = { a = 1 }", encoding="utf-8")
    return path


@pytest.fixture
def wow_install(tmp_path):
    root = tmp_path / "World of Warcraft"
    saved = root / "_classic_" / "WTF" / "Account" / "ACCOUNT1" / "SavedVariables"
    saved.mkdir(parents=True)
    (saved / "Scribey.lua").write_text("ScribeyDB = { a = 1 }", encoding="utf-8")
    return root


class TestHandleChange:
    """Tests for the per-event processing steps."""

    def test_identical_content_processed_once(self, config, settings, clock, saved_variables):
        pipeline = RecordingPipeline()
        detector = ChangeDetector(config, pipeline, settings, clock=clock)

        assert detector.handle_change(saved_variables) is True
        clock.advance(60)
        assert detector.handle_change(saved_variables) is False

        assert len(pipeline.calls) == 1
        assert pipeline.calls[0][1] == "ScribeyDB = { a = 1 }"

    def test_cooldown_skips_but_updates_content(self, config, settings, clock, saved_variables):
        pipeline = RecordingPipeline()
        detector = ChangeDetector(config, pipeline, settings, clock=clock)
        detector.handle_change(saved_variables)

        clock.advance(10)
        saved_variables.write_text("ScribeyDB = { a = 2 }", encoding="utf-8")
        assert detector.handle_change(saved_variables) is False
        assert detector.get_status().last_update == clock.now

        # Same content as the skipped event: compared against the latest copy
        clock.advance(30)
        assert detector.handle_change(saved_variables) is False

        saved_variables.write_text("ScribeyDB = { a = 3 }", encoding="utf-8")
        assert detector.handle_change(saved_variables) is True
        assert len(pipeline.calls) == 2

    def test_cooldown_only_after_queued_upload(self, config, settings, clock, saved_variables):
        pipeline = RecordingPipeline(result=None)
        detector = ChangeDetector(config, pipeline, settings, clock=clock)
        detector.handle_change(saved_variables)

        saved_variables.write_text("ScribeyDB = { a = 2 }", encoding="utf-8")
        assert detector.handle_change(saved_variables) is True
        assert len(pipeline.calls) == 2

    def test_unreadable_file(self, config, settings, clock, tmp_path):
        pipeline = RecordingPipeline()
        detector = ChangeDetector(config, pipeline, settings, clock=clock)

        assert detector.handle_change(tmp_path / "missing.lua") is False
        assert pipeline.calls == []
        assert "missing.lua" in detector.get_status().last_error

    def test_decode_error_is_recorded(self, config, settings, clock, saved_variables):
        def pipeline(path, text):
            raise DecodeError("IfStatement", line=1)

        detector = ChangeDetector(config, pipeline, settings, clock=clock)

        assert detector.handle_change(saved_variables) is True
        assert "IfStatement" in detector.get_status().last_error

    def test_stop_is_a_hard_reset(self, config, settings, clock, saved_variables):
        pipeline = RecordingPipeline()
        detector = ChangeDetector(config, pipeline, settings, clock=clock)
        detector.handle_change(saved_variables)

        asyncio.run(detector.stop())

        assert detector.get_status().watched_paths == []
        assert detector.handle_change(saved_variables) is True
        assert len(pipeline.calls) == 2

    def test_stop_does_not_block_the_loop(self, config, settings, clock):
        detector = ChangeDetector(config, RecordingPipeline(), settings, clock=clock)
        observer = SlowObserver()
        detector._observer = observer
        ticks = []

        async def tick():
            while True:
                ticks.append(time.monotonic())
                await asyncio.sleep(0.01)

        async def run():
            ticker = asyncio.ensure_future(tick())
            await detector.stop()
            ticker.cancel()

        asyncio.run(run())

        assert observer.stopped
        assert len(ticks) > 2
        assert detector._observer is None


class TestLifecycle:
    """Tests for start() and stop() against a fake installation."""

    def test_start_requires_wow_path(self, config, settings):
        detector = ChangeDetector(config, RecordingPipeline(), settings)

        async def run():
            await detector.start()

        with pytest.raises(PathError):
            asyncio.run(run())
        assert detector.get_status().last_error == "WoW path not configured"

    def test_start_with_invalid_install(self, config, settings, tmp_path):
        config.wow_path = str(tmp_path)
        detector = ChangeDetector(config, RecordingPipeline(), settings)

        async def run():
            await detector.start()

        with pytest.raises(PathError):
            asyncio.run(run())
        assert not detector.is_watching

    def test_start_scans_existing_files(self, config, settings, wow_install):
        config.wow_path = str(wow_install)
        settings.poll_interval = 0.1
        pipeline = RecordingPipeline()
        detector = ChangeDetector(config, pipeline, settings)

        async def run():
            files = await detector.start()
            status = detector.get_status()
            await detector.stop()
            return files, status

        files, status = asyncio.run(run())

        assert len(files) == 1
        assert status.is_watching
        assert status.watched_paths == [str(files[0])]
        assert len(pipeline.calls) == 1
        assert not detector.is_watching

    def test_modification_is_picked_up(self, config, settings, wow_install):
        config.wow_path = str(wow_install)
        settings.poll_interval = 0.1
        pipeline = RecordingPipeline(result=None)
        detector = ChangeDetector(config, pipeline, settings)

        async def run():
            files = await detector.start()
            try:
                files[0].write_text("ScribeyDB = { a = 1, b = 2 }", encoding="utf-8")
                for _ in range(100):
                    if len(pipeline.calls) >= 2:
                        break
                    await asyncio.sleep(0.05)
            finally:
                await detector.stop()

        asyncio.run(run())

        assert len(pipeline.calls) == 2
        assert pipeline.calls[1][1] == "ScribeyDB = { a = 1, b = 2 }"
