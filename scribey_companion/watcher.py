"""
Scribey Companion - SavedVariables Change Detector

Watches every account's Scribey.lua and hands changed content to the
decode/extract/enqueue pipeline.

WoW rewrites SavedVariables on logout and /reload. Polling backends fire on
timestamp changes even when nothing was written, so each event is checked
against the last content seen for that file, and uploads per file are rate
limited by a cooldown.

Usage:
    detector = ChangeDetector(config, pipeline=app.process_file)
    await detector.start()
    ...
    await detector.stop()
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.polling import PollingObserver

from .config import CompanionSettings, ConfigProvider, get_settings
from .errors import DecodeError, PathError
from .paths import resolve_saved_variables

logger = logging.getLogger(__name__)

# Called with (path, text); returns truthy when an upload was queued
Pipeline = Callable[[Path, str], Any]


@dataclass
class WatchTarget:
    """Per-file state: last content seen and last upload attempt."""
    path: Path
    last_content: Optional[bytes] = None
    last_upload_attempt: Optional[float] = None


@dataclass
class WatchStatus:
    is_watching: bool
    watched_paths: list[str] = field(default_factory=list)
    last_update: Optional[float] = None
    last_error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "isWatching": self.is_watching,
            "watchedPaths": self.watched_paths,
            "lastUpdate": self.last_update,
            "lastError": self.last_error,
        }


# =============================================================================
# Filesystem Events
# =============================================================================


class SavedVariablesEventHandler(FileSystemEventHandler):
    """Forward create/modify events for the addon file to the detector's loop."""

    def __init__(self, detector: "ChangeDetector"):
        super().__init__()
        self.detector = detector

    def on_created(self, event: FileSystemEvent) -> None:
        self._forward(event)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._forward(event)

    def _forward(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return

        path = Path(os.fsdecode(event.src_path))
        if path.name != self.detector.addon_file:
            return

        logger.debug(f"Detected {event.event_type} on {path}")
        self.detector.notify(path)


# =============================================================================
# Change Detector
# =============================================================================


class ChangeDetector:
    """
    Follow the resolved SavedVariables files and run the pipeline on change.

    All state is touched on the asyncio loop captured by ``start()``;
    observer threads only schedule callbacks onto it.
    """

    def __init__(
        self,
        config: ConfigProvider,
        pipeline: Pipeline,
        settings: Optional[CompanionSettings] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.pipeline = pipeline
        self.settings = settings or get_settings()
        self.addon_file = self.settings.addon_file
        self.cooldown = self.settings.upload_cooldown_seconds

        self._clock = clock

        self._targets: dict[Path, WatchTarget] = {}
        self._observer = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._is_watching = False
        self._last_update: Optional[float] = None
        self._last_error: Optional[str] = None

    @property
    def is_watching(self) -> bool:
        return self._is_watching

    def _new_observer(self):
        if self.settings.use_polling:
            return PollingObserver(timeout=self.settings.poll_interval)
        return Observer()

    async def start(self) -> list[Path]:
        """
        Resolve the SavedVariables files, start watching, and scan each once.

        Returns:
            The files being watched.

        Raises:
            PathError: If no install path is configured or it cannot be resolved.
        """
        await self.stop()

        wow_path = self.config.get_wow_path()
        if not wow_path:
            self._last_error = "WoW path not configured"
            raise PathError(self._last_error)

        try:
            files = resolve_saved_variables(
                wow_path,
                addon_file=self.addon_file,
                flavor=self.settings.game_flavor,
            )
        except PathError as e:
            self._last_error = str(e)
            raise

        self._loop = asyncio.get_running_loop()
        self._targets = {path: WatchTarget(path=path) for path in files}

        self._observer = self._new_observer()
        handler = SavedVariablesEventHandler(self)
        for directory in sorted({path.parent for path in files}):
            self._observer.schedule(handler, str(directory), recursive=False)
            logger.info(f"Watching {directory}")
        self._observer.start()

        self._is_watching = True
        self._last_error = None
        logger.info(f"Change detector started for {len(files)} files")

        # Initial scan
        for path in files:
            if path.exists():
                self.handle_change(path)

        return files

    async def stop(self) -> None:
        """Stop watching and forget every cached file and cooldown."""
        observer, self._observer = self._observer, None
        self._is_watching = False
        self._targets.clear()
        self._loop = None

        if observer is not None:
            observer.stop()
            # A polling observer can take up to one interval to exit
            await asyncio.to_thread(observer.join, 5.0)
            logger.info("Change detector stopped")

    def notify(self, path: Path) -> None:
        """Thread-safe entry point for observer events."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._dispatch, path)
        except RuntimeError:
            logger.debug(f"Event loop closed, dropping event for {path}")

    def _dispatch(self, path: Path) -> None:
        if not self._is_watching:
            return
        self.handle_change(path)

    def handle_change(self, path: Path) -> bool:
        """
        Process one filesystem event for ``path``.

        Returns:
            True when the pipeline was invoked.
        """
        path = Path(path)
        target = self._targets.setdefault(path, WatchTarget(path=path))

        try:
            content = path.read_bytes()
        except OSError as e:
            self._last_error = f"Could not read {path}: {e}"
            logger.warning(self._last_error)
            return False

        if content == target.last_content:
            logger.debug(f"No content change in {path}")
            return False

        target.last_content = content
        now = self._clock()
        self._last_update = now

        if target.last_upload_attempt is not None:
            elapsed = now - target.last_upload_attempt
            if elapsed < self.cooldown:
                logger.info(
                    f"Upload rate limited for {path}. "
                    f"Cooldown: {self.cooldown - elapsed:.0f}s remaining"
                )
                return False

        try:
            queued = self.pipeline(path, content.decode("utf-8", errors="replace"))
        except DecodeError as e:
            self._last_error = str(e)
            logger.error(f"Failed to decode {path}: {e}")
            return True
        except Exception as e:
            self._last_error = str(e)
            logger.exception(f"Error processing file change for {path}")
            return True

        if queued:
            target.last_upload_attempt = now
        return True

    def get_status(self) -> WatchStatus:
        return WatchStatus(
            is_watching=self._is_watching,
            watched_paths=[str(path) for path in self._targets],
            last_update=self._last_update,
            last_error=self._last_error,
        )
