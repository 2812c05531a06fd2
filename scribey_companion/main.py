#!/usr/bin/env python3
"""
Scribey Companion - Headless App
Watches WoW SavedVariables and syncs Scribey addon data to scribey.app.

Usage:
    scribey-companion                       # Watch and upload until Ctrl+C
    scribey-companion --once                # Scan once, flush the queue, exit
    scribey-companion --wow-path DIR        # Set the WoW installation path
    scribey-companion --list-paths          # Show detected installs and files
    scribey-companion --test-connection     # Check the server and exit
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional, Union

import httpx

from .client import CompanionClient
from .commands import build_router
from .config import CompanionSettings, ConfigManager, get_settings
from .errors import CompanionError, PathError
from .extractor import extract_snapshot
from .luatable import NOT_FOUND, decode_global
from .models import QueueItem
from .paths import find_wow_install_paths, resolve_saved_variables
from .sync import QueueStore, UploadQueue
from .watcher import ChangeDetector

logger = logging.getLogger(__name__)


def setup_logging(
    level: int = logging.INFO,
    log_file: Optional[Path] = None,
) -> None:
    """
    Set up logging for the companion.

    Args:
        level: Logging level.
        log_file: Optional path to log file.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
        force=True,
    )


class CompanionApp:
    """Wires config, transport, queue, change detector and command handlers."""

    def __init__(
        self,
        config_path: Optional[Path] = None,
        settings: Optional[CompanionSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self.config = ConfigManager(config_path, self.settings)
        self.client = CompanionClient(self.config, self.settings, transport=transport)

        store = QueueStore(self.settings.queue_db_path) if self.settings.queue_db_path else None
        self.queue = UploadQueue(self.config, self.client, store=store, settings=self.settings)
        self.detector = ChangeDetector(self.config, self.process_file, self.settings)
        self.router = build_router(self)
        self.running = False

    def process_file(self, path: Union[str, Path], text: str) -> Optional[QueueItem]:
        """
        Decode, extract and enqueue one SavedVariables file.

        Returns:
            The queued item, or None when nothing was queued.

        Raises:
            DecodeError: If the file is not a valid table literal.
        """
        root = decode_global(text, self.settings.global_name)
        if root is NOT_FOUND:
            logger.warning(f"No {self.settings.global_name} table found in {path}")
            return None

        result = extract_snapshot(root, raw_content=text)
        if result is None:
            return None

        snapshot = result.snapshot
        logger.info(f"Parsed {len(snapshot.characters)} characters from {Path(path).name}")
        if result.ledger.failures:
            logger.warning(f"Skipped characters: {', '.join(result.ledger.failures)}")

        if not self.config.is_auto_upload_enabled():
            logger.info("Auto-upload disabled, snapshot not queued")
            return None

        return self.queue.enqueue(snapshot, path)

    async def flush(self) -> None:
        """Drain until the queue is empty or delivery stops making progress."""
        await self.queue.close()
        while len(self.queue):
            result = await self.queue.drain()
            if result.skipped or not result.delivered:
                logger.warning(f"{len(self.queue)} uploads still pending")
                break

    async def run(self, once: bool = False) -> None:
        """Start watching and keep uploading until stopped."""
        logger.info(f"{self.settings.app_name} {self.settings.app_version} starting...")
        self.queue.resume()

        try:
            await self.detector.start()
            if once:
                await self.flush()
                return

            self.running = True
            while self.running:
                await asyncio.sleep(self.settings.poll_interval)
        finally:
            await self.shutdown()

    def stop(self) -> None:
        """Ask ``run`` to return."""
        logger.info("Stopping companion app...")
        self.running = False

    async def shutdown(self) -> None:
        await self.detector.stop()
        await self.queue.close()
        await self.client.close()


# =============================================================================
# CLI Entry Point
# =============================================================================


def _list_paths(app: CompanionApp) -> None:
    print("Detected WoW installations:")
    installs = find_wow_install_paths()
    if installs:
        for install in installs:
            print(f"  {install}")
    else:
        print("  No installations found")

    wow_path = app.config.get_wow_path()
    if not wow_path:
        print("\nWoW path not configured (use --wow-path)")
        return

    print(f"\n{app.settings.addon_file} files under {wow_path}:")
    try:
        for path in resolve_saved_variables(
            wow_path,
            addon_file=app.settings.addon_file,
            flavor=app.settings.game_flavor,
        ):
            print(f"  {path}")
    except PathError as e:
        print(f"  {e}")


async def _run_command(app: CompanionApp, name: str) -> dict:
    try:
        return await app.router.dispatch(name)
    finally:
        await app.client.close()


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(
        description="Scribey Companion",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to config file (default: ~/.scribey_companion/config.json)",
    )
    parser.add_argument(
        "--wow-path",
        type=Path,
        help="Set the World of Warcraft installation directory",
    )
    parser.add_argument(
        "--server-url",
        help="Set the Scribey server URL",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--list-paths",
        action="store_true",
        help="List detected WoW installations and SavedVariables files and exit",
    )
    parser.add_argument(
        "--test-connection",
        action="store_true",
        help="Check connectivity to the server and exit",
    )
    parser.add_argument(
        "--force-sync",
        action="store_true",
        help="Ask the server to resync this device and exit",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Scan SavedVariables once, upload, and exit",
    )

    args = parser.parse_args(argv)

    settings = get_settings()
    level = logging.DEBUG if args.debug else getattr(logging, settings.log_level)
    setup_logging(level=level, log_file=settings.log_file)

    app = CompanionApp(config_path=args.config, settings=settings)

    if args.wow_path:
        if not app.config.validate_wow_path(str(args.wow_path)):
            logger.error(f"Not a WoW installation: {args.wow_path}")
            sys.exit(1)
        app.config.set_wow_path(str(args.wow_path.expanduser().resolve()))

    if args.server_url:
        app.config.set_server_url(args.server_url)

    if args.list_paths:
        _list_paths(app)
        return

    if args.test_connection or args.force_sync:
        name = "upload:testConnection" if args.test_connection else "upload:forceSync"
        result = asyncio.run(_run_command(app, name))
        print(result)
        sys.exit(0 if result.get("success") else 1)

    try:
        asyncio.run(app.run(once=args.once))
    except KeyboardInterrupt:
        app.stop()
    except CompanionError as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
