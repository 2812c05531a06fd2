"""
Scribey Companion - Command Handlers

Name -> async handler table used by whatever shell hosts the companion (a
desktop UI, a local RPC bridge, the CLI). Handler names follow the
``area:action`` convention of the desktop client.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from .errors import CommandError, PathError

if TYPE_CHECKING:
    from .main import CompanionApp

logger = logging.getLogger(__name__)

Handler = Callable[..., Awaitable[Any]]


class CommandRouter:
    """Dispatch named commands to async handlers."""

    def __init__(self):
        self._handlers: dict[str, Handler] = {}

    def register(self, name: str, handler: Handler) -> None:
        if name in self._handlers:
            raise CommandError(f"Command already registered: {name}")
        self._handlers[name] = handler

    def command(self, name: str) -> Callable[[Handler], Handler]:
        """Decorator form of ``register``."""
        def decorator(handler: Handler) -> Handler:
            self.register(name, handler)
            return handler
        return decorator

    @property
    def names(self) -> list[str]:
        return sorted(self._handlers)

    def __contains__(self, name: str) -> bool:
        return name in self._handlers

    async def dispatch(self, name: str, *args: Any) -> Any:
        handler = self._handlers.get(name)
        if handler is None:
            raise CommandError(f"Unknown command: {name}")
        logger.debug(f"Dispatching {name}")
        return await handler(*args)


def build_router(app: "CompanionApp") -> CommandRouter:
    """Register the default command set against a running app."""
    router = CommandRouter()
    config = app.config

    # === Config ===

    @router.command("config:get")
    async def get_config():
        return config.get_config()

    @router.command("config:set")
    async def set_config(values: dict):
        config.set_config(values)
        return True

    @router.command("config:getWowPath")
    async def get_wow_path():
        return config.get_wow_path()

    @router.command("config:setWowPath")
    async def set_wow_path(wow_path: str):
        config.set_wow_path(wow_path)
        return True

    @router.command("config:setAutoUpload")
    async def set_auto_upload(enabled: bool):
        config.set_auto_upload_enabled(enabled)
        return True

    @router.command("file:checkWowInstallation")
    async def check_wow_installation(wow_path: str):
        return config.validate_wow_path(wow_path)

    # === Watcher ===

    @router.command("watcher:start")
    async def start_watcher():
        try:
            await app.detector.start()
            return {"success": True}
        except PathError as e:
            logger.error(f"Failed to start watcher: {e}")
            return {"success": False, "error": str(e)}

    @router.command("watcher:stop")
    async def stop_watcher():
        await app.detector.stop()
        return {"success": True}

    @router.command("watcher:getStatus")
    async def watcher_status():
        return app.detector.get_status().to_dict()

    # === Upload ===

    @router.command("upload:testConnection")
    async def test_connection():
        result = await app.client.test_connection()
        return result.to_dict()

    @router.command("upload:forceSync")
    async def force_sync():
        result = await app.client.force_sync()
        return result.to_dict()

    @router.command("upload:getQueueStatus")
    async def queue_status():
        return app.queue.get_status()

    @router.command("upload:clearQueue")
    async def clear_queue():
        app.queue.clear()
        return True

    @router.command("upload:retryFailed")
    async def retry_failed():
        app.queue.retry_failed()
        return True

    # === Device ===

    @router.command("device:register")
    async def register_device(code: str, device_name: Optional[str] = None):
        return await app.client.register_device(code, device_name)

    @router.command("app:getVersion")
    async def get_version():
        return app.settings.app_version

    return router
