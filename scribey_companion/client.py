"""
Scribey Companion - HTTP Client

Async client for the Scribey companion API. Every request carries the
device identity and app version headers and is bounded by the configured
timeout; any transport failure, timeout or non-200 response on upload
surfaces as ``DeliveryError`` so the upload queue can apply its retry policy.
"""

from __future__ import annotations

import logging
import socket
import time
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from .config import CompanionSettings, ConfigProvider, get_settings
from .errors import DeliveryError
from .models import QueueItem, now_ms

logger = logging.getLogger(__name__)

STATUS_ENDPOINT = "/api/companion/status"
UPLOAD_ENDPOINT = "/api/companion/upload"
SYNC_ENDPOINT = "/api/companion/sync"
REGISTER_ENDPOINT = "/api/companion/register-device"


@dataclass
class ConnectionTest:
    """Result of a connectivity check."""
    success: bool
    latency_ms: Optional[float] = None
    error: Optional[str] = None
    server_info: Optional[dict] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "latency": self.latency_ms,
            "error": self.error,
            "serverInfo": self.server_info,
        }


@dataclass
class UploadResponse:
    """Outcome reported back to the command handler."""
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    timestamp: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "message": self.message,
            "error": self.error,
            "timestamp": self.timestamp,
        }


def build_upload_payload(item: QueueItem, device_id: str) -> dict:
    """Request body for POST /api/companion/upload."""
    addon_data = item.snapshot.to_dict()
    return {
        "deviceId": device_id,
        "filePath": item.source_path,
        "timestamp": item.enqueued_at,
        "addonData": addon_data,
        "characters": list(addon_data["characters"].values()),
    }


class CompanionClient:
    """HTTP transport for the Scribey companion endpoints."""

    def __init__(
        self,
        config: ConfigProvider,
        settings: Optional[CompanionSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.settings = settings or get_settings()
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.settings.http_timeout),
                headers={
                    "Content-Type": "application/json",
                    "User-Agent": f"Scribey-Companion/{self.settings.app_version}",
                    "X-App-Version": self.settings.app_version,
                },
                transport=self._transport,
            )
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    def _url(self, endpoint: str) -> str:
        return f"{self.config.get_server_url()}{endpoint}"

    async def _request(self, method: str, endpoint: str, **kwargs) -> httpx.Response:
        """Send a request with device headers; transport failures become DeliveryError."""
        client = await self._get_http_client()
        headers = kwargs.pop("headers", {})
        headers["X-Device-ID"] = self.config.get_device_id()

        try:
            return await client.request(method, self._url(endpoint), headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise DeliveryError(f"Request to {endpoint} timed out: {e}")
        except httpx.RequestError as e:
            raise DeliveryError(f"Network error on {endpoint}: {e}")

    # === Operations ===

    async def test_connection(self) -> ConnectionTest:
        """Call the status endpoint and measure round-trip latency."""
        start = time.perf_counter()
        try:
            response = await self._request("GET", STATUS_ENDPOINT)
            response.raise_for_status()
            latency = (time.perf_counter() - start) * 1000
            try:
                server_info = response.json()
            except ValueError:
                server_info = None
            logger.info(f"Connection test successful ({latency:.0f} ms): {server_info}")
            return ConnectionTest(success=True, latency_ms=latency, server_info=server_info)

        except (DeliveryError, httpx.HTTPStatusError) as e:
            logger.error(f"Connection test failed: {e}")
            return ConnectionTest(success=False, error=str(e))

    async def upload(self, item: QueueItem) -> Any:
        """
        Deliver one queued snapshot.

        Returns:
            The decoded response body.

        Raises:
            DeliveryError: On network failure, timeout or a non-200 status.
        """
        payload = build_upload_payload(item, self.config.get_device_id())
        logger.info(
            f"Uploading data for {len(item.snapshot.characters)} characters "
            f"from {item.source_path}"
        )

        response = await self._request("POST", UPLOAD_ENDPOINT, json=payload)
        if response.status_code != 200:
            raise DeliveryError(
                f"Upload failed with status {response.status_code}: {response.reason_phrase}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError:
            body = response.text
        logger.debug(f"Upload response: {body}")
        return body

    async def force_sync(self) -> UploadResponse:
        """Ask the server to resync this device. Independent of the queue."""
        try:
            response = await self._request(
                "POST",
                SYNC_ENDPOINT,
                json={
                    "deviceId": self.config.get_device_id(),
                    "forceSync": True,
                    "timestamp": now_ms(),
                },
            )
            response.raise_for_status()
            logger.info(f"Force sync successful: {response.text}")
            return UploadResponse(
                success=True,
                message="Force sync completed - manually triggered data synchronization",
                timestamp=now_ms(),
            )
        except (DeliveryError, httpx.HTTPStatusError) as e:
            logger.error(f"Force sync failed: {e}")
            return UploadResponse(success=False, error=str(e))

    async def register_device(self, code: str, device_name: Optional[str] = None) -> dict:
        """Pair this device with a Scribey account using a one-time code."""
        try:
            response = await self._request(
                "POST",
                REGISTER_ENDPOINT,
                json={
                    "code": code.upper(),
                    "deviceId": self.config.get_device_id(),
                    "deviceName": device_name or socket.gethostname(),
                },
            )
        except DeliveryError as e:
            logger.error(f"Device registration error: {e}")
            return {"success": False, "error": str(e)}

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.is_success and data.get("success"):
            logger.info(f"Device registered successfully: {data.get('device')}")
            return data

        error = data.get("error") or f"Registration failed with status {response.status_code}"
        logger.error(f"Device registration error: {error}")
        return {"success": False, "error": error}
