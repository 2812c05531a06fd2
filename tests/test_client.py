"""
HTTP Client Tests

All requests go through httpx.MockTransport; nothing touches the network.
"""

import asyncio
import json

import httpx
import pytest

from scribey_companion.client import CompanionClient, build_upload_payload
from scribey_companion.errors import DeliveryError
from scribey_companion.models import QueueItem


def run_with_client(config, settings, handler, operation):
    client = CompanionClient(config, settings, transport=httpx.MockTransport(handler))

    async def run():
        try:
            return await operation(client)
        finally:
            await client.close()

    return asyncio.run(run())


@pytest.fixture
def item(make_snapshot):
    return QueueItem(
        snapshot=make_snapshot("Foo-Bar"),
        source_path="/wow/_classic_/WTF/Account/A/SavedVariables/Scribey.lua",
        enqueued_at=1700000000123,
    )


class TestUpload:

    def test_payload_shape(self, item):
        payload = build_upload_payload(item, "device-1234")

        assert payload["deviceId"] == "device-1234"
        assert payload["filePath"] == item.source_path
        assert payload["timestamp"] == 1700000000123
        assert set(payload["addonData"]) == {
            "characters", "auctionData", "craftedCards", "settings", "timestamp", "version",
        }
        assert payload["characters"] == [payload["addonData"]["characters"]["Foo-Bar"]]

    def test_upload_request(self, config, settings, item):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"success": True, "processed": 1})

        body = run_with_client(config, settings, handler, lambda c: c.upload(item))

        assert body == {"success": True, "processed": 1}
        request = seen[0]
        assert request.method == "POST"
        assert str(request.url) == "https://scribey.test/api/companion/upload"
        assert request.headers["X-Device-ID"] == "device-1234"
        assert request.headers["X-App-Version"] == settings.app_version
        assert request.headers["Content-Type"] == "application/json"
        assert json.loads(request.content)["deviceId"] == "device-1234"

    def test_non_200_raises(self, config, settings, item):
        def handler(request):
            return httpx.Response(401, json={"error": "Device not registered"})

        with pytest.raises(DeliveryError) as exc_info:
            run_with_client(config, settings, handler, lambda c: c.upload(item))
        assert exc_info.value.status_code == 401

    def test_timeout_raises_delivery_error(self, config, settings, item):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(DeliveryError, match="timed out"):
            run_with_client(config, settings, handler, lambda c: c.upload(item))

    def test_connection_error_raises_delivery_error(self, config, settings, item):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(DeliveryError) as exc_info:
            run_with_client(config, settings, handler, lambda c: c.upload(item))
        assert exc_info.value.status_code is None


class TestOtherEndpoints:

    def test_connection_ok(self, config, settings):
        def handler(request):
            assert request.url.path == "/api/companion/status"
            return httpx.Response(200, json={"status": "ok", "version": "2.0"})

        result = run_with_client(config, settings, handler, lambda c: c.test_connection())

        assert result.success
        assert result.latency_ms is not None
        assert result.to_dict()["serverInfo"] == {"status": "ok", "version": "2.0"}

    def test_connection_failure(self, config, settings):
        def handler(request):
            return httpx.Response(503)

        result = run_with_client(config, settings, handler, lambda c: c.test_connection())

        assert not result.success
        assert "503" in result.error

    def test_force_sync(self, config, settings):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"success": True})

        result = run_with_client(config, settings, handler, lambda c: c.force_sync())

        assert result.success
        assert bodies[0]["deviceId"] == "device-1234"
        assert bodies[0]["forceSync"] is True
        assert bodies[0]["timestamp"] > 0

    def test_force_sync_failure(self, config, settings):
        def handler(request):
            raise httpx.ConnectError("down", request=request)

        result = run_with_client(config, settings, handler, lambda c: c.force_sync())

        assert not result.success
        assert result.error

    def test_register_device(self, config, settings):
        bodies = []

        def handler(request):
            assert request.url.path == "/api/companion/register-device"
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"success": True, "device": {"name": "pc"}})

        result = run_with_client(
            config, settings, handler, lambda c: c.register_device("abc123", "pc")
        )

        assert result["success"]
        assert bodies[0] == {"code": "ABC123", "deviceId": "device-1234", "deviceName": "pc"}

    def test_register_device_rejected(self, config, settings):
        def handler(request):
            return httpx.Response(400, json={"success": False, "error": "Invalid code"})

        result = run_with_client(
            config, settings, handler, lambda c: c.register_device("zzz")
        )

        assert result == {"success": False, "error": "Invalid code"}

