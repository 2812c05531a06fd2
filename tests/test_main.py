"""
Application Tests

Tests for the decode/extract/enqueue pipeline, the command handlers and the
CLI entry point.
"""

import asyncio
import json

import httpx
import pytest

from scribey_companion import main as main_module
from scribey_companion.config import CharacterConfig
from scribey_companion.errors import CommandError, DecodeError
from scribey_companion.main import CompanionApp


SCENARIO_A = (
    'ScribeyDB = { character_data = { ["Foo-Bar"] = { character_name="Foo", '
    'realm_name="Bar", class="MAGE", professions={{name="Tailoring",'
    'skill_level=300,max_skill_level=300}} } } }'
)


class Server:
    """Records requests and answers every endpoint with success."""

    def __init__(self):
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        if request.url.path == "/api/companion/status":
            return httpx.Response(200, json={"status": "ok"})
        return httpx.Response(200, json={"success": True})

    def paths(self):
        return [request.url.path for request in self.requests]


@pytest.fixture
def server():
    return Server()


@pytest.fixture
def app(tmp_path, settings, server):
    return CompanionApp(
        config_path=tmp_path / "config.json",
        settings=settings,
        transport=httpx.MockTransport(server),
    )


@pytest.fixture
def wow_install(tmp_path):
    root = tmp_path / "World of Warcraft"
    saved = root / "_classic_" / "WTF" / "Account" / "ACCOUNT1" / "SavedVariables"
    saved.mkdir(parents=True)
    (saved / "Scribey.lua").write_text(SCENARIO_A, encoding="utf-8")
    return root


class TestProcessFile:
    """Tests for CompanionApp.process_file()."""

    def test_enqueues_snapshot(self, app):
        item = app.process_file("/wow/Scribey.lua", SCENARIO_A)

        assert item is not None
        assert list(item.snapshot.characters) == ["Foo-Bar"]
        assert len(app.queue) == 1

    def test_missing_character_data_is_not_queued(self, app):
        assert app.process_file("/wow/Scribey.lua", "ScribeyDB = { settings = {} }") is None
        assert len(app.queue) == 0

    def test_missing_global(self, app):
        assert app.process_file("/wow/Scribey.lua", "OtherAddonDB = {}") is None

    def test_auto_upload_disabled(self, app):
        app.config.set_auto_upload_enabled(False)
        assert app.process_file("/wow/Scribey.lua", SCENARIO_A) is None
        assert len(app.queue) == 0

    def test_decode_error_propagates(self, app):
        with pytest.raises(DecodeError):
            app.process_file("/wow/Scribey.lua", "if true then ScribeyDB = {} end")


class TestRun:

    def test_run_once_uploads_and_records_sync(self, app, server, wow_install):
        app.config.set_wow_path(str(wow_install))
        app.config.add_character(CharacterConfig(name="Foo", realm="Bar"))

        asyncio.run(app.run(once=True))

        assert server.paths() == ["/api/companion/upload"]
        body = json.loads(server.requests[0].content)
        assert body["characters"][0]["name"] == "Foo"
        assert len(app.queue) == 0
        assert app.config.get_characters()[0].last_sync is not None
        assert not app.detector.is_watching


class TestCommands:
    """Tests for the default command handlers."""

    def dispatch(self, app, name, *args):
        async def run():
            try:
                return await app.router.dispatch(name, *args)
            finally:
                await app.client.close()
        return asyncio.run(run())

    def test_default_commands(self, app):
        for name in (
            "config:get", "config:set", "config:getWowPath", "config:setWowPath",
            "config:setAutoUpload", "file:checkWowInstallation", "watcher:start",
            "watcher:stop", "watcher:getStatus", "upload:testConnection",
            "upload:forceSync", "upload:getQueueStatus", "upload:clearQueue",
            "upload:retryFailed", "device:register", "app:getVersion",
        ):
            assert name in app.router

    def test_unknown_command(self, app):
        with pytest.raises(CommandError):
            self.dispatch(app, "app:quit")

    def test_duplicate_registration(self, app):
        async def handler():
            return None

        with pytest.raises(CommandError):
            app.router.register("config:get", handler)

    def test_wow_path_round_trip(self, app, wow_install):
        assert self.dispatch(app, "config:setWowPath", str(wow_install)) is True
        assert self.dispatch(app, "config:getWowPath") == str(wow_install)
        assert self.dispatch(app, "file:checkWowInstallation", str(wow_install)) is True

    def test_set_auto_upload(self, app):
        self.dispatch(app, "config:setAutoUpload", False)
        assert self.dispatch(app, "config:get")["auto_upload"] is False

    def test_watcher_start_reports_path_error(self, app):
        result = self.dispatch(app, "watcher:start")
        assert result["success"] is False
        assert "not configured" in result["error"]

    def test_watcher_status(self, app):
        status = self.dispatch(app, "watcher:getStatus")
        assert status == {
            "isWatching": False,
            "watchedPaths": [],
            "lastUpdate": None,
            "lastError": None,
        }

    def test_queue_commands(self, app):
        app.process_file("/wow/Scribey.lua", SCENARIO_A)
        assert self.dispatch(app, "upload:getQueueStatus")["queue_length"] == 1

        assert self.dispatch(app, "upload:clearQueue") is True
        assert self.dispatch(app, "upload:getQueueStatus")["queue_length"] == 0

    def test_test_connection(self, app, server):
        result = self.dispatch(app, "upload:testConnection")
        assert result["success"] is True
        assert server.paths() == ["/api/companion/status"]

    def test_force_sync(self, app, server):
        result = self.dispatch(app, "upload:forceSync")
        assert result["success"] is True
        assert server.paths() == ["/api/companion/sync"]

    def test_register_device(self, app, server):
        result = self.dispatch(app, "device:register", "code42")
        assert result["success"] is True
        assert json.loads(server.requests[0].content)["code"] == "CODE42"


class TestCli:

    @pytest.fixture(autouse=True)
    def isolate(self, monkeypatch, settings):
        monkeypatch.setattr(main_module, "get_settings", lambda: settings)
        monkeypatch.setattr(main_module, "setup_logging", lambda **kwargs: None)

    def test_list_paths(self, tmp_path, wow_install, monkeypatch, capsys):
        monkeypatch.setattr(main_module, "find_wow_install_paths", lambda: [wow_install])

        main_module.main([
            "--config", str(tmp_path / "config.json"),
            "--wow-path", str(wow_install),
            "--list-paths",
        ])

        out = capsys.readouterr().out
        assert str(wow_install) in out
        assert "Scribey.lua" in out

    def test_invalid_wow_path(self, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            main_module.main([
                "--config", str(tmp_path / "config.json"),
                "--wow-path", str(tmp_path / "nowhere"),
            ])
        assert exc_info.value.code == 1
