"""Shared fixtures for companion tests."""

import pytest

from scribey_companion.config import CompanionSettings, ConfigProvider
from scribey_companion.models import AddonSnapshot, CharacterRecord, ProfessionRecord


class FakeConfig(ConfigProvider):
    """In-memory config provider that records sync updates."""

    def __init__(self, wow_path="", server_url="https://scribey.test", auto_upload=True):
        self.wow_path = wow_path
        self.server_url = server_url
        self.auto_upload = auto_upload
        self.device_id = "device-1234"
        self.synced = []

    def get_wow_path(self):
        return self.wow_path

    def set_wow_path(self, wow_path):
        self.wow_path = wow_path

    def get_server_url(self):
        return self.server_url

    def set_server_url(self, url):
        self.server_url = url

    def is_auto_upload_enabled(self):
        return self.auto_upload

    def get_device_id(self):
        return self.device_id

    def update_character_sync(self, name, realm, timestamp):
        self.synced.append((name, realm, timestamp))


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def settings(tmp_path):
    return CompanionSettings(
        _env_file=None,
        config_path=tmp_path / "config.json",
        queue_db_path=None,
        upload_cooldown_seconds=30,
        redrain_delay_seconds=0,
    )


@pytest.fixture
def config():
    return FakeConfig()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_snapshot():
    def factory(*keys, captured_at=1700000000000):
        characters = {}
        for key in keys:
            name, _, realm = key.partition("-")
            characters[key] = CharacterRecord(
                name=name,
                realm=realm,
                class_name="MAGE",
                professions=[ProfessionRecord(name="Tailoring", skill_level=300, max_skill=300)],
            )
        return AddonSnapshot(characters=characters, captured_at=captured_at)
    return factory
