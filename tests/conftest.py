"""Shared fixtures for crm-reminders tests."""

import os

os.environ.setdefault("CRM_BUSINESS_NAME", "Test Studio")
os.environ.setdefault("CRM_TIMEZONE", "Asia/Jerusalem")

from zoneinfo import ZoneInfo

import pytest

from crm_reminders.engine import EngineSettings

HOME_TZ = ZoneInfo("Asia/Jerusalem")


class FakeMailer:
    """Records sends; addresses in fail_for raise, addresses in hang_for block."""

    def __init__(self, fail_for=(), hang_for=()):
        self.sent: list[tuple[str, str, str]] = []
        self.fail_for = set(fail_for)
        self.hang_for = set(hang_for)

    def send(self, to, subject, body):
        if to in self.hang_for:
            import time

            time.sleep(0.5)
        if to in self.fail_for:
            raise ConnectionError(f"smtp refused {to}")
        self.sent.append((to, subject, body))

    @property
    def recipients(self):
        return [to for to, _, _ in self.sent]


@pytest.fixture()
def data_dir(tmp_path, monkeypatch):
    """Redirect all data file paths to a temp directory."""
    import crm_reminders.storage as storage_mod

    monkeypatch.setattr(storage_mod, "DATA_DIR", tmp_path)
    monkeypatch.setattr(storage_mod, "STATE_DIR", tmp_path / "state")
    monkeypatch.setattr(storage_mod, "ENTITIES_DIR", tmp_path / "entities")
    return tmp_path


@pytest.fixture()
def store(data_dir):
    from crm_reminders.storage import open_store

    return open_store()


@pytest.fixture()
def mailer():
    return FakeMailer()


@pytest.fixture()
def settings():
    return EngineSettings(
        tz=HOME_TZ,
        io_timeout=2.0,
        max_concurrency=4,
        business_name="Test Studio",
    )
