import os
from pathlib import Path

import pytest

from deploy_console.core.config import Settings
from deploy_console.services.log_sink import LogSink
from deploy_console.services.status_store import StatusStore


@pytest.fixture
def app_root(tmp_path, monkeypatch) -> Path:
    """Empty application root; no ambient GitHub token leaks in."""
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)
    return tmp_path


@pytest.fixture
def make_settings(app_root):
    def _make(**overrides) -> Settings:
        values = dict(
            APP_ROOT=app_root,
            DEMO_STEP_DELAY_SECONDS=0,
            STEP_PATH=os.environ.get("PATH", "/usr/bin:/bin"),
            GITHUB_TOKEN=None,
            GITHUB_ORG=None,
            GITHUB_REPO=None,
            CLICKUP_API_TOKEN=None,
            DATABASE_URL=None,
        )
        values.update(overrides)
        return Settings(_env_file=None, **values)
    return _make


@pytest.fixture
def settings(make_settings) -> Settings:
    return make_settings()


@pytest.fixture
def status_store(settings) -> StatusStore:
    return StatusStore(settings.path(settings.STATUS_FILE))


@pytest.fixture
def log_sink(settings) -> LogSink:
    return LogSink(settings.path(settings.LOG_FILE))


@pytest.fixture
def make_script(app_root):
    """Write an executable bash script under the app root."""
    def _make(relative: str, body: str, executable: bool = True) -> Path:
        path = app_root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(f"#!/bin/bash\n{body}\n", encoding="utf-8")
        path.chmod(0o755 if executable else 0o644)
        return path
    return _make
