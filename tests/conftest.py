import contextlib
import gc
from pathlib import Path

import pytest

from agent_mail_core.config import clear_settings_cache
from agent_mail_core.db import reset_database_state
from agent_mail_core.storage import clear_repo_cache


def _close_stray_repos() -> None:
    from git import Repo

    gc.collect()
    for obj in gc.get_objects():
        if isinstance(obj, Repo):
            with contextlib.suppress(Exception):
                obj.close()


@pytest.fixture
def isolated_env(tmp_path, monkeypatch):
    """Provide an isolated database and archive root for each test and reset caches."""
    db_path: Path = tmp_path / "test.sqlite3"
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("APP_ENVIRONMENT", "test")
    storage_root = tmp_path / "storage"
    monkeypatch.setenv("STORAGE_ROOT", str(storage_root))
    monkeypatch.setenv("GIT_AUTHOR_NAME", "test-agent")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "test@example.com")
    monkeypatch.setenv("ARCHIVE_WRITE_BACKOFF_SECONDS", "0.01")
    monkeypatch.setenv("LOG_RICH_ENABLED", "false")
    clear_settings_cache()
    reset_database_state()
    clear_repo_cache()
    try:
        yield tmp_path
    finally:
        clear_repo_cache()
        import warnings

        with warnings.catch_warnings():
            warnings.filterwarnings("ignore", category=ResourceWarning)
            with contextlib.suppress(Exception):
                _close_stray_repos()
        clear_settings_cache()
        reset_database_state()


@pytest.fixture(autouse=True)
def _global_resource_cleanup():
    """Best-effort cleanup so tests that skip `isolated_env` do not leak engines or repo handles."""
    yield
    with contextlib.suppress(Exception):
        clear_repo_cache()
    with contextlib.suppress(Exception):
        reset_database_state()
    with contextlib.suppress(Exception):
        clear_settings_cache()
    with contextlib.suppress(Exception):
        _close_stray_repos()
