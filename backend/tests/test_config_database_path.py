import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import config


def test_detect_project_root_is_backend_parent(tmp_path):
    backend_dir = tmp_path / "repo" / "backend"
    backend_dir.mkdir(parents=True, exist_ok=True)

    assert config._detect_project_root(backend_dir) == (tmp_path / "repo").resolve()


def test_relative_sqlite_path_resolves_under_project_root(tmp_path, monkeypatch):
    project_root = tmp_path / "project"
    project_root.mkdir()
    monkeypatch.setattr(config, "_PROJECT_ROOT", project_root.resolve())

    normalized = config.Settings._normalize_database_url("sqlite+aiosqlite:///./data/marketpipe.db")

    expected_path = (project_root / "data" / "marketpipe.db").resolve()
    assert normalized == f"sqlite+aiosqlite:///{expected_path}"
    assert expected_path.parent.is_dir()


def test_sync_sqlite_url_is_upgraded_to_async(tmp_path):
    target = tmp_path / "pipeline.db"

    normalized = config.Settings._normalize_database_url(f"sqlite:///{target}")

    assert normalized == f"sqlite+aiosqlite:///{target.resolve()}"


def test_postgres_urls_use_asyncpg():
    assert (
        config.Settings._normalize_database_url("postgres://u:p@db:5432/markets")
        == "postgresql+asyncpg://u:p@db:5432/markets"
    )
    assert (
        config.Settings._normalize_database_url("postgresql://u:p@db/markets")
        == "postgresql+asyncpg://u:p@db/markets"
    )


def test_in_memory_sqlite_is_kept():
    assert config.Settings._normalize_database_url("sqlite:///:memory:") == "sqlite+aiosqlite:///:memory:"


def test_blank_optional_settings_become_none():
    settings = config.Settings(RABBITMQ_URL="  ", API_BASE_URL="http://api.local:8000/")

    assert settings.RABBITMQ_URL is None
    assert settings.API_BASE_URL == "http://api.local:8000"
