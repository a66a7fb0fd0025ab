"""Tests for settings loading and the database/app wiring built from them."""

import pytest
from advanced_alchemy.utils.dataclass import Empty

from imagepipe.app_factory import create_app, create_db_config, max_request_body
from imagepipe.config import (
    DatabaseConfig,
    Settings,
    UploadConfig,
    UploadPolicyConfig,
    get_settings,
    interpolate_env_vars,
)

from conftest import SECRET


@pytest.fixture
def fresh_settings(tmp_path, monkeypatch):
    """Isolate get_settings from the developer's .env and app.yaml."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", SECRET)
    monkeypatch.delenv("IMAGEPIPE_CONFIG", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class TestInterpolation:
    def test_nested_values(self, monkeypatch):
        monkeypatch.setenv("BUCKET_NAME", "prod-images")
        value = {"buckets": [{"bucket": "$BUCKET_NAME"}], "port": 8080}
        assert interpolate_env_vars(value) == {"buckets": [{"bucket": "prod-images"}], "port": 8080}

    def test_missing_variable(self, monkeypatch):
        monkeypatch.delenv("NOT_SET_ANYWHERE", raising=False)
        with pytest.raises(ValueError, match=r"\$NOT_SET_ANYWHERE not set"):
            interpolate_env_vars("$NOT_SET_ANYWHERE")


class TestGetSettings:
    def test_defaults_without_app_yaml(self, fresh_settings):
        settings = get_settings()

        assert settings.secret_key == SECRET
        assert settings.storage.default == "uploads"
        assert settings.access.default_ttl == 3600
        assert settings.middleware == []

    def test_yaml_sections_are_merged(self, fresh_settings, temp_app_yaml, monkeypatch, tmp_path):
        monkeypatch.setenv("PRIVATE_ROOT", str(tmp_path / "private"))
        path = temp_app_yaml({
            "debug": True,
            "db": {"url": "sqlite+aiosqlite:///./other.db", "create_all": True},
            "storage": {
                "default": "uploads",
                "buckets": {
                    "uploads": {"local_path": "./storage/uploads"},
                    "private_files": {"local_path": "$PRIVATE_ROOT", "public": False},
                },
            },
            "access": {"default_ttl": 600},
            "middleware": ["myauth:create_auth_middleware"],
        })
        monkeypatch.setenv("IMAGEPIPE_CONFIG", str(path))

        settings = get_settings()

        assert settings.debug is True
        assert settings.db.create_all is True
        assert settings.storage.buckets["private_files"].local_path == str(tmp_path / "private")
        assert settings.storage.buckets["private_files"].public is False
        assert settings.access.default_ttl == 600
        assert settings.middleware == ["myauth:create_auth_middleware"]


class TestCreateDbConfig:
    def test_sqlite_skips_pool_settings(self):
        settings = Settings(secret_key=SECRET, db=DatabaseConfig(url="sqlite+aiosqlite:///./t.db", echo=True))

        config = create_db_config(settings)

        assert config.connection_string == "sqlite+aiosqlite:///./t.db"
        assert config.engine_config.echo is True
        assert config.engine_config.pool_size is Empty

    def test_server_database_uses_pool_settings(self):
        settings = Settings(
            secret_key=SECRET,
            db=DatabaseConfig(url="postgresql+asyncpg://u:p@db/images", pool_size=20, pool_overflow=5),
        )

        config = create_db_config(settings)

        assert config.engine_config.pool_size == 20
        assert config.engine_config.max_overflow == 5
        assert config.engine_config.pool_pre_ping is True
        assert config.session_config.expire_on_commit is False


class TestCreateApp:
    def test_request_body_limit_follows_policies(self):
        settings = Settings(
            secret_key=SECRET,
            uploads=UploadConfig(
                max_files=2,
                policies={"image": UploadPolicyConfig(allowed_types=["image/png"], max_bytes=1000)},
            ),
        )
        assert max_request_body(settings) == 2000 + 1024 * 1024

    def test_collaborators_on_state(self, settings):
        app = create_app(settings, middleware=[])

        assert app.state.settings is settings
        assert app.state.upload_orchestrator.storage is app.state.storage_manager
        assert app.state.access_links is not None
