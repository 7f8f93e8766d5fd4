import pytest
from pydantic import ValidationError

from lunasphere.config import Settings
from lunasphere.storage import create_storage
from lunasphere.storage.memory import MemoryStorage
from lunasphere.storage.sql import SQLStorage


def test_defaults():
    settings = Settings()
    assert settings.app_env == "production"
    assert settings.is_development is False
    assert settings.access_token_expire_minutes == 15
    assert settings.refresh_token_expire_days == 30
    assert settings.bcrypt_rounds == 12
    assert settings.admin_username == "admin"
    assert settings.cors_origin_list == ["*"]


def test_from_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)  # keep any developer .env out of the way
    monkeypatch.setenv("APP_ENV", "development")
    monkeypatch.setenv("BCRYPT_ROUNDS", "10")
    monkeypatch.setenv("CORS_ORIGINS", "https://lunasphere.top, http://localhost:3000")
    monkeypatch.setenv("SEND_AUTO_REPLY", "true")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("JWT_ACCESS_SECRET", "one")
    monkeypatch.setenv("JWT_REFRESH_SECRET", "two")

    settings = Settings.from_env()
    assert settings.is_development
    assert settings.bcrypt_rounds == 10
    assert settings.cors_origin_list == ["https://lunasphere.top", "http://localhost:3000"]
    assert settings.send_auto_reply is True
    assert settings.log_level == "DEBUG"


def test_equal_jwt_secrets_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_access_secret="same", jwt_refresh_secret="same")


@pytest.mark.parametrize("rounds", [3, 32])
def test_bcrypt_rounds_bounds(rounds):
    with pytest.raises(ValidationError):
        Settings(bcrypt_rounds=rounds)


def test_unknown_backend_rejected():
    with pytest.raises(ValidationError):
        Settings(storage_backend="redis")


def test_create_storage_by_backend(tmp_path):
    assert isinstance(create_storage(Settings(storage_backend="memory")), MemoryStorage)
    assert isinstance(
        create_storage(Settings(storage_backend="json", data_dir=str(tmp_path))), MemoryStorage
    )
    sql = create_storage(Settings(
        storage_backend="sql", database_url=f"sqlite+aiosqlite:///{tmp_path / 'x.db'}"
    ))
    assert isinstance(sql, SQLStorage)
