from wacore.utils.config import Settings, get_settings


def test_settings_defaults(monkeypatch):
    monkeypatch.delenv("APP_ENV", raising=False)
    monkeypatch.delenv("MESSAGE_RETENTION_LIMIT", raising=False)
    monkeypatch.delenv("SEND_MAX_ATTEMPTS", raising=False)

    s = Settings()
    assert s.app_env == "local"
    assert s.message_retention_limit == 20
    assert s.send_max_attempts == 3
    assert s.qr_wait_attempts == 30
    assert s.sync_cooldown_s == 300


def test_settings_respects_env_vars(monkeypatch):
    monkeypatch.setenv("GATEWAY_URL", "http://gateway:3000")
    monkeypatch.setenv("SYNC_COOLDOWN_S", "60")

    s = Settings()
    assert s.gateway_url == "http://gateway:3000"
    assert s.sync_cooldown_s == 60


def test_get_settings_is_cached(monkeypatch):
    get_settings.cache_clear()
    monkeypatch.setenv("APP_VERSION", "9.9.9")
    first = get_settings()
    monkeypatch.setenv("APP_VERSION", "1.0.0")
    assert get_settings() is first
    assert first.app_version == "9.9.9"
    get_settings.cache_clear()
