"""Settings Tests."""

from rext_config.settings import Settings


def test_settings_load_defaults():
    """Test settings load with defaults."""
    settings = Settings()
    assert settings.LISTEN_PORT == 8080
    assert settings.METRICS_PATH == "/metrics"
    assert settings.WORKER_COUNT == 6
    assert settings.TOKEN_REFRESH_STATUSES == [401, 403]


def test_settings_from_environment(monkeypatch):
    """Test environment variables override defaults."""
    monkeypatch.setenv("WORKER_COUNT", "12")
    monkeypatch.setenv("SCRAPE_TIMEOUT_SECONDS", "2.5")
    monkeypatch.setenv("TOKEN_REFRESH_STATUSES", "[401]")

    settings = Settings()

    assert settings.WORKER_COUNT == 12
    assert settings.SCRAPE_TIMEOUT_SECONDS == 2.5
    assert settings.TOKEN_REFRESH_STATUSES == [401]


def test_token_refresh_policy():
    """Test refresh triggers on 401/403 only by default."""
    settings = Settings()
    assert settings.refreshes_token_on(401)
    assert settings.refreshes_token_on(403)
    assert not settings.refreshes_token_on(500)
    assert not settings.refreshes_token_on(200)


def test_token_refresh_any_status():
    """Test the widened policy refreshes on any non-200."""
    settings = Settings(TOKEN_REFRESH_ON_ANY_STATUS=True)
    assert settings.refreshes_token_on(500)
    assert not settings.refreshes_token_on(200)
