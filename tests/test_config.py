from playback_reporting.config import Settings


def test_jellyfin_ws_url():
    settings = Settings(
        jellyfin_url="https://example.test:8920",
        jellyfin_api_key="abc123",
    )
    assert settings.jellyfin_ws_url == "wss://example.test:8920/socket?api_key=abc123"


def test_defaults_match_playback_timing():
    settings = Settings(jellyfin_api_key="abc123")
    assert settings.confirmation_delay_seconds == 20.0
    assert settings.progress_debounce_seconds == 20.0
    assert settings.duration_bucket_seconds == 300


def test_environment_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("CONFIRMATION_DELAY_SECONDS", "5")
    monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "nested" / "reports.db"))

    settings = Settings()

    assert settings.confirmation_delay_seconds == 5.0
    assert settings.database_path_resolved.parent.is_dir()
