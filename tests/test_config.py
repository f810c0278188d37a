import pytest
from pydantic import ValidationError

from adminauth.config import Settings, get_settings, parse_duration_seconds, reset_settings_cache


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("900", 900),
        ("30s", 30),
        ("15m", 900),
        ("1h", 3600),
        ("1d", 86400),
        (" 2H ", 7200),
        (120, 120),
    ],
)
def test_parse_duration_seconds(raw, expected):
    assert parse_duration_seconds(raw) == expected


@pytest.mark.parametrize("raw", ["", "soon", "15 minutes", "-5", "0", 0, None, True])
def test_parse_duration_falls_back_to_default(raw):
    assert parse_duration_seconds(raw) == 900


def test_defaults():
    settings = Settings()

    assert settings.access_token_ttl_seconds == 900
    assert settings.refresh_token_ttl_seconds == 7 * 24 * 3600
    assert settings.auth_code_ttl_seconds == 600
    assert settings.id_token_ttl_seconds == 3600
    assert settings.default_role == "operator"
    assert settings.access_cookie_name == "accessToken"


def test_from_env_reads_named_variables(monkeypatch):
    monkeypatch.setenv("ACCESS_TOKEN_EXPIRES_IN", "1h")
    monkeypatch.setenv("AUTH_CODE_EXPIRES_IN", "120")
    monkeypatch.setenv("ISSUER_URL", "https://auth.example.com/")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example.com, https://b.example.com")
    reset_settings_cache()

    settings = get_settings()

    assert settings.access_token_ttl_seconds == 3600
    assert settings.auth_code_ttl_seconds == 120
    assert settings.issuer_url == "https://auth.example.com"
    assert settings.cors_allow_origins == ["https://a.example.com", "https://b.example.com"]
    assert get_settings() is settings


def test_blank_redis_url_disables_redis():
    assert Settings(redis_url="  ").redis_url is None


def test_cookie_samesite_validated():
    assert Settings(cookie_samesite="Lax").cookie_samesite == "lax"
    with pytest.raises(ValidationError):
        Settings(cookie_samesite="sometimes")
