import os

import pytest
from pydantic import ValidationError

from authgate.config import Settings, get_settings, reset_settings_cache
from authgate.logging import _add_correlation_id, _redact_pii, sanitize_error_message, set_correlation_id


def test_from_env_reads_environment_over_dotenv(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    (tmp_path / ".env").write_text(
        "OAUTH_ISSUER=https://from-dotenv.example\nREFRESH_TOKEN_TTL_DAYS=3\n"
    )
    monkeypatch.setenv("OAUTH_ISSUER", "https://from-env.example")
    monkeypatch.setenv("REFRESH_ROTATION_LOCK", "true")
    settings = Settings.from_env()
    assert settings.oauth_issuer == "https://from-env.example"
    assert settings.refresh_token_ttl_days == 3
    assert settings.refresh_rotation_lock is True


def test_defaults(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    settings = Settings(jwt_secret="x" * 40)
    assert settings.refresh_token_ttl_days == 7
    assert settings.refresh_token_scan_limit == 500
    assert settings.oauth_discovery_ttl_seconds == 600
    assert settings.oauth_http_timeout_seconds == 10.0
    assert settings.refresh_rotation_lock is False


@pytest.mark.parametrize("field", ["refresh_token_ttl_days", "refresh_token_scan_limit"])
def test_positive_integers_enforced(field):
    with pytest.raises(ValidationError):
        Settings(jwt_secret="x" * 40, **{field: 0})


def test_client_presets_order_and_shared_secret():
    settings = Settings(
        jwt_secret="x" * 40,
        oauth_web_client_secret="shared",
        oauth_web_client_id_next="n",
        oauth_web_redirect_uri_expo="https://expo.example/cb",
        oauth_web_client_id="d",
    )
    next_preset, expo_preset, default_preset = settings.client_presets()
    assert [p.name for p in settings.client_presets()] == ["next", "expo", "default"]
    assert next_preset.client_id == "n" and next_preset.use_shared_secret
    assert expo_preset.redirect_uris == "https://expo.example/cb"
    assert default_preset.client_secret == "shared"
    assert not default_preset.use_shared_secret


def test_jwt_secret_generated_once_and_persisted(monkeypatch, tmp_path):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    first = Settings(jwt_secret=None)
    second = Settings()
    assert first.jwt_secret == second.jwt_secret
    assert len(first.jwt_secret) >= 32
    assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret
    assert not [p for p in os.listdir(tmp_path) if p.endswith(".tmp")]


def test_get_settings_is_cached_until_reset(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    assert get_settings() is first
    monkeypatch.setenv("OAUTH_ISSUER", "https://changed.example")
    assert get_settings().oauth_issuer == first.oauth_issuer
    reset_settings_cache()
    assert get_settings().oauth_issuer == "https://changed.example"
    reset_settings_cache()


def test_redact_pii_masks_secrets_but_keeps_codes():
    event = {
        "event": "oauth_token_exchange_failed",
        "email": "person@example.com",
        "refresh_token": "abcdefghijkl",
        "code": "4/0AX-authorization-code",
        "status_code": 400,
        "message_code": "auth_token_exchange_failed",
        "client_id": "c1",
    }
    redacted = _redact_pii(None, "info", dict(event))
    assert redacted["email"] == "pe***om"
    assert redacted["refresh_token"] == "ab***kl"
    assert redacted["code"].startswith("4/") and "***" in redacted["code"]
    assert redacted["status_code"] == 400
    assert redacted["message_code"] == "auth_token_exchange_failed"
    assert redacted["client_id"] == "c1"


def test_correlation_id_processor():
    cid = set_correlation_id("corr-1")
    assert _add_correlation_id(None, "info", {})["correlation_id"] == cid


@pytest.mark.parametrize(
    "raw,leaked",
    [
        ("client_secret=abc123 rejected", "abc123"),
        ("upstream said Bearer eyJhbGciOi.payload.sig", "eyJhbGciOi"),
        ("cannot open /etc/authgate/keys.pem", "/etc/authgate"),
    ],
)
def test_sanitize_error_message_strips_sensitive_text(raw, leaked):
    cleaned = sanitize_error_message(raw)
    assert leaked not in cleaned
    assert "[redacted]" in cleaned


def test_sanitize_error_message_truncates_and_handles_empty():
    assert sanitize_error_message("x" * 50, max_length=10) == "xxxxxxx..."
    assert sanitize_error_message("") == "An error occurred"
    assert sanitize_error_message("invalid_grant") == "invalid_grant"
