import base64

import pytest
from cryptography.exceptions import InvalidTag

from newsrelay.services.channels_service import (
    clear_channel_secret,
    get_channel_secret_status,
    load_channel_secret,
    set_channel_secret,
)


def _set_master_key(monkeypatch):
    key = base64.urlsafe_b64encode(b"k" * 32).decode("utf-8").rstrip("=")
    monkeypatch.setenv("NR_MASTER_KEY", key)


def test_channel_secret_is_encrypted_at_rest(conn, monkeypatch):
    _set_master_key(monkeypatch)

    status = set_channel_secret(conn, "email", "re_live_secret_1234")

    assert status["stored"] is True
    assert status["last4"] == "1234"
    assert status["keyId"] == "v1"
    stored = conn.execute("SELECT secret_enc FROM channel_secrets WHERE channel = 'email'").fetchone()[0]
    assert "re_live_secret" not in stored
    assert load_channel_secret(conn, "email") == "re_live_secret_1234"


def test_secret_is_bound_to_its_channel(conn, monkeypatch):
    _set_master_key(monkeypatch)
    set_channel_secret(conn, "email", "re_live_secret_1234")
    blob = conn.execute("SELECT secret_enc FROM channel_secrets WHERE channel = 'email'").fetchone()[0]
    set_channel_secret(conn, "telegram", "placeholder")
    conn.execute("UPDATE channel_secrets SET secret_enc = ? WHERE channel = 'telegram'", (blob,))
    conn.commit()

    with pytest.raises(InvalidTag):
        load_channel_secret(conn, "telegram")


def test_env_fallback_after_clear(conn, monkeypatch):
    _set_master_key(monkeypatch)
    monkeypatch.setenv("NR_TELEGRAM_BOT_TOKEN", "123:from-env")
    set_channel_secret(conn, "telegram", "123:stored")

    assert load_channel_secret(conn, "telegram") == "123:stored"
    assert clear_channel_secret(conn, "telegram") is True
    assert clear_channel_secret(conn, "telegram") is False
    assert load_channel_secret(conn, "telegram") == "123:from-env"
    status = get_channel_secret_status(conn, "telegram")
    assert status["stored"] is False
    assert status["envFallback"] is True


def test_missing_secret_loads_none(conn):
    assert load_channel_secret(conn, "email") is None


def test_unknown_channel_is_rejected(conn):
    with pytest.raises(ValueError, match="channel_not_supported"):
        get_channel_secret_status(conn, "sms")


def test_master_key_is_required(conn):
    with pytest.raises(ValueError, match="NR_MASTER_KEY"):
        set_channel_secret(conn, "email", "re_live_secret_1234")
