from __future__ import annotations

import os
from typing import Any

from ..models import CHANNELS
from ..security.secrets import decrypt_secret, encrypt_secret
from ..utils import utc_now_iso

ENV_FALLBACKS = {
    "email": "NR_EMAIL_API_KEY",
    "telegram": "NR_TELEGRAM_BOT_TOKEN",
}


def _channel_aad(channel: str) -> bytes:
    return f"channel:{channel}".encode("utf-8")


def _require_channel(channel: str) -> None:
    if channel not in CHANNELS:
        raise ValueError("channel_not_supported")


def set_channel_secret(conn, channel: str, secret: str) -> dict[str, Any]:
    _require_channel(channel)
    secret = (secret or "").strip()
    if not secret:
        raise ValueError("secret_required")
    key_id, secret_enc = encrypt_secret(secret, _channel_aad(channel))
    last4 = secret[-4:] if len(secret) >= 4 else secret
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO channel_secrets (channel, key_id, secret_enc, secret_last4, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(channel) DO UPDATE SET
            key_id=excluded.key_id,
            secret_enc=excluded.secret_enc,
            secret_last4=excluded.secret_last4,
            updated_at=excluded.updated_at
        """,
        (channel, key_id, secret_enc, last4, now, now),
    )
    conn.commit()
    return get_channel_secret_status(conn, channel)


def clear_channel_secret(conn, channel: str) -> bool:
    _require_channel(channel)
    cursor = conn.execute("DELETE FROM channel_secrets WHERE channel = ?", (channel,))
    conn.commit()
    return cursor.rowcount == 1


def get_channel_secret_status(conn, channel: str) -> dict[str, Any]:
    _require_channel(channel)
    row = conn.execute(
        "SELECT key_id, secret_last4, updated_at FROM channel_secrets WHERE channel = ?",
        (channel,),
    ).fetchone()
    if not row:
        return {
            "channel": channel,
            "stored": False,
            "last4": None,
            "updatedAt": None,
            "envFallback": bool(os.environ.get(ENV_FALLBACKS[channel])),
        }
    key_id, last4, updated_at = row
    return {
        "channel": channel,
        "stored": True,
        "keyId": key_id,
        "last4": last4,
        "updatedAt": updated_at,
        "envFallback": bool(os.environ.get(ENV_FALLBACKS[channel])),
    }


def load_channel_secret(conn, channel: str) -> str | None:
    """Stored secret for the channel, falling back to its environment variable."""
    _require_channel(channel)
    row = conn.execute(
        "SELECT secret_enc FROM channel_secrets WHERE channel = ?",
        (channel,),
    ).fetchone()
    if row:
        return decrypt_secret(row[0], _channel_aad(channel))
    value = os.environ.get(ENV_FALLBACKS[channel], "").strip()
    return value or None
