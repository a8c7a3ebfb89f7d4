import base64

import pytest

from feedsentry.security.secrets import (
    decrypt_feed_password,
    decrypt_secret,
    encrypt_feed_password,
    encrypt_secret,
)


def test_encrypt_decrypt_roundtrip(master_key):
    key_id, blob = encrypt_secret("supersecret", b"feed:test")
    assert key_id == "v1"
    assert "supersecret" not in blob
    assert decrypt_secret(blob, b"feed:test") == "supersecret"


def test_feed_password_bound_to_feed(master_key):
    _, blob = encrypt_feed_password("acme", "hunter2")
    assert decrypt_feed_password("acme", blob) == "hunter2"
    with pytest.raises(ValueError):
        decrypt_feed_password("other", blob)


def test_wrong_master_key_fails(master_key, monkeypatch):
    _, blob = encrypt_feed_password("acme", "hunter2")
    other = base64.urlsafe_b64encode(b"z" * 32).decode("utf-8")
    monkeypatch.setenv("FEEDSENTRY_MASTER_KEY", other)
    with pytest.raises(ValueError):
        decrypt_feed_password("acme", blob)


def test_missing_or_short_master_key(monkeypatch):
    monkeypatch.delenv("FEEDSENTRY_MASTER_KEY", raising=False)
    with pytest.raises(ValueError, match="not set"):
        encrypt_secret("x", b"aad")
    monkeypatch.setenv("FEEDSENTRY_MASTER_KEY", base64.urlsafe_b64encode(b"short").decode("utf-8"))
    with pytest.raises(ValueError, match="32 bytes"):
        encrypt_secret("x", b"aad")
