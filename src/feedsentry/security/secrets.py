from __future__ import annotations

import base64
import binascii
import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

MASTER_KEY_ENV = "FEEDSENTRY_MASTER_KEY"
KEY_ID_ENV = "FEEDSENTRY_KEY_ID"

DEFAULT_KEY_ID = "v1"
HKDF_INFO = b"feedsentry:secrets:v1"
NONCE_BYTES = 12


@dataclass(frozen=True)
class SecretBox:
    key_id: str
    aesgcm: AESGCM


def load_secret_box() -> SecretBox:
    master_b64 = os.environ.get(MASTER_KEY_ENV, "")
    if not master_b64:
        raise ValueError(f"Master key is not set. Set {MASTER_KEY_ENV}.")

    try:
        master = base64.urlsafe_b64decode(_pad_b64(master_b64))
    except (binascii.Error, ValueError) as exc:
        raise ValueError("Master key is not valid base64url") from exc

    if len(master) != 32:
        raise ValueError("Master key must be 32 bytes (base64url encoded)")

    hkdf = HKDF(algorithm=hashes.SHA256(), length=32, salt=None, info=HKDF_INFO)
    return SecretBox(
        key_id=os.environ.get(KEY_ID_ENV) or DEFAULT_KEY_ID,
        aesgcm=AESGCM(hkdf.derive(master)),
    )


def feed_aad(feed_id: str) -> bytes:
    return f"feed:{feed_id}".encode("utf-8")


def encrypt_secret(plaintext: str, aad: bytes) -> tuple[str, str]:
    box = load_secret_box()
    nonce = os.urandom(NONCE_BYTES)
    ciphertext = box.aesgcm.encrypt(nonce, plaintext.encode("utf-8"), aad)
    blob = base64.urlsafe_b64encode(nonce + ciphertext).decode("utf-8")
    return box.key_id, blob


def decrypt_secret(blob_b64: str, aad: bytes) -> str:
    box = load_secret_box()
    data = base64.urlsafe_b64decode(_pad_b64(blob_b64))
    try:
        plaintext = box.aesgcm.decrypt(data[:NONCE_BYTES], data[NONCE_BYTES:], aad)
    except InvalidTag as exc:
        raise ValueError("secret could not be decrypted with the configured key") from exc
    return plaintext.decode("utf-8")


def encrypt_feed_password(feed_id: str, password: str) -> tuple[str, str]:
    return encrypt_secret(password, feed_aad(feed_id))


def decrypt_feed_password(feed_id: str, blob_b64: str) -> str:
    return decrypt_secret(blob_b64, feed_aad(feed_id))


def _pad_b64(value: str) -> str:
    padding = "=" * (-len(value) % 4)
    return value + padding
