from __future__ import annotations

import base64
import binascii
import hashlib
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..settings import settings

_IV_BYTES = 12  # GCM nonce
_TAG_BYTES = 16


def _get_key() -> bytes:
    raw = settings.pagination_token_key or "local-dev-pagination-key"
    return hashlib.sha256(str(raw).encode("utf-8")).digest()  # 32 bytes


def _b64(raw: bytes) -> str:
    # URL-safe: tokens travel in query strings.
    return base64.urlsafe_b64encode(raw).decode("ascii")


def encrypt_string(plain_text: Any) -> str | None:
    if plain_text is None:
        return None

    text = str(plain_text)
    iv = os.urandom(_IV_BYTES)

    aesgcm = AESGCM(_get_key())
    ct_with_tag = aesgcm.encrypt(iv, text.encode("utf-8"), None)
    ciphertext = ct_with_tag[:-_TAG_BYTES]
    tag = ct_with_tag[-_TAG_BYTES:]

    return ":".join(["v1", _b64(iv), _b64(tag), _b64(ciphertext)])


def decrypt_string(cipher_text: Any) -> str | None:
    """Plain text, or None when the token is malformed, tampered or sealed under another key."""
    if not cipher_text:
        return None

    parts = str(cipher_text).split(":")
    if len(parts) != 4 or parts[0] != "v1":
        return None

    _, iv_b64, tag_b64, data_b64 = parts

    try:
        iv = base64.urlsafe_b64decode(iv_b64.encode("ascii"))
        tag = base64.urlsafe_b64decode(tag_b64.encode("ascii"))
        data = base64.urlsafe_b64decode(data_b64.encode("ascii"))
    except (binascii.Error, UnicodeError, ValueError):
        return None
    if len(iv) != _IV_BYTES or len(tag) != _TAG_BYTES:
        return None

    try:
        pt = AESGCM(_get_key()).decrypt(iv, data + tag, None)
    except InvalidTag:
        return None
    try:
        return pt.decode("utf-8")
    except UnicodeDecodeError:
        return None
