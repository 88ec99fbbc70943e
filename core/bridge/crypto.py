"""
Webhook payload decryption

Encrypted pushes arrive as {"encrypt": "<base64>"}. The AES-256-CBC key is the
SHA-256 digest of the configured encrypt key; the first 16 bytes of the
decoded payload are the IV.
"""

import base64
import binascii
import hashlib
import json
from typing import Any, Dict

from Crypto.Cipher import AES
from Crypto.Util.Padding import unpad


class DecryptionError(Exception):
    """The payload could not be decrypted into a JSON object."""


def derive_key(encrypt_key: str) -> bytes:
    return hashlib.sha256(encrypt_key.encode("utf-8")).digest()


def decrypt_text(encrypt_key: str, encrypted: str) -> str:
    try:
        raw = base64.b64decode(encrypted)
    except (binascii.Error, ValueError) as e:
        raise DecryptionError(f"invalid base64 payload: {e}") from e

    if len(raw) <= AES.block_size or len(raw) % AES.block_size:
        raise DecryptionError(f"invalid ciphertext length: {len(raw)}")

    iv, body = raw[:AES.block_size], raw[AES.block_size:]
    cipher = AES.new(derive_key(encrypt_key), AES.MODE_CBC, iv)
    try:
        plain = unpad(cipher.decrypt(body), AES.block_size)
        return plain.decode("utf-8")
    except (ValueError, UnicodeDecodeError) as e:
        raise DecryptionError(f"decryption failed: {e}") from e


def decrypt_payload(encrypt_key: str, encrypted: str) -> Dict[str, Any]:
    """
    Decrypt an `encrypt` field into the event body.

    Raises:
        DecryptionError: bad base64, bad padding, or a non-object plaintext
    """
    text = decrypt_text(encrypt_key, encrypted)
    try:
        body = json.loads(text)
    except json.JSONDecodeError as e:
        raise DecryptionError(f"decrypted payload is not JSON: {e}") from e
    if not isinstance(body, dict):
        raise DecryptionError("decrypted payload is not a JSON object")
    return body
