"""Passphrase-based sealing of the stored credential record.

The key is the SHA-256 digest of the UTF-8 passphrase. Records are sealed
with AES-256-GCM under a fresh random nonce, which is prepended to the
ciphertext, and the result is base64 encoded so it can live in a text file.
"""

import base64
import binascii
import hashlib
import os
from typing import Final

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from socks5_chain.core.exceptions import DecryptError

NONCE_SIZE: Final = 12  # Standard GCM nonce length


def derive_key(passphrase: str) -> bytes:
    """Derive a 256-bit key from a passphrase."""
    return hashlib.sha256(passphrase.encode("utf-8")).digest()


def encrypt(data: bytes, passphrase: str) -> bytes:
    """Seal ``data`` under ``passphrase``.

    Args:
        data: Plaintext bytes, may be empty
        passphrase: Operator-supplied passphrase

    Returns:
        bytes: base64 text of ``nonce || ciphertext || tag``
    """
    nonce = os.urandom(NONCE_SIZE)
    sealed = AESGCM(derive_key(passphrase)).encrypt(nonce, data, None)
    return base64.b64encode(nonce + sealed)


def decrypt(blob: bytes, passphrase: str) -> bytes:
    """Open a record produced by :func:`encrypt`.

    Args:
        blob: base64 text as written by :func:`encrypt`
        passphrase: Operator-supplied passphrase

    Returns:
        bytes: The original plaintext

    Raises:
        DecryptError: If the encoding is invalid, the data is shorter than a
            nonce, or the authentication tag does not verify
    """
    try:
        raw = base64.b64decode(blob.strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecryptError(f"invalid credential encoding: {e}") from e

    if len(raw) < NONCE_SIZE:
        raise DecryptError("ciphertext too short")

    nonce, sealed = raw[:NONCE_SIZE], raw[NONCE_SIZE:]
    try:
        return AESGCM(derive_key(passphrase)).decrypt(nonce, sealed, None)
    except InvalidTag as e:
        raise DecryptError("authentication failed") from e
