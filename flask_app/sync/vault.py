"""
Credential vault for external API tokens.

Envelopes are ``base64(iv || ciphertext)`` where ``iv`` is a fresh 96-bit
nonce and ``ciphertext`` carries the AES-256-GCM authentication tag. The
master key is hex encoded and resolved once per vault instance.
"""

from __future__ import annotations

import base64
import binascii
import os
import re
import threading
from typing import Callable

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from flask import Flask, current_app

IV_LENGTH = 12
KEY_LENGTH = 32
_BASE64_PATTERN = re.compile(r"^[A-Za-z0-9+/]*={0,2}$")

VAULT_EXTENSION_KEY = "sync_vault"


class VaultError(RuntimeError):
    """Base error for credential vault failures."""


class VaultConfigurationError(VaultError):
    """Raised when the master key is missing or malformed."""


class DecryptionError(VaultError):
    """Raised when an envelope cannot be opened."""


class CredentialVault:
    """Encrypt and decrypt API tokens under a single master key."""

    def __init__(self, key_source: Callable[[], str | None]) -> None:
        self._key_source = key_source
        self._key: bytes | None = None
        self._key_lock = threading.Lock()

    @classmethod
    def from_config(cls, app: Flask) -> "CredentialVault":
        return cls(lambda: app.config.get("SYNC_MASTER_KEY"))

    # Public API -----------------------------------------------------------------

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            raise ValueError("Cannot encrypt an empty credential.")
        iv = os.urandom(IV_LENGTH)
        ciphertext = AESGCM(self._master_key()).encrypt(iv, plaintext.encode("utf-8"), None)
        return base64.b64encode(iv + ciphertext).decode("ascii")

    def decrypt(self, envelope: str) -> str:
        raw = self._decode_envelope(envelope)
        if len(raw) <= IV_LENGTH:
            raise DecryptionError("Credential envelope is too short to contain an IV and ciphertext.")
        iv, ciphertext = raw[:IV_LENGTH], raw[IV_LENGTH:]
        try:
            plaintext = AESGCM(self._master_key()).decrypt(iv, ciphertext, None)
        except InvalidTag as exc:
            raise DecryptionError(
                "Failed to decrypt credentials. The envelope was modified or the master key changed; "
                "re-enter the credentials."
            ) from exc
        return plaintext.decode("utf-8")

    # Internal helpers -----------------------------------------------------------

    def _master_key(self) -> bytes:
        if self._key is not None:
            return self._key
        with self._key_lock:
            if self._key is None:
                self._key = _parse_master_key(self._key_source())
        return self._key

    @staticmethod
    def _decode_envelope(envelope: str) -> bytes:
        value = (envelope or "").strip()
        if not value or len(value) % 4 != 0 or not _BASE64_PATTERN.match(value):
            raise DecryptionError(
                "Credential envelope is not valid base64 encoding. The credentials may need to be re-saved."
            )
        try:
            return base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise DecryptionError(
                "Credential envelope is not valid base64 encoding. The credentials may need to be re-saved."
            ) from exc


def _parse_master_key(raw: str | None) -> bytes:
    if not raw or not str(raw).strip():
        raise VaultConfigurationError("master key not configured")
    try:
        key = bytes.fromhex(str(raw).strip())
    except ValueError as exc:
        raise VaultConfigurationError("master key must be hex encoded") from exc
    if len(key) != KEY_LENGTH:
        raise VaultConfigurationError(f"master key must be {KEY_LENGTH} bytes ({KEY_LENGTH * 2} hex characters)")
    return key


def get_vault(app: Flask | None = None) -> CredentialVault:
    """Return the vault bound to the application, creating it on first use."""
    app = app or current_app._get_current_object()
    vault = app.extensions.get(VAULT_EXTENSION_KEY)
    if vault is None:
        vault = CredentialVault.from_config(app)
        app.extensions[VAULT_EXTENSION_KEY] = vault
    return vault
