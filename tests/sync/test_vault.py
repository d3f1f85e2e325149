from __future__ import annotations

import base64
import threading

import pytest

from flask_app.sync.vault import (
    IV_LENGTH,
    CredentialVault,
    DecryptionError,
    VaultConfigurationError,
    get_vault,
)

MASTER_KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"
OTHER_KEY = "ffeeddccbbaa99887766554433221100ffeeddccbbaa99887766554433221100"


@pytest.fixture
def vault():
    return CredentialVault(lambda: MASTER_KEY)


@pytest.mark.parametrize("secret", ["a", "crm-token-123", "ünïcødé ✓ token", "x" * 4096])
def test_roundtrip(vault, secret):
    assert vault.decrypt(vault.encrypt(secret)) == secret


def test_envelope_layout_and_random_iv(vault):
    first = vault.encrypt("same-token")
    second = vault.encrypt("same-token")

    assert first != second
    raw = base64.b64decode(first)
    # 12 byte IV, ciphertext, 16 byte GCM tag
    assert len(raw) == IV_LENGTH + len("same-token") + 16
    assert raw[:IV_LENGTH] != base64.b64decode(second)[:IV_LENGTH]


@pytest.mark.parametrize("position", [0, IV_LENGTH, -1])
def test_tampered_envelope_fails(vault, position):
    raw = bytearray(base64.b64decode(vault.encrypt("crm-token-123")))
    raw[position] ^= 0x01
    tampered = base64.b64encode(bytes(raw)).decode("ascii")

    with pytest.raises(DecryptionError, match="Failed to decrypt credentials"):
        vault.decrypt(tampered)


def test_wrong_master_key_fails(vault):
    envelope = vault.encrypt("crm-token-123")

    with pytest.raises(DecryptionError):
        CredentialVault(lambda: OTHER_KEY).decrypt(envelope)


@pytest.mark.parametrize("envelope", ["", "not base64!!", "abc", base64.b64encode(b"short").decode()])
def test_malformed_envelope_fails(vault, envelope):
    with pytest.raises(DecryptionError):
        vault.decrypt(envelope)


@pytest.mark.parametrize(
    "key, message",
    [
        (None, "master key not configured"),
        ("", "master key not configured"),
        ("zz" * 32, "hex encoded"),
        ("00" * 16, "32 bytes"),
    ],
)
def test_master_key_validation(key, message):
    with pytest.raises(VaultConfigurationError, match=message):
        CredentialVault(lambda: key).encrypt("token")


def test_empty_plaintext_rejected(vault):
    with pytest.raises(ValueError):
        vault.encrypt("")


def test_master_key_resolved_once_across_threads():
    calls = []

    def key_source():
        calls.append(1)
        return MASTER_KEY

    vault = CredentialVault(key_source)
    threads = [threading.Thread(target=vault.encrypt, args=("token",)) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(calls) == 1


def test_get_vault_is_cached_per_app(app):
    assert get_vault(app) is get_vault(app)
    assert get_vault(app).decrypt(get_vault(app).encrypt("token")) == "token"
