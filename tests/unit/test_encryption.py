"""
Test credential vault functionality.
"""

import pytest

from bouncer.errors import ConfigurationError, DecryptionError, ValidationError
from bouncer.services.infrastructure import encryption_service
from bouncer.services.infrastructure.encryption_service import (
    CredentialVault,
    EncryptedSecret,
    decrypt_oauth_tokens,
    encrypt_oauth_tokens,
    generate_new_key,
    parse_key,
    validate_encryption_config,
)

KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"


@pytest.fixture
def configured_key(monkeypatch):
    monkeypatch.setattr(encryption_service.settings, "ENCRYPTION_KEY", KEY)
    monkeypatch.setattr(encryption_service, "_vault", None)
    return KEY


def test_round_trip():
    vault = CredentialVault(KEY)
    encrypted = vault.encrypt("oauth_token_12345")

    assert encrypted != "oauth_token_12345"
    assert vault.decrypt(encrypted) == "oauth_token_12345"


def test_serialized_form_is_three_hex_parts():
    encrypted = CredentialVault(KEY).encrypt("token")
    iv_hex, tag_hex, ct_hex = encrypted.split(":")

    assert len(iv_hex) == 32
    assert len(tag_hex) == 32
    assert len(ct_hex) == len("token") * 2


def test_same_plaintext_encrypts_differently():
    vault = CredentialVault(KEY)
    assert vault.encrypt("token") != vault.encrypt("token")


def test_unicode_and_empty_plaintext():
    vault = CredentialVault(KEY)
    for plaintext in ("", "naïve ✓ token", "x" * 500):
        assert vault.decrypt(vault.encrypt(plaintext)) == plaintext


def test_tampered_auth_tag_is_rejected():
    vault = CredentialVault(KEY)
    iv_hex, tag_hex, ct_hex = vault.encrypt("secret").split(":")
    flipped = format(int(tag_hex[0], 16) ^ 1, "x") + tag_hex[1:]

    with pytest.raises(DecryptionError):
        vault.decrypt(f"{iv_hex}:{flipped}:{ct_hex}")


def test_tampered_cipher_text_is_rejected():
    vault = CredentialVault(KEY)
    iv_hex, tag_hex, ct_hex = vault.encrypt("secret").split(":")
    flipped = format(int(ct_hex[0], 16) ^ 1, "x") + ct_hex[1:]

    with pytest.raises(DecryptionError):
        vault.decrypt(f"{iv_hex}:{tag_hex}:{flipped}")


def test_wrong_key_is_rejected():
    encrypted = CredentialVault(KEY).encrypt("secret")
    other = CredentialVault(generate_new_key())

    with pytest.raises(DecryptionError):
        other.decrypt(encrypted)


@pytest.mark.parametrize(
    "value",
    ["", "abc", "a:b", "zz:zz:zz", "00:" + "00" * 16 + ":00", "00" * 16 + ":00:00"],
)
def test_malformed_secret_is_rejected(value):
    with pytest.raises(DecryptionError):
        EncryptedSecret.parse(value)


def test_key_must_be_32_bytes():
    with pytest.raises(ConfigurationError):
        parse_key("00" * 16)
    with pytest.raises(ConfigurationError):
        parse_key("not-hex")
    assert len(parse_key(b"k" * 32)) == 32


def test_generated_key_is_usable():
    key = generate_new_key()
    assert len(key) == 64
    assert CredentialVault(key).decrypt(CredentialVault(key).encrypt("x")) == "x"


def test_plaintext_must_be_a_string():
    with pytest.raises(ValidationError):
        CredentialVault(KEY).encrypt(b"bytes")


def test_token_helpers_use_configured_key(configured_key):
    access, refresh = encrypt_oauth_tokens("access-token", "refresh-token")

    assert decrypt_oauth_tokens(access, refresh) == ("access-token", "refresh-token")
    assert validate_encryption_config() is True


def test_refresh_token_is_optional(configured_key):
    access, refresh = encrypt_oauth_tokens("access-token")

    assert refresh is None
    assert decrypt_oauth_tokens(access) == ("access-token", None)


def test_missing_key_fails_validation(monkeypatch):
    monkeypatch.setattr(encryption_service.settings, "ENCRYPTION_KEY", None)
    monkeypatch.setattr(encryption_service, "_vault", None)

    with pytest.raises(ConfigurationError):
        encryption_service.get_vault()
    assert validate_encryption_config() is False
