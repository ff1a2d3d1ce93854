"""
Credential vault for third-party OAuth tokens.

AES-256-GCM with a random 16-byte IV per call. Secrets are stored as
``iv:authTag:ciphertext`` (hex, colon-delimited) so other services can parse
them. Decryption verifies the tag before anything is returned.
"""

import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from bouncer.config import settings
from bouncer.errors import ConfigurationError, DecryptionError, ValidationError
from bouncer.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

KEY_BYTES = 32
IV_BYTES = 16
TAG_BYTES = 16


@dataclass(frozen=True, slots=True)
class EncryptedSecret:
    """Serialized triple; the only persisted form of a third-party token."""

    iv_hex: str
    auth_tag_hex: str
    cipher_text_hex: str

    def __str__(self) -> str:
        return f"{self.iv_hex}:{self.auth_tag_hex}:{self.cipher_text_hex}"

    @classmethod
    def parse(cls, value: str) -> "EncryptedSecret":
        """
        Parse ``iv:authTag:ciphertext``.

        Raises:
            DecryptionError: If the string isn't three hex parts of the right sizes
        """
        if not value or not isinstance(value, str):
            raise DecryptionError("Encrypted secret must be a non-empty string")

        parts = value.split(":")
        if len(parts) != 3:
            raise DecryptionError("Invalid encrypted secret format")

        iv_hex, tag_hex, ct_hex = parts
        try:
            iv = bytes.fromhex(iv_hex)
            tag = bytes.fromhex(tag_hex)
            bytes.fromhex(ct_hex)
        except ValueError as e:
            raise DecryptionError("Encrypted secret is not valid hex") from e

        if len(iv) != IV_BYTES or len(tag) != TAG_BYTES:
            raise DecryptionError("Invalid IV or authentication tag length")

        return cls(iv_hex=iv_hex, auth_tag_hex=tag_hex, cipher_text_hex=ct_hex)


def parse_key(key: str | bytes) -> bytes:
    """
    Accept a 32-byte key as raw bytes or as 64 hex characters.

    Raises:
        ConfigurationError: If the key has the wrong length or encoding
    """
    if isinstance(key, bytes):
        key_bytes = key
    else:
        try:
            key_bytes = bytes.fromhex(key.strip())
        except ValueError as e:
            raise ConfigurationError("ENCRYPTION_KEY must be hex encoded") from e

    if len(key_bytes) != KEY_BYTES:
        raise ConfigurationError(
            f"ENCRYPTION_KEY must be {KEY_BYTES} bytes, got {len(key_bytes)}"
        )
    return key_bytes


class CredentialVault:
    """Authenticated encryption of secrets with a single active key."""

    def __init__(self, key: str | bytes):
        self._aesgcm = AESGCM(parse_key(key))

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a string for storage.

        Raises:
            ValidationError: If plaintext isn't a string
        """
        if not isinstance(plaintext, str):
            raise ValidationError("Plaintext must be a string")

        iv = os.urandom(IV_BYTES)
        sealed = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        cipher_text, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]

        secret = EncryptedSecret(
            iv_hex=iv.hex(), auth_tag_hex=tag.hex(), cipher_text_hex=cipher_text.hex()
        )
        logger.debug(
            "Secret encrypted", plaintext_length=len(plaintext), cipher_length=len(cipher_text)
        )
        return str(secret)

    def decrypt(self, encrypted: str) -> str:
        """
        Decrypt a stored secret.

        Raises:
            DecryptionError: On malformed input or a tag that doesn't verify
        """
        secret = EncryptedSecret.parse(encrypted)
        iv = bytes.fromhex(secret.iv_hex)
        sealed = bytes.fromhex(secret.cipher_text_hex) + bytes.fromhex(secret.auth_tag_hex)

        try:
            plaintext = self._aesgcm.decrypt(iv, sealed, None)
        except InvalidTag as e:
            logger.error("Secret decryption failed - authentication tag mismatch")
            raise DecryptionError("Invalid or tampered secret") from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError("Decrypted secret is not valid UTF-8") from e


_vault: CredentialVault | None = None


def get_vault() -> CredentialVault:
    """
    Vault built from ENCRYPTION_KEY.

    Raises:
        ConfigurationError: If the key is missing or invalid
    """
    global _vault
    if _vault is None:
        if not settings.ENCRYPTION_KEY:
            raise ConfigurationError("ENCRYPTION_KEY not configured in environment")
        _vault = CredentialVault(settings.ENCRYPTION_KEY)
    return _vault


def encrypt_token(token: str) -> str:
    """Encrypt a non-empty token with the configured key."""
    if not token or not isinstance(token, str):
        raise ValidationError("Token must be a non-empty string")
    return get_vault().encrypt(token)


def decrypt_token(encrypted_token: str) -> str:
    """Decrypt a token produced by encrypt_token."""
    return get_vault().decrypt(encrypted_token)


def validate_encryption_config() -> bool:
    """
    Validate that encryption is properly configured.

    Returns:
        bool: True if encryption is configured and working
    """
    try:
        test_data = "test_encryption_12345"
        is_valid = decrypt_token(encrypt_token(test_data)) == test_data

        if is_valid:
            logger.info("Encryption configuration validated successfully")
        else:
            logger.error("Encryption validation failed - data mismatch")

        return is_valid

    except (ConfigurationError, DecryptionError) as e:
        logger.error("Encryption configuration validation failed", error=str(e))
        return False


def generate_new_key() -> str:
    """
    Generate a new AES-256 key as 64 hex characters.

    Store the result in ENCRYPTION_KEY.
    """
    key = AESGCM.generate_key(bit_length=256).hex()
    logger.info("New encryption key generated")
    return key


def encrypt_oauth_tokens(
    access_token: str, refresh_token: str | None = None
) -> tuple[str, str | None]:
    """
    Encrypt OAuth access and refresh tokens.

    Returns:
        tuple: (encrypted_access_token, encrypted_refresh_token)
    """
    encrypted_access = encrypt_token(access_token)
    encrypted_refresh = encrypt_token(refresh_token) if refresh_token else None

    logger.info("OAuth tokens encrypted", has_refresh_token=bool(refresh_token))

    return encrypted_access, encrypted_refresh


def decrypt_oauth_tokens(
    encrypted_access: str, encrypted_refresh: str | None = None
) -> tuple[str, str | None]:
    """
    Decrypt OAuth access and refresh tokens.

    Returns:
        tuple: (access_token, refresh_token)
    """
    access_token = decrypt_token(encrypted_access)
    refresh_token = decrypt_token(encrypted_refresh) if encrypted_refresh else None

    logger.info("OAuth tokens decrypted", has_refresh_token=bool(refresh_token))

    return access_token, refresh_token
