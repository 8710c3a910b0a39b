"""AES-256-GCM encryption for stored provider secrets.

Secrets (per-user provider API keys, bridge instance keys) are stored as
records of separate base64 fields so the tag can be validated apart from
the ciphertext:

    {"cipher": "<b64>", "iv": "<b64 12 bytes>", "tag": "<b64 16 bytes>", "version": 1}

Key source precedence:
    1. CHATBRIDGE_CREDENTIAL_KEY env var (base64-encoded 32-byte key)
    2. KEY_ENCRYPTION_SECRET env var (passphrase; key = SHA-256 of it)
    3. CHATBRIDGE_CREDENTIAL_KEY_FILE env var (path to raw 32-byte key file)
    4. platformdirs local file (auto-generated on first use)
"""

import base64
import binascii
import hashlib
import json
import logging
import os
import platform
import stat

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = logging.getLogger(__name__)

KEY_FILENAME = ".chatbridge_key"
CURRENT_VERSION = 1
_REQUIRED_KEY_LENGTH = 32
_IV_LENGTH = 12
_TAG_LENGTH = 16


class CredentialDecryptionError(Exception):
    """Raised when a stored secret cannot be decrypted for any reason."""


def get_default_key_dir() -> str:
    """Return the platform-appropriate app-data directory for key storage."""
    from platformdirs import user_data_dir

    return user_data_dir("chatbridge", ensure_exists=True)


def _read_key_file(path: str) -> bytes:
    with open(path, "rb") as f:
        key = f.read()
    if len(key) != _REQUIRED_KEY_LENGTH:
        raise ValueError(
            f"Key file {path} has invalid length {len(key)} (expected {_REQUIRED_KEY_LENGTH})"
        )
    return key


def get_or_create_key(key_dir: str | None = None) -> bytes:
    """Load or generate the 32-byte AES-256 encryption key.

    Args:
        key_dir: Directory for the generated key file (last source only).
                 Defaults to platformdirs app-data.

    Returns:
        32-byte encryption key.

    Raises:
        ValueError: If a configured key has invalid length or encoding.
    """
    env_key = os.environ.get("CHATBRIDGE_CREDENTIAL_KEY", "").strip()
    if env_key:
        try:
            key = base64.b64decode(env_key, validate=True)
        except binascii.Error as e:
            raise ValueError(f"CHATBRIDGE_CREDENTIAL_KEY contains invalid base64: {e}") from e
        if len(key) != _REQUIRED_KEY_LENGTH:
            raise ValueError(
                f"CHATBRIDGE_CREDENTIAL_KEY has invalid length {len(key)} (expected {_REQUIRED_KEY_LENGTH})"
            )
        return key

    passphrase = os.environ.get("KEY_ENCRYPTION_SECRET", "")
    if passphrase:
        return hashlib.sha256(passphrase.encode("utf-8")).digest()

    env_key_file = os.environ.get("CHATBRIDGE_CREDENTIAL_KEY_FILE", "").strip()
    if env_key_file:
        if not os.path.isfile(env_key_file):
            raise ValueError(f"CHATBRIDGE_CREDENTIAL_KEY_FILE is not a regular file: {env_key_file}")
        if os.path.islink(env_key_file):
            raise ValueError(f"CHATBRIDGE_CREDENTIAL_KEY_FILE is a symlink: {env_key_file}")
        return _read_key_file(env_key_file)

    directory = key_dir or get_default_key_dir()
    os.makedirs(directory, exist_ok=True)
    key_path = os.path.join(directory, KEY_FILENAME)

    if os.path.exists(key_path):
        key = _read_key_file(key_path)
        if platform.system() != "Windows":
            mode = stat.S_IMODE(os.stat(key_path).st_mode)
            if mode & (stat.S_IRGRP | stat.S_IWGRP | stat.S_IROTH | stat.S_IWOTH):
                logger.warning(
                    "Key file %s has permissions %o, recommend chmod 600",
                    key_path, mode,
                )
        return key

    key = os.urandom(_REQUIRED_KEY_LENGTH)
    try:
        fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        try:
            os.write(fd, key)
        finally:
            os.close(fd)
    except FileExistsError:
        # Another process created it first.
        return _read_key_file(key_path)

    logger.info("Generated new encryption key at %s", key_path)
    return key


def encrypt_secret(plaintext: str, key: bytes, aad: str = "") -> dict:
    """Encrypt a secret string into a cipher/iv/tag record.

    Args:
        plaintext: Secret to encrypt.
        key: 32-byte AES-256 key.
        aad: Additional authenticated data binding the record to its owner.

    Returns:
        {"cipher", "iv", "tag", "version"} with base64 fields.

    Raises:
        ValueError: If key is not exactly 32 bytes.
    """
    if len(key) != _REQUIRED_KEY_LENGTH:
        raise ValueError(
            f"Encryption key must be exactly {_REQUIRED_KEY_LENGTH} bytes (got {len(key)})"
        )
    iv = os.urandom(_IV_LENGTH)
    sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), aad.encode("utf-8") if aad else None)
    # cryptography appends the tag to the ciphertext
    cipher, tag = sealed[:-_TAG_LENGTH], sealed[-_TAG_LENGTH:]
    return {
        "cipher": base64.b64encode(cipher).decode("ascii"),
        "iv": base64.b64encode(iv).decode("ascii"),
        "tag": base64.b64encode(tag).decode("ascii"),
        "version": CURRENT_VERSION,
    }


def decrypt_secret(record: dict, key: bytes, aad: str = "") -> str:
    """Decrypt a cipher/iv/tag record back to the secret string.

    Raises:
        CredentialDecryptionError: On wrong key, tampering, unsupported
            version or malformed fields.
    """
    if len(key) != _REQUIRED_KEY_LENGTH:
        raise CredentialDecryptionError(
            f"Decryption key must be exactly {_REQUIRED_KEY_LENGTH} bytes (got {len(key)})"
        )
    version = record.get("version", CURRENT_VERSION)
    if version != CURRENT_VERSION:
        raise CredentialDecryptionError(
            f"Unsupported record version {version} (expected {CURRENT_VERSION})"
        )
    try:
        cipher = base64.b64decode(record["cipher"], validate=True)
        iv = base64.b64decode(record["iv"], validate=True)
        tag = base64.b64decode(record["tag"], validate=True)
    except (KeyError, TypeError, binascii.Error) as e:
        raise CredentialDecryptionError(f"Malformed record fields: {e}") from e

    if len(iv) != _IV_LENGTH:
        raise CredentialDecryptionError(f"Invalid iv length {len(iv)} (expected {_IV_LENGTH})")

    try:
        plaintext = AESGCM(key).decrypt(iv, cipher + tag, aad.encode("utf-8") if aad else None)
        return plaintext.decode("utf-8")
    except Exception as e:
        raise CredentialDecryptionError(f"Decryption failed: {e}") from e


def seal_to_text(plaintext: str, key: bytes, aad: str = "") -> str:
    """Encrypt a secret into a JSON text envelope for single-column storage."""
    return json.dumps(encrypt_secret(plaintext, key, aad=aad), sort_keys=True)


def open_from_text(envelope: str, key: bytes, aad: str = "") -> str:
    """Decrypt a JSON text envelope produced by :func:`seal_to_text`."""
    try:
        record = json.loads(envelope)
    except (json.JSONDecodeError, TypeError) as e:
        raise CredentialDecryptionError(f"Invalid envelope format: {e}") from e
    if not isinstance(record, dict):
        raise CredentialDecryptionError("Envelope is not an object")
    return decrypt_secret(record, key, aad=aad)
