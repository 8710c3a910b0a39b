"""Tests for AES-256-GCM credential encryption with cipher/iv/tag records."""

import base64
import hashlib
import json
import logging
import os
import platform
import stat

import pytest

from chatbridge.services.credential_encryption import (
    KEY_FILENAME,
    CredentialDecryptionError,
    decrypt_secret,
    encrypt_secret,
    get_default_key_dir,
    get_or_create_key,
    open_from_text,
    seal_to_text,
)


@pytest.fixture
def temp_key_dir(tmp_path, monkeypatch):
    """Temporary key directory with every env key source cleared."""
    monkeypatch.delenv("CHATBRIDGE_CREDENTIAL_KEY", raising=False)
    monkeypatch.delenv("KEY_ENCRYPTION_SECRET", raising=False)
    monkeypatch.delenv("CHATBRIDGE_CREDENTIAL_KEY_FILE", raising=False)
    return str(tmp_path)


@pytest.fixture
def key():
    return os.urandom(32)


class TestKeyManagement:
    """Tests for encryption key sources and the key file lifecycle."""

    def test_get_or_create_key_creates_file(self, temp_key_dir):
        """First call creates key file and returns 32-byte key."""
        key = get_or_create_key(key_dir=temp_key_dir)
        assert len(key) == 32
        assert os.path.exists(os.path.join(temp_key_dir, KEY_FILENAME))

    def test_get_or_create_key_is_idempotent(self, temp_key_dir):
        """Repeated calls return the same key."""
        assert get_or_create_key(key_dir=temp_key_dir) == get_or_create_key(key_dir=temp_key_dir)

    @pytest.mark.skipif(platform.system() == "Windows", reason="Unix permissions")
    def test_key_file_has_restricted_permissions(self, temp_key_dir):
        """Key file should be owner-read-write only (0600) on Unix."""
        get_or_create_key(key_dir=temp_key_dir)
        mode = os.stat(os.path.join(temp_key_dir, KEY_FILENAME)).st_mode
        assert stat.S_IMODE(mode) == 0o600

    @pytest.mark.skipif(platform.system() == "Windows", reason="Unix permissions")
    def test_permissive_key_file_warns(self, temp_key_dir, caplog):
        """Key file with overly permissive permissions logs a warning."""
        key_path = os.path.join(temp_key_dir, KEY_FILENAME)
        with open(key_path, "wb") as f:
            f.write(os.urandom(32))
        os.chmod(key_path, 0o644)
        with caplog.at_level(logging.WARNING):
            get_or_create_key(key_dir=temp_key_dir)
        assert any("permissions" in msg and "600" in msg for msg in caplog.messages)

    def test_invalid_key_length_raises(self, temp_key_dir):
        """Key file with wrong length raises ValueError."""
        with open(os.path.join(temp_key_dir, KEY_FILENAME), "wb") as f:
            f.write(b"too_short")
        with pytest.raises(ValueError, match="invalid length"):
            get_or_create_key(key_dir=temp_key_dir)

    def test_default_key_dir_uses_platformdirs(self):
        """Default key directory uses platformdirs.user_data_dir."""
        assert "chatbridge" in get_default_key_dir()

    def test_env_key_takes_precedence(self, temp_key_dir, monkeypatch):
        """CHATBRIDGE_CREDENTIAL_KEY overrides every other source and writes no file."""
        raw_key = os.urandom(32)
        monkeypatch.setenv("CHATBRIDGE_CREDENTIAL_KEY", base64.b64encode(raw_key).decode())
        monkeypatch.setenv("KEY_ENCRYPTION_SECRET", "ignored")
        assert get_or_create_key(key_dir=temp_key_dir) == raw_key
        assert not os.path.exists(os.path.join(temp_key_dir, KEY_FILENAME))

    def test_passphrase_derives_sha256_key(self, temp_key_dir, monkeypatch):
        """KEY_ENCRYPTION_SECRET is hashed to a 32-byte key."""
        monkeypatch.setenv("KEY_ENCRYPTION_SECRET", "correct horse")
        assert get_or_create_key(key_dir=temp_key_dir) == hashlib.sha256(b"correct horse").digest()

    def test_env_key_file_takes_precedence_over_platformdirs(self, temp_key_dir, monkeypatch):
        """CHATBRIDGE_CREDENTIAL_KEY_FILE overrides the generated key file."""
        custom_key = os.urandom(32)
        custom_path = os.path.join(temp_key_dir, "custom_key")
        with open(custom_path, "wb") as f:
            f.write(custom_key)
        monkeypatch.setenv("CHATBRIDGE_CREDENTIAL_KEY_FILE", custom_path)
        assert get_or_create_key(key_dir=temp_key_dir) == custom_key

    def test_invalid_env_key_length_raises(self, temp_key_dir, monkeypatch):
        """CHATBRIDGE_CREDENTIAL_KEY with wrong length raises ValueError."""
        monkeypatch.setenv("CHATBRIDGE_CREDENTIAL_KEY", base64.b64encode(b"short").decode())
        with pytest.raises(ValueError, match="invalid length"):
            get_or_create_key()

    def test_invalid_env_key_base64_raises(self, temp_key_dir, monkeypatch):
        monkeypatch.setenv("CHATBRIDGE_CREDENTIAL_KEY", "not*base64")
        with pytest.raises(ValueError, match="invalid base64"):
            get_or_create_key()


class TestEncryptDecrypt:
    """Tests for the cipher/iv/tag record format."""

    def test_round_trip(self, key):
        record = encrypt_secret("sk-live-123", key)
        assert decrypt_secret(record, key) == "sk-live-123"

    def test_record_fields(self, key):
        """Record carries base64 cipher, 12-byte iv, 16-byte tag and version 1."""
        record = encrypt_secret("secret", key)
        assert set(record) == {"cipher", "iv", "tag", "version"}
        assert record["version"] == 1
        assert len(base64.b64decode(record["iv"])) == 12
        assert len(base64.b64decode(record["tag"])) == 16

    def test_fresh_iv_per_encryption(self, key):
        assert encrypt_secret("same", key)["iv"] != encrypt_secret("same", key)["iv"]

    def test_wrong_key_fails(self, key):
        record = encrypt_secret("secret", key)
        with pytest.raises(CredentialDecryptionError):
            decrypt_secret(record, os.urandom(32))

    def test_tampered_tag_fails(self, key):
        record = encrypt_secret("secret", key)
        tag = bytearray(base64.b64decode(record["tag"]))
        tag[0] ^= 0xFF
        record["tag"] = base64.b64encode(bytes(tag)).decode()
        with pytest.raises(CredentialDecryptionError):
            decrypt_secret(record, key)

    def test_aad_mismatch_fails(self, key):
        record = encrypt_secret("secret", key, aad="evolution:a")
        assert decrypt_secret(record, key, aad="evolution:a") == "secret"
        with pytest.raises(CredentialDecryptionError):
            decrypt_secret(record, key, aad="evolution:b")

    def test_unsupported_version_fails(self, key):
        record = {**encrypt_secret("secret", key), "version": 2}
        with pytest.raises(CredentialDecryptionError, match="Unsupported record version"):
            decrypt_secret(record, key)

    def test_missing_field_fails(self, key):
        record = encrypt_secret("secret", key)
        del record["iv"]
        with pytest.raises(CredentialDecryptionError, match="Malformed"):
            decrypt_secret(record, key)

    def test_encrypt_rejects_short_key(self):
        with pytest.raises(ValueError, match="32 bytes"):
            encrypt_secret("secret", b"short")


class TestTextEnvelope:
    """Tests for single-column JSON envelopes."""

    def test_seal_and_open(self, key):
        envelope = seal_to_text("instance-hash", key, aad="evolution:main")
        assert json.loads(envelope)["version"] == 1
        assert open_from_text(envelope, key, aad="evolution:main") == "instance-hash"

    def test_open_rejects_non_json(self, key):
        with pytest.raises(CredentialDecryptionError, match="Invalid envelope"):
            open_from_text("not json", key)

    def test_open_rejects_non_object(self, key):
        with pytest.raises(CredentialDecryptionError, match="not an object"):
            open_from_text("[1, 2]", key)
