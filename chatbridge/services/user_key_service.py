"""Per-user, per-provider encrypted API key storage.

Each user row carries a JSON map ``provider -> [record, ...]`` with the
newest record first. A record holds the AES-256-GCM fields
(cipher/iv/tag/version) plus non-secret metadata (label, scopes,
expiresAt, baseUrl, isActive, createdAt, lastUsedAt). The first record
whose ``isActive`` is not false is the active key for that provider.

Decrypted keys are cached per (user, provider) for five minutes; absent
or undecryptable keys are cached as ``None`` for sixty seconds. Every
write for a provider invalidates that provider's cache entry.
"""

import json
import logging
import os
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy.orm import Session

from chatbridge.db.models import User, utc_now_iso
from chatbridge.errors import ValidationError
from chatbridge.services.credential_encryption import (
    CredentialDecryptionError,
    decrypt_secret,
    encrypt_secret,
    get_or_create_key,
)
from chatbridge.utils.ttl_cache import KeyedTTLCache

logger = logging.getLogger(__name__)

CACHE_TTL_SECONDS = 5 * 60
NEGATIVE_TTL_SECONDS = 60

# Process-wide decrypt cache shared by every request
_key_cache: KeyedTTLCache["ActiveKey"] = KeyedTTLCache()


@dataclass(frozen=True)
class ActiveKey:
    """A usable provider credential.

    Attributes:
        secret: Decrypted key material.
        base_url: Optional endpoint override stored with the key.
        source: 'user' for a stored per-user key, 'env' for a process default.
    """

    secret: str
    base_url: str | None = None
    source: str = "user"

    def __repr__(self) -> str:
        return f"ActiveKey(secret='***', base_url={self.base_url!r}, source={self.source!r})"


def cache_key(user_id: str, provider: str) -> str:
    return f"user-key:{user_id}:{provider}"


def reset_key_cache() -> None:
    """Drop every cached key. Used by tests."""
    _key_cache.clear()


def _is_expired(record: dict) -> bool:
    expires_at = record.get("expiresAt")
    if not expires_at:
        return False
    try:
        parsed = datetime.fromisoformat(str(expires_at).replace("Z", "+00:00"))
    except ValueError:
        return False
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed <= datetime.now(UTC)


def first_env_value(env_vars: tuple[str, ...] | list[str]) -> str | None:
    """Return the first non-empty environment variable among env_vars."""
    for name in env_vars:
        value = os.environ.get(name, "").strip()
        if value:
            return value
    return None


class UserKeyService:
    """Read and write per-user provider keys.

    Args:
        db: SQLAlchemy session.
        key_dir: Optional override for the encryption key directory.
    """

    def __init__(self, db: Session, key_dir: str | None = None) -> None:
        self._db = db
        self._key = get_or_create_key(key_dir)

    # -- storage helpers -------------------------------------------------

    def _load_keys(self, user_id: str) -> dict[str, list[dict]]:
        user = self._db.get(User, user_id)
        if user is None or not user.api_keys_json:
            return {}
        try:
            data = json.loads(user.api_keys_json)
        except (json.JSONDecodeError, TypeError):
            logger.warning("Corrupt api_keys_json for user %s, treating as empty", user_id)
            return {}
        return data if isinstance(data, dict) else {}

    def _save_keys(self, user_id: str, keys: dict[str, list[dict]]) -> None:
        user = self._db.get(User, user_id)
        if user is None:
            user = User(id=user_id)
            self._db.add(user)
        user.api_keys_json = json.dumps(keys, sort_keys=True)
        user.updated_at = utc_now_iso()
        self._db.commit()

    # -- reads -----------------------------------------------------------

    def get_active(self, user_id: str, provider: str) -> ActiveKey | None:
        """Return the user's active key for provider, or None.

        Decryption failures are logged and treated as an absent key.
        """
        name = cache_key(user_id, provider)
        hit, cached = _key_cache.lookup(name)
        if hit:
            return cached

        records = self._load_keys(user_id).get(provider) or []
        active = next((r for r in records if r.get("isActive") is not False), None)
        if active is None or _is_expired(active):
            return _key_cache.set(name, None, NEGATIVE_TTL_SECONDS)

        try:
            secret = decrypt_secret(active, self._key)
        except CredentialDecryptionError as e:
            logger.warning("Stored %s key for user %s could not be decrypted: %s", provider, user_id, e)
            return _key_cache.set(name, None, NEGATIVE_TTL_SECONDS)

        key = ActiveKey(secret=secret, base_url=active.get("baseUrl") or None)
        return _key_cache.set(name, key, CACHE_TTL_SECONDS)

    def resolve_key(
        self,
        user_id: str,
        provider: str,
        env_vars: tuple[str, ...] | list[str] = (),
    ) -> ActiveKey | None:
        """Resolve a usable key: active per-user record, then process default, then None."""
        active = self.get_active(user_id, provider)
        if active is not None:
            return active
        default = first_env_value(env_vars)
        if default:
            return ActiveKey(secret=default, source="env")
        return None

    def list_metadata(self, user_id: str) -> dict[str, list[dict]]:
        """Return non-secret metadata per provider; empty providers are omitted."""
        result: dict[str, list[dict]] = {}
        for provider, records in self._load_keys(user_id).items():
            items = [
                {
                    "label": r.get("label") or None,
                    "isActive": r.get("isActive") is not False,
                    "createdAt": r.get("createdAt"),
                    "lastUsedAt": r.get("lastUsedAt") or None,
                    "expiresAt": r.get("expiresAt") or None,
                    "scopes": r.get("scopes") or [],
                    "baseUrl": r.get("baseUrl") or None,
                }
                for r in records or []
            ]
            if items:
                result[provider] = items
        return result

    # -- writes ----------------------------------------------------------

    def set_active(
        self,
        user_id: str,
        provider: str,
        secret: str,
        label: str | None = None,
        scopes: list[str] | None = None,
        expires_at: str | None = None,
        base_url: str | None = None,
    ) -> None:
        """Store a new active key; every earlier key for provider is deactivated."""
        secret = (secret or "").strip()
        if not provider or not secret:
            raise ValidationError("provider and key are required")

        entry = {
            **encrypt_secret(secret, self._key),
            "label": label,
            "scopes": scopes or [],
            "expiresAt": expires_at,
            "baseUrl": base_url.strip() if base_url else None,
            "isActive": True,
            "createdAt": utc_now_iso(),
            "lastUsedAt": None,
        }
        keys = self._load_keys(user_id)
        previous = [{**r, "isActive": False} for r in keys.get(provider) or []]
        keys[provider] = [entry, *previous]
        self._save_keys(user_id, keys)
        _key_cache.invalidate(cache_key(user_id, provider))
        logger.info("Stored new %s key for user %s (label=%s)", provider, user_id, label)

    def deactivate(self, user_id: str, provider: str, label: str | None = None) -> None:
        """Deactivate all keys for provider, or only those whose label matches."""
        keys = self._load_keys(user_id)
        records = keys.get(provider) or []
        keys[provider] = [
            {**r, "isActive": False} if label is None or (r.get("label") or None) == (label or None) else r
            for r in records
        ]
        self._save_keys(user_id, keys)
        _key_cache.invalidate(cache_key(user_id, provider))

    def delete(self, user_id: str, provider: str, label: str | None = None) -> None:
        """Remove all keys for provider, or only those whose label matches."""
        keys = self._load_keys(user_id)
        if label is None:
            keys[provider] = []
        else:
            keys[provider] = [
                r for r in keys.get(provider) or [] if (r.get("label") or None) != (label or None)
            ]
        self._save_keys(user_id, keys)
        _key_cache.invalidate(cache_key(user_id, provider))
