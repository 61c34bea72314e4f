"""
hkscribe.license - License keys, the license lookup and the free allowance.

License keys are never stored in clear: the SHA-256 hash of the key is the
lookup key in the license store and the only value kept in the local state
file. A missing or expired record means "not licensed".
"""

from __future__ import annotations

import hashlib
import json
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ValidationError

from hkscribe.config import QuotaPolicy, ScribeConfig
from hkscribe.exceptions import LicenseError
from hkscribe.io import read_json, write_json
from hkscribe.logging import logger

LICENSE_STATE_KEY = "license_key"


class LicenseRecord(BaseModel):
    """Result of a license store lookup."""

    exists: bool
    expires_at_ms: int | None = None

    def is_expired(self, now_ms: int | None = None) -> bool:
        if self.expires_at_ms is None:
            return False
        now_ms = now_ms if now_ms is not None else current_time_ms()
        return now_ms > self.expires_at_ms

    def is_valid(self, now_ms: int | None = None) -> bool:
        return self.exists and not self.is_expired(now_ms)


def current_time_ms() -> int:
    return int(time.time() * 1000)


def hash_license_key(key: str) -> str:
    """SHA-256 hex digest of the trimmed license key."""
    return hashlib.sha256(key.strip().encode("utf-8")).hexdigest()


class LicenseStore(ABC):
    """Key/value lookup of license records by key hash."""

    @abstractmethod
    def lookup(self, key_hash: str) -> LicenseRecord:
        """Return the record stored under ``key_hash``."""


class JsonLicenseStore(LicenseStore):
    """License records kept in a JSON object keyed by key hash.

    Each value is an object with an optional ``expiresAt`` epoch-millis field.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def lookup(self, key_hash: str) -> LicenseRecord:
        try:
            records = read_json(self.path, default={})
        except json.JSONDecodeError as e:
            raise LicenseError(f"License store {self.path} is not valid JSON") from e
        if not isinstance(records, dict):
            raise LicenseError(f"License store {self.path} must contain an object")

        record = records.get(key_hash)
        if record is None:
            return LicenseRecord(exists=False)
        expires_at = record.get("expiresAt") if isinstance(record, dict) else None
        try:
            return LicenseRecord(exists=True, expires_at_ms=expires_at)
        except ValidationError as e:
            raise LicenseError(f"License store {self.path} has a malformed record") from e


class LicenseState:
    """The hashed license key persisted on this machine."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> str | None:
        data = self._read()
        if data is None:
            return None
        value = data.get(LICENSE_STATE_KEY)
        return value if isinstance(value, str) and value else None

    def save(self, key_hash: str) -> None:
        data = self._read() or {}
        data[LICENSE_STATE_KEY] = key_hash
        write_json(self.path, data)

    def clear(self) -> None:
        data = self._read()
        if data and data.pop(LICENSE_STATE_KEY, None) is not None:
            write_json(self.path, data)

    def _read(self) -> dict[str, Any] | None:
        """State file contents; None when it is unreadable or not an object."""
        try:
            data = read_json(self.path, default={})
        except json.JSONDecodeError:
            data = None
        if not isinstance(data, dict):
            logger.warning("Ignoring unreadable license state at %s", self.path)
            return None
        return data


def check_stored_license(
    store: LicenseStore,
    state: LicenseState,
    now_ms: int | None = None,
) -> bool:
    """Validate the locally stored license against the store.

    The stored hash is cleared when the record was deleted or has expired.
    A failed lookup leaves the stored hash alone and reports unlicensed.
    """
    key_hash = state.load()
    if not key_hash:
        return False

    try:
        record = store.lookup(key_hash)
    except (LicenseError, OSError) as e:
        logger.warning("Failed to validate stored license: %s", e)
        return False

    if not record.exists:
        logger.warning("Stored license no longer exists")
        state.clear()
        return False
    if record.is_expired(now_ms):
        logger.warning("Stored license has expired")
        state.clear()
        return False
    return True


def activate_license(
    key: str,
    store: LicenseStore,
    state: LicenseState,
    now_ms: int | None = None,
) -> LicenseRecord:
    """Validate a license key and remember its hash on success.

    Raises:
        LicenseError: If the key is empty, unknown or expired
    """
    if not key.strip():
        raise LicenseError("License key is empty")

    key_hash = hash_license_key(key)
    record = store.lookup(key_hash)
    if not record.exists:
        raise LicenseError("Invalid license key")
    if record.is_expired(now_ms):
        raise LicenseError("License key has expired")

    state.save(key_hash)
    return record


def resolve_quota_policy(
    config: ScribeConfig,
    store: LicenseStore | None = None,
    state: LicenseState | None = None,
) -> QuotaPolicy:
    """Build the quota policy for a run from the config and stored license."""
    store = store or JsonLicenseStore(config.license_store_path)
    state = state or LicenseState(config.state_path)
    return QuotaPolicy(
        is_licensed=check_stored_license(store, state),
        free_limit_minutes=config.free_limit_minutes,
    )
