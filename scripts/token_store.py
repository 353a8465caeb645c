#!/usr/bin/env python3
"""Persistence for the delegated MSAL token cache.

Interactive sessions are reused across runs through this cache. The OS keyring
is used when a usable backend exists; otherwise the cache lives in a JSON file
readable only by the current user.
"""

from __future__ import annotations

import json
import logging
import os
import stat
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

KEYRING_SERVICE = "mailbox-sweeper"


class TokenStoreError(RuntimeError):
    """Raised when the token cache cannot be read or written."""


class TokenStore:
    def __init__(
        self,
        profile: str,
        base_dir: Optional[Path] = None,
        mode: str = "auto",
        service_name: str = KEYRING_SERVICE,
    ) -> None:
        if mode not in {"auto", "keyring", "file"}:
            raise TokenStoreError("token store mode must be one of: auto, keyring, file")

        self.profile = safe_profile_name(profile)
        self.mode = mode
        self.service_name = service_name
        self.base_dir = base_dir or default_cache_dir()
        self._keyring = _usable_keyring() if mode != "file" else None

        if mode == "keyring" and self._keyring is None:
            raise TokenStoreError(
                "SWEEPER_TOKEN_STORE=keyring but no keyring backend is usable. "
                "Install and configure 'keyring', or set SWEEPER_TOKEN_STORE=file."
            )

    @property
    def path(self) -> Path:
        return self.base_dir / f"{self.profile}.json"

    def backend_name(self) -> str:
        return "keyring" if self._keyring is not None else "file"

    def load(self) -> Optional[str]:
        if self._keyring is not None:
            try:
                cached = self._keyring.get_password(self.service_name, self.profile)
            except Exception as err:
                logger.debug("keyring read failed, using file cache: %s", err)
                cached = None
            if cached:
                return cached
        return self._read_file()

    def save(self, serialized: str) -> str:
        if self._keyring is not None:
            try:
                self._keyring.set_password(self.service_name, self.profile, serialized)
                return "keyring"
            except Exception as err:
                if self.mode == "keyring":
                    raise TokenStoreError(f"Failed to write token cache to keyring: {err}") from err
                logger.debug("keyring write failed, using file cache: %s", err)

        self._write_file(serialized)
        return "file"

    def clear(self) -> None:
        if self._keyring is not None:
            try:
                self._keyring.delete_password(self.service_name, self.profile)
            except Exception as err:
                logger.debug("keyring delete skipped: %s", err)
        if self.path.exists():
            self.path.unlink()

    def _read_file(self) -> Optional[str]:
        if not self.path.exists():
            return None

        raw = self.path.read_text(encoding="utf-8")
        if not raw.strip():
            return None

        try:
            envelope = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable token cache at %s", self.path)
            return None

        if not isinstance(envelope, dict):
            return None
        cache = envelope.get("cache")
        return cache if isinstance(cache, str) and cache else None

    def _write_file(self, serialized: str) -> None:
        self.base_dir.mkdir(parents=True, exist_ok=True)
        _chmod_quietly(self.base_dir, 0o700)

        envelope = {"profile": self.profile, "cache": serialized}
        staging = self.path.with_suffix(".tmp")
        staging.write_text(json.dumps(envelope, separators=(",", ":")), encoding="utf-8")
        _chmod_quietly(staging, 0o600)
        staging.replace(self.path)

        # An older file may have been created with a looser umask.
        try:
            if stat.S_IMODE(self.path.stat().st_mode) & 0o077:
                self.path.chmod(0o600)
        except OSError:
            pass


def default_cache_dir() -> Path:
    override = os.environ.get("SWEEPER_TOKEN_CACHE_DIR")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".mailbox-sweeper" / "tokens"


def safe_profile_name(profile: Optional[str]) -> str:
    text = (profile or "").strip()
    cleaned = "".join(ch if ch.isalnum() or ch in "-_." else "_" for ch in text)
    return cleaned.strip("._") or "default"


def _chmod_quietly(path: Path, mode: int) -> None:
    try:
        path.chmod(mode)
    except OSError:
        pass


def _usable_keyring():
    try:
        import keyring  # type: ignore
    except ImportError:
        return None

    try:
        backend = keyring.get_keyring()
    except Exception:
        return None
    if backend is None:
        return None

    # keyring.backends.fail.Keyring and the null backend both signal "no keychain".
    qualified = f"{backend.__class__.__module__}.{backend.__class__.__name__}".lower()
    if "fail" in qualified or "null" in qualified:
        return None
    return keyring
