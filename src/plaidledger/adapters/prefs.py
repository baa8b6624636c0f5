from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
import json
import os
from pathlib import Path
import re
import tempfile
from typing import Any, TextIO

from loguru import logger

__all__ = ["PreferencesStore", "PREF_PLAID_ACCESS_TOKEN", "PREF_PLAID_SIGNED_IN"]

PREFS_NAMESPACE = "app_prefs"
PREF_PLAID_SIGNED_IN = "plaid_signed_in"
PREF_PLAID_ACCESS_TOKEN = "plaid_access_token"  # noqa: S105


class PreferencesStore:
    """
    Small key/value preferences store, one JSON file per key.

    - Writes are atomic via write-to-temp + os.replace().
    - Keys are validated to avoid path traversal or unsafe filenames.
    - Holds the Plaid sign-in flag and access token for refresh-on-launch.
    """

    def __init__(self, base_dir: str = ".plaidledger") -> None:
        self.base_dir = Path(base_dir).expanduser().resolve()
        self.base_dir.mkdir(parents=True, exist_ok=True)

    # -------- Public API --------

    def get(self, key: str) -> Any | None:
        path = self._key_path(key)
        if not path.exists():
            return None
        try:
            with path.open("r", encoding="utf-8") as f:
                return json.load(f)
        except json.JSONDecodeError:
            logger.debug("Preferences JSON decode failed at {}", path)
            return None
        except OSError as exc:
            logger.debug("Preferences read failed at {}: {}", path, exc)
            return None

    def set(self, key: str, value: Any) -> None:
        serialized = json.dumps(value, ensure_ascii=True)
        with self._atomic_writer(key) as tmp_file:
            tmp_file.write(serialized)

    def delete(self, key: str) -> bool:
        path = self._key_path(key)
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False

    # -------- Plaid session helpers --------

    @property
    def signed_in(self) -> bool:
        return self.get(PREF_PLAID_SIGNED_IN) is True

    @property
    def access_token(self) -> str | None:
        value = self.get(PREF_PLAID_ACCESS_TOKEN)
        if isinstance(value, str) and value.strip():
            return value
        return None

    def remember_sign_in(self, access_token: str) -> None:
        self.set(PREF_PLAID_SIGNED_IN, True)
        self.set(PREF_PLAID_ACCESS_TOKEN, access_token)

    def sign_out(self) -> None:
        self.delete(PREF_PLAID_SIGNED_IN)
        self.delete(PREF_PLAID_ACCESS_TOKEN)

    # -------- Internal helpers --------

    def _namespace_dir(self) -> Path:
        ns_dir = self.base_dir / PREFS_NAMESPACE
        ns_dir.mkdir(parents=True, exist_ok=True)
        return ns_dir

    def _key_path(self, key: str) -> Path:
        self._validate_key(key)
        return self._namespace_dir() / f"{self._sanitize_key(key)}.json"

    @staticmethod
    def _validate_key(key: str) -> None:
        if not isinstance(key, str) or not key or key.strip() == "":
            raise ValueError("key must be a non-empty string")
        if ".." in key or os.sep in key or "/" in key or "\\" in key:
            raise ValueError("key contains forbidden path components")

    @staticmethod
    def _sanitize_key(key: str) -> str:
        key = re.sub(r"\s+", "_", key)
        return re.sub(r"[^A-Za-z0-9._-]+", "_", key)

    @contextmanager
    def _atomic_writer(self, key: str) -> Iterator[TextIO]:
        final_path = self._key_path(key)
        tmp_file = tempfile.NamedTemporaryFile(
            mode="w",
            encoding="utf-8",
            delete=False,
            dir=str(final_path.parent),
            prefix=".tmp",
        )
        try:
            try:
                yield tmp_file
            finally:
                tmp_file.flush()
                os.fsync(tmp_file.fileno())
                tmp_file.close()

            os.replace(tmp_file.name, final_path)
        except Exception:
            if os.path.exists(tmp_file.name):
                os.unlink(tmp_file.name)
            raise
