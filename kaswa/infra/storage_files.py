"""Directory-backed credential store.

Layout::

    <directory>/creds.json
    <directory>/keys/<key type>/<quoted key id>.json
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
from pathlib import Path
from typing import Any
from urllib.parse import quote, unquote

from kaswa.utils.auth import (
    CredentialStorePort,
    SessionCredentials,
    decode_json_value,
    encode_json_value,
)

logger = logging.getLogger(__name__)

CREDS_FILE = "creds.json"
KEYS_DIR = "keys"


def _file_name(name: str) -> str:
    return quote(str(name), safe="") + ".json"


def _write_json(path: Path, value: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(json.dumps(encode_json_value(value), separators=(",", ":")), "utf-8")
    os.replace(tmp, path)


def _read_json(path: Path) -> Any:
    return decode_json_value(json.loads(path.read_text("utf-8")))


class MultiFileAuthStore(CredentialStorePort):
    """Write-through store for one session's credentials and signal keys."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)
        self._lock = asyncio.Lock()

    @property
    def creds_path(self) -> Path:
        return self.directory / CREDS_FILE

    def _key_path(self, key_type: str, key_id: str) -> Path:
        return self.directory / KEYS_DIR / quote(key_type, safe="") / _file_name(key_id)

    def _load_sync(self) -> SessionCredentials | None:
        if not self.creds_path.is_file():
            return None
        creds = _read_json(self.creds_path)
        if not isinstance(creds, dict) or not creds:
            return None

        keys: dict[str, dict[str, Any]] = {}
        keys_root = self.directory / KEYS_DIR
        if keys_root.is_dir():
            for type_dir in sorted(keys_root.iterdir()):
                if not type_dir.is_dir():
                    continue
                bucket: dict[str, Any] = {}
                for entry in sorted(type_dir.glob("*.json")):
                    try:
                        bucket[unquote(entry.stem)] = _read_json(entry)
                    except (OSError, ValueError) as exc:
                        logger.warning("skipping unreadable key file %s: %s", entry, exc)
                if bucket:
                    keys[unquote(type_dir.name)] = bucket
        return SessionCredentials(creds=creds, keys=keys)

    def _save_sync(self, credentials: SessionCredentials) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        _write_json(self.creds_path, credentials.creds)
        for key_type, entries in credentials.keys.items():
            for key_id, value in entries.items():
                path = self._key_path(key_type, key_id)
                if value is None:
                    path.unlink(missing_ok=True)
                else:
                    _write_json(path, value)

    def _clear_sync(self) -> None:
        if self.directory.exists():
            shutil.rmtree(self.directory)

    async def load(self) -> SessionCredentials | None:
        """Return stored credentials, or ``None`` when there is no usable session."""
        try:
            return await asyncio.to_thread(self._load_sync)
        except (OSError, ValueError) as exc:
            logger.warning("credential store at %s is unreadable: %s", self.directory, exc)
            return None

    async def save(self, credentials: SessionCredentials) -> None:
        async with self._lock:
            await asyncio.to_thread(self._save_sync, credentials)

    async def clear(self) -> None:
        async with self._lock:
            await asyncio.to_thread(self._clear_sync)
        logger.info("cleared credential store at %s", self.directory)

    async def has_credentials(self) -> bool:
        return await self.load() is not None
