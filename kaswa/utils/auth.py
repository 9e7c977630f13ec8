"""Session credentials and the credential store interface."""

from __future__ import annotations

import copy
from base64 import b64decode, b64encode
from dataclasses import dataclass, field
from typing import Any, Protocol

_BYTES_TAG = "__bytes__"


@dataclass
class SessionCredentials:
    """Opaque multi-device auth material.

    ``creds`` is always the complete credentials document. ``keys`` maps a key
    type to ``{key_id: value}``; in an update a ``None`` value means the entry
    was removed by the provider.
    """

    creds: dict[str, Any] = field(default_factory=dict)
    keys: dict[str, dict[str, Any]] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not self.creds

    def apply(self, update: SessionCredentials) -> None:
        if update.creds:
            self.creds.update(copy.deepcopy(update.creds))
        for key_type, entries in update.keys.items():
            bucket = self.keys.setdefault(key_type, {})
            for key_id, value in entries.items():
                if value is None:
                    bucket.pop(key_id, None)
                else:
                    bucket[key_id] = copy.deepcopy(value)
            if not bucket:
                self.keys.pop(key_type, None)

    def snapshot(self) -> SessionCredentials:
        return SessionCredentials(creds=copy.deepcopy(self.creds), keys=copy.deepcopy(self.keys))


def encode_json_value(value: Any) -> Any:
    """Make credential material JSON-safe, tagging raw bytes as base64."""
    if isinstance(value, (bytes, bytearray)):
        return {_BYTES_TAG: b64encode(bytes(value)).decode("utf-8")}
    if isinstance(value, dict):
        return {str(k): encode_json_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode_json_value(v) for v in value]
    return value


def decode_json_value(value: Any) -> Any:
    if isinstance(value, dict):
        if set(value) == {_BYTES_TAG} and isinstance(value[_BYTES_TAG], str):
            return b64decode(value[_BYTES_TAG].encode("utf-8"))
        return {k: decode_json_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [decode_json_value(v) for v in value]
    return value


def credentials_to_json(credentials: SessionCredentials) -> dict[str, Any]:
    return {
        "creds": encode_json_value(credentials.creds),
        "keys": encode_json_value(credentials.keys),
    }


def credentials_from_json(data: dict[str, Any] | None) -> SessionCredentials | None:
    if not isinstance(data, dict):
        return None
    creds = decode_json_value(data.get("creds") or {})
    keys = decode_json_value(data.get("keys") or {})
    if not isinstance(creds, dict) or not creds:
        return None
    if not isinstance(keys, dict):
        keys = {}
    return SessionCredentials(creds=creds, keys=keys)


class CredentialStorePort(Protocol):
    """Persistence of the single session's credentials."""

    async def load(self) -> SessionCredentials | None:
        ...

    async def save(self, credentials: SessionCredentials) -> None:
        ...

    async def clear(self) -> None:
        ...
