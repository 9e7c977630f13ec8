"""Phone number and JID helpers."""

from __future__ import annotations

import re

S_WHATSAPP_NET = "s.whatsapp.net"
G_US = "g.us"

_WA_SUFFIX = f"@{S_WHATSAPP_NET}"
_WA_ID_RE = re.compile(r"^\d{6,20}$")
_SEPARATORS_RE = re.compile(r"[\s\-().]")


def normalize_wa_id(raw: str, country_code: str = "62") -> str:
    """Return the international digits for a phone number.

    Local numbers starting with ``0`` get ``country_code`` in place of the
    leading zero; numbers already carrying the country code are kept.
    """
    candidate = _SEPARATORS_RE.sub("", (raw or "").strip())
    if candidate.endswith(_WA_SUFFIX):
        candidate = candidate[: -len(_WA_SUFFIX)]
    if candidate.startswith("+"):
        candidate = candidate[1:]
    elif candidate.startswith("0"):
        candidate = country_code + candidate[1:]
    elif not candidate.startswith(country_code):
        candidate = country_code + candidate
    if not _WA_ID_RE.fullmatch(candidate):
        raise ValueError("Invalid WhatsApp number. Use digits only with optional '+' prefix.")
    return candidate


def to_user_jid(raw: str, country_code: str = "62") -> str:
    """Address a phone number or pass through an existing group JID."""
    value = (raw or "").strip()
    if value.endswith(f"@{G_US}"):
        return value
    return f"{normalize_wa_id(value, country_code)}{_WA_SUFFIX}"
