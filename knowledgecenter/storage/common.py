"""Helpers shared between the memory and postgres identity stores.

Both backends must agree on how roles are ordered, how HTTP methods are keyed and
how locale maps are decoded, otherwise the same data would authorize differently
depending on the store in use.
"""

from __future__ import annotations

import json
import uuid
from ipaddress import ip_address
from typing import Any, Dict, Iterable, List, Optional

PUBLIC_GROUP_ID = "public"
WILDCARD_METHOD = "*"


def normalize_roles(roles: Iterable[Any]) -> List[str]:
    """Deduplicate and sort role names, dropping blanks.

    Args:
        roles: Role names from direct and group assignments

    Returns:
        Sorted list of unique role names
    """
    return sorted({str(role).strip() for role in roles if role and str(role).strip()})


def normalize_method(method: str) -> str:
    """Upper-case an HTTP verb; the wildcard passes through."""
    cleaned = (method or "").strip()
    if cleaned == WILDCARD_METHOD:
        return cleaned
    return cleaned.upper()


def parse_locale_map(raw: Any) -> Dict[str, str]:
    """Decode a locale-keyed JSON column (jsonb dict or JSON text).

    Args:
        raw: Column value as returned by the driver

    Returns:
        Mapping of locale tag to string; empty when undecodable
    """
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return {}
    if isinstance(raw, dict):
        return {str(key): str(value) for key, value in raw.items()}
    return {}


def normalize_ip(raw_ip: Any) -> Optional[str]:
    """Canonicalize an audit IP; unparseable values are kept verbatim.

    The client address comes from proxy headers, so it is recorded as given when
    it is not a literal address rather than being dropped.
    """
    if raw_ip is None:
        return None
    text = str(raw_ip).strip()
    if not text:
        return None
    try:
        return str(ip_address(text))
    except ValueError:
        return text


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Safely extract value from row dict or object."""
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError, AttributeError):
        return default


def generate_public_id() -> str:
    """Generate the externally visible identifier for a new record."""
    return str(uuid.uuid4())
