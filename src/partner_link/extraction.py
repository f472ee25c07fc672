"""Recover a Partner ID from Azure Management responses and error text.

Conflict errors do not always come with a readable ``partners`` resource, so
the identifier is dug out of free text with phrase-anchored patterns first
and a bare numeric match last.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional, Pattern, Tuple

logger = logging.getLogger(__name__)

PARTNER_ID_MIN_LENGTH = 6
PARTNER_ID_MAX_LENGTH = 10

_PATTERNS: Tuple[Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"partnerId['\"]?:?\s*['\"]?(\d+)",
        r"partner[_ ]?id[^\d]*(\d+)",
        r"AI[_ ]?Cloud[_ ]?Partner[_ ]?Program[_ ]?ID[^\d]*(\d+)",
        r"Associated[_ ]?PartnerID[^\d]*(\d+)",
        r"already\s+linked[^\d]*(\d+)",
        r"existing[_ ]?partner[^\d]*(\d+)",
        r"current[_ ]?partner[^\d]*(\d+)",
        r"conflict.*?(\d{6,10})",
        r"management[_ ]?partner[^\d]*(\d+)",
        r"\bpartner\b[^\d]*(\d{6,10})",
    )
)
_BARE_NUMBER = re.compile(r"\b(\d{6,10})\b")


def is_partner_id(value: Optional[str]) -> bool:
    """Non-empty, ASCII digits only, 6 to 10 characters."""
    return (
        bool(value)
        and value.isascii()
        and value.isdigit()
        and PARTNER_ID_MIN_LENGTH <= len(value) <= PARTNER_ID_MAX_LENGTH
    )


def extract_partner_id(text: Optional[str], allow_bare_number: bool = True) -> Optional[str]:
    if not text:
        return None

    patterns = _PATTERNS + ((_BARE_NUMBER,) if allow_bare_number else ())
    for pattern in patterns:
        match = pattern.search(text)
        if not match:
            continue
        candidate = match.group(1)
        if is_partner_id(candidate):
            logger.debug("Extracted Partner ID %s using pattern %s", candidate, pattern.pattern)
            return candidate
        logger.debug("Skipped extracted value %s: not a valid Partner ID", candidate)
    return None


def _partner_id_from_item(item: Any) -> Optional[str]:
    if not isinstance(item, dict):
        return None
    properties = item.get("properties")
    if isinstance(properties, dict) and properties.get("partnerId"):
        return str(properties["partnerId"])
    if item.get("partnerId"):
        return str(item["partnerId"])
    return None


def partner_id_from_payload(payload: Any) -> Optional[str]:
    """Read ``partnerId`` from a ``partners`` response object or array."""
    if isinstance(payload, dict):
        found = _partner_id_from_item(payload)
        if found:
            return found
        # list responses are sometimes wrapped in an ARM-style envelope
        payload = payload.get("value")
    if isinstance(payload, list):
        for item in payload:
            found = _partner_id_from_item(item)
            if found:
                return found
    return None


def error_code_from_body(body: str) -> Optional[str]:
    """Return ``error.code`` from an Azure error document, if there is one."""
    try:
        document = json.loads(body)
    except (TypeError, ValueError):
        return None
    if isinstance(document, dict) and isinstance(document.get("error"), dict):
        code = document["error"].get("code")
        return str(code) if code else None
    return None
