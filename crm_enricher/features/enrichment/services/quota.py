"""
Quota key derivation.

Callers that work against the same CRM organization share one quota key,
so they share one job, one set of rate counters and one cooldown.
"""

import re

_SCHEME = re.compile(r"^[a-z][a-z0-9+.-]*://", re.IGNORECASE)
_UNSAFE = re.compile(r"[^a-z0-9.-]")


def normalize_crm_url(crm_url: str | None) -> str | None:
    """
    Reduce a CRM URL to a lower-cased host-style key.

    `https://Org.CRM.dynamics.com/` -> `org.crm.dynamics.com`
    """
    if not crm_url or not crm_url.strip():
        return None

    value = _SCHEME.sub("", crm_url.strip().lower())
    value = value.split("/", 1)[0].split("?", 1)[0]
    value = _UNSAFE.sub("_", value)
    return value or None


def quota_key_for(caller_id: str, crm_url: str | None) -> str:
    """Quota key for a caller: the CRM organization if known, else the caller alone."""
    return normalize_crm_url(crm_url) or f"user:{caller_id}"
