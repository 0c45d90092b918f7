"""
Response envelopes shared by every route, plus a summary line for failed provider calls.
"""
from __future__ import annotations

from typing import Any, Dict, Mapping, Optional


# PUBLIC_INTERFACE
def ok(data: Any, meta: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Wrap a result as ``{"status": "ok", "data": ..., "meta": {...}}``."""
    return {"status": "ok", "data": data, "meta": meta or {}}


# PUBLIC_INTERFACE
def error_payload(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Body for a failed request.

    ``code`` is one of the stable ``ErrorCode`` values; ``details`` holds structured,
    non-secret context such as the missing field names.
    """
    payload: Dict[str, Any] = {"status": "error", "code": code, "message": message}
    if details:
        payload["details"] = details
    return payload


def _retry_after(headers: Optional[Mapping[str, Any]]) -> Optional[float]:
    if not headers:
        return None
    value = headers.get("retry-after") or headers.get("Retry-After")
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


# PUBLIC_INTERFACE
def describe_upstream_error(
    upstream_status: Optional[int],
    upstream_message: Optional[str],
    headers: Optional[Mapping[str, Any]] = None,
) -> str:
    """Human readable summary of a provider HTTP failure that keeps the provider's own text."""
    suffix = f": {upstream_message}" if upstream_message else ""
    if upstream_status == 429:
        wait = _retry_after(headers)
        hint = f" (retry after {wait:g}s)" if wait is not None else ""
        return f"Rate limited by provider{hint}{suffix}"
    if upstream_status in (401, 403):
        return f"Provider rejected the credentials ({upstream_status}){suffix}"
    return f"Provider returned {upstream_status}{suffix}"
