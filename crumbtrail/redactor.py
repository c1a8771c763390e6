"""
Masking of sensitive values in structured data.

Every mapping handed to the SDK (request headers, cookies, session,
parameters, user attributes and breadcrumb data) goes through
:py:func:`redact` before it is attached to a scope or an event. Keys are
matched by substring, case-insensitively and treating ``-`` and spaces
like ``_``, so ``"user_password"``, ``"X-Auth-Token"`` and ``"X-Api-Key"``
are all filtered.
"""

from collections.abc import Mapping

from crumbtrail.consts import DEFAULT_SENSITIVE_KEYS, FILTERED

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any, Iterable


def is_sensitive_key(
    key: "Any", sensitive_keys: "Iterable[str]" = DEFAULT_SENSITIVE_KEYS
) -> bool:
    try:
        normalized = _normalize(str(key))
    except Exception:
        return False
    return any(_normalize(sensitive) in normalized for sensitive in sensitive_keys)


def _normalize(key: str) -> str:
    # "X-Api-Key", "api key" and "API_KEY" all match "api_key"
    return key.lower().replace("-", "_").replace(" ", "_")


def redact(
    value: "Any", sensitive_keys: "Iterable[str]" = DEFAULT_SENSITIVE_KEYS
) -> "Any":
    """Return a copy of ``value`` with sensitive entries replaced.

    Mappings become new dicts, lists and tuples are rebuilt with their
    elements redacted. Anything else is returned as is. The input is never
    modified.
    """
    keys = tuple(k.lower() for k in sensitive_keys)
    return _redact(value, keys)


def _redact(value: "Any", keys: "tuple[str, ...]") -> "Any":
    if isinstance(value, Mapping):
        rv = {}
        for k, v in value.items():
            if is_sensitive_key(k, keys):
                rv[k] = FILTERED
            else:
                rv[k] = _redact(v, keys)
        return rv

    if isinstance(value, list):
        return [_redact(item, keys) for item in value]

    if isinstance(value, tuple):
        return tuple(_redact(item, keys) for item in value)

    return value
