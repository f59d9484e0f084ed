from __future__ import annotations

from typing import Any, Optional


PLACEHOLDER = "N/A"
REDACTION_CHAR = "*"
NAME_SEPARATOR = "."


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = value if isinstance(value, str) else str(value)
    return s or None


def mask_tail(value: Any, keep_last: int = 4) -> str:
    """Redact all but the last `keep_last` characters of `value`.

    - Empty or missing values render as the placeholder ("N/A").
    - Values no longer than `keep_last` are fully redacted.
    - Output length always equals the input length.
    """
    s = _as_text(value)
    if s is None:
        return PLACEHOLDER
    keep = max(0, int(keep_last))
    if len(s) <= keep:
        return REDACTION_CHAR * len(s)
    # Slice by absolute index; s[-0:] would return the whole string
    return REDACTION_CHAR * (len(s) - keep) + s[len(s) - keep:]


def mask_name(value: Any) -> str:
    """Show only the upper-cased initial of a name, e.g. "ravi" -> "R.***"."""
    s = _as_text(value)
    if s is None:
        return PLACEHOLDER
    return s[0].upper() + NAME_SEPARATOR + REDACTION_CHAR * (len(s) - 1)


__all__ = [
    "PLACEHOLDER",
    "REDACTION_CHAR",
    "mask_tail",
    "mask_name",
]
