# crm/templates.py
import re
from typing import Any, Dict, Mapping, Optional

_TOKEN_RE = re.compile(r"{{\s*([^}]+?)\s*}}")
_WS_RE = re.compile(r"\s+")


# -------------------------------
# Helpers
# -------------------------------
def normalize_key(key: str) -> str:
    """``First Name`` / `` first_name `` / ``FIRST_NAME`` → ``first_name``."""
    return _WS_RE.sub("_", str(key).strip().lower())


def has_unresolved_tokens(body: Optional[str]) -> bool:
    """True when any ``{{`` or ``}}`` survives in the text."""
    text = body or ""
    return "{{" in text or "}}" in text


# -------------------------------
# Public API
# -------------------------------
def render_template(template: Optional[str], variables: Optional[Mapping[str, Any]] = None) -> str:
    """
    Replace ``{{ key }}`` placeholders with values from ``variables``.

    Keys on both sides are normalized (trimmed, lower-cased, whitespace runs
    collapsed to ``_``). Unknown keys render as an empty string. The result
    is not trimmed; callers decide.
    """
    if not template:
        return ""
    lookup: Dict[str, str] = {}
    for k, v in (variables or {}).items():
        lookup[normalize_key(k)] = "" if v is None else str(v)

    return _TOKEN_RE.sub(lambda m: lookup.get(normalize_key(m.group(1)), ""), template)


def sms_variables(recruit: Any, sender: Any, default_sender_name: str) -> Dict[str, str]:
    """Variable map for recruit-facing texts (recruit + sender names)."""
    first = getattr(recruit, "first_name", None) or ""
    last = getattr(recruit, "last_name", None) or ""
    sender_first = getattr(sender, "first_name", None) or ""
    sender_last = getattr(sender, "last_name", None) or ""
    sender_full = f"{sender_first} {sender_last}".strip()

    return {
        "first_name": first,
        "last_name": last,
        "full_name": f"{first} {last}".strip(),
        "sender_first_name": sender_first,
        "sender_last_name": sender_last,
        "sender_full_name": sender_full,
        # legacy alias
        "sender_name": sender_full or sender_first or default_sender_name,
    }


def render_sms(
    template_body: Optional[str],
    recruit: Any,
    sender: Any,
    *,
    default_sender_name: str,
    prefix: Optional[str] = None,
) -> str:
    """Render a stored template for one recruit, trimmed, with an optional prefix."""
    rendered = render_template(template_body or "", sms_variables(recruit, sender, default_sender_name)).strip()
    p = (prefix or "").strip()
    return f"{p}{' ' if p else ''}{rendered}".strip()
