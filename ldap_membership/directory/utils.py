from __future__ import annotations

from typing import Any, Iterable

_FILTER_ESCAPES = {"\\": r"\5c", "*": r"\2a", "(": r"\28", ")": r"\29", "\x00": r"\00"}


def escape_ldap_filter_value(value: str) -> str:
    """RFC 4515 escaping for LDAP filter values."""
    return "".join(_FILTER_ESCAPES.get(ch, ch) for ch in value)


def split_dns(text: str) -> list[str]:
    if not text:
        return []
    return [x.strip() for x in text.split(";") if x.strip()]


def _split_rdns(dn: str) -> list[str]:
    """Split a DN on unescaped commas."""
    parts: list[str] = []
    cur: list[str] = []
    esc = False
    for ch in dn:
        if esc:
            cur.append(ch)
            esc = False
            continue
        if ch == "\\":
            cur.append(ch)
            esc = True
            continue
        if ch == ",":
            parts.append("".join(cur))
            cur = []
            continue
        cur.append(ch)
    parts.append("".join(cur))
    return parts


def normalize_dn(dn: str) -> str:
    """Comparison key for a DN.

    Attribute types and values are case-folded and whitespace around the
    RDN separators is dropped: ``CN=Eng, OU=Groups`` and ``cn=eng,ou=groups``
    compare equal.
    """
    s = (dn or "").strip()
    if not s:
        return ""
    out: list[str] = []
    for rdn in _split_rdns(s):
        if "=" in rdn:
            typ, val = rdn.split("=", 1)
            out.append(f"{typ.strip().lower()}={val.strip().lower()}")
        else:
            out.append(rdn.strip().lower())
    return ",".join(out)


def dn_first_component_value(dn: str) -> str:
    """Return first RDN value from a DN (e.g. cn=eng,ou=groups,... -> eng)."""
    s = (dn or "").strip()
    if not s:
        return ""

    rdn = _split_rdns(s)[0]
    val = rdn.split("=", 1)[-1].strip()
    for escaped in ("\\,", "\\+", "\\=", "\\\""):
        val = val.replace(escaped, escaped[1])
    return val.strip()


def to_str_values(raw: Any) -> tuple[str, ...]:
    """Coerce a directory attribute value (scalar, list, bytes) to a tuple of str."""
    if raw is None:
        return ()
    if isinstance(raw, (str, bytes, bytearray)) or not isinstance(raw, Iterable):
        raw = [raw]
    out: list[str] = []
    for v in raw:
        if v is None:
            continue
        if isinstance(v, (bytes, bytearray)):
            out.append(bytes(v).decode("utf-8", errors="replace"))
        else:
            out.append(str(v))
    return tuple(out)
