"""Discover NKD classification codes anywhere in a Sudreg document.

The detail document has no stable place for "which activity codes apply":
primary and secondary activities show up in sibling arrays, nested relation
objects and older structure revisions. Instead of hard-coding paths, the
document is walked recursively and every node that looks like an NKD record
is collected:

- the node is a dict with a code key (``sifra``, ``code``, ``oznaka``,
  ``nkd``, ``nkd_sifra``; case-insensitive) holding a scalar, and
- the key path leading to it, or the node's own keys, mention ``nkd``.

The relation type is inferred from the key path (``pretezita_djelatnost`` ->
primary, ``sporedne_djelatnosti`` -> secondary, anything else -> unknown).
Codes are deduplicated after normalization; the highest-ranked relation type
wins and a known name is never replaced by an empty one.

Results are a set in list form: callers must not rely on order.
"""

from __future__ import annotations

import re
from typing import Any

from utils.sudreg_mapping import as_text

CODE_KEYS: tuple[str, ...] = ("sifra", "code", "oznaka", "nkd", "nkd_sifra")
NAME_KEYS: tuple[str, ...] = (
    "naziv",
    "name",
    "puni_naziv",
    "kratki_naziv",
    "opis",
    "nkd_naziv",
)

# "nacionalna_klasifikacija_djelatnosti" is the spelled-out form of "nkd".
NKD_MARKERS: tuple[str, ...] = ("nkd", "klasifikacija_djelatnosti")

PRIMARY_MARKERS: tuple[str, ...] = ("pretez", "primarn", "glavn")
SECONDARY_MARKERS: tuple[str, ...] = ("spored", "sekund")

RELATION_RANK: dict[str, int] = {"primary": 3, "secondary": 2, "unknown": 1}

_WHITESPACE_RE = re.compile(r"\s+")
_NON_CODE_CHARS_RE = re.compile(r"[^0-9A-Za-z.]")


def normalize_code(value: Any) -> str:
    """``"47,11 "`` -> ``"47.11"``; anything unusable -> ``""``."""

    text = as_text(value)
    if not text:
        return ""
    text = _WHITESPACE_RE.sub("", text).replace(",", ".")
    text = _NON_CODE_CHARS_RE.sub("", text)
    return text.strip(".")


def relation_type_for_path(path: str) -> str:
    p = path.lower()
    if any(marker in p for marker in PRIMARY_MARKERS):
        return "primary"
    if any(marker in p for marker in SECONDARY_MARKERS):
        return "secondary"
    return "unknown"


def fallback_nkd_name(code: str) -> str:
    return f"NKD {code}"


def looks_like_code(name: str | None, code: str) -> bool:
    """True when ``name`` carries no information beyond the code itself."""

    text = as_text(name)
    if not text:
        return True
    return normalize_code(text) == code or text.upper() == f"NKD {code}".upper()


def _lower_keys(node: dict) -> dict[str, Any]:
    lowered: dict[str, Any] = {}
    for k, v in node.items():
        lk = str(k).lower()
        # First spelling wins when keys differ only by case.
        lowered.setdefault(lk, v)
    return lowered


def _first_value(lowered: dict[str, Any], keys: tuple[str, ...]) -> str:
    for key in keys:
        text = as_text(lowered.get(key))
        if text:
            return text
    return ""


def _has_nkd_marker(text: str) -> bool:
    return any(marker in text for marker in NKD_MARKERS)


def _merge(found: dict[str, dict[str, str]], code: str, name: str, relation_type: str) -> None:
    existing = found.get(code)
    if existing is None:
        found[code] = {"code": code, "name": name, "relation_type": relation_type}
        return

    if RELATION_RANK[relation_type] > RELATION_RANK[existing["relation_type"]]:
        found[code] = {
            "code": code,
            "name": name or existing["name"],
            "relation_type": relation_type,
        }
    elif not existing["name"] and name:
        existing["name"] = name


def _walk(node: Any, path: str, found: dict[str, dict[str, str]]) -> None:
    if isinstance(node, list):
        for item in node:
            _walk(item, path, found)
        return
    if not isinstance(node, dict):
        return

    lowered = _lower_keys(node)
    own_keys = " ".join(lowered.keys())

    if _has_nkd_marker(path) or _has_nkd_marker(own_keys):
        raw_code = _first_value(lowered, CODE_KEYS)
        code = normalize_code(raw_code)
        if code:
            _merge(
                found,
                code,
                _first_value(lowered, NAME_KEYS),
                relation_type_for_path(path),
            )

    for key, value in node.items():
        if isinstance(value, (dict, list)):
            child_path = f"{path}.{str(key).lower()}" if path else str(key).lower()
            _walk(value, child_path, found)


def extract_classifications(document: Any) -> list[dict[str, str]]:
    """Return ``[{code, name, relation_type}, ...]`` found anywhere in ``document``."""

    found: dict[str, dict[str, str]] = {}
    _walk(document, "", found)
    return list(found.values())


def taxonomy_entry(record: Any) -> tuple[str, str]:
    """``(normalized_code, name)`` for one taxonomy listing record."""

    if not isinstance(record, dict):
        return "", ""
    lowered = _lower_keys(record)
    return normalize_code(_first_value(lowered, CODE_KEYS)), _first_value(lowered, NAME_KEYS)
