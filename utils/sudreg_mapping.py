"""Map Sudreg records onto the local canonical company shape.

The listing endpoint, the detail endpoint and older API revisions spell the
same facts differently (``tvrtka.ime`` vs ``naziv`` vs ``ime``...). Each target
field therefore has an ordered tuple of dotted source paths; the first path
that yields a non-empty value wins. Numeric path segments index into lists
(``web_adrese.0.adresa``).

Everything here is pure and total: any input, including non-dicts, maps to a
dict whose fields are all strings (possibly empty).
"""

from __future__ import annotations

from typing import Any, Iterable

CANONICAL_FIELDS: tuple[str, ...] = (
    "name",
    "oib",
    "mbs",
    "court",
    "status",
    "city",
    "address",
    "website",
)

FIELD_PATHS: dict[str, tuple[str, ...]] = {
    "name": (
        "tvrtka.ime",
        "tvrtka",
        "naziv",
        "ime",
        "skracena_tvrtka.ime",
        "naziv_subjekta",
        "name",
    ),
    "oib": ("oib", "potpuni_oib", "oib_subjekta", "OIB", "tax_id"),
    "mbs": ("mbs", "potpuni_mbs", "maticni_broj_subjekta", "MBS", "subject_id"),
    "court": (
        "sud_nadlezan.naziv",
        "sud_sluzba.naziv",
        "nadlezni_sud",
        "sud",
        "court",
    ),
    "status": (
        "status.naziv",
        "status_naziv",
        "postupak.vrsta_postupka.naziv",
        "stanje",
        "status",
    ),
    "city": (
        "sjediste.naziv_naselja",
        "sjediste.naselje",
        "naziv_naselja",
        "naselje",
        "mjesto",
        "grad",
        "city",
    ),
    "address": (
        "adresa",
        "sjediste.adresa",
        "sjediste.puna_adresa",
        "puna_adresa",
        "address",
    ),
    "website": (
        "web",
        "web_adresa",
        "web_stranica",
        "internet_adresa",
        "web_adrese.0.adresa",
        "website",
    ),
}

# Building blocks for the synthetic address (street + number, settlement).
_STREET_PATHS = ("sjediste.ulica", "ulica")
_HOUSE_NUMBER_PATHS = ("sjediste.kucni_broj", "kucni_broj")
_HOUSE_NUMBER_SUFFIX_PATHS = ("sjediste.kucni_podbroj", "kucni_podbroj")
_SETTLEMENT_PATHS = ("sjediste.naziv_naselja", "naziv_naselja", "naselje")


def as_text(value: Any) -> str:
    """Scalar -> stripped string; containers, None and booleans -> ''."""

    if value is None or isinstance(value, bool):
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else str(value)
    return ""


def get_path(record: Any, path: str) -> Any:
    """Follow a dotted path through dicts and lists; None when it breaks."""

    current = record
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit():
            idx = int(part)
            current = current[idx] if idx < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def first_text(record: Any, paths: Iterable[str]) -> str:
    for path in paths:
        value = as_text(get_path(record, path))
        if value:
            return value
    return ""


def _synthetic_address(record: Any) -> str:
    street = first_text(record, _STREET_PATHS)
    number = first_text(record, _HOUSE_NUMBER_PATHS)
    suffix = first_text(record, _HOUSE_NUMBER_SUFFIX_PATHS)
    settlement = first_text(record, _SETTLEMENT_PATHS)

    street_line = " ".join(p for p in (street, f"{number}{suffix}") if p)
    return ", ".join(p for p in (street_line, settlement) if p)


def map_to_canonical(raw: Any) -> dict[str, Any]:
    """Map one upstream record to ``{name, oib, mbs, court, status, city,
    address, website, raw}``."""

    out: dict[str, Any] = {
        field: first_text(raw, FIELD_PATHS[field]) for field in CANONICAL_FIELDS
    }
    if not out["address"]:
        out["address"] = _synthetic_address(raw)
    out["raw"] = raw
    return out


def merge_canonical(primary: dict[str, Any], fallback: dict[str, Any]) -> dict[str, Any]:
    """Field-wise ``primary or fallback``; ``raw`` comes from ``primary``."""

    merged = {
        field: (primary.get(field) or fallback.get(field) or "")
        for field in CANONICAL_FIELDS
    }
    merged["raw"] = primary.get("raw")
    return merged
