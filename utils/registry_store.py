"""Write/read helpers for the Sudreg cache tables.

Every public write helper is one transaction: it commits on success and rolls
back (then re-raises) on failure, so a crash mid-sync never leaves a company
half-written. Upserts are SQLite ``INSERT ... ON CONFLICT DO UPDATE`` with
last-writer-wins semantics.
"""

from __future__ import annotations

import json
from contextlib import contextmanager
from typing import Any, Iterable, Iterator

from sqlalchemy import delete, func
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session as SASession

from models.sudreg_companies import SudregCompany
from models.sudreg_nkd import SudregCompanyNkd, SudregNkdCode
from utils.nkd_extract import RELATION_RANK, fallback_nkd_name, normalize_code
from utils.sudreg_mapping import CANONICAL_FIELDS
from utils.time_utils import utcnow


def dump_raw(raw: Any) -> str | None:
    if raw is None:
        return None
    return json.dumps(raw, ensure_ascii=False, default=str)


def load_raw(text: str | None) -> Any:
    """Parse a stored raw document; unreadable blobs read as ``None``."""

    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return None


@contextmanager
def _transaction(session: SASession) -> Iterator[SASession]:
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise


def _upsert_company_stmt(canonical: dict[str, Any], raw: Any):
    values: dict[str, Any] = {
        field: (canonical.get(field) or None) for field in CANONICAL_FIELDS
    }
    values["raw_json"] = dump_raw(raw)
    values["updated_at"] = utcnow()

    stmt = sqlite_insert(SudregCompany).values(**values)
    update_cols = {k: stmt.excluded[k] for k in values if k != "mbs"}
    return stmt.on_conflict_do_update(index_elements=["mbs"], set_=update_cols)


def _dedupe_classifications(classifications: Iterable[dict[str, Any]]) -> dict[str, str]:
    """code -> relation_type, keeping the highest-ranked relation per code."""

    out: dict[str, str] = {}
    for item in classifications:
        code = normalize_code(item.get("code"))
        if not code:
            continue
        relation = item.get("relation_type") or "unknown"
        if relation not in RELATION_RANK:
            relation = "unknown"
        prev = out.get(code)
        if prev is None or RELATION_RANK[relation] > RELATION_RANK[prev]:
            out[code] = relation
    return out


def _replace_company_nkd_rows(
    session: SASession, mbs: str, classifications: Iterable[dict[str, Any]]
) -> int:
    session.execute(delete(SudregCompanyNkd).where(SudregCompanyNkd.mbs == mbs))
    rows = [
        {"mbs": mbs, "code": code, "relation_type": relation}
        for code, relation in _dedupe_classifications(classifications).items()
    ]
    if rows:
        session.execute(sqlite_insert(SudregCompanyNkd).values(rows))
    return len(rows)


def upsert_company(session: SASession, canonical: dict[str, Any], raw: Any) -> None:
    """Insert or overwrite the cached row for ``canonical['mbs']``."""

    if not canonical.get("mbs"):
        raise ValueError("canonical company has no mbs")
    with _transaction(session):
        session.execute(_upsert_company_stmt(canonical, raw))


def save_company(
    session: SASession,
    canonical: dict[str, Any],
    raw: Any,
    classifications: Iterable[dict[str, Any]],
) -> int:
    """Upsert the company row and replace its NKD associations atomically.

    Returns the number of association rows written.
    """

    mbs = canonical.get("mbs")
    if not mbs:
        raise ValueError("canonical company has no mbs")
    with _transaction(session):
        session.execute(_upsert_company_stmt(canonical, raw))
        return _replace_company_nkd_rows(session, mbs, classifications)


def replace_company_nkd(
    session: SASession, mbs: str, classifications: Iterable[dict[str, Any]]
) -> int:
    """Delete every association for ``mbs`` and insert ``classifications``."""

    with _transaction(session):
        return _replace_company_nkd_rows(session, mbs, classifications)


def clear_company_nkd(session: SASession, mbs: str) -> None:
    replace_company_nkd(session, mbs, [])


def upsert_nkd_code(session: SASession, code: str, name: str | None, raw: Any) -> bool:
    """Upsert one taxonomy entry. Returns False when ``code`` normalizes to empty."""

    norm = normalize_code(code)
    if not norm:
        return False
    label = (name or "").strip() or fallback_nkd_name(norm)

    stmt = sqlite_insert(SudregNkdCode).values(
        code=norm, name=label, raw_json=dump_raw(raw), updated_at=utcnow()
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["code"],
        set_={
            "name": stmt.excluded.name,
            "raw_json": stmt.excluded.raw_json,
            "updated_at": stmt.excluded.updated_at,
        },
    )
    with _transaction(session):
        session.execute(stmt)
    return True


def load_known_mbs(session: SASession) -> set[str]:
    """Load every cached MBS into memory for fast skipping."""

    return {r[0] for r in session.query(SudregCompany.mbs).all() if r[0]}


def count_rows(session: SASession) -> dict[str, int]:
    return {
        "cached_companies": int(session.query(func.count(SudregCompany.mbs)).scalar() or 0),
        "cached_nkd_codes": int(session.query(func.count(SudregNkdCode.code)).scalar() or 0),
        "cached_company_nkd": int(
            session.query(func.count()).select_from(SudregCompanyNkd).scalar() or 0
        ),
    }
