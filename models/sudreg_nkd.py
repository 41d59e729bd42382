from __future__ import annotations

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
)

from models import Base
from utils.time_utils import utcnow_sa_default


class SudregNkdCode(Base):
    """NKD (national activity classification) taxonomy entry.

    ``code`` is stored normalized (see ``utils.nkd_extract.normalize_code``),
    e.g. ``47.11``.
    """

    __tablename__ = "sudreg_nkd_codes"

    code = Column(String, primary_key=True)
    name = Column(String, nullable=True)
    raw_json = Column(Text, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow_sa_default)


class SudregCompanyNkd(Base):
    """Company -> NKD association derived from the company's detail document.

    Rows for one ``mbs`` are always replaced as a set; they are never merged.
    ``code`` intentionally has no FK to ``sudreg_nkd_codes``: detail documents
    can mention codes the taxonomy endpoint does not (yet) list.
    """

    __tablename__ = "sudreg_company_nkd"
    __table_args__ = (
        CheckConstraint(
            "relation_type IN ('primary', 'secondary', 'unknown')",
            name="ck_sudreg_company_nkd_relation_type",
        ),
        Index("ix_sudreg_company_nkd_code", "code", "relation_type"),
    )

    mbs = Column(
        String,
        ForeignKey("sudreg_companies.mbs", ondelete="CASCADE"),
        primary_key=True,
    )
    code = Column(String, primary_key=True)
    relation_type = Column(String, nullable=False, default="unknown")
