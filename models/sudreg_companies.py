from __future__ import annotations

from sqlalchemy import Column, DateTime, Index, String, Text

from models import Base
from utils.time_utils import utcnow_sa_default


class SudregCompany(Base):
    """Cached court-register subject, keyed by MBS.

    The scalar columns are "best known value" projections of ``raw_json``; both
    are always written by the same upsert so they never drift apart.
    ``raw_json`` holds the last full upstream document (detail document when
    enrichment succeeded, listing record otherwise).
    """

    __tablename__ = "sudreg_companies"
    __table_args__ = (
        Index("ix_sudreg_companies_oib", "oib"),
        Index("ix_sudreg_companies_updated_at", "updated_at"),
    )

    # Registry subject number (matični broj subjekta), stable external identity.
    mbs = Column(String, primary_key=True)

    name = Column(String, nullable=True)
    oib = Column(String, nullable=True)
    court = Column(String, nullable=True)
    status = Column(String, nullable=True)
    city = Column(String, nullable=True)
    address = Column(String, nullable=True)
    website = Column(String, nullable=True)

    raw_json = Column(Text, nullable=True)

    updated_at = Column(DateTime, nullable=False, default=utcnow_sa_default)
