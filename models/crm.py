from __future__ import annotations

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from models import Base
from utils.time_utils import utcnow_sa_default


class CrmCompany(Base):
    """CRM-side company.

    Only the columns the registry import bridge reads or writes live here; the
    rest of the CRM lifecycle is owned elsewhere.
    """

    __tablename__ = "companies"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False, unique=True)
    website = Column(String, nullable=True)

    # Registry identity copied over on import.
    oib = Column(String, nullable=True, index=True)
    mbs = Column(String, nullable=True, index=True)
    registry_source = Column(String, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow_sa_default)

    leads = relationship("CrmLead", back_populates="company_ref")


class CrmLead(Base):
    __tablename__ = "leads"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    company_id = Column(
        Integer,
        ForeignKey("companies.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    # Denormalized company name, kept in sync with companies.name.
    company = Column(String, nullable=True)
    status = Column(String, nullable=False, default="New")
    website = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow_sa_default)

    company_ref = relationship("CrmCompany", back_populates="leads")
