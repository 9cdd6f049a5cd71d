from sqlalchemy import Column, String, BigInteger, Boolean, DateTime
from sqlalchemy.dialects.postgresql import JSONB
from datetime import datetime
from models.base import Base


class DsldLabelFacts(Base):
    """Harvested DSLD label facts, one row per label id"""
    __tablename__ = "dsld_label_facts"

    dsld_label_id = Column(BigInteger, primary_key=True)
    facts_json = Column(JSONB, nullable=True)
    fetched_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class LnhpdFacts(Base):
    """Harvested LNHPD product facts (medicinal/non-medicinal ingredients, doses)"""
    __tablename__ = "lnhpd_facts"

    lnhpd_id = Column(BigInteger, primary_key=True)
    npn = Column(String(32), nullable=True, index=True)
    is_on_market = Column(Boolean, nullable=True, default=True)
    facts_json = Column(JSONB, nullable=True)
    fetched_at = Column(DateTime, nullable=False, default=datetime.utcnow)
