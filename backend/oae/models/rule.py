from sqlalchemy import Column, Integer, String, Numeric, Boolean, DateTime, ForeignKey
from oae.core.clock import utcnow
from oae.database import Base

class AutoSettlementRule(Base):
    __tablename__ = "auto_settlement_rules"

    id = Column(Integer, primary_key=True)
    chain = Column(String(10), nullable=False, index=True)
    destination_address = Column(String(128), nullable=False)
    percentage_bps = Column(Integer, nullable=False)
    label = Column(String(100), nullable=False, default="")
    enabled = Column(Boolean, nullable=False, default=True)
    min_threshold = Column(Numeric(28, 8), nullable=False, default=0)
    max_amount = Column(Numeric(28, 8), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

class SettlementExecution(Base):
    __tablename__ = "settlement_executions"

    id = Column(Integer, primary_key=True)
    deposit_id = Column(Integer, ForeignKey("deposits.id"), nullable=False, unique=True)
    chain = Column(String(10), nullable=False)
    deposit_amount = Column(Numeric(28, 8), nullable=False)
    total_settled = Column(Numeric(28, 8), nullable=False, default=0)
    residual = Column(Numeric(28, 8), nullable=False, default=0)
    rules_applied = Column(Integer, nullable=False, default=0)
    batch_id = Column(String(32), nullable=True)
    executed_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
