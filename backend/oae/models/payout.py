from sqlalchemy import Column, Integer, String, Numeric, DateTime, Enum, Text, ForeignKey, UniqueConstraint
from oae.core.clock import utcnow
from oae.database import Base
import enum

SYSTEM_PRINCIPAL = "system"

class PayoutStatus(str, enum.Enum):
    pending = "pending"
    scheduled = "scheduled"
    authorized = "authorized"
    broadcasting = "broadcasting"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"

TERMINAL_STATUSES = (PayoutStatus.completed, PayoutStatus.failed, PayoutStatus.cancelled)

class PayoutPriority(str, enum.Enum):
    low = "low"
    normal = "normal"
    high = "high"

PRIORITY_RANK = {PayoutPriority.high: 0, PayoutPriority.normal: 1, PayoutPriority.low: 2}

class Payout(Base):
    __tablename__ = "payouts"
    __table_args__ = (
        UniqueConstraint("source_deposit_id", "rule_id", name="uq_payout_deposit_rule"),
    )

    id = Column(Integer, primary_key=True)
    chain = Column(String(10), nullable=False)
    to_address = Column(String(128), nullable=False)
    amount = Column(Numeric(28, 8), nullable=False)
    fee = Column(Numeric(28, 8), nullable=True)
    priority = Column(Enum(PayoutPriority, native_enum=False, length=10), nullable=False, default=PayoutPriority.normal)
    status = Column(Enum(PayoutStatus, native_enum=False, length=20), nullable=False, default=PayoutStatus.pending, index=True)
    created_by = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    txid = Column(String(128), nullable=True, index=True)
    notes = Column(String(500), nullable=False, default="")
    batch_id = Column(String(32), nullable=True, index=True)
    source_deposit_id = Column(Integer, ForeignKey("deposits.id"), nullable=True)
    rule_id = Column(Integer, ForeignKey("auto_settlement_rules.id"), nullable=True)
    scheduled_at = Column(DateTime(timezone=True), nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    last_error = Column(String(500), nullable=True)
    signed_tx = Column(Text, nullable=True)
