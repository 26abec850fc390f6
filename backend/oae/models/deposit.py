from sqlalchemy import Column, Integer, String, Numeric, DateTime, Enum, UniqueConstraint
from oae.core.clock import utcnow
from oae.database import Base
import enum

class DepositState(str, enum.Enum):
    seen = "seen"
    confirming = "confirming"
    confirmed = "confirmed"
    orphaned = "orphaned"

class Deposit(Base):
    __tablename__ = "deposits"
    __table_args__ = (
        UniqueConstraint("chain", "txid", "vout", name="uq_deposit_key"),
    )

    id = Column(Integer, primary_key=True)
    chain = Column(String(10), nullable=False)
    txid = Column(String(128), nullable=False)
    vout = Column(Integer, nullable=False)
    address = Column(String(128), nullable=False, index=True)
    amount = Column(Numeric(28, 8), nullable=False)
    first_seen_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    block_height = Column(Integer, nullable=True)
    confirmations = Column(Integer, nullable=False, default=0)
    state = Column(Enum(DepositState, native_enum=False, length=20), nullable=False, default=DepositState.seen, index=True)
    notified_at = Column(DateTime(timezone=True), nullable=True)
    settled_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def key(self) -> tuple:
        return (self.chain, self.txid, self.vout)

class OutboundTx(Base):
    """Ledger view of a txid we broadcast, refreshed by reconciliation."""
    __tablename__ = "outbound_txs"
    __table_args__ = (
        UniqueConstraint("chain", "txid", name="uq_outbound_chain_txid"),
    )

    id = Column(Integer, primary_key=True)
    chain = Column(String(10), nullable=False)
    txid = Column(String(128), nullable=False)
    block_height = Column(Integer, nullable=True)
    confirmations = Column(Integer, nullable=False, default=0)
    last_checked_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
