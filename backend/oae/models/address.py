from sqlalchemy import Column, Integer, String, Boolean, DateTime, UniqueConstraint
from oae.core.clock import utcnow
from oae.database import Base

class WatchedAddress(Base):
    __tablename__ = "watched_addresses"
    __table_args__ = (
        UniqueConstraint("chain", "address", name="uq_watched_chain_address"),
    )

    id = Column(Integer, primary_key=True)
    chain = Column(String(10), nullable=False, index=True)
    address = Column(String(128), nullable=False)
    label = Column(String(100), nullable=False, default="")
    active = Column(Boolean, nullable=False, default=True)
    added_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    added_by = Column(String(64), nullable=False)
    deactivated_at = Column(DateTime(timezone=True), nullable=True)
    # last fully-scanned block height
    watermark = Column(Integer, nullable=True)
