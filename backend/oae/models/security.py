from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text
from oae.core.clock import utcnow
from oae.database import Base

class TransactionPin(Base):
    __tablename__ = "transaction_pins"

    user_id = Column(String(64), primary_key=True)
    pin_hash = Column(String(128), nullable=False)
    salt = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    failed_attempts = Column(Integer, nullable=False, default=0)
    locked_until = Column(DateTime(timezone=True), nullable=True)

class SecurityEvent(Base):
    """Append-only audit trail. Rows are never updated or deleted."""
    __tablename__ = "security_events"

    id = Column(Integer, primary_key=True)
    at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    action = Column(String(50), nullable=False)
    success = Column(Boolean, nullable=False)
    details = Column(Text, nullable=False, default="")
