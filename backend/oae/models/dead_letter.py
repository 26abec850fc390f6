from sqlalchemy import Column, Integer, String, DateTime, UniqueConstraint
from oae.core.clock import utcnow
from oae.database import Base

class DeadLetter(Base):
    """Background work parked after its retry budget ran out."""
    __tablename__ = "dead_letters"
    __table_args__ = (
        UniqueConstraint("kind", "ref_id", name="uq_dead_letter_kind_ref"),
    )

    id = Column(Integer, primary_key=True)
    kind = Column(String(30), nullable=False)
    ref_id = Column(Integer, nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(String(500), nullable=False, default="")
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
