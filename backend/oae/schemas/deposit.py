from datetime import datetime
from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, ConfigDict
from oae.models.deposit import DepositState

class DepositResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    chain: str
    txid: str
    vout: int
    address: str
    amount: Decimal
    first_seen_at: datetime
    block_height: Optional[int] = None
    confirmations: int
    state: DepositState
    notified_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None
