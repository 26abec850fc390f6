from datetime import datetime
from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field
from oae.models.payout import PayoutPriority, PayoutStatus

class CreatePayoutRequest(BaseModel):
    chain: str
    to_address: str
    amount: Decimal = Field(gt=0)
    notes: str = ""
    priority: PayoutPriority = PayoutPriority.normal
    scheduled_at: Optional[datetime] = None

class BatchItem(BaseModel):
    to_address: str
    amount: Decimal = Field(gt=0)
    notes: str = ""

class CreateBatchRequest(BaseModel):
    chain: str
    items: list[BatchItem] = Field(min_length=1)
    priority: PayoutPriority = PayoutPriority.normal

class AuthorizeRequest(BaseModel):
    pin: str

class FeeEstimateResponse(BaseModel):
    chain: str
    amount: Decimal
    priority: PayoutPriority
    fee: Decimal
    rate: Optional[Decimal] = None

class PayoutResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    chain: str
    to_address: str
    amount: Decimal
    fee: Optional[Decimal] = None
    priority: PayoutPriority
    status: PayoutStatus
    created_by: str
    created_at: datetime
    processed_at: Optional[datetime] = None
    txid: Optional[str] = None
    notes: str
    batch_id: Optional[str] = None
    source_deposit_id: Optional[int] = None
    rule_id: Optional[int] = None
    scheduled_at: Optional[datetime] = None
    retry_count: int
    last_error: Optional[str] = None
