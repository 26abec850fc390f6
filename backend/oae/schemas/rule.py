from datetime import datetime
from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field

class AddRuleRequest(BaseModel):
    chain: str
    destination_address: str
    percentage_bps: int = Field(ge=0, le=10000)
    label: str = ""
    min_threshold: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None

class SetEnabledRequest(BaseModel):
    enabled: bool

class RuleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    chain: str
    destination_address: str
    percentage_bps: int
    label: str
    enabled: bool
    min_threshold: Decimal
    max_amount: Optional[Decimal] = None
    created_at: datetime
