from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict

class AddAddressRequest(BaseModel):
    chain: str
    address: str
    label: str = ""

class AddressResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    chain: str
    address: str
    label: str
    active: bool
    added_at: datetime
    added_by: str
    deactivated_at: Optional[datetime] = None
    watermark: Optional[int] = None
