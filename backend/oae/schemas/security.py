from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict

class SetPinRequest(BaseModel):
    pin: str

class ChangePinRequest(BaseModel):
    old_pin: str
    new_pin: str

class PinStatusResponse(BaseModel):
    has_pin: bool
    created_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None

class SecurityEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    at: datetime
    user_id: str
    action: str
    success: bool
    details: str

class DeadLetterResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    kind: str
    ref_id: int
    attempts: int
    last_error: str
    created_at: datetime
    resolved_at: Optional[datetime] = None
