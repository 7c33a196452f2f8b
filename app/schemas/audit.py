from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class AuditLogOut(BaseModel):
    id: int
    user_id: Optional[int]
    order_id: Optional[int]
    action: str
    entity_type: Optional[str]
    entity_id: Optional[str]
    changes: Optional[Any]
    # Stored on the ORM object as ``details``
    metadata: Optional[Any] = Field(default=None, validation_alias="details")
    ip_address: Optional[str]
    user_agent: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True
