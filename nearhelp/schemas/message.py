from datetime import datetime
from typing import Optional

from pydantic import Field

from nearhelp.schemas.base import BaseSchema

class MessageCreate(BaseSchema):
    body: str = Field(min_length=1, max_length=2000)
    help_request_id: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None

class MessageOut(BaseSchema):
    id: str
    sender_id: str
    body: str
    help_request_id: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    place_label: Optional[str] = None
    created_at: datetime
