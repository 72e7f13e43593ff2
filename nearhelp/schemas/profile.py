from datetime import datetime
from typing import Optional

from pydantic import Field

from nearhelp.schemas.base import BaseSchema
from nearhelp.schemas.enums import Gender

class SocialLinks(BaseSchema):
    instagram: Optional[str] = Field(default=None, max_length=200)
    facebook: Optional[str] = Field(default=None, max_length=200)
    linkedin: Optional[str] = Field(default=None, max_length=200)
    twitter: Optional[str] = Field(default=None, max_length=200)
    other: Optional[str] = Field(default=None, max_length=200)

class ProfileUpdateRequest(BaseSchema):
    username: Optional[str] = Field(default=None, max_length=40)
    full_name: Optional[str] = Field(default=None, max_length=120)
    avatar_emoji: Optional[str] = Field(default=None, max_length=16)
    phone: Optional[str] = Field(default=None, max_length=32)
    age: Optional[int] = Field(default=None, ge=0, le=150)
    gender: Optional[Gender] = None
    home_address: Optional[str] = Field(default=None, max_length=300)
    current_address: Optional[str] = Field(default=None, max_length=300)
    social_links: SocialLinks = Field(default_factory=SocialLinks)

class ProfileOut(BaseSchema):
    id: str
    username: Optional[str] = None
    full_name: Optional[str] = None
    avatar_emoji: Optional[str] = None
    phone: Optional[str] = None
    age: Optional[int] = None
    gender: Optional[Gender] = None
    home_address: Optional[str] = None
    current_address: Optional[str] = None
    social_links: SocialLinks
    updated_at: datetime

# what the nearby list carries for each user
class ProfileSummary(BaseSchema):
    full_name: Optional[str] = None
    username: Optional[str] = None
    avatar_emoji: Optional[str] = None
