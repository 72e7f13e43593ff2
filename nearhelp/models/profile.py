from sqlalchemy import Column, String, Integer, Enum, DateTime, JSON

from nearhelp.core.db import Base
from nearhelp.schemas.enums import Gender


class Profile(Base):
    __tablename__ = "profiles"

    # auth subject, same id as the position record
    id = Column(String, primary_key=True)

    username = Column(String, nullable=True, unique=True)
    full_name = Column(String, nullable=True)
    avatar_emoji = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    age = Column(Integer, nullable=True)

    gender = Column(
        Enum(Gender, name="gender_enum"),
        nullable=True
    )

    home_address = Column(String, nullable=True)
    current_address = Column(String, nullable=True)

    # {"instagram": "...", "facebook": "...", "linkedin": "...", "twitter": "...", "other": "..."}
    social_links = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)
