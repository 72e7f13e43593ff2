from sqlalchemy import Column, String, Float, Boolean, DateTime, Index, CheckConstraint

from nearhelp.core.db import Base

class HelpRequest(Base):
    __tablename__ = "help_requests"

    id = Column(String, primary_key=True)
    owner_id = Column(String, nullable=False, index=True)
    category = Column(
        String,
        CheckConstraint(
            "category IN ('Medical','Food','Vehicle','Other')",
            name="help_requests_category_check",
        ),
        nullable=False,
    )
    message = Column(String, nullable=False)
    is_urgent = Column(Boolean, nullable=False, default=False)

    # fixed at creation
    lat = Column(Float, nullable=False)
    lng = Column(Float, nullable=False)
    place_label = Column(String, nullable=True)

    resolved = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("idx_help_requests_location", "lat", "lng"),
        Index("idx_help_requests_created_at", "created_at"),
    )
