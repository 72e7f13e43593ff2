from sqlalchemy import Column, String, Float, Boolean, DateTime, Index, CheckConstraint

from nearhelp.core.db import Base

class Position(Base):
    __tablename__ = "positions"

    entity_id = Column(String, primary_key=True, index=True)
    lat = Column(Float, nullable=False)
    lng = Column(Float, nullable=False)

    status = Column(
        String,
        CheckConstraint(
            "status IN ('online','offline','away')",
            name="positions_status_check",
        ),
        nullable=False,
        default="online",
    )

    display_name = Column(String, nullable=True)
    place_label = Column(String, nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)

    # stored as naive UTC
    last_update_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("idx_positions_location", "lat", "lng"),
        Index("idx_positions_last_update", "last_update_at"),
    )
