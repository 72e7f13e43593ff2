from sqlalchemy import Column, String, Float, DateTime, Index

from nearhelp.core.db import Base


class Message(Base):
    __tablename__ = "messages"

    id = Column(String, primary_key=True)
    sender_id = Column(String, nullable=False, index=True)
    body = Column(String, nullable=False)

    # request-scoped chat; the help request may live in another store, so no FK
    help_request_id = Column(String, nullable=True, index=True)

    # location-scoped chat
    lat = Column(Float, nullable=True)
    lng = Column(Float, nullable=True)
    place_label = Column(String, nullable=True)

    created_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("idx_messages_location", "lat", "lng"),
        Index("idx_messages_created_at", "created_at"),
    )
