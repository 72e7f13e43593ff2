import uuid
from datetime import timezone
from typing import List, Optional

from sqlalchemy.orm import Session

from nearhelp.core.presence_config import NEARBY_MESSAGES_LIMIT, REQUEST_MESSAGES_LIMIT
from nearhelp.models.message import Message
from nearhelp.services.geo import Coordinates, bounding_box, within_radius
from nearhelp.services.liveness import utcnow


# ---------- SENDING ----------

def send_message(
    db: Session,
    sender_id: str,
    body: str,
    help_request_id: Optional[str] = None,
    coordinates: Optional[Coordinates] = None,
    place_label: Optional[str] = None,
) -> Message:
    body = body.strip()
    if not body:
        raise ValueError("Message body is empty")

    # callers check the help request exists; it may not live in this database
    if help_request_id is None and coordinates is None:
        raise ValueError("A message needs a help_request_id or a location")

    msg = Message(
        id=str(uuid.uuid4()),
        sender_id=sender_id,
        body=body,
        help_request_id=help_request_id,
        lat=coordinates.lat if coordinates else None,
        lng=coordinates.lng if coordinates else None,
        place_label=place_label,
        created_at=utcnow().replace(tzinfo=None),
    )
    db.add(msg)
    db.commit()
    db.refresh(msg)
    return msg


# ---------- READING ----------

def get_request_messages(db: Session, help_request_id: str, limit: int = REQUEST_MESSAGES_LIMIT) -> List[Message]:
    return (
        db.query(Message)
        .filter(Message.help_request_id == help_request_id)
        .order_by(Message.created_at.asc())
        .limit(limit)
        .all()
    )


def get_nearby_messages(
    db: Session,
    center: Coordinates,
    radius_km: float,
    limit: int = NEARBY_MESSAGES_LIMIT,
) -> List[Message]:
    """Most recent location-scoped messages around `center`, oldest first."""
    box = bounding_box(center, radius_km)
    q = (
        db.query(Message)
        .filter(
            Message.help_request_id.is_(None),
            Message.lat.isnot(None),
            Message.lat.between(box.min_lat, box.max_lat),
        )
    )
    if not box.spans_all_longitudes:
        q = q.filter(Message.lng.between(box.min_lng, box.max_lng))

    recent = []
    for msg in q.order_by(Message.created_at.desc()):
        if within_radius(center, Coordinates(msg.lat, msg.lng), radius_km):
            recent.append(msg)
            if len(recent) >= limit:
                break
    recent.reverse()
    return recent


def created_at_utc(msg: Message):
    return msg.created_at.replace(tzinfo=timezone.utc)
