from datetime import timezone
from typing import Any, Dict, Iterable, Optional

from loguru import logger
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from nearhelp.core.errors import UsernameTaken
from nearhelp.models.profile import Profile
from nearhelp.services.liveness import utcnow

_TEXT_FIELDS = ("username", "full_name", "avatar_emoji", "phone", "home_address", "current_address")


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


# ---------- READING ----------

def get_profile(db: Session, user_id: str) -> Optional[Profile]:
    return db.get(Profile, user_id)


def get_or_create_profile(db: Session, user_id: str) -> Profile:
    profile = db.get(Profile, user_id)
    if profile is not None:
        return profile

    now = utcnow().replace(tzinfo=None)
    profile = Profile(id=user_id, social_links={}, created_at=now, updated_at=now)
    db.add(profile)
    db.commit()
    db.refresh(profile)
    logger.info(f"[profiles] created empty profile | user={user_id}")
    return profile


def summaries_by_id(db: Session, user_ids: Iterable[str]) -> Dict[str, Profile]:
    ids = sorted(set(user_ids))
    if not ids:
        return {}
    return {p.id: p for p in db.query(Profile).filter(Profile.id.in_(ids))}


# ---------- WRITING ----------

def update_profile(db: Session, user_id: str, changes: Dict[str, Any]) -> Profile:
    """
    Replace the editable fields of the caller's own profile. Blank strings
    are stored as NULL; a username already used by someone else is rejected.
    """
    profile = get_or_create_profile(db, user_id)

    for name in _TEXT_FIELDS:
        setattr(profile, name, _clean(changes.get(name)))
    profile.age = changes.get("age")
    profile.gender = changes.get("gender")

    links = changes.get("social_links") or {}
    profile.social_links = {k: v for k, v in ((k, _clean(v)) for k, v in links.items()) if v}

    username = profile.username
    if username is not None:
        with db.no_autoflush:
            taken = (
                db.query(Profile.id)
                .filter(Profile.username == username, Profile.id != user_id)
                .first()
            )
        if taken is not None:
            db.rollback()
            raise UsernameTaken(f"username {username!r} is already taken")

    profile.updated_at = utcnow().replace(tzinfo=None)
    try:
        db.commit()
    except IntegrityError:
        # lost a race for the same username
        db.rollback()
        raise UsernameTaken(f"username {username!r} is already taken")
    db.refresh(profile)
    logger.info(f"[profiles] updated | user={user_id}")
    return profile


def updated_at_utc(profile: Profile):
    return profile.updated_at.replace(tzinfo=timezone.utc)
