from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from nearhelp.core.auth import get_current_entity_id
from nearhelp.core.db import get_db
from nearhelp.core.errors import ProfileNotFound
from nearhelp.schemas.profile import ProfileOut, ProfileUpdateRequest, SocialLinks
from .service import (
    get_or_create_profile,
    get_profile,
    update_profile,
    updated_at_utc,
)

router = APIRouter()


def _out(profile) -> ProfileOut:
    return ProfileOut(
        id=profile.id,
        username=profile.username,
        full_name=profile.full_name,
        avatar_emoji=profile.avatar_emoji,
        phone=profile.phone,
        age=profile.age,
        gender=profile.gender,
        home_address=profile.home_address,
        current_address=profile.current_address,
        social_links=SocialLinks(**(profile.social_links or {})),
        updated_at=updated_at_utc(profile),
    )


@router.get("/me", response_model=ProfileOut)
def profile_me(
    entity_id: str = Depends(get_current_entity_id),
    db: Session = Depends(get_db),
):
    return _out(get_or_create_profile(db, entity_id))


@router.put("/me", response_model=ProfileOut)
def profile_update(
    payload: ProfileUpdateRequest,
    entity_id: str = Depends(get_current_entity_id),
    db: Session = Depends(get_db),
):
    return _out(update_profile(db, entity_id, payload.model_dump()))


# someone from the nearby list or a help request thread
@router.get("/{user_id}", response_model=ProfileOut)
def profile_view(
    user_id: str,
    entity_id: str = Depends(get_current_entity_id),
    db: Session = Depends(get_db),
):
    profile = get_profile(db, user_id)
    if profile is None:
        raise ProfileNotFound(f"profile {user_id} not found")
    return _out(profile)
