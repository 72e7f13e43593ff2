import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from nearhelp.core.db import Base
from nearhelp.core.errors import UsernameTaken
from nearhelp.models.profile import Profile
from nearhelp.modules.profiles.service import (
    get_or_create_profile,
    get_profile,
    summaries_by_id,
    update_profile,
)
from nearhelp.schemas.enums import Gender


@pytest.fixture
def db():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool, future=True)
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(bind=engine, expire_on_commit=False, future=True)()
    try:
        yield session
    finally:
        session.close()


def _changes(**overrides):
    changes = {
        "username": None,
        "full_name": None,
        "avatar_emoji": None,
        "phone": None,
        "age": None,
        "gender": None,
        "home_address": None,
        "current_address": None,
        "social_links": {},
    }
    changes.update(overrides)
    return changes


def test_first_read_creates_an_empty_profile(db) -> None:
    assert get_profile(db, "u1") is None
    profile = get_or_create_profile(db, "u1")
    assert profile.id == "u1"
    assert profile.full_name is None
    assert profile.social_links == {}
    # second read returns the same row
    assert get_or_create_profile(db, "u1").created_at == profile.created_at
    assert db.query(Profile).count() == 1


def test_update_stores_fields_and_blanks_become_null(db) -> None:
    profile = update_profile(
        db,
        "u1",
        _changes(
            username="  asha  ",
            full_name="Asha Rao",
            avatar_emoji="🧑‍⚕️",
            phone="   ",
            age=34,
            gender=Gender.female,
            current_address="Sector 18, Noida",
            social_links={"instagram": "asha.rao", "twitter": "  ", "other": None},
        ),
    )
    assert profile.username == "asha"
    assert profile.full_name == "Asha Rao"
    assert profile.phone is None
    assert profile.age == 34
    assert profile.gender is Gender.female
    assert profile.home_address is None
    assert profile.social_links == {"instagram": "asha.rao"}


def test_update_replaces_previous_values(db) -> None:
    update_profile(db, "u1", _changes(full_name="Asha", age=34))
    profile = update_profile(db, "u1", _changes(full_name="Asha Rao"))
    assert profile.full_name == "Asha Rao"
    assert profile.age is None


def test_username_must_be_unique(db) -> None:
    update_profile(db, "u1", _changes(username="asha"))
    with pytest.raises(UsernameTaken):
        update_profile(db, "u2", _changes(username="asha"))
    assert get_profile(db, "u2").username is None

    # keeping your own username is fine
    assert update_profile(db, "u1", _changes(username="asha", full_name="Asha")).username == "asha"


def test_summaries_only_return_known_profiles(db) -> None:
    update_profile(db, "u1", _changes(full_name="Asha"))
    update_profile(db, "u2", _changes(username="ravi"))

    found = summaries_by_id(db, ["u1", "u2", "u3", "u1"])
    assert sorted(found) == ["u1", "u2"]
    assert found["u1"].full_name == "Asha"
    assert summaries_by_id(db, []) == {}
