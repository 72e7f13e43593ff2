from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum

from nearhelp.core.presence_config import STALE_AFTER_SECONDS, HEARTBEAT_INTERVAL_SECONDS


class StatusFlag(str, Enum):
    """Status an entity asserts about itself. Stored on the position record."""
    online = "online"
    offline = "offline"
    away = "away"


class Liveness(str, Enum):
    online = "online"
    offline = "offline"


T_STALE = timedelta(seconds=STALE_AFTER_SECONDS)
T_HEARTBEAT = timedelta(seconds=HEARTBEAT_INTERVAL_SECONDS)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _require_aware(value: datetime, name: str) -> None:
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        raise ValueError(f"{name} must be timezone-aware, got naive {value!r}")


def is_fresh(last_update_at: datetime, now: datetime, stale_after: timedelta = T_STALE) -> bool:
    _require_aware(last_update_at, "last_update_at")
    _require_aware(now, "now")
    # a timestamp from the future (client clock skew) counts as fresh
    return now - last_update_at <= stale_after


def classify(
    status: StatusFlag | str,
    last_update_at: datetime,
    now: datetime,
    stale_after: timedelta = T_STALE,
) -> Liveness:
    """
    online iff the entity says it is online AND we heard from it within the
    staleness window. away counts as offline.
    """
    flag = StatusFlag(status)
    fresh = is_fresh(last_update_at, now, stale_after)
    if flag is StatusFlag.online and fresh:
        return Liveness.online
    return Liveness.offline


def display_status(
    status: StatusFlag | str,
    last_update_at: datetime,
    now: datetime,
    stale_after: timedelta = T_STALE,
) -> StatusFlag:
    """Like classify, but keeps a fresh `away` visible to the UI."""
    flag = StatusFlag(status)
    if not is_fresh(last_update_at, now, stale_after):
        return StatusFlag.offline
    return flag
