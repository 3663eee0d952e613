"""
Presence: "online" means the profile's last_seen falls inside a trailing
window (5 minutes by default). There is no connection tracking; a closed
client simply ages out once its last write is older than the window.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from chatapp.config import settings
from chatapp.models import Profile
from chatapp.realtime import PRESENCE_CHANNEL, feed
from chatapp.utils import iso_ago, iso_now, parse_iso, utcnow

logger = logging.getLogger(__name__)


def is_online(last_seen: Optional[str], now: Optional[datetime] = None, window_seconds: Optional[int] = None) -> bool:
    if not last_seen:
        return False
    window = timedelta(seconds=settings.PRESENCE_WINDOW_SECONDS if window_seconds is None else window_seconds)
    return (now or utcnow()) - parse_iso(last_seen) <= window


def online_user_ids(db: Session, now: Optional[datetime] = None) -> list[str]:
    cutoff = iso_ago(settings.PRESENCE_WINDOW_SECONDS, now)
    rows = db.query(Profile.user_id).filter(Profile.last_seen >= cutoff).all()
    return [row.user_id for row in rows]


def touch(db: Session, user_id: str) -> Optional[str]:
    """
    Stamp the caller's last_seen with the current time and announce it on the
    presence channel. Last write wins.

    Returns:
        The new last_seen value, or None when the identity has no profile
    """
    profile = db.query(Profile).filter(Profile.user_id == user_id).first()
    if profile is None:
        logger.warning(f"Presence update for unknown profile: {user_id}")
        return None

    profile.last_seen = iso_now()
    db.commit()
    feed.publish(
        PRESENCE_CHANNEL,
        "UPDATE",
        "profiles",
        {"user_id": user_id, "last_seen": profile.last_seen},
    )
    return profile.last_seen
