import logging
from sqlalchemy import or_
from sqlalchemy.orm import Session
from typing import Optional

from . import database as db_module
from . import schemas

logger = logging.getLogger(__name__)


def get_profile(db: Session, user_id: str) -> Optional[db_module.UserProfile]:
    """
    Retrieves the profile row for a user, or None if the user has no record yet.
    """
    return db.query(db_module.UserProfile).filter(db_module.UserProfile.user_id == user_id).first()


def get_profile_record(db: Session, user_id: str) -> Optional[schemas.ProfileRecord]:
    """
    Retrieves a user's gemstone record as a ProfileRecord.
    """
    db_profile = get_profile(db, user_id=user_id)
    if db_profile is None:
        return None
    return schemas.ProfileRecord(
        balance=db_profile.gemstones,
        last_grant_at=db_profile.last_free_gemstones_grant
    )


def upsert_profile(
    db: Session,
    user_id: str,
    record: schemas.ProfileRecord,
    revision: Optional[int] = None,
) -> Optional[db_module.UserProfile]:
    """
    Creates the user's profile row or overwrites its balance and last grant time.

    Without a revision the last writer wins. With one, the row is only updated
    when its stored revision is older, so a delayed write that lands after a
    newer one is discarded.
    """
    values = {
        "gemstones": record.balance,
        "last_free_gemstones_grant": record.last_grant_at,
    }
    query = db.query(db_module.UserProfile).filter(db_module.UserProfile.user_id == user_id)
    if revision is not None:
        values["revision"] = revision
        query = query.filter(
            or_(db_module.UserProfile.revision.is_(None), db_module.UserProfile.revision < revision)
        )

    updated = query.update(values, synchronize_session=False)
    if not updated:
        if get_profile(db, user_id=user_id) is None:
            db.add(db_module.UserProfile(user_id=user_id, **values))
        else:
            logger.info(f"Discarded stale write for user {user_id} (revision {revision}).")

    db.commit()
    return get_profile(db, user_id=user_id)
