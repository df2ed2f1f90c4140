"""Map the auth collaborator's user id onto an internal profile, creating it lazily."""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database import upsert_insert
from models.user import UserProfile
from services.errors import ChatError, ErrorKind

logger = logging.getLogger(__name__)


def get_or_create_user(db: Session, external_id: str) -> UserProfile:
    """Return the profile for *external_id*, provisioning it on first contact.

    Concurrent first requests race on the unique ``external_id``; the loser's
    insert is a no-op and both read back the same row. Any store failure is
    an ``INTERNAL_ERROR``, never a substitute user.
    """
    if not external_id:
        raise ChatError(ErrorKind.UNAUTHORIZED, "Unauthorized")
    try:
        user = db.query(UserProfile).filter(UserProfile.external_id == external_id).first()
        if user:
            return user
        stmt = (
            upsert_insert(db, UserProfile)
            .values(external_id=external_id)
            .on_conflict_do_nothing(index_elements=["external_id"])
        )
        db.execute(stmt)
        db.commit()
        user = db.query(UserProfile).filter(UserProfile.external_id == external_id).first()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("User lookup failed for %s", external_id)
        raise ChatError(ErrorKind.INTERNAL_ERROR, "User not found or could not be created")

    if user is None:
        raise ChatError(ErrorKind.INTERNAL_ERROR, "User not found or could not be created")
    logger.info("Provisioned user %s for %s", user.id, external_id)
    return user
