"""Credential checks and permission predicates.

Credentials are verified on every request: a wrong password counts as a
failed attempt, and the attempt that reaches ``AUTH_MAX_ATTEMPTS`` locks the
account for ``AUTH_LOCK_MINUTES``. A lock older than that is lifted on the
next login attempt. No token or session is issued here.
"""

import logging
from datetime import timedelta

import bcrypt
from sqlalchemy.orm import Session

from lending import config, crud, models
from lending.exceptions import AccountLockedError, InvalidCredentialsError
from lending.utils import utcnow

logger = logging.getLogger(__name__)


def verify_password(password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))
    except ValueError as e:
        logger.error(f"bcrypt error: {e}")
        return False


def _lock_expired(user: models.User) -> bool:
    if user.locked_at is None:
        return True
    return utcnow() - user.locked_at >= timedelta(minutes=config.AUTH_LOCK_MINUTES)


def authenticate_user(db: Session, email: str, password: str) -> models.User:
    """Return the user owning these credentials or raise ``UnauthorizedError``."""
    normalized_email = email.strip().lower()
    user = crud.find_user_by_email(db, normalized_email)
    if user is None:
        logger.warning(f"Login attempt for unknown email: {normalized_email}")
        raise InvalidCredentialsError()

    if user.is_locked:
        if not _lock_expired(user):
            logger.warning(f"Account {normalized_email} is still locked")
            raise AccountLockedError(config.AUTH_LOCK_MINUTES)
        logger.info(f"Lock expired for {normalized_email}, resetting lockout")
        crud.reset_user_lockout(db, user)

    if not verify_password(password, user.hashed_password):
        attempts = user.failed_attempts + 1
        logger.warning(
            f"Failed login for {normalized_email} ({attempts}/{config.AUTH_MAX_ATTEMPTS})"
        )
        if attempts >= config.AUTH_MAX_ATTEMPTS:
            logger.warning(f"Locking account {normalized_email} after {attempts} failures")
            crud.lock_user_account(db, user)
            raise AccountLockedError(config.AUTH_LOCK_MINUTES)
        crud.increment_failed_attempts(db, user)
        raise InvalidCredentialsError()

    return crud.reset_user_lockout(db, user, logged_in=True)


def is_admin(user: models.User) -> bool:
    return user is not None and user.role == models.UserRole.ADMIN


def can_manage_borrowing(user: models.User, borrowing: models.Borrowing) -> bool:
    """Owners manage their own borrowings, admins manage everyone's."""
    return is_admin(user) or (user is not None and borrowing.user_id == user.id)
