"""Borrowing lifecycle: create, renew, return and the overdue sweep.

Each mutating operation touches up to three rows (the borrowing, its copy
and the borrower's ``active_borrowings_count``) and commits them together;
any failure rolls the whole session back. The borrower's counter is always
adjusted with an SQL expression so concurrent commits do not lose updates,
and ``create`` reads the user and copy rows ``FOR UPDATE`` on databases that
support row locks.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from lending import auth, config, models, schemas
from lending.exceptions import (
    BadRequestError,
    BorrowingAlreadyReturnedError,
    BorrowingLimitReachedError,
    BorrowingNotFoundError,
    BorrowingNotRenewableError,
    CopyNotAvailableError,
    CopyNotFoundError,
    DatabaseError,
    InvalidDueDateError,
    LendingException,
    PermissionDeniedError,
    UserNotFoundError,
)
from lending.utils import as_utc_naive, paginate, utcnow

logger = logging.getLogger(__name__)

Borrowing = models.Borrowing
BorrowingStatus = models.BorrowingStatus


def _with_relations(query):
    return query.options(
        selectinload(Borrowing.copy).selectinload(models.Copy.resource),
        selectinload(Borrowing.user),
    )


def _adjust_active_count(db: Session, user_id: int, delta: int):
    query = db.query(models.User).filter(models.User.id == user_id)
    if delta < 0:
        query = query.filter(models.User.active_borrowings_count > 0)
    query.update(
        {models.User.active_borrowings_count: models.User.active_borrowings_count + delta},
        synchronize_session=False,
    )


def create(
    db: Session,
    user_id: int,
    copy_id: int,
    due_date: Optional[datetime] = None,
    comments: Optional[str] = None,
) -> models.Borrowing:
    """Lend a copy to a user.

    Checks, in order: the user exists, is under ``MAX_ACTIVE_BORROWINGS``,
    the copy exists and is available, and the due date (default: now plus
    ``DEFAULT_BORROWING_DAYS``) is not in the past. Then inserts an ACTIVE
    borrowing, marks the copy unavailable and increments the user's counter
    in one commit.
    """
    now = utcnow()
    due_date = as_utc_naive(due_date) or now + timedelta(days=config.DEFAULT_BORROWING_DAYS)

    try:
        user = (
            db.query(models.User)
            .filter(models.User.id == user_id)
            .with_for_update()
            .first()
        )
        if user is None:
            raise UserNotFoundError(user_id)
        if user.active_borrowings_count >= config.MAX_ACTIVE_BORROWINGS:
            raise BorrowingLimitReachedError(config.MAX_ACTIVE_BORROWINGS)

        copy = (
            db.query(models.Copy)
            .filter(models.Copy.id == copy_id)
            .with_for_update()
            .first()
        )
        if copy is None:
            raise CopyNotFoundError(copy_id)
        if not copy.available:
            raise CopyNotAvailableError(copy_id)
        if due_date < now:
            raise InvalidDueDateError()

        borrowing = Borrowing(
            user_id=user_id,
            copy_id=copy_id,
            borrowed_at=now,
            due_date=due_date,
            status=BorrowingStatus.ACTIVE,
            comments=comments,
        )
        db.add(borrowing)
        copy.available = False
        _adjust_active_count(db, user_id, +1)
        db.commit()
    except LendingException:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("borrow", str(e))

    logger.info(
        f"User {user_id} borrowed copy {copy_id} (borrowing {borrowing.id}, due {due_date:%Y-%m-%d})"
    )
    return find_one(db, borrowing.id)


def create_by_admin(
    db: Session,
    user_id: int,
    copy_id: int,
    due_date: Optional[datetime] = None,
    comments: Optional[str] = None,
) -> models.Borrowing:
    logger.info(f"Admin-assigned borrowing of copy {copy_id} for user {user_id}")
    return create(db, user_id, copy_id, due_date=due_date, comments=comments)


def return_borrowing(
    db: Session, borrowing_id: int, acting_user: Optional[models.User] = None
) -> models.Borrowing:
    """Close a borrowing: RETURNED, copy available again, counter decremented.

    When ``acting_user`` is given it must own the borrowing or be an admin.
    """
    try:
        borrowing = (
            db.query(Borrowing)
            .filter(Borrowing.id == borrowing_id)
            .with_for_update()
            .first()
        )
        if borrowing is None:
            raise BorrowingNotFoundError(borrowing_id)
        if borrowing.status == BorrowingStatus.RETURNED:
            raise BorrowingAlreadyReturnedError(borrowing_id)
        if acting_user is not None and not auth.can_manage_borrowing(acting_user, borrowing):
            raise PermissionDeniedError("You are not allowed to return this borrowing")

        borrowing.status = BorrowingStatus.RETURNED
        borrowing.returned_at = utcnow()
        if borrowing.copy_id is not None:
            db.query(models.Copy).filter(models.Copy.id == borrowing.copy_id).update(
                {models.Copy.available: True}, synchronize_session=False
            )
        _adjust_active_count(db, borrowing.user_id, -1)
        db.commit()
    except LendingException:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("return", str(e))

    logger.info(f"Borrowing {borrowing_id} returned")
    return find_one(db, borrowing_id)


def update(
    db: Session,
    borrowing_id: int,
    changes: schemas.BorrowingUpdate,
    acting_user: models.User,
) -> models.Borrowing:
    """Renew, return or edit a borrowing on behalf of its owner or an admin.

    ``renew`` pushes the due date back by ``DEFAULT_BORROWING_DAYS`` from the
    current due date. ``MAX_RENEWALS`` is only enforced when
    ``ENFORCE_RENEWAL_LIMIT`` is set. ``status=RETURNED`` goes through
    ``return_borrowing``; any other status is rejected and the remaining
    fields only edit the borrowing row.
    """
    borrowing = find_one(db, borrowing_id)
    if not auth.can_manage_borrowing(acting_user, borrowing):
        raise PermissionDeniedError("You are not allowed to modify this borrowing")

    if changes.renew:
        if borrowing.status != BorrowingStatus.ACTIVE:
            raise BorrowingNotRenewableError()
        if config.ENFORCE_RENEWAL_LIMIT and borrowing.renewal_count >= config.MAX_RENEWALS:
            raise BorrowingNotRenewableError(
                f"Borrowing has already been renewed {borrowing.renewal_count} time(s), "
                f"the limit is {config.MAX_RENEWALS}"
            )
        try:
            borrowing.due_date = borrowing.due_date + timedelta(days=config.DEFAULT_BORROWING_DAYS)
            borrowing.renewal_count = borrowing.renewal_count + 1
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise DatabaseError("renew", str(e))
        logger.info(f"Borrowing {borrowing_id} renewed until {borrowing.due_date:%Y-%m-%d}")
        return find_one(db, borrowing_id)

    if changes.status == BorrowingStatus.RETURNED:
        return return_borrowing(db, borrowing_id, acting_user)

    data = changes.model_dump(exclude_unset=True, exclude={"renew"})
    if data.get("status") is not None:
        # ACTIVE and OVERDUE are only set by create and the overdue sweep
        raise BadRequestError(
            f"Status of borrowing {borrowing_id} can only be changed to RETURNED"
        )

    if data.get("due_date") is not None:
        due_date = as_utc_naive(data["due_date"])
        if due_date < borrowing.borrowed_at:
            db.rollback()
            raise InvalidDueDateError()
        borrowing.due_date = due_date

    if "comments" in data:
        borrowing.comments = data["comments"]

    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("update", str(e))
    return find_one(db, borrowing_id)


def check_overdue_borrowings(db: Session, now: Optional[datetime] = None) -> Dict[str, int]:
    """Flag every ACTIVE borrowing past its due date as OVERDUE.

    A single UPDATE, safe to run repeatedly; copies stay unavailable.
    """
    now = as_utc_naive(now) or utcnow()
    try:
        updated = (
            db.query(Borrowing)
            .filter(Borrowing.status == BorrowingStatus.ACTIVE, Borrowing.due_date < now)
            .update({Borrowing.status: BorrowingStatus.OVERDUE}, synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("overdue check", str(e))

    logger.info(f"Overdue check flagged {updated} borrowing(s)")
    return {"updated": updated}


def find_one(db: Session, borrowing_id: int) -> models.Borrowing:
    try:
        borrowing = (
            _with_relations(db.query(Borrowing))
            .filter(Borrowing.id == borrowing_id)
            .first()
        )
    except SQLAlchemyError as e:
        raise DatabaseError("fetch", str(e))
    if borrowing is None:
        raise BorrowingNotFoundError(borrowing_id)
    return borrowing


def find_all(
    db: Session,
    user_id: Optional[int] = None,
    resource_id: Optional[int] = None,
    status: Optional[BorrowingStatus] = None,
    search: Optional[str] = None,
    skip: int = 0,
    take: int = 10,
) -> Dict[str, Any]:
    skip = max(skip or 0, 0)
    take = take if take and take > 0 else 10
    try:
        query = db.query(Borrowing)
        if user_id is not None:
            query = query.filter(Borrowing.user_id == user_id)
        if status is not None:
            query = query.filter(Borrowing.status == status)
        if resource_id is not None or search:
            query = query.join(models.Copy, Borrowing.copy_id == models.Copy.id).join(
                models.Resource, models.Copy.resource_id == models.Resource.id
            )
            if resource_id is not None:
                query = query.filter(models.Resource.id == resource_id)
            if search:
                pattern = f"%{search}%"
                query = query.filter(
                    or_(
                        models.Resource.title.ilike(pattern),
                        models.Resource.author.ilike(pattern),
                        models.Resource.description.ilike(pattern),
                    )
                )

        total = query.count()
        items = (
            _with_relations(query)
            .order_by(Borrowing.borrowed_at.desc(), Borrowing.id.desc())
            .offset(skip)
            .limit(take)
            .all()
        )
    except SQLAlchemyError as e:
        raise DatabaseError("fetch", str(e))
    return paginate(items, total, skip, take)


def find_user_borrowings(
    db: Session, user_id: int, status: Optional[BorrowingStatus] = None
) -> List[models.Borrowing]:
    try:
        query = _with_relations(db.query(Borrowing)).filter(Borrowing.user_id == user_id)
        if status is not None:
            query = query.filter(Borrowing.status == status)
        return query.order_by(Borrowing.borrowed_at.desc(), Borrowing.id.desc()).all()
    except SQLAlchemyError as e:
        raise DatabaseError("fetch", str(e))
