from datetime import timedelta

import pytest

from lending import borrowings, config
from lending.exceptions import (
    BadRequestError,
    BorrowingAlreadyReturnedError,
    BorrowingLimitReachedError,
    BorrowingNotFoundError,
    BorrowingNotRenewableError,
    CopyNotAvailableError,
    CopyNotFoundError,
    ForbiddenError,
    InvalidDueDateError,
    PermissionDeniedError,
    UserNotFoundError,
)
from lending.models import Borrowing, BorrowingStatus, Copy
from lending.schemas import BorrowingUpdate
from lending.utils import utcnow


def test_create_borrowing(db_session, test_user, test_copy):
    before = utcnow()
    borrowing = borrowings.create(db_session, test_user.id, test_copy.id)

    db_session.refresh(test_user)
    db_session.refresh(test_copy)
    assert borrowing.status == BorrowingStatus.ACTIVE
    assert borrowing.user_id == test_user.id
    assert borrowing.copy_id == test_copy.id
    assert borrowing.returned_at is None
    assert test_copy.available is False
    assert test_user.active_borrowings_count == 1
    expected_due = before + timedelta(days=config.DEFAULT_BORROWING_DAYS)
    assert abs(borrowing.due_date - expected_due) < timedelta(minutes=1)


def test_create_borrowing_with_due_date_and_comments(db_session, test_user, test_copy):
    due_date = utcnow() + timedelta(days=3)
    borrowing = borrowings.create(
        db_session, test_user.id, test_copy.id, due_date=due_date, comments="Short loan"
    )

    assert borrowing.due_date == due_date
    assert borrowing.comments == "Short loan"


def test_create_borrowing_loads_relations(db_session, test_user, test_copy, test_resource):
    borrowing = borrowings.create(db_session, test_user.id, test_copy.id)

    assert borrowing.user.email == test_user.email
    assert borrowing.copy.resource.title == test_resource.title


def test_borrow_unavailable_copy(db_session, test_user, other_user, test_copy):
    borrowings.create(db_session, test_user.id, test_copy.id)

    with pytest.raises(CopyNotAvailableError) as exc_info:
        borrowings.create(db_session, other_user.id, test_copy.id)

    assert isinstance(exc_info.value, BadRequestError)
    db_session.refresh(other_user)
    assert other_user.active_borrowings_count == 0
    assert db_session.query(Borrowing).count() == 1


def test_borrow_missing_copy(db_session, test_user):
    with pytest.raises(CopyNotFoundError):
        borrowings.create(db_session, test_user.id, 9999)


def test_borrow_for_missing_user(db_session, test_copy):
    with pytest.raises(UserNotFoundError):
        borrowings.create(db_session, 9999, test_copy.id)


def test_borrow_with_past_due_date(db_session, test_user, test_copy):
    with pytest.raises(InvalidDueDateError):
        borrowings.create(
            db_session, test_user.id, test_copy.id, due_date=utcnow() - timedelta(days=1)
        )

    db_session.refresh(test_copy)
    assert test_copy.available is True


def test_borrowing_limit(db_session, test_user, make_copies):
    copies = make_copies(config.MAX_ACTIVE_BORROWINGS + 1)
    for copy in copies[:-1]:
        borrowings.create(db_session, test_user.id, copy.id)

    with pytest.raises(BorrowingLimitReachedError) as exc_info:
        borrowings.create(db_session, test_user.id, copies[-1].id)

    assert isinstance(exc_info.value, ForbiddenError)
    db_session.refresh(test_user)
    db_session.refresh(copies[-1])
    assert test_user.active_borrowings_count == config.MAX_ACTIVE_BORROWINGS
    assert copies[-1].available is True
    assert db_session.query(Borrowing).count() == config.MAX_ACTIVE_BORROWINGS


def test_limit_frees_up_after_return(db_session, test_user, make_copies):
    copies = make_copies(config.MAX_ACTIVE_BORROWINGS + 1)
    created = [
        borrowings.create(db_session, test_user.id, copy.id)
        for copy in copies[:-1]
    ]

    borrowings.return_borrowing(db_session, created[0].id)
    borrowing = borrowings.create(db_session, test_user.id, copies[-1].id)

    assert borrowing.status == BorrowingStatus.ACTIVE


def test_create_by_admin(db_session, test_user, test_copy):
    borrowing = borrowings.create_by_admin(db_session, test_user.id, test_copy.id)

    db_session.refresh(test_user)
    assert borrowing.user_id == test_user.id
    assert test_user.active_borrowings_count == 1


def test_return_borrowing(db_session, test_user, test_copy):
    borrowing = borrowings.create(db_session, test_user.id, test_copy.id)

    returned = borrowings.return_borrowing(db_session, borrowing.id, test_user)

    db_session.refresh(test_user)
    db_session.refresh(test_copy)
    assert returned.status == BorrowingStatus.RETURNED
    assert returned.returned_at is not None
    assert test_copy.available is True
    assert test_user.active_borrowings_count == 0


def test_return_twice(db_session, test_user, test_copy):
    borrowing = borrowings.create(db_session, test_user.id, test_copy.id)
    borrowings.return_borrowing(db_session, borrowing.id, test_user)

    with pytest.raises(BorrowingAlreadyReturnedError):
        borrowings.return_borrowing(db_session, borrowing.id, test_user)

    db_session.refresh(test_user)
    assert test_user.active_borrowings_count == 0


def test_return_by_another_user(db_session, test_user, other_user, test_copy):
    borrowing = borrowings.create(db_session, test_user.id, test_copy.id)

    with pytest.raises(PermissionDeniedError):
        borrowings.return_borrowing(db_session, borrowing.id, other_user)

    db_session.refresh(test_copy)
    assert test_copy.available is False


def test_admin_returns_any_borrowing(db_session, test_user, admin_user, test_copy):
    borrowing = borrowings.create(db_session, test_user.id, test_copy.id)

    returned = borrowings.return_borrowing(db_session, borrowing.id, admin_user)

    assert returned.status == BorrowingStatus.RETURNED


def test_return_overdue_borrowing(db_session, test_user, test_copy):
    borrowing = borrowings.create(db_session, test_user.id, test_copy.id)
    borrowing.due_date = utcnow() - timedelta(days=1)
    db_session.commit()
    borrowings.check_overdue_borrowings(db_session)

    returned = borrowings.return_borrowing(db_session, borrowing.id, test_user)

    db_session.refresh(test_user)
    assert returned.status == BorrowingStatus.RETURNED
    assert test_user.active_borrowings_count == 0


def test_return_missing_borrowing(db_session):
    with pytest.raises(BorrowingNotFoundError):
        borrowings.return_borrowing(db_session, 9999)


def test_counter_never_goes_negative(db_session, test_user, test_copy):
    borrowing = borrowings.create(db_session, test_user.id, test_copy.id)
    test_user.active_borrowings_count = 0
    db_session.commit()

    borrowings.return_borrowing(db_session, borrowing.id)

    db_session.refresh(test_user)
    assert test_user.active_borrowings_count == 0


def test_renew_borrowing(db_session, test_user, test_copy):
    borrowing = borrowings.create(db_session, test_user.id, test_copy.id)
    previous_due = borrowing.due_date

    renewed = borrowings.update(
        db_session, borrowing.id, BorrowingUpdate(renew=True), test_user
    )

    assert renewed.due_date == previous_due + timedelta(days=config.DEFAULT_BORROWING_DAYS)
    assert renewed.renewal_count == 1
    assert renewed.status == BorrowingStatus.ACTIVE


def test_renew_returned_borrowing(db_session, test_user, test_copy):
    borrowing = borrowings.create(db_session, test_user.id, test_copy.id)
    borrowings.return_borrowing(db_session, borrowing.id)

    with pytest.raises(BorrowingNotRenewableError):
        borrowings.update(db_session, borrowing.id, BorrowingUpdate(renew=True), test_user)


def test_renew_overdue_borrowing(db_session, test_user, test_copy):
    borrowing = borrowings.create(db_session, test_user.id, test_copy.id)
    borrowing.status = BorrowingStatus.OVERDUE
    db_session.commit()

    with pytest.raises(BorrowingNotRenewableError):
        borrowings.update(db_session, borrowing.id, BorrowingUpdate(renew=True), test_user)


def test_renewals_unlimited_by_default(db_session, test_user, test_copy, monkeypatch):
    monkeypatch.setattr(config, "ENFORCE_RENEWAL_LIMIT", False)
    borrowing = borrowings.create(db_session, test_user.id, test_copy.id)

    for _ in range(config.MAX_RENEWALS + 2):
        borrowing = borrowings.update(
            db_session, borrowing.id, BorrowingUpdate(renew=True), test_user
        )

    assert borrowing.renewal_count == config.MAX_RENEWALS + 2


def test_renewal_limit_when_enforced(db_session, test_user, test_copy, monkeypatch):
    monkeypatch.setattr(config, "ENFORCE_RENEWAL_LIMIT", True)
    borrowing = borrowings.create(db_session, test_user.id, test_copy.id)
    for _ in range(config.MAX_RENEWALS):
        borrowing = borrowings.update(
            db_session, borrowing.id, BorrowingUpdate(renew=True), test_user
        )
    due_date = borrowing.due_date

    with pytest.raises(BorrowingNotRenewableError):
        borrowings.update(db_session, borrowing.id, BorrowingUpdate(renew=True), test_user)

    assert borrowings.find_one(db_session, borrowing.id).due_date == due_date


def test_update_by_another_user(db_session, test_user, other_user, test_copy):
    borrowing = borrowings.create(db_session, test_user.id, test_copy.id)

    with pytest.raises(PermissionDeniedError):
        borrowings.update(db_session, borrowing.id, BorrowingUpdate(renew=True), other_user)


def test_update_status_to_returned(db_session, test_user, test_copy):
    borrowing = borrowings.create(db_session, test_user.id, test_copy.id)

    updated = borrowings.update(
        db_session,
        borrowing.id,
        BorrowingUpdate(status=BorrowingStatus.RETURNED),
        test_user,
    )

    db_session.refresh(test_user)
    db_session.refresh(test_copy)
    assert updated.status == BorrowingStatus.RETURNED
    assert updated.returned_at is not None
    assert test_copy.available is True
    assert test_user.active_borrowings_count == 0


def test_update_comments_and_due_date(db_session, test_user, admin_user, test_copy):
    borrowing = borrowings.create(db_session, test_user.id, test_copy.id)
    new_due = borrowing.due_date + timedelta(days=2)

    updated = borrowings.update(
        db_session,
        borrowing.id,
        BorrowingUpdate(comments="Extended by staff", due_date=new_due),
        admin_user,
    )

    assert updated.comments == "Extended by staff"
    assert updated.due_date == new_due


def test_update_due_date_before_borrowing(db_session, test_user, test_copy):
    borrowing = borrowings.create(db_session, test_user.id, test_copy.id)

    with pytest.raises(InvalidDueDateError):
        borrowings.update(
            db_session,
            borrowing.id,
            BorrowingUpdate(due_date=borrowing.borrowed_at - timedelta(days=1)),
            test_user,
        )


def test_reopen_returned_borrowing(db_session, test_user, test_copy):
    borrowing = borrowings.create(db_session, test_user.id, test_copy.id)
    borrowings.return_borrowing(db_session, borrowing.id)

    with pytest.raises(BadRequestError):
        borrowings.update(
            db_session,
            borrowing.id,
            BorrowingUpdate(status=BorrowingStatus.ACTIVE),
            test_user,
        )


def test_owner_cannot_clear_overdue_status(db_session, test_user, test_copy):
    borrowing = borrowings.create(db_session, test_user.id, test_copy.id)
    borrowing.due_date = utcnow() - timedelta(days=1)
    db_session.commit()
    borrowings.check_overdue_borrowings(db_session)

    with pytest.raises(BadRequestError):
        borrowings.update(
            db_session,
            borrowing.id,
            BorrowingUpdate(status=BorrowingStatus.ACTIVE),
            test_user,
        )

    assert borrowings.find_one(db_session, borrowing.id).status == BorrowingStatus.OVERDUE
    with pytest.raises(BorrowingNotRenewableError):
        borrowings.update(db_session, borrowing.id, BorrowingUpdate(renew=True), test_user)


def test_admin_cannot_set_overdue_by_hand(db_session, test_user, admin_user, test_copy):
    borrowing = borrowings.create(db_session, test_user.id, test_copy.id)

    with pytest.raises(BadRequestError):
        borrowings.update(
            db_session,
            borrowing.id,
            BorrowingUpdate(status=BorrowingStatus.OVERDUE),
            admin_user,
        )

    assert borrowings.find_one(db_session, borrowing.id).status == BorrowingStatus.ACTIVE


def test_check_overdue_borrowings(db_session, test_user, make_copies):
    copies = make_copies(4)
    created = [borrowings.create(db_session, test_user.id, copy.id) for copy in copies]
    # two past due, one of them already returned
    for borrowing in created[:2]:
        borrowing.due_date = utcnow() - timedelta(days=1)
    db_session.commit()
    borrowings.return_borrowing(db_session, created[1].id)

    result = borrowings.check_overdue_borrowings(db_session)

    assert result == {"updated": 1}
    statuses = {
        b.id: b.status for b in db_session.query(Borrowing).all()
    }
    assert statuses[created[0].id] == BorrowingStatus.OVERDUE
    assert statuses[created[1].id] == BorrowingStatus.RETURNED
    assert statuses[created[2].id] == BorrowingStatus.ACTIVE
    overdue_copy = db_session.query(Copy).filter(Copy.id == copies[0].id).one()
    assert overdue_copy.available is False


def test_check_overdue_is_idempotent(db_session, test_user, test_copy):
    borrowing = borrowings.create(db_session, test_user.id, test_copy.id)
    borrowing.due_date = utcnow() - timedelta(hours=1)
    db_session.commit()

    assert borrowings.check_overdue_borrowings(db_session) == {"updated": 1}
    assert borrowings.check_overdue_borrowings(db_session) == {"updated": 0}


def test_check_overdue_with_reference_time(db_session, test_user, test_copy):
    borrowings.create(db_session, test_user.id, test_copy.id)

    later = utcnow() + timedelta(days=config.DEFAULT_BORROWING_DAYS + 1)
    assert borrowings.check_overdue_borrowings(db_session, now=later) == {"updated": 1}


def test_find_one_missing(db_session):
    with pytest.raises(BorrowingNotFoundError):
        borrowings.find_one(db_session, 9999)


def test_find_all_pagination(db_session, test_user, make_copies):
    for copy in make_copies(3):
        borrowings.create(db_session, test_user.id, copy.id)

    page = borrowings.find_all(db_session, skip=2, take=2)

    assert page["total"] == 3
    assert page["page"] == 2
    assert page["page_size"] == 2
    assert page["page_count"] == 2
    assert len(page["items"]) == 1


def test_find_all_filters(db_session, test_user, other_user, make_copies):
    copies = make_copies(3)
    borrowings.create(db_session, test_user.id, copies[0].id)
    second = borrowings.create(db_session, test_user.id, copies[1].id)
    borrowings.create(db_session, other_user.id, copies[2].id)
    borrowings.return_borrowing(db_session, second.id)

    by_user = borrowings.find_all(db_session, user_id=test_user.id)
    returned = borrowings.find_all(db_session, status=BorrowingStatus.RETURNED)
    by_resource = borrowings.find_all(db_session, resource_id=copies[0].resource_id)

    assert by_user["total"] == 2
    assert [b.id for b in returned["items"]] == [second.id]
    assert by_resource["total"] == 3


def test_find_all_search(db_session, test_user, test_copy):
    borrowings.create(db_session, test_user.id, test_copy.id)

    assert borrowings.find_all(db_session, search="test book")["total"] == 1
    assert borrowings.find_all(db_session, search="Test Author")["total"] == 1
    assert borrowings.find_all(db_session, search="nothing like it")["total"] == 0


def test_find_user_borrowings(db_session, test_user, other_user, make_copies):
    copies = make_copies(2)
    borrowings.create(db_session, test_user.id, copies[0].id)
    borrowings.create(db_session, other_user.id, copies[1].id)

    mine = borrowings.find_user_borrowings(db_session, test_user.id)
    returned = borrowings.find_user_borrowings(
        db_session, test_user.id, BorrowingStatus.RETURNED
    )

    assert [b.user_id for b in mine] == [test_user.id]
    assert returned == []
