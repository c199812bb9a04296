import logging
from typing import List, Optional

import bcrypt
from sqlalchemy import or_, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from lending import config, models, schemas
from lending.exceptions import (
    ContactRequestNotFoundError,
    CopyAvailabilityError,
    CopyInUseError,
    CopyNotFoundError,
    DatabaseError,
    DuplicateFavoriteError,
    DuplicateReviewError,
    EmailAlreadyRegisteredError,
    ResourceInUseError,
    ResourceNotFoundError,
    ReviewNotFoundError,
    UserNotFoundError,
)
from lending.utils import utcnow

logger = logging.getLogger(__name__)


# Users

def get_user_by_id(db: Session, user_id: int):
    try:
        user = db.query(models.User).filter(models.User.id == user_id).first()
        if user is None:
            raise UserNotFoundError(user_id)
        return user
    except SQLAlchemyError as e:
        raise DatabaseError("fetch", str(e))


def find_user_by_email(db: Session, email: str) -> Optional[models.User]:
    try:
        return (
            db.query(models.User)
            .filter(models.User.email == email.strip().lower())
            .first()
        )
    except SQLAlchemyError as e:
        raise DatabaseError("fetch", str(e))


def get_users(db: Session, skip: int = 0, limit: int = 100):
    try:
        return (
            db.query(models.User)
            .order_by(models.User.id)
            .offset(skip)
            .limit(limit)
            .all()
        )
    except SQLAlchemyError as e:
        raise DatabaseError("fetch", str(e))


def count_users(db: Session) -> int:
    try:
        return db.query(models.User).count()
    except SQLAlchemyError as e:
        raise DatabaseError("count", str(e))


def create_user_record(
    db: Session, user: schemas.UserCreate, role: models.UserRole = models.UserRole.USER
):
    email = user.email.strip().lower()
    if find_user_by_email(db, email) is not None:
        raise EmailAlreadyRegisteredError(email)
    try:
        salt = bcrypt.gensalt(rounds=config.BCRYPT_ROUNDS)
        hashed_password = bcrypt.hashpw(user.password.encode("utf-8"), salt)
        db_user = models.User(
            email=email,
            first_name=user.first_name,
            last_name=user.last_name,
            hashed_password=hashed_password.decode("utf-8"),
            role=role,
        )
        db.add(db_user)
        db.commit()
        db.refresh(db_user)
        logger.info(f"Created user {db_user.id} ({email})")
        return db_user
    except IntegrityError:
        db.rollback()
        raise EmailAlreadyRegisteredError(email)
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("create", str(e))


def update_user_role(db: Session, user_id: int, role: models.UserRole):
    user = get_user_by_id(db, user_id)
    try:
        user.role = role
        db.commit()
        db.refresh(user)
        logger.info(f"User {user_id} role set to {role.value}")
        return user
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("update", str(e))


def increment_failed_attempts(db: Session, user: models.User):
    try:
        user.failed_attempts = models.User.failed_attempts + 1
        db.commit()
        db.refresh(user)
        return user
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("update", str(e))


def lock_user_account(db: Session, user: models.User):
    try:
        user.failed_attempts = models.User.failed_attempts + 1
        user.is_locked = True
        user.locked_at = utcnow()
        db.commit()
        db.refresh(user)
        return user
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("update", str(e))


def reset_user_lockout(db: Session, user: models.User, logged_in: bool = False):
    try:
        user.failed_attempts = 0
        user.is_locked = False
        user.locked_at = None
        if logged_in:
            user.last_login = utcnow()
        db.commit()
        db.refresh(user)
        return user
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("update", str(e))


# Resources

REQUIRED_RESOURCE_FIELDS = ("title", "type", "description")


def _resource_search(query, search: str):
    pattern = f"%{search}%"
    return query.filter(
        or_(
            models.Resource.title.ilike(pattern),
            models.Resource.author.ilike(pattern),
            models.Resource.description.ilike(pattern),
        )
    )


def create_resource(db: Session, item: schemas.ResourceCreate):
    try:
        db_item = models.Resource(**item.model_dump())
        db.add(db_item)
        db.commit()
        db.refresh(db_item)
        logger.info(f"Created resource {db_item.id}: {db_item.title}")
        return db_item
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("create", str(e))


def filter_resources(
    db: Session,
    resource_type: Optional[models.ResourceType] = None,
    author: Optional[str] = None,
    genre: Optional[str] = None,
    search: Optional[str] = None,
    skip: int = 0,
    take: int = 100,
) -> List[models.Resource]:
    try:
        query = db.query(models.Resource)
        if resource_type:
            query = query.filter(models.Resource.type == resource_type)
        if author:
            query = query.filter(models.Resource.author.ilike(f"%{author}%"))
        if genre:
            query = query.filter(models.Resource.genre.ilike(f"%{genre}%"))
        if search:
            query = _resource_search(query, search)
        return (
            query.order_by(models.Resource.title.asc(), models.Resource.id.asc())
            .offset(skip)
            .limit(take)
            .all()
        )
    except SQLAlchemyError as e:
        raise DatabaseError("filter", str(e))


def get_resource(db: Session, resource_id: int):
    try:
        resource = (
            db.query(models.Resource)
            .options(selectinload(models.Resource.copies))
            .filter(models.Resource.id == resource_id)
            .first()
        )
        if resource is None:
            raise ResourceNotFoundError(resource_id)
        return resource
    except SQLAlchemyError as e:
        raise DatabaseError("fetch", str(e))


def update_resource(db: Session, resource_id: int, update: schemas.ResourceUpdate):
    resource = get_resource(db, resource_id)
    data = update.model_dump(exclude_unset=True)
    remove_cover_image = data.pop("remove_cover_image", False)
    try:
        for field, value in data.items():
            if value is None and field in REQUIRED_RESOURCE_FIELDS:
                continue
            setattr(resource, field, value)
        if remove_cover_image and "cover_image_url" not in data:
            resource.cover_image_url = None
        db.commit()
        db.refresh(resource)
        logger.info(f"Updated resource {resource_id}")
        return resource
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("update", str(e))


def _open_borrowings_for_copies(db: Session, copy_ids: List[int]) -> int:
    if not copy_ids:
        return 0
    return (
        db.query(models.Borrowing)
        .filter(
            models.Borrowing.copy_id.in_(copy_ids),
            models.Borrowing.status.in_(models.HELD_STATUSES),
        )
        .count()
    )


def delete_resource(db: Session, resource_id: int):
    resource = get_resource(db, resource_id)
    try:
        copy_ids = [c.id for c in resource.copies]
        if _open_borrowings_for_copies(db, copy_ids):
            raise ResourceInUseError(resource_id)
        db.delete(resource)
        db.commit()
        logger.info(f"Deleted resource {resource_id}")
        return True
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("delete", str(e))


# Favorites

def add_favorite(db: Session, user_id: int, resource_id: int):
    get_resource(db, resource_id)
    try:
        exists = (
            db.query(models.Favorite)
            .filter_by(user_id=user_id, resource_id=resource_id)
            .first()
        )
        if exists:
            raise DuplicateFavoriteError(resource_id)
        favorite = models.Favorite(user_id=user_id, resource_id=resource_id)
        db.add(favorite)
        db.commit()
        return favorite
    except IntegrityError:
        db.rollback()
        raise DuplicateFavoriteError(resource_id)
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("create", str(e))


def remove_favorite(db: Session, user_id: int, resource_id: int):
    try:
        db.query(models.Favorite).filter_by(
            user_id=user_id, resource_id=resource_id
        ).delete(synchronize_session=False)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("delete", str(e))


def get_favorites(db: Session, user_id: int) -> List[models.Resource]:
    try:
        return (
            db.query(models.Resource)
            .join(models.Favorite, models.Favorite.resource_id == models.Resource.id)
            .filter(models.Favorite.user_id == user_id)
            .order_by(models.Favorite.created_at.desc())
            .all()
        )
    except SQLAlchemyError as e:
        raise DatabaseError("fetch", str(e))


# Copies

def create_copy(db: Session, item: schemas.CopyCreate):
    resource = db.query(models.Resource).filter(models.Resource.id == item.resource_id).first()
    if resource is None:
        raise ResourceNotFoundError(item.resource_id)
    try:
        db_copy = models.Copy(
            resource_id=item.resource_id,
            condition=item.condition or "Good",
            available=True,
        )
        db.add(db_copy)
        db.commit()
        db.refresh(db_copy)
        logger.info(f"Created copy {db_copy.id} of resource {item.resource_id}")
        return db_copy
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("create", str(e))


def filter_copies(
    db: Session, resource_id: Optional[int] = None, available: Optional[bool] = None
) -> List[models.Copy]:
    try:
        query = db.query(models.Copy).options(selectinload(models.Copy.resource))
        if resource_id is not None:
            query = query.filter(models.Copy.resource_id == resource_id)
        if available is not None:
            query = query.filter(models.Copy.available == available)
        return query.order_by(models.Copy.created_at.desc(), models.Copy.id.desc()).all()
    except SQLAlchemyError as e:
        raise DatabaseError("filter", str(e))


def get_copy(db: Session, copy_id: int):
    try:
        copy = db.query(models.Copy).filter(models.Copy.id == copy_id).first()
        if copy is None:
            raise CopyNotFoundError(copy_id)
        return copy
    except SQLAlchemyError as e:
        raise DatabaseError("fetch", str(e))


def update_copy(db: Session, copy_id: int, update: schemas.CopyUpdate):
    """Edit a copy. Availability may only be set to match its open borrowings."""
    copy = get_copy(db, copy_id)
    try:
        if update.available is not None and update.available != copy.available:
            borrowed = _open_borrowings_for_copies(db, [copy_id]) > 0
            if update.available == borrowed:
                raise CopyAvailabilityError(copy_id, borrowed)
            copy.available = update.available
        if update.condition is not None:
            copy.condition = update.condition
        db.commit()
        db.refresh(copy)
        return copy
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("update", str(e))


def delete_copy(db: Session, copy_id: int):
    copy = get_copy(db, copy_id)
    try:
        if not copy.available or _open_borrowings_for_copies(db, [copy.id]):
            raise CopyInUseError(copy_id)
        db.delete(copy)
        db.commit()
        logger.info(f"Deleted copy {copy_id}")
        return True
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("delete", str(e))


# Reviews

def _find_review(db: Session, user_id: int, resource_id: int):
    return (
        db.query(models.Review)
        .filter_by(user_id=user_id, resource_id=resource_id)
        .first()
    )


def create_review(db: Session, user_id: int, review: schemas.ReviewCreate):
    resource = db.query(models.Resource).filter(models.Resource.id == review.resource_id).first()
    if resource is None:
        raise ResourceNotFoundError(review.resource_id)
    if _find_review(db, user_id, review.resource_id) is not None:
        raise DuplicateReviewError(review.resource_id)
    try:
        db_review = models.Review(
            user_id=user_id,
            resource_id=review.resource_id,
            content=review.content,
            rating=review.rating,
        )
        db.add(db_review)
        db.commit()
        db.refresh(db_review)
        return db_review
    except IntegrityError:
        db.rollback()
        raise DuplicateReviewError(review.resource_id)
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("create", str(e))


def get_reviews(db: Session, resource_id: Optional[int] = None) -> List[models.Review]:
    try:
        query = db.query(models.Review).options(
            selectinload(models.Review.user), selectinload(models.Review.resource)
        )
        if resource_id is not None:
            query = query.filter(models.Review.resource_id == resource_id)
        return query.order_by(models.Review.created_at.desc(), models.Review.id.desc()).all()
    except SQLAlchemyError as e:
        raise DatabaseError("fetch", str(e))


def get_user_review(db: Session, user_id: int, resource_id: int) -> Optional[models.Review]:
    try:
        return _find_review(db, user_id, resource_id)
    except SQLAlchemyError as e:
        raise DatabaseError("fetch", str(e))


def update_review(
    db: Session, user_id: int, resource_id: int, update: schemas.ReviewUpdate
):
    review = get_user_review(db, user_id, resource_id)
    if review is None:
        raise ReviewNotFoundError(resource_id)
    try:
        for field, value in update.model_dump(exclude_unset=True).items():
            if value is None and field == "content":
                continue
            setattr(review, field, value)
        db.commit()
        db.refresh(review)
        return review
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("update", str(e))


def delete_review(db: Session, user_id: int, resource_id: int):
    review = get_user_review(db, user_id, resource_id)
    if review is None:
        raise ReviewNotFoundError(resource_id)
    try:
        db.delete(review)
        db.commit()
        return review
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("delete", str(e))


# Contact requests

def create_contact_request(
    db: Session, request: schemas.ContactRequestCreate, user_id: Optional[int] = None
):
    try:
        contact_request = models.ContactRequest(
            user_id=user_id,
            name=request.name,
            email=request.email,
            subject=request.subject,
            message=request.message,
            status=models.ContactRequestStatus.PENDING,
        )
        db.add(contact_request)
        db.commit()
        db.refresh(contact_request)
        logger.info(f"New contact request created with id {contact_request.id}")
        return contact_request
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error while creating a contact request: {e}")
        raise DatabaseError("create", str(e))


def get_contact_requests(db: Session) -> List[models.ContactRequest]:
    try:
        return (
            db.query(models.ContactRequest)
            .order_by(models.ContactRequest.created_at.desc(), models.ContactRequest.id.desc())
            .all()
        )
    except SQLAlchemyError as e:
        raise DatabaseError("fetch", str(e))


def get_contact_request(db: Session, request_id: int):
    try:
        contact_request = (
            db.query(models.ContactRequest)
            .filter(models.ContactRequest.id == request_id)
            .first()
        )
        if contact_request is None:
            raise ContactRequestNotFoundError(request_id)
        return contact_request
    except SQLAlchemyError as e:
        raise DatabaseError("fetch", str(e))


def update_contact_request_status(
    db: Session, request_id: int, status: models.ContactRequestStatus
):
    contact_request = get_contact_request(db, request_id)
    try:
        contact_request.status = status
        db.commit()
        db.refresh(contact_request)
        logger.info(f"Contact request {request_id} set to {status.value}")
        return contact_request
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("update", str(e))


def check_database(db: Session) -> bool:
    try:
        db.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError as e:
        logger.error(f"Database check failed: {e}")
        return False
