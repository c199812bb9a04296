import enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

from lending.utils import utcnow

Base = declarative_base()


class UserRole(str, enum.Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class ResourceType(str, enum.Enum):
    BOOK = "BOOK"
    AUDIOBOOK = "AUDIOBOOK"
    COMIC = "COMIC"
    DVD = "DVD"
    GAME = "GAME"
    MAGAZINE = "MAGAZINE"


class BorrowingStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    RETURNED = "RETURNED"
    OVERDUE = "OVERDUE"


# Statuses under which the copy is held by the borrower
HELD_STATUSES = (BorrowingStatus.ACTIVE, BorrowingStatus.OVERDUE)


class ContactRequestStatus(str, enum.Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, nullable=False, index=True)
    hashed_password = Column(String, nullable=False)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    role = Column(Enum(UserRole), nullable=False, default=UserRole.USER)

    failed_attempts = Column(Integer, nullable=False, default=0)
    is_locked = Column(Boolean, nullable=False, default=False)
    locked_at = Column(DateTime, nullable=True)
    last_login = Column(DateTime, nullable=True)

    active_borrowings_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Resource(Base):
    __tablename__ = "resources"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False, index=True)
    type = Column(Enum(ResourceType), nullable=False, default=ResourceType.BOOK)
    description = Column(Text, nullable=False)
    cover_image_url = Column(String, nullable=True)

    author = Column(String, nullable=True, index=True)
    isbn = Column(String, nullable=True)
    publisher = Column(String, nullable=True)
    published_at = Column(DateTime, nullable=True)
    genre = Column(String, nullable=True)
    language = Column(String, nullable=True)
    published_year = Column(Integer, nullable=True)
    page_count = Column(Integer, nullable=True)

    # games
    developer = Column(String, nullable=True)
    platform = Column(String, nullable=True)
    pegi_rating = Column(Integer, nullable=True)

    # films
    director = Column(String, nullable=True)
    actors = Column(String, nullable=True)
    duration = Column(Integer, nullable=True)

    # magazines
    issue_number = Column(String, nullable=True)
    frequency = Column(String, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class Copy(Base):
    __tablename__ = "copies"

    id = Column(Integer, primary_key=True, index=True)
    resource_id = Column(Integer, ForeignKey("resources.id"), nullable=False, index=True)
    available = Column(Boolean, nullable=False, default=True)
    condition = Column(String, nullable=False, default="Good")
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Borrowing(Base):
    __tablename__ = "borrowings"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    # kept as history when the copy is removed
    copy_id = Column(
        Integer, ForeignKey("copies.id", ondelete="SET NULL"), nullable=True, index=True
    )

    borrowed_at = Column(DateTime, nullable=False, default=utcnow)
    due_date = Column(DateTime, nullable=False)
    returned_at = Column(DateTime, nullable=True)

    status = Column(
        Enum(BorrowingStatus), nullable=False, default=BorrowingStatus.ACTIVE, index=True
    )
    comments = Column(Text, nullable=True)
    renewal_count = Column(Integer, nullable=False, default=0)


class Review(Base):
    __tablename__ = "reviews"
    __table_args__ = (UniqueConstraint("user_id", "resource_id"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    resource_id = Column(Integer, ForeignKey("resources.id"), nullable=False, index=True)
    content = Column(Text, nullable=False)
    rating = Column(Integer, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class Favorite(Base):
    __tablename__ = "favorites"
    __table_args__ = (UniqueConstraint("user_id", "resource_id"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    resource_id = Column(Integer, ForeignKey("resources.id"), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class ContactRequest(Base):
    __tablename__ = "contact_requests"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    name = Column(String(100), nullable=False)
    email = Column(String(100), nullable=False)
    subject = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)
    status = Column(
        Enum(ContactRequestStatus), nullable=False, default=ContactRequestStatus.PENDING
    )
    created_at = Column(DateTime, nullable=False, default=utcnow)


Resource.copies = relationship(
    "Copy", back_populates="resource", cascade="all, delete-orphan"
)
Copy.resource = relationship("Resource", back_populates="copies")
Copy.borrowings = relationship("Borrowing", back_populates="copy")
User.borrowings = relationship("Borrowing", back_populates="user")
Borrowing.user = relationship("User", back_populates="borrowings")
Borrowing.copy = relationship("Copy", back_populates="borrowings")
Resource.reviews = relationship(
    "Review", back_populates="resource", cascade="all, delete-orphan"
)
Review.resource = relationship("Resource", back_populates="reviews")
Review.user = relationship("User")
Favorite.resource = relationship("Resource", back_populates="favorites")
Resource.favorites = relationship(
    "Favorite", back_populates="resource", cascade="all, delete-orphan"
)
