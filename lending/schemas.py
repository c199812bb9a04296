from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field
from pydantic.alias_generators import to_camel

from lending.models import BorrowingStatus, ContactRequestStatus, ResourceType, UserRole


class APIModel(BaseModel):
    """Base schema: camelCase on the wire, snake_case in Python."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


# Users

class UserBase(APIModel):
    email: EmailStr
    first_name: Optional[str] = Field(None, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)


class UserCreate(UserBase):
    password: str = Field(..., min_length=8)


class LoginRequest(APIModel):
    email: EmailStr
    password: str


class UserSummary(APIModel):
    id: int
    email: str
    role: UserRole


class UserSchema(UserSummary):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_locked: bool
    last_login: Optional[datetime] = None
    active_borrowings_count: int
    created_at: datetime


class RoleUpdate(APIModel):
    role: UserRole


class UserCount(APIModel):
    count: int


# Resources

class ResourceBase(APIModel):
    title: str = Field(..., min_length=1, max_length=255)
    type: ResourceType
    description: str = Field(..., min_length=1)
    cover_image_url: Optional[str] = None
    author: Optional[str] = None
    isbn: Optional[str] = None
    publisher: Optional[str] = None
    published_at: Optional[datetime] = None
    genre: Optional[str] = None
    language: Optional[str] = None
    published_year: Optional[int] = Field(None, gt=0)
    page_count: Optional[int] = Field(None, gt=0)
    developer: Optional[str] = None
    platform: Optional[str] = None
    pegi_rating: Optional[int] = Field(None, gt=0)
    director: Optional[str] = None
    actors: Optional[str] = None
    duration: Optional[int] = Field(None, gt=0)
    issue_number: Optional[str] = None
    frequency: Optional[str] = None


class ResourceCreate(ResourceBase):
    pass


class ResourceUpdate(APIModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    type: Optional[ResourceType] = None
    description: Optional[str] = Field(None, min_length=1)
    cover_image_url: Optional[str] = None
    remove_cover_image: bool = False
    author: Optional[str] = None
    isbn: Optional[str] = None
    publisher: Optional[str] = None
    published_at: Optional[datetime] = None
    genre: Optional[str] = None
    language: Optional[str] = None
    published_year: Optional[int] = Field(None, gt=0)
    page_count: Optional[int] = Field(None, gt=0)
    developer: Optional[str] = None
    platform: Optional[str] = None
    pegi_rating: Optional[int] = Field(None, gt=0)
    director: Optional[str] = None
    actors: Optional[str] = None
    duration: Optional[int] = Field(None, gt=0)
    issue_number: Optional[str] = None
    frequency: Optional[str] = None


class ResourceSummary(APIModel):
    id: int
    title: str
    type: ResourceType


class ResourceSchema(ResourceBase):
    id: int
    created_at: datetime
    updated_at: datetime


# Copies

class CopyCreate(APIModel):
    resource_id: int
    condition: str = "Good"


class CopyUpdate(APIModel):
    condition: Optional[str] = None
    available: Optional[bool] = None


class CopySummary(APIModel):
    id: int
    resource_id: int
    available: bool
    condition: str
    created_at: datetime


class CopySchema(CopySummary):
    resource: Optional[ResourceSchema] = None


class ResourceDetailSchema(ResourceSchema):
    copies: List[CopySummary] = []


# Borrowings

class BorrowingCreate(APIModel):
    copy_id: int
    due_date: Optional[datetime] = None
    comments: Optional[str] = None


class AdminBorrowingCreate(BorrowingCreate):
    user_id: int


class BorrowingUpdate(APIModel):
    status: Optional[BorrowingStatus] = None
    due_date: Optional[datetime] = None
    comments: Optional[str] = None
    renew: bool = False


class BorrowingSchema(APIModel):
    id: int
    user_id: int
    copy_id: Optional[int] = None
    borrowed_at: datetime
    due_date: datetime
    returned_at: Optional[datetime] = None
    status: BorrowingStatus
    comments: Optional[str] = None
    renewal_count: int = 0
    # "copy" would shadow BaseModel.copy
    copy_item: Optional[CopySchema] = Field(None, alias="copy")
    user: Optional[UserSummary] = None


class BorrowingPage(APIModel):
    items: List[BorrowingSchema]
    total: int
    page: int
    page_size: int
    page_count: int


class OverdueCheckResult(APIModel):
    updated: int


# Reviews

class ReviewCreate(APIModel):
    resource_id: int
    content: str = Field(..., min_length=1)
    rating: Optional[int] = Field(None, ge=1, le=5)


class ReviewUpdate(APIModel):
    content: Optional[str] = Field(None, min_length=1)
    rating: Optional[int] = Field(None, ge=1, le=5)


class ReviewSchema(APIModel):
    id: int
    user_id: int
    resource_id: int
    content: str
    rating: Optional[int] = None
    created_at: datetime
    updated_at: datetime
    user: Optional[UserSummary] = None
    resource: Optional[ResourceSummary] = None


# Contact requests

class ContactRequestCreate(APIModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    subject: str = Field(..., min_length=1, max_length=200)
    message: str = Field(..., min_length=10, max_length=2000)


class ContactRequestSchema(APIModel):
    id: int
    user_id: Optional[int] = None
    name: str
    email: str
    subject: str
    message: str
    status: ContactRequestStatus
    created_at: datetime


class ContactRequestCreated(APIModel):
    id: int
    message: str


class HealthSchema(APIModel):
    status: str
    timestamp: datetime
    database: dict
