import os
import time
from contextlib import asynccontextmanager
import logging
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from sqlalchemy.orm import Session

from lending import auth, borrowings, config, crud, models
from lending.exceptions import PermissionDeniedError, add_exception_handlers
from lending.internal_message import cleanup_messaging, setup_messaging
from lending.schemas import (
    AdminBorrowingCreate,
    BorrowingCreate,
    BorrowingPage,
    BorrowingSchema,
    BorrowingUpdate,
    ContactRequestCreate,
    ContactRequestCreated,
    ContactRequestSchema,
    CopyCreate,
    CopySchema,
    CopyUpdate,
    HealthSchema,
    LoginRequest,
    OverdueCheckResult,
    ResourceCreate,
    ResourceDetailSchema,
    ResourceSchema,
    ResourceUpdate,
    ReviewCreate,
    ReviewSchema,
    ReviewUpdate,
    RoleUpdate,
    UserCount,
    UserCreate,
    UserSchema,
)
from lending.storage import SessionLocal, engine
from lending.utils import utcnow

# Set up logging
logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.testing = app.state.testing if hasattr(app.state, "testing") else False

    if not app.state.testing:
        models.Base.metadata.create_all(bind=engine)
        if config.RABBIT_MQ_CONN_STR:
            await setup_messaging(app)
    yield
    if not app.state.testing and config.RABBIT_MQ_CONN_STR:
        await cleanup_messaging(app)


app = FastAPI(
    title="Lending API",
    lifespan=lifespan,
    description="Resources, copies, borrowings, reviews and contact requests of a media library",
    version="1.0.0",
)

add_exception_handlers(app)

security = HTTPBasic()
optional_security = HTTPBasic(auto_error=False)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_current_user(
    credentials: HTTPBasicCredentials = Depends(security), db: Session = Depends(get_db)
) -> models.User:
    return auth.authenticate_user(db, credentials.username, credentials.password)


def get_optional_user(
    credentials: Optional[HTTPBasicCredentials] = Depends(optional_security),
    db: Session = Depends(get_db),
) -> Optional[models.User]:
    if credentials is None:
        return None
    return auth.authenticate_user(db, credentials.username, credentials.password)


def require_admin(user: models.User = Depends(get_current_user)) -> models.User:
    if not auth.is_admin(user):
        raise PermissionDeniedError("Administrator role required")
    return user


# Health

@app.get("/health", response_model=HealthSchema)
def health(db: Session = Depends(get_db)):
    started = time.perf_counter()
    connected = crud.check_database(db)
    database = {"status": "connected" if connected else "error"}
    if connected:
        database["responseTime"] = round((time.perf_counter() - started) * 1000, 2)
    return {
        "status": "ok" if connected else "error",
        "timestamp": utcnow(),
        "database": database,
    }


# Users and authentication

@app.post("/users", response_model=UserSchema, status_code=status.HTTP_201_CREATED)
def create_user(user: UserCreate, db: Session = Depends(get_db)):
    return crud.create_user_record(db, user)


@app.post("/auth/login", response_model=UserSchema)
def login(credentials: LoginRequest, db: Session = Depends(get_db)):
    return auth.authenticate_user(db, credentials.email, credentials.password)


@app.get("/auth/profile", response_model=UserSchema)
def profile(current_user: models.User = Depends(get_current_user)):
    return current_user


@app.get("/users", response_model=List[UserSchema])
def list_users(
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
    admin: models.User = Depends(require_admin),
):
    return crud.get_users(db, skip=skip, limit=limit)


@app.get("/users/count", response_model=UserCount)
def count_users(db: Session = Depends(get_db), admin: models.User = Depends(require_admin)):
    return {"count": crud.count_users(db)}


@app.put("/users/{user_id}/role", response_model=UserSchema)
def update_user_role(
    user_id: int,
    role_update: RoleUpdate,
    db: Session = Depends(get_db),
    admin: models.User = Depends(require_admin),
):
    return crud.update_user_role(db, user_id, role_update.role)


# Resources

@app.post("/resources", response_model=ResourceSchema, status_code=status.HTTP_201_CREATED)
def create_resource(
    resource: ResourceCreate,
    db: Session = Depends(get_db),
    admin: models.User = Depends(require_admin),
):
    return crud.create_resource(db, resource)


@app.get("/resources", response_model=List[ResourceSchema])
def list_resources(
    type: Optional[models.ResourceType] = None,
    author: Optional[str] = Query(None, min_length=1, max_length=100),
    genre: Optional[str] = Query(None, min_length=1, max_length=100),
    search: Optional[str] = Query(None, min_length=1, max_length=100),
    skip: int = Query(0, ge=0),
    take: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
):
    return crud.filter_resources(
        db,
        resource_type=type,
        author=author,
        genre=genre,
        search=search,
        skip=skip,
        take=take,
    )


@app.get("/resources/user/favorites", response_model=List[ResourceSchema])
def list_favorites(
    db: Session = Depends(get_db), current_user: models.User = Depends(get_current_user)
):
    return crud.get_favorites(db, current_user.id)


@app.get("/resources/{resource_id}", response_model=ResourceDetailSchema)
def fetch_single_resource(resource_id: int, db: Session = Depends(get_db)):
    return crud.get_resource(db, resource_id)


@app.patch("/resources/{resource_id}", response_model=ResourceSchema)
def modify_resource(
    resource_id: int,
    resource_update: ResourceUpdate,
    db: Session = Depends(get_db),
    admin: models.User = Depends(require_admin),
):
    return crud.update_resource(db, resource_id, resource_update)


@app.delete("/resources/{resource_id}", response_model=dict)
def remove_resource(
    resource_id: int,
    db: Session = Depends(get_db),
    admin: models.User = Depends(require_admin),
):
    crud.delete_resource(db, resource_id)
    return {"message": f"Resource {resource_id} deleted"}


@app.post("/resources/{resource_id}/favorite", status_code=status.HTTP_201_CREATED)
def add_favorite(
    resource_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    crud.add_favorite(db, current_user.id, resource_id)
    return {"message": f"Resource {resource_id} added to favorites"}


@app.delete("/resources/{resource_id}/favorite")
def remove_favorite(
    resource_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    crud.remove_favorite(db, current_user.id, resource_id)
    return {"message": f"Resource {resource_id} removed from favorites"}


# Copies

@app.post("/copies", response_model=CopySchema, status_code=status.HTTP_201_CREATED)
def create_copy(
    copy_data: CopyCreate,
    db: Session = Depends(get_db),
    admin: models.User = Depends(require_admin),
):
    return crud.create_copy(db, copy_data)


@app.get("/copies", response_model=List[CopySchema])
def list_copies(
    resource_id: Optional[int] = Query(None, alias="resourceId"),
    available: Optional[bool] = None,
    db: Session = Depends(get_db),
):
    return crud.filter_copies(db, resource_id=resource_id, available=available)


@app.get("/copies/resource/{resource_id}", response_model=List[CopySchema])
def list_resource_copies(resource_id: int, db: Session = Depends(get_db)):
    return crud.filter_copies(db, resource_id=resource_id)


@app.get("/copies/{copy_id}", response_model=CopySchema)
def fetch_single_copy(copy_id: int, db: Session = Depends(get_db)):
    return crud.get_copy(db, copy_id)


@app.patch("/copies/{copy_id}", response_model=CopySchema)
def modify_copy(
    copy_id: int,
    copy_update: CopyUpdate,
    db: Session = Depends(get_db),
    admin: models.User = Depends(require_admin),
):
    return crud.update_copy(db, copy_id, copy_update)


@app.delete("/copies/{copy_id}", response_model=dict)
def remove_copy(
    copy_id: int,
    db: Session = Depends(get_db),
    admin: models.User = Depends(require_admin),
):
    crud.delete_copy(db, copy_id)
    return {"message": f"Copy {copy_id} deleted"}


# Borrowings

@app.post("/borrowings", response_model=BorrowingSchema, status_code=status.HTTP_201_CREATED)
def borrow_copy(
    borrow_request: BorrowingCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    return borrowings.create(
        db,
        current_user.id,
        borrow_request.copy_id,
        due_date=borrow_request.due_date,
        comments=borrow_request.comments,
    )


@app.get("/borrowings", response_model=BorrowingPage)
def list_borrowings(
    user_id: Optional[int] = Query(None, alias="userId"),
    resource_id: Optional[int] = Query(None, alias="resourceId"),
    status: Optional[models.BorrowingStatus] = None,
    skip: int = Query(0, ge=0),
    take: int = Query(10, ge=1, le=100),
    search: Optional[str] = Query(None, min_length=1, max_length=100),
    db: Session = Depends(get_db),
    admin: models.User = Depends(require_admin),
):
    return borrowings.find_all(
        db,
        user_id=user_id,
        resource_id=resource_id,
        status=status,
        search=search,
        skip=skip,
        take=take,
    )


@app.get("/borrowings/my", response_model=List[BorrowingSchema])
def list_my_borrowings(
    status: Optional[models.BorrowingStatus] = None,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    return borrowings.find_user_borrowings(db, current_user.id, status)


@app.post("/borrowings/check-overdue", response_model=OverdueCheckResult)
def check_overdue(db: Session = Depends(get_db), admin: models.User = Depends(require_admin)):
    return borrowings.check_overdue_borrowings(db)


@app.post(
    "/borrowings/admin/create",
    response_model=BorrowingSchema,
    status_code=status.HTTP_201_CREATED,
)
def borrow_copy_for_user(
    borrow_request: AdminBorrowingCreate,
    db: Session = Depends(get_db),
    admin: models.User = Depends(require_admin),
):
    return borrowings.create_by_admin(
        db,
        borrow_request.user_id,
        borrow_request.copy_id,
        due_date=borrow_request.due_date,
        comments=borrow_request.comments,
    )


@app.get("/borrowings/{borrowing_id}", response_model=BorrowingSchema)
def fetch_single_borrowing(
    borrowing_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    borrowing = borrowings.find_one(db, borrowing_id)
    if not auth.can_manage_borrowing(current_user, borrowing):
        raise PermissionDeniedError("You are not allowed to view this borrowing")
    return borrowing


@app.patch("/borrowings/{borrowing_id}", response_model=BorrowingSchema)
def modify_borrowing(
    borrowing_id: int,
    borrowing_update: BorrowingUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    return borrowings.update(db, borrowing_id, borrowing_update, current_user)


@app.post("/borrowings/{borrowing_id}/return", response_model=BorrowingSchema)
def return_borrowing(
    borrowing_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    return borrowings.return_borrowing(db, borrowing_id, current_user)


# Reviews

@app.post("/reviews", response_model=ReviewSchema, status_code=status.HTTP_201_CREATED)
def create_review(
    review: ReviewCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    return crud.create_review(db, current_user.id, review)


@app.get("/reviews", response_model=List[ReviewSchema])
def list_reviews(db: Session = Depends(get_db)):
    return crud.get_reviews(db)


@app.get("/reviews/resource/{resource_id}", response_model=List[ReviewSchema])
def list_resource_reviews(resource_id: int, db: Session = Depends(get_db)):
    return crud.get_reviews(db, resource_id=resource_id)


@app.get("/reviews/user/resource/{resource_id}", response_model=Optional[ReviewSchema])
def fetch_my_review(
    resource_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    return crud.get_user_review(db, current_user.id, resource_id)


@app.patch("/reviews/resource/{resource_id}", response_model=ReviewSchema)
def modify_review(
    resource_id: int,
    review_update: ReviewUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    return crud.update_review(db, current_user.id, resource_id, review_update)


@app.delete("/reviews/resource/{resource_id}", response_model=dict)
def remove_review(
    resource_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    crud.delete_review(db, current_user.id, resource_id)
    return {"message": f"Review of resource {resource_id} deleted"}


# Contact requests

@app.post(
    "/contact", response_model=ContactRequestCreated, status_code=status.HTTP_201_CREATED
)
def submit_contact_request(
    contact_request: ContactRequestCreate,
    db: Session = Depends(get_db),
    current_user: Optional[models.User] = Depends(get_optional_user),
):
    created = crud.create_contact_request(
        db, contact_request, user_id=current_user.id if current_user else None
    )
    return {"id": created.id, "message": "Your request has been submitted"}


@app.get("/contact/requests", response_model=List[ContactRequestSchema])
def list_contact_requests(
    db: Session = Depends(get_db), admin: models.User = Depends(require_admin)
):
    return crud.get_contact_requests(db)


@app.get("/contact/requests/{request_id}", response_model=ContactRequestSchema)
def fetch_contact_request(
    request_id: int,
    db: Session = Depends(get_db),
    admin: models.User = Depends(require_admin),
):
    return crud.get_contact_request(db, request_id)


@app.patch("/contact/requests/{request_id}/resolve", response_model=ContactRequestSchema)
def resolve_contact_request(
    request_id: int,
    db: Session = Depends(get_db),
    admin: models.User = Depends(require_admin),
):
    return crud.update_contact_request_status(
        db, request_id, models.ContactRequestStatus.RESOLVED
    )


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", "8000"))
    logger.info(f"Starting lending API on port {port}")
    uvicorn.run(app, host="0.0.0.0", port=port)
