from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from deptflow.api.deps import get_current_user, get_db, require_admin
from deptflow.models.directory import User
from deptflow.schemas.common import ListResponse
from deptflow.schemas.directory import (
    UserCreate,
    UserDepartmentsUpdate,
    UserRead,
    UserUpdate,
)
from deptflow.services import directory as directory_service

router = APIRouter(prefix="/users", tags=["users"])


@router.get("/me", response_model=UserRead)
def get_me(user: User = Depends(get_current_user)):
    return user


@router.post(
    "",
    response_model=UserRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin)],
)
def create_user(payload: UserCreate, db: Session = Depends(get_db)):
    return directory_service.users.create(db, payload)


@router.get(
    "",
    response_model=ListResponse[UserRead],
    dependencies=[Depends(require_admin)],
)
def list_users(
    role: str | None = None,
    department_id: str | None = None,
    is_active: bool | None = None,
    order_by: str = Query(default="username"),
    order_dir: str = Query(default="asc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return directory_service.users.list_response(
        db, role, department_id, is_active, order_by, order_dir, limit, offset
    )


@router.get(
    "/{user_id}",
    response_model=UserRead,
    dependencies=[Depends(require_admin)],
)
def get_user(user_id: str, db: Session = Depends(get_db)):
    return directory_service.users.get(db, user_id)


@router.patch(
    "/{user_id}",
    response_model=UserRead,
    dependencies=[Depends(require_admin)],
)
def update_user(user_id: str, payload: UserUpdate, db: Session = Depends(get_db)):
    return directory_service.users.update(db, user_id, payload)


@router.put(
    "/{user_id}/departments",
    response_model=UserRead,
    dependencies=[Depends(require_admin)],
)
def set_user_departments(
    user_id: str, payload: UserDepartmentsUpdate, db: Session = Depends(get_db)
):
    return directory_service.users.set_departments(db, user_id, payload.department_ids)
