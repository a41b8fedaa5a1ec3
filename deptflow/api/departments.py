from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from deptflow.api.deps import get_db, require_admin
from deptflow.schemas.common import ListResponse
from deptflow.schemas.directory import (
    DepartmentCreate,
    DepartmentRead,
    DepartmentUpdate,
)
from deptflow.services import directory as directory_service

router = APIRouter(prefix="/departments", tags=["departments"])


@router.post(
    "",
    response_model=DepartmentRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin)],
)
def create_department(payload: DepartmentCreate, db: Session = Depends(get_db)):
    return directory_service.departments.create(db, payload)


@router.get("", response_model=ListResponse[DepartmentRead])
def list_departments(
    order_by: str = Query(default="name"),
    order_dir: str = Query(default="asc", pattern="^(asc|desc)$"),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return directory_service.departments.list_response(
        db, order_by, order_dir, limit, offset
    )


@router.get("/{department_id}", response_model=DepartmentRead)
def get_department(department_id: str, db: Session = Depends(get_db)):
    return directory_service.departments.get(db, department_id)


@router.patch(
    "/{department_id}",
    response_model=DepartmentRead,
    dependencies=[Depends(require_admin)],
)
def update_department(
    department_id: str, payload: DepartmentUpdate, db: Session = Depends(get_db)
):
    return directory_service.departments.update(db, department_id, payload)


@router.delete(
    "/{department_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_admin)],
)
def delete_department(department_id: str, db: Session = Depends(get_db)):
    directory_service.departments.delete(db, department_id)
