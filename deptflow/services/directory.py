from __future__ import annotations

import logging
import uuid

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from deptflow.errors import Conflict, InvalidState, NotFound
from deptflow.models.approval import WorkflowStep
from deptflow.models.directory import Department, User, UserRole, user_departments
from deptflow.schemas.directory import (
    DepartmentCreate,
    DepartmentUpdate,
    UserCreate,
    UserUpdate,
)
from deptflow.services.auth import hash_password
from deptflow.services.common import (
    apply_ordering,
    apply_pagination,
    coerce_enum,
    coerce_uuid,
)
from deptflow.services.response import ListResponseMixin

logger = logging.getLogger(__name__)


def _load_departments(db: Session, department_ids) -> list[Department]:
    ids = {coerce_uuid(dept_id) for dept_id in department_ids}
    if not ids:
        return []
    found = db.scalars(select(Department).where(Department.id.in_(ids))).all()
    missing = ids - {dept.id for dept in found}
    if missing:
        raise NotFound(
            "Department not found",
            details={"department_ids": sorted(str(m) for m in missing)},
        )
    return list(found)


# ---------------------------------------------------------------------------
# Departments
# ---------------------------------------------------------------------------


class Departments(ListResponseMixin):
    @staticmethod
    def create(db: Session, payload: DepartmentCreate) -> Department:
        existing = db.scalar(select(Department).where(Department.name == payload.name))
        if existing:
            raise Conflict(f"Department '{payload.name}' already exists")
        department = Department(**payload.model_dump())
        db.add(department)
        db.commit()
        db.refresh(department)
        logger.info("Created department %s", department.id)
        return department

    @staticmethod
    def get(db: Session, department_id: str) -> Department:
        department = db.get(Department, coerce_uuid(department_id))
        if not department:
            raise NotFound("Department not found")
        return department

    @staticmethod
    def list(
        db: Session,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ) -> list[Department]:
        stmt = apply_ordering(
            select(Department),
            order_by,
            order_dir,
            {"name": Department.name, "created_at": Department.created_at},
        )
        return db.scalars(apply_pagination(stmt, limit, offset)).all()

    @staticmethod
    def update(
        db: Session, department_id: str, payload: DepartmentUpdate
    ) -> Department:
        department = Departments.get(db, department_id)
        data = payload.model_dump(exclude_unset=True)
        if data.get("name") is not None:
            existing = db.scalar(
                select(Department)
                .where(Department.name == data["name"])
                .where(Department.id != department.id)
            )
            if existing:
                raise Conflict(f"Department '{data['name']}' already exists")
        for key, value in data.items():
            setattr(department, key, value)
        db.commit()
        db.refresh(department)
        logger.info("Updated department %s", department.id)
        return department

    @staticmethod
    def delete(db: Session, department_id: str) -> None:
        department = Departments.get(db, department_id)
        step_count = db.scalar(
            select(func.count())
            .select_from(WorkflowStep)
            .where(WorkflowStep.department_id == department.id)
        )
        if step_count:
            raise InvalidState(
                "Cannot delete a department used in workflow steps",
                details={"workflow_steps": step_count},
            )
        db.delete(department)
        db.commit()
        logger.info("Deleted department %s", department_id)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class Users(ListResponseMixin):
    @staticmethod
    def create(db: Session, payload: UserCreate) -> User:
        existing = db.scalar(select(User).where(User.username == payload.username))
        if existing:
            raise Conflict(f"Username '{payload.username}' is taken")
        data = payload.model_dump(exclude={"department_ids", "password"})
        data["role"] = coerce_enum(UserRole, data["role"], "role")
        if payload.password is not None:
            data["password_hash"] = hash_password(payload.password)
        user = User(**data)
        user.departments = _load_departments(db, payload.department_ids)
        db.add(user)
        db.commit()
        db.refresh(user)
        logger.info("Created user %s (%s)", user.id, user.role.value)
        return user

    @staticmethod
    def get(db: Session, user_id: str | uuid.UUID) -> User:
        user = db.get(
            User, coerce_uuid(user_id), options=[selectinload(User.departments)]
        )
        if not user:
            raise NotFound("User not found")
        return user

    @staticmethod
    def list(
        db: Session,
        role: str | None,
        department_id: str | None,
        is_active: bool | None,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ) -> list[User]:
        stmt = select(User).options(selectinload(User.departments))
        if role is not None:
            stmt = stmt.where(User.role == coerce_enum(UserRole, role, "role"))
        if department_id is not None:
            stmt = stmt.where(
                User.departments.any(Department.id == coerce_uuid(department_id))
            )
        if is_active is not None:
            stmt = stmt.where(User.is_active == is_active)
        stmt = apply_ordering(
            stmt,
            order_by,
            order_dir,
            {
                "username": User.username,
                "name": User.name,
                "created_at": User.created_at,
            },
        )
        return db.scalars(apply_pagination(stmt, limit, offset)).all()

    @staticmethod
    def update(db: Session, user_id: str, payload: UserUpdate) -> User:
        user = Users.get(db, user_id)
        data = payload.model_dump(exclude_unset=True)
        password = data.pop("password", None)
        if password is not None:
            data["password_hash"] = hash_password(password)
        if data.get("role") is not None:
            data["role"] = coerce_enum(UserRole, data["role"], "role")
        for key, value in data.items():
            setattr(user, key, value)
        db.commit()
        db.refresh(user)
        logger.info("Updated user %s", user.id)
        return user

    @staticmethod
    def set_departments(db: Session, user_id: str, department_ids) -> User:
        user = Users.get(db, user_id)
        user.departments = _load_departments(db, department_ids)
        db.commit()
        db.refresh(user)
        logger.info(
            "Set %d departments for user %s", len(user.departments), user.id
        )
        return user

    @staticmethod
    def department_ids_for(db: Session, user_id: str | uuid.UUID) -> set[uuid.UUID]:
        return set(
            db.scalars(
                select(user_departments.c.department_id).where(
                    user_departments.c.user_id == coerce_uuid(user_id)
                )
            ).all()
        )

    @staticmethod
    def admins(db: Session) -> list[User]:
        return db.scalars(
            select(User)
            .where(User.role == UserRole.admin)
            .where(User.is_active.is_(True))
        ).all()

    @staticmethod
    def in_departments(db: Session, department_ids) -> list[User]:
        ids = {coerce_uuid(dept_id) for dept_id in department_ids}
        if not ids:
            return []
        return db.scalars(
            select(User)
            .where(User.departments.any(Department.id.in_(ids)))
            .where(User.is_active.is_(True))
        ).all()


departments = Departments()
users = Users()
