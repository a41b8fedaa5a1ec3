from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from deptflow.models.directory import UserRole


# ---------------------------------------------------------------------------
# Department
# ---------------------------------------------------------------------------


class DepartmentBase(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    description: str | None = None


class DepartmentCreate(DepartmentBase):
    pass


class DepartmentUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=120)
    description: str | None = None


class DepartmentRead(DepartmentBase):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    created_at: datetime
    updated_at: datetime


class DepartmentRef(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str


# ---------------------------------------------------------------------------
# User
# ---------------------------------------------------------------------------


class UserBase(BaseModel):
    username: str = Field(min_length=1, max_length=80)
    name: str = Field(min_length=1, max_length=200)
    email: str | None = Field(default=None, max_length=255)
    role: str = "AUTHOR"
    is_active: bool = True


class UserCreate(UserBase):
    password: str | None = Field(default=None, min_length=8, max_length=72)
    department_ids: list[UUID] = Field(default_factory=list)


class UserUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    email: str | None = Field(default=None, max_length=255)
    password: str | None = Field(default=None, min_length=8, max_length=72)
    role: str | None = None
    is_active: bool | None = None


class UserDepartmentsUpdate(BaseModel):
    department_ids: list[UUID]


class UserRef(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    username: str
    name: str


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    username: str
    name: str
    email: str | None = None
    role: UserRole
    is_active: bool
    departments: list[DepartmentRef] = []
    created_at: datetime
    updated_at: datetime
