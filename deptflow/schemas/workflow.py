from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from deptflow.models.approval import WorkflowInstanceStatus, WorkflowStepStatus
from deptflow.models.directory import UserRole
from deptflow.schemas.directory import DepartmentRef, UserRef


# ---------------------------------------------------------------------------
# Timeline (step configuration)
# ---------------------------------------------------------------------------


class TimelineStep(BaseModel):
    role: str
    department_id: UUID | None = None
    assigned_to_id: UUID | None = None


class TimelineUpdate(BaseModel):
    steps: list[TimelineStep] = Field(min_length=1)
    expected_version: int | None = None


# ---------------------------------------------------------------------------
# WorkflowStep / WorkflowInstance
# ---------------------------------------------------------------------------


class WorkflowStepRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    step_order: int
    role: UserRole
    status: WorkflowStepStatus
    department_id: UUID | None = None
    department: DepartmentRef | None = None
    assigned_to: UserRef | None = None
    completed_by: UserRef | None = None
    completed_at: datetime | None = None
    comment: str | None = None


class WorkflowInstanceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    document_id: UUID
    status: WorkflowInstanceStatus
    current_step: int | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    row_version: int
    steps: list[WorkflowStepRead] = []


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


class WorkflowActionRequest(BaseModel):
    action: Literal["submit", "approve", "request-changes"]
    comment: str | None = None
    timeline: list[TimelineStep] | None = None
    expected_version: int | None = None


# ---------------------------------------------------------------------------
# Inbox
# ---------------------------------------------------------------------------


class UserStepRead(BaseModel):
    step_order: int
    department_name: str
    required_role: UserRole
    step_status: WorkflowStepStatus
    is_current_step: bool
