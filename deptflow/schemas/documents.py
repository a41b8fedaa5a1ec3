from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from deptflow.models.approval import DocumentPriority, DocumentStatus
from deptflow.schemas.directory import DepartmentRef, UserRef
from deptflow.schemas.workflow import (
    TimelineStep,
    UserStepRead,
    WorkflowInstanceRead,
)


# ---------------------------------------------------------------------------
# Document
# ---------------------------------------------------------------------------


class DocumentCreate(BaseModel):
    title: str = Field(min_length=1, max_length=500)
    type: str = Field(min_length=1, max_length=120)
    priority: str = "MEDIUM"
    deadline: datetime | None = None
    department_ids: list[UUID] = Field(default_factory=list)
    timeline: list[TimelineStep] | None = None


class DocumentUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=500)
    type: str | None = Field(default=None, min_length=1, max_length=120)
    priority: str | None = None
    deadline: datetime | None = None
    department_ids: list[UUID] | None = None
    expected_version: int | None = None


class DocumentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    type: str
    current_status: DocumentStatus
    current_version_id: UUID | None = None
    priority: DocumentPriority
    deadline: datetime | None = None
    created_by: UserRef
    departments: list[DepartmentRef] = []
    row_version: int
    created_at: datetime
    updated_at: datetime


# ---------------------------------------------------------------------------
# DocumentVersion (immutable, read only)
# ---------------------------------------------------------------------------


class DocumentVersionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    document_id: UUID
    version_number: int
    file_name: str
    file_size: int
    mime_type: str
    file_path: str
    created_by: UserRef
    created_at: datetime


class DocumentDetailRead(DocumentRead):
    versions: list[DocumentVersionRead] = []
    workflow: WorkflowInstanceRead | None = None


class CompleteStepResponse(BaseModel):
    document: DocumentDetailRead
    version_id: UUID | None = None
    version_number: int | None = None


class DownloadURLResponse(BaseModel):
    download_url: str


class InboxItem(BaseModel):
    document: DocumentDetailRead
    can_interact: bool
    user_step: UserStepRead | None = None


class InboxResponse(BaseModel):
    documents: list[InboxItem]
    all_documents: list[InboxItem]
