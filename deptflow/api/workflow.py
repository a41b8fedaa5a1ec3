from fastapi import APIRouter, Depends, File, Form, UploadFile
from sqlalchemy.orm import Session

from deptflow.api.deps import get_current_user, get_db
from deptflow.api.documents import read_upload
from deptflow.models.directory import User
from deptflow.schemas.documents import CompleteStepResponse, DocumentDetailRead
from deptflow.schemas.workflow import (
    TimelineUpdate,
    WorkflowActionRequest,
    WorkflowInstanceRead,
)
from deptflow.services import workflow as workflow_service

router = APIRouter(prefix="/documents", tags=["workflow"])


@router.get("/{document_id}/workflow", response_model=WorkflowInstanceRead)
def get_workflow(
    document_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return workflow_service.workflow.get_workflow(db, document_id, user)


@router.put("/{document_id}/workflow/steps", response_model=WorkflowInstanceRead)
def configure_workflow_steps(
    document_id: str,
    payload: TimelineUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return workflow_service.workflow.configure_timeline(
        db, document_id, user, payload.steps, payload.expected_version
    )


@router.post("/{document_id}/workflow", response_model=DocumentDetailRead)
def workflow_action(
    document_id: str,
    payload: WorkflowActionRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    engine = workflow_service.workflow
    if payload.action == "submit":
        return engine.submit(
            db, document_id, user, payload.timeline, payload.expected_version
        )
    if payload.action == "approve":
        return engine.approve(
            db, document_id, user, payload.comment, payload.expected_version
        )
    return engine.request_changes(
        db, document_id, user, payload.comment, payload.expected_version
    )


@router.post("/{document_id}/complete-step", response_model=CompleteStepResponse)
def complete_step(
    document_id: str,
    comment: str | None = Form(default=None),
    expected_version: int | None = Form(default=None),
    file: UploadFile | None = File(default=None),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return workflow_service.workflow.complete_step(
        db,
        document_id,
        user,
        comment,
        read_upload(file),
        expected_version,
    )
