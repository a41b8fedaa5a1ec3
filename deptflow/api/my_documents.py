from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from deptflow.api.deps import get_current_user, get_db
from deptflow.models.directory import User
from deptflow.schemas.documents import InboxResponse
from deptflow.services import workflow as workflow_service

router = APIRouter(prefix="/my-documents", tags=["workflow"])


@router.get("", response_model=InboxResponse)
def my_documents(
    user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    return workflow_service.workflow.inbox(db, user)
