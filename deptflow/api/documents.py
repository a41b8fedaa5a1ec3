import json
from datetime import datetime

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile, status
from fastapi.responses import FileResponse, RedirectResponse
from pydantic import TypeAdapter, ValidationError
from sqlalchemy.orm import Session

from deptflow.api.deps import get_current_user, get_db
from deptflow.errors import NotFound, ValidationFailed
from deptflow.models.directory import User
from deptflow.schemas.common import ListResponse
from deptflow.schemas.documents import (
    DocumentCreate,
    DocumentDetailRead,
    DocumentRead,
    DocumentUpdate,
    DocumentVersionRead,
)
from deptflow.schemas.workflow import TimelineStep
from deptflow.services import documents as documents_service
from deptflow.services.storage import Upload, storage

router = APIRouter(prefix="/documents", tags=["documents"])

_timeline_adapter = TypeAdapter(list[TimelineStep])


def _error_details(exc: ValidationError) -> list[dict]:
    return exc.errors(include_url=False, include_context=False, include_input=False)


def read_upload(file: UploadFile | None) -> Upload | None:
    if file is None or not file.filename:
        return None
    return Upload(
        file_name=file.filename,
        content=file.file.read(),
        mime_type=file.content_type,
    )


def _parse_department_ids(raw: str | None) -> list[str]:
    if not raw:
        return []
    raw = raw.strip()
    if raw.startswith("["):
        try:
            values = json.loads(raw)
        except json.JSONDecodeError:
            raise ValidationFailed("department_ids is not valid JSON")
        return [str(value) for value in values]
    return [value.strip() for value in raw.split(",") if value.strip()]


def _parse_timeline(raw: str | None) -> list[TimelineStep] | None:
    if not raw:
        return None
    try:
        return _timeline_adapter.validate_json(raw)
    except ValidationError as exc:
        raise ValidationFailed(
            "timeline is not a valid list of steps",
            details=_error_details(exc),
        )


def _version_response(version):
    if storage.backend == "s3":
        return RedirectResponse(documents_service.download_url(version))
    path = storage.local_path(version.file_path)
    if not path.is_file():
        raise NotFound("Stored file is missing")
    return FileResponse(path, media_type=version.mime_type, filename=version.file_name)


@router.post(
    "",
    response_model=DocumentDetailRead,
    status_code=status.HTTP_201_CREATED,
)
def create_document(
    title: str = Form(...),
    type: str = Form(...),
    priority: str = Form(default="MEDIUM"),
    deadline: datetime | None = Form(default=None),
    department_ids: str | None = Form(default=None),
    timeline: str | None = Form(default=None),
    file: UploadFile = File(...),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        payload = DocumentCreate(
            title=title,
            type=type,
            priority=priority,
            deadline=deadline,
            department_ids=_parse_department_ids(department_ids),
            timeline=_parse_timeline(timeline),
        )
    except ValidationError as exc:
        raise ValidationFailed(
            "Invalid document fields",
            details=_error_details(exc),
        )
    return documents_service.documents.create(db, payload, read_upload(file), user)


@router.get("", response_model=ListResponse[DocumentRead])
def list_documents(
    status: str | None = None,
    type: str | None = None,
    priority: str | None = None,
    department_id: str | None = None,
    mine: bool = False,
    order_by: str = Query(default="updated_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return documents_service.documents.list_response(
        db,
        user,
        status,
        type,
        priority,
        department_id,
        mine,
        order_by,
        order_dir,
        limit,
        offset,
    )


@router.get("/{document_id}", response_model=DocumentDetailRead)
def get_document(
    document_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return documents_service.documents.get(db, document_id, user)


@router.patch("/{document_id}", response_model=DocumentDetailRead)
def update_document(
    document_id: str,
    payload: DocumentUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return documents_service.documents.update(db, document_id, payload, user)


@router.delete("/{document_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_document(
    document_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    documents_service.documents.delete(db, document_id, user)


@router.put(
    "/{document_id}/file",
    response_model=DocumentVersionRead,
    status_code=status.HTTP_201_CREATED,
)
def upload_document_version(
    document_id: str,
    file: UploadFile = File(...),
    expected_version: int | None = Form(default=None),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return documents_service.documents.upload_version(
        db, document_id, read_upload(file), user, expected_version
    )


@router.post("/{document_id}/final", response_model=DocumentDetailRead)
def finalize_document(
    document_id: str,
    expected_version: int | None = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return documents_service.documents.mark_final(
        db, document_id, user, expected_version
    )


# ------------------------------------------------------------------
# Versions
# ------------------------------------------------------------------


@router.get(
    "/{document_id}/versions",
    response_model=ListResponse[DocumentVersionRead],
)
def list_document_versions(
    document_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    items = documents_service.documents.list_versions(
        db, document_id, user, limit, offset
    )
    return {"items": items, "count": len(items), "limit": limit, "offset": offset}


@router.get("/{document_id}/versions/{version_id}/download")
def download_document_version(
    document_id: str,
    version_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    version = documents_service.documents.get_version(db, document_id, version_id, user)
    return _version_response(version)


@router.get("/{document_id}/download-current")
def download_current_version(
    document_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    version = documents_service.documents.get_current_version(db, document_id, user)
    return _version_response(version)
