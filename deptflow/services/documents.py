from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session, selectinload

from deptflow.errors import (
    Conflict,
    InvalidState,
    NotFound,
    StorageUnavailable,
    Unauthorized,
    ValidationFailed,
)
from deptflow.models.approval import (
    Document,
    DocumentPriority,
    DocumentStatus,
    DocumentVersion,
    WorkflowInstance,
    WorkflowStep,
)
from deptflow.models.directory import Department, User, UserRole
from deptflow.schemas.documents import DocumentCreate, DocumentUpdate
from deptflow.schemas.workflow import TimelineStep
from deptflow.services import workflow_policy as policy
from deptflow.services.common import (
    apply_ordering,
    apply_pagination,
    coerce_enum,
    coerce_uuid,
)
from deptflow.services.directory import _load_departments
from deptflow.services.event import EventType, publish_event
from deptflow.services.response import ListResponseMixin
from deptflow.services.storage import StorageError, StoredFile, Upload, storage

logger = logging.getLogger(__name__)

DOCUMENT_LOAD_OPTIONS = (
    selectinload(Document.created_by),
    selectinload(Document.departments),
    selectinload(Document.versions).selectinload(DocumentVersion.created_by),
    selectinload(Document.workflow)
    .selectinload(WorkflowInstance.steps)
    .selectinload(WorkflowStep.department),
    selectinload(Document.workflow)
    .selectinload(WorkflowInstance.steps)
    .selectinload(WorkflowStep.assigned_to),
)


def check_expected_version(document: Document, expected_version: int | None) -> None:
    if expected_version is not None and expected_version != document.row_version:
        raise Conflict(
            "Document has changed since it was read",
            details={
                "expected_version": expected_version,
                "current_version": document.row_version,
            },
        )


def build_steps(db: Session, timeline: list[TimelineStep]) -> list[WorkflowStep]:
    """Turn a timeline into unsaved steps numbered 1..N."""
    if not timeline:
        raise ValidationFailed("A workflow timeline needs at least one step")
    steps = []
    for order, item in enumerate(timeline, start=1):
        role = coerce_enum(UserRole, item.role, "role")
        if item.department_id is not None and not db.get(
            Department, item.department_id
        ):
            raise NotFound(
                "Department not found",
                details={"step_order": order, "department_id": str(item.department_id)},
            )
        if item.assigned_to_id is not None and not db.get(User, item.assigned_to_id):
            raise NotFound(
                "Assignee not found",
                details={"step_order": order, "assigned_to_id": str(item.assigned_to_id)},
            )
        steps.append(
            WorkflowStep(
                step_order=order,
                role=role,
                department_id=item.department_id,
                assigned_to_id=item.assigned_to_id,
            )
        )
    return steps


def save_upload(document_id, upload: Upload, backend=None) -> StoredFile:
    backend = backend or storage
    try:
        return backend.save(
            document_id, upload.file_name, upload.content, upload.mime_type
        )
    except StorageError as exc:
        logger.error("Storage write failed for document %s: %s", document_id, exc)
        raise StorageUnavailable("The file could not be stored")


def download_url(version, backend=None) -> str:
    backend = backend or storage
    try:
        return backend.generate_download_url(version.file_path)
    except StorageError as exc:
        logger.error("Could not sign download for version %s: %s", version.id, exc)
        raise StorageUnavailable("Download is temporarily unavailable")


class Documents(ListResponseMixin):
    @staticmethod
    def create(
        db: Session, payload: DocumentCreate, upload: Upload, actor: User
    ) -> Document:
        if upload is None or upload.is_empty:
            raise ValidationFailed("A file is required to create a document")
        priority = coerce_enum(DocumentPriority, payload.priority, "priority")
        departments = _load_departments(db, payload.department_ids)
        steps = build_steps(db, payload.timeline) if payload.timeline else None

        document_id = uuid.uuid4()
        stored = save_upload(document_id, upload)
        try:
            document = Document(
                id=document_id,
                title=payload.title,
                type=payload.type,
                priority=priority,
                deadline=payload.deadline,
                current_status=DocumentStatus.draft,
                created_by_id=actor.id,
            )
            document.departments = departments
            version = DocumentVersion(
                version_number=1,
                file_name=stored.file_name,
                file_size=stored.file_size,
                mime_type=stored.mime_type,
                file_path=stored.file_path,
                created_by_id=actor.id,
            )
            document.versions.append(version)
            if steps:
                document.workflow = WorkflowInstance(current_step=1, steps=steps)
            db.add(document)
            db.flush()
            document.current_version_id = version.id
            db.commit()
        except Exception:
            db.rollback()
            storage.delete(stored.file_path)
            raise
        logger.info(
            "Created document %s with %d pre-configured steps",
            document.id,
            len(steps or []),
        )
        publish_event(
            EventType.document_created,
            entity_type="document",
            entity_id=document.id,
            actor_id=actor.id,
            document_id=document.id,
        )
        return Documents.get(db, document.id)

    @staticmethod
    def get(db: Session, document_id, actor: User | None = None) -> Document:
        document = db.get(
            Document, coerce_uuid(document_id), options=list(DOCUMENT_LOAD_OPTIONS)
        )
        if not document:
            raise NotFound("Document not found")
        if actor is not None and not policy.is_visible(document, actor):
            raise Unauthorized("You do not have access to this document")
        return document

    @staticmethod
    def list(
        db: Session,
        actor: User,
        status: str | None,
        doc_type: str | None,
        priority: str | None,
        department_id: str | None,
        mine: bool,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ) -> list[Document]:
        stmt = select(Document).options(
            selectinload(Document.created_by), selectinload(Document.departments)
        )
        if not actor.is_admin:
            stmt = stmt.where(
                or_(
                    ~Document.departments.any(),
                    Document.departments.any(Department.id.in_(actor.department_ids)),
                )
            )
        if status is not None:
            stmt = stmt.where(
                Document.current_status
                == coerce_enum(DocumentStatus, status, "status")
            )
        if doc_type is not None:
            stmt = stmt.where(Document.type == doc_type)
        if priority is not None:
            stmt = stmt.where(
                Document.priority == coerce_enum(DocumentPriority, priority, "priority")
            )
        if department_id is not None:
            stmt = stmt.where(
                Document.departments.any(Department.id == coerce_uuid(department_id))
            )
        if mine:
            stmt = stmt.where(Document.created_by_id == actor.id)
        stmt = apply_ordering(
            stmt,
            order_by,
            order_dir,
            {
                "created_at": Document.created_at,
                "updated_at": Document.updated_at,
                "title": Document.title,
                "deadline": Document.deadline,
            },
        )
        return db.scalars(apply_pagination(stmt, limit, offset)).all()

    @staticmethod
    def update(
        db: Session, document_id: str, payload: DocumentUpdate, actor: User
    ) -> Document:
        document = Documents.get(db, document_id, actor)
        check_expected_version(document, payload.expected_version)
        if document.current_status == DocumentStatus.final:
            raise InvalidState("Final documents are locked")
        if not policy.can_edit(document, actor):
            raise Unauthorized("Only the author can edit this document")

        data = payload.model_dump(exclude_unset=True, exclude={"expected_version"})
        if data.get("priority") is not None:
            data["priority"] = coerce_enum(DocumentPriority, data["priority"], "priority")
        if "department_ids" in data:
            department_ids = data.pop("department_ids") or []
            document.departments = _load_departments(db, department_ids)
        for key, value in data.items():
            if value is None and key in ("title", "type", "priority"):
                continue
            setattr(document, key, value)
        document.updated_at = datetime.now(timezone.utc)
        db.commit()
        logger.info("Updated document %s", document.id)
        publish_event(
            EventType.document_updated,
            entity_type="document",
            entity_id=document.id,
            actor_id=actor.id,
            document_id=document.id,
            payload={"changed_fields": sorted(payload.model_fields_set)},
        )
        return Documents.get(db, document.id)

    @staticmethod
    def mark_final(
        db: Session, document_id: str, actor: User, expected_version: int | None = None
    ) -> Document:
        if not actor.is_admin:
            raise Unauthorized("Only administrators can finalize documents")
        document = Documents.get(db, document_id, actor)
        check_expected_version(document, expected_version)
        if document.current_status != DocumentStatus.approved:
            raise InvalidState(
                f"Only APPROVED documents can be finalized "
                f"(document is {document.current_status.value})"
            )
        document.current_status = DocumentStatus.final
        db.commit()
        logger.info("Finalized document %s", document.id)
        publish_event(
            EventType.document_status_changed,
            entity_type="document",
            entity_id=document.id,
            actor_id=actor.id,
            document_id=document.id,
            payload={"status": DocumentStatus.final.value},
        )
        return Documents.get(db, document.id)

    @staticmethod
    def delete(db: Session, document_id: str, actor: User) -> None:
        document = Documents.get(db, document_id, actor)
        if document.current_status != DocumentStatus.draft and not actor.is_admin:
            raise InvalidState("Only draft documents can be deleted")
        if not policy.can_delete(document, actor):
            raise Unauthorized("Only the author can delete this document")

        file_paths = [version.file_path for version in document.versions]
        document.current_version_id = None
        db.flush()
        db.delete(document)
        db.commit()
        for file_path in file_paths:
            storage.delete(file_path)
        logger.info("Deleted document %s and %d versions", document_id, len(file_paths))
        publish_event(
            EventType.document_deleted,
            entity_type="document",
            entity_id=document_id,
            actor_id=actor.id,
        )

    # ------------------------------------------------------------------
    # Version sub-operations
    # ------------------------------------------------------------------

    @staticmethod
    def append_version(
        db: Session, document: Document, stored: StoredFile, actor: User
    ) -> DocumentVersion:
        """Add the next version and point the document at it. Flushes only."""
        latest = db.scalar(
            select(func.max(DocumentVersion.version_number)).where(
                DocumentVersion.document_id == document.id
            )
        )
        version = DocumentVersion(
            document_id=document.id,
            version_number=(latest or 0) + 1,
            file_name=stored.file_name,
            file_size=stored.file_size,
            mime_type=stored.mime_type,
            file_path=stored.file_path,
            created_by_id=actor.id,
        )
        db.add(version)
        db.flush()
        document.current_version_id = version.id
        document.updated_at = datetime.now(timezone.utc)
        db.flush()
        logger.info(
            "Created version %s (v%d) for document %s",
            version.id,
            version.version_number,
            document.id,
        )
        return version

    @staticmethod
    def upload_version(
        db: Session,
        document_id: str,
        upload: Upload,
        actor: User,
        expected_version: int | None = None,
    ) -> DocumentVersion:
        document = Documents.get(db, document_id, actor)
        check_expected_version(document, expected_version)
        if document.current_status == DocumentStatus.final:
            raise InvalidState("Final documents are locked")
        if document.current_status not in (
            DocumentStatus.draft,
            DocumentStatus.changes_requested,
        ):
            raise InvalidState(
                f"New versions can only be uploaded in DRAFT or CHANGES_REQUESTED "
                f"(document is {document.current_status.value})"
            )
        if not policy.can_upload_version(document, actor):
            raise Unauthorized("Only the author can upload new versions")
        if upload is None or upload.is_empty:
            raise ValidationFailed("File is required")

        stored = save_upload(document.id, upload)
        try:
            version = Documents.append_version(db, document, stored, actor)
            db.commit()
        except Exception:
            db.rollback()
            storage.delete(stored.file_path)
            raise
        publish_event(
            EventType.version_created,
            entity_type="document_version",
            entity_id=version.id,
            actor_id=actor.id,
            document_id=document.id,
            payload={"version_number": version.version_number},
        )
        return version

    @staticmethod
    def get_version(
        db: Session, document_id: str, version_id: str, actor: User | None = None
    ) -> DocumentVersion:
        Documents.get(db, document_id, actor)
        version = db.get(DocumentVersion, coerce_uuid(version_id))
        if not version or version.document_id != coerce_uuid(document_id):
            raise NotFound("Document version not found")
        return version

    @staticmethod
    def get_current_version(
        db: Session, document_id: str, actor: User | None = None
    ) -> DocumentVersion:
        document = Documents.get(db, document_id, actor)
        if document.current_version_id is None:
            raise NotFound("Document has no current version")
        return Documents.get_version(db, document_id, document.current_version_id)

    @staticmethod
    def list_versions(
        db: Session,
        document_id: str,
        actor: User | None,
        limit: int,
        offset: int,
    ) -> list[DocumentVersion]:
        Documents.get(db, document_id, actor)
        stmt = (
            select(DocumentVersion)
            .options(selectinload(DocumentVersion.created_by))
            .where(DocumentVersion.document_id == coerce_uuid(document_id))
            .order_by(DocumentVersion.version_number.desc())
            .limit(limit)
            .offset(offset)
        )
        return db.scalars(stmt).all()


documents = Documents()
