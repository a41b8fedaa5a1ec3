"""Document approval state machine.

A document moves DRAFT -> FOR_REVIEW -> (CHANGES_REQUESTED -> FOR_REVIEW)*
-> APPROVED through the ordered steps of its workflow instance. Every
transition loads the document, checks the caller's ``expected_version``,
validates state and authorization, mutates, and commits exactly once.
Events are published only after the commit succeeds.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload
from sqlalchemy.orm.exc import StaleDataError

from deptflow.errors import (
    AppError,
    Conflict,
    InvalidState,
    NotFound,
    Unauthorized,
    ValidationFailed,
)
from deptflow.metrics import workflow_transitions_total
from deptflow.models.approval import (
    OPEN_STEP_STATUSES,
    Document,
    DocumentStatus,
    WorkflowInstance,
    WorkflowInstanceStatus,
    WorkflowStep,
    WorkflowStepStatus,
)
from deptflow.models.directory import User, UserRole
from deptflow.schemas.workflow import TimelineStep
from deptflow.services import workflow_policy as policy
from deptflow.services.directory import users
from deptflow.services.documents import (
    DOCUMENT_LOAD_OPTIONS,
    Documents,
    build_steps,
    check_expected_version,
    save_upload,
)
from deptflow.services.event import EventType, publish_event
from deptflow.services.storage import Upload, storage

logger = logging.getLogger(__name__)


class WorkflowEngine:
    def __init__(self, storage_backend=None, policies=None, publish=None):
        self._storage = storage_backend
        self._policies = policies
        self._publish = publish

    @property
    def storage(self):
        return self._storage or storage

    @property
    def policies(self):
        if self._policies is None:
            self._policies = policy.load_role_policies()
        return self._policies

    def publish(self, *args, **kwargs):
        (self._publish or publish_event)(*args, **kwargs)

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    @contextmanager
    def _transition(self, db: Session, action: str):
        """Commit once on success; roll back and drop written files on failure."""
        written: list[str] = []
        try:
            yield written
            db.commit()
        except StaleDataError:
            db.rollback()
            self._discard(written)
            workflow_transitions_total.labels(action=action, outcome="conflict").inc()
            logger.warning("Concurrent modification during %s", action)
            raise Conflict("Document was modified concurrently, reload and retry")
        except Conflict:
            db.rollback()
            self._discard(written)
            workflow_transitions_total.labels(action=action, outcome="conflict").inc()
            raise
        except AppError as exc:
            db.rollback()
            self._discard(written)
            workflow_transitions_total.labels(action=action, outcome="rejected").inc()
            logger.warning("Rejected %s: %s", action, exc.detail.get("message"))
            raise
        except Exception:
            db.rollback()
            self._discard(written)
            workflow_transitions_total.labels(action=action, outcome="error").inc()
            raise
        workflow_transitions_total.labels(action=action, outcome="success").inc()

    def _discard(self, file_paths: list[str]) -> None:
        for file_path in file_paths:
            self.storage.delete(file_path)

    @staticmethod
    def _load(
        db: Session, document_id, actor: User, expected_version: int | None
    ) -> Document:
        document = Documents.get(db, document_id, actor)
        check_expected_version(document, expected_version)
        return document

    @staticmethod
    def _current_step(document: Document) -> WorkflowStep:
        step = policy.actionable_step(document)
        if step is not None:
            return step

        instance = document.workflow
        if instance is None or not instance.is_started:
            raise InvalidState("Document has no active workflow")
        if instance.is_complete:
            raise InvalidState("Workflow is already complete")
        if document.current_status != DocumentStatus.for_review:
            raise InvalidState(
                f"Document must be FOR_REVIEW "
                f"(document is {document.current_status.value})"
            )
        step = instance.step_at(instance.current_step)
        if step is None:
            logger.error(
                "Workflow %s points at missing step %s",
                instance.id,
                instance.current_step,
            )
            raise InvalidState(
                "Workflow state is corrupt",
                details={"current_step": instance.current_step},
            )
        if step.status not in OPEN_STEP_STATUSES:
            raise InvalidState(
                f"Current step is {step.status.value}",
                details={"current_step": instance.current_step},
            )
        return step

    @staticmethod
    def _authorize_step(step: WorkflowStep, actor: User) -> None:
        if not policy.can_act_on_step(step, actor):
            raise Unauthorized(
                "You cannot act on the current step",
                details={
                    "required_role": step.role.value,
                    "department_id": str(step.department_id)
                    if step.department_id
                    else None,
                },
            )

    @staticmethod
    def _complete_current(
        document: Document, step: WorkflowStep, actor: User, comment: str | None
    ) -> bool:
        """Close ``step`` and move the pointer. Returns True when the workflow ended."""
        now = datetime.now(timezone.utc)
        instance = document.workflow
        step.status = WorkflowStepStatus.completed
        step.completed_at = now
        step.completed_by_id = actor.id
        if comment:
            step.comment = comment
        document.updated_at = now

        next_step = instance.step_at(step.step_order + 1)
        if next_step is not None:
            instance.current_step = next_step.step_order
            return False
        instance.status = WorkflowInstanceStatus.completed
        instance.current_step = None
        instance.completed_at = now
        document.current_status = DocumentStatus.approved
        return True

    def _publish_completion(
        self, document: Document, step_order: int, actor: User, finished: bool
    ) -> None:
        self.publish(
            EventType.workflow_step_completed,
            entity_type="workflow",
            entity_id=document.workflow.id,
            actor_id=actor.id,
            document_id=document.id,
            payload={"step_order": step_order},
        )
        if finished:
            self.publish(
                EventType.workflow_completed,
                entity_type="workflow",
                entity_id=document.workflow.id,
                actor_id=actor.id,
                document_id=document.id,
            )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def submit(
        self,
        db: Session,
        document_id,
        actor: User,
        timeline: list[TimelineStep] | None = None,
        expected_version: int | None = None,
    ) -> Document:
        with self._transition(db, "submit"):
            document = self._load(db, document_id, actor, expected_version)
            instance = document.workflow
            resubmit = False
            if instance is not None and instance.is_started:
                if document.current_status != DocumentStatus.changes_requested:
                    raise InvalidState("A workflow already exists for this document")
                if timeline:
                    raise InvalidState(
                        "The timeline cannot be changed on re-submission"
                    )
                resubmit = True
            elif document.current_status != DocumentStatus.draft:
                raise InvalidState(
                    f"Only DRAFT documents can be submitted "
                    f"(document is {document.current_status.value})"
                )
            if not policy.can_submit(document, actor):
                raise Unauthorized("Only the author can submit this document")

            now = datetime.now(timezone.utc)
            if not resubmit:
                if timeline:
                    steps = build_steps(db, timeline)
                elif instance is None:
                    steps = [
                        WorkflowStep(
                            step_order=1,
                            role=UserRole.approver,
                            assigned_to_id=actor.id,
                        )
                    ]
                else:
                    steps = None
                if instance is None:
                    instance = WorkflowInstance()
                    document.workflow = instance
                if steps is not None:
                    instance.steps.clear()
                    db.flush()
                    instance.steps.extend(steps)
                instance.status = WorkflowInstanceStatus.active
                instance.current_step = 1
                instance.started_at = now
                instance.started_by_id = actor.id
            document.current_status = DocumentStatus.for_review
            document.updated_at = now

        logger.info(
            "%s document %s (workflow %s, step %s)",
            "Re-submitted" if resubmit else "Submitted",
            document.id,
            instance.id,
            instance.current_step,
        )
        self.publish(
            EventType.workflow_submitted,
            entity_type="workflow",
            entity_id=instance.id,
            actor_id=actor.id,
            document_id=document.id,
            payload={"resubmitted": resubmit},
        )
        return Documents.get(db, document.id)

    def approve(
        self,
        db: Session,
        document_id,
        actor: User,
        comment: str | None = None,
        expected_version: int | None = None,
    ) -> Document:
        with self._transition(db, "approve"):
            document = self._load(db, document_id, actor, expected_version)
            step = self._current_step(document)
            self._authorize_step(step, actor)
            step_order = step.step_order
            finished = self._complete_current(document, step, actor, comment)

        logger.info(
            "Approved step %d of document %s%s",
            step_order,
            document.id,
            " (workflow complete)" if finished else "",
        )
        self._publish_completion(document, step_order, actor, finished)
        return Documents.get(db, document.id)

    def request_changes(
        self,
        db: Session,
        document_id,
        actor: User,
        comment: str | None,
        expected_version: int | None = None,
    ) -> Document:
        with self._transition(db, "request_changes"):
            document = self._load(db, document_id, actor, expected_version)
            step = self._current_step(document)
            self._authorize_step(step, actor)
            if not comment or not comment.strip():
                raise ValidationFailed("A comment is required to request changes")
            step.status = WorkflowStepStatus.pending
            step.comment = comment
            document.current_status = DocumentStatus.changes_requested
            document.updated_at = datetime.now(timezone.utc)
            step_order = step.step_order

        logger.info("Changes requested on document %s at step %d", document.id, step_order)
        self.publish(
            EventType.workflow_changes_requested,
            entity_type="workflow",
            entity_id=document.workflow.id,
            actor_id=actor.id,
            document_id=document.id,
            payload={"step_order": step_order},
        )
        return Documents.get(db, document.id)

    def complete_step(
        self,
        db: Session,
        document_id,
        actor: User,
        comment: str | None,
        upload: Upload | None = None,
        expected_version: int | None = None,
    ) -> dict:
        if upload is not None and upload.is_empty:
            upload = None
        version = None
        with self._transition(db, "complete_step") as written:
            document = self._load(db, document_id, actor, expected_version)
            step = self._current_step(document)
            self._authorize_step(step, actor)

            requirement = self.policies.get(step.role, policy.RolePolicy())
            if requirement.comment_required and not (comment and comment.strip()):
                raise ValidationFailed(
                    f"A comment is required to complete a {step.role.value} step"
                )
            if requirement.file_required and upload is None:
                raise ValidationFailed(
                    f"A file is required to complete a {step.role.value} step"
                )

            if upload is not None:
                stored = save_upload(document.id, upload, self.storage)
                written.append(stored.file_path)
                version = Documents.append_version(db, document, stored, actor)
            step_order = step.step_order
            finished = self._complete_current(document, step, actor, comment)

        logger.info(
            "Completed step %d of document %s%s",
            step_order,
            document.id,
            f" with version {version.version_number}" if version else "",
        )
        if version is not None:
            self.publish(
                EventType.version_created,
                entity_type="document_version",
                entity_id=version.id,
                actor_id=actor.id,
                document_id=document.id,
                payload={"version_number": version.version_number},
            )
        self._publish_completion(document, step_order, actor, finished)
        return {
            "document": Documents.get(db, document.id),
            "version_id": version.id if version else None,
            "version_number": version.version_number if version else None,
        }

    def configure_timeline(
        self,
        db: Session,
        document_id,
        actor: User,
        timeline: list[TimelineStep],
        expected_version: int | None = None,
    ) -> WorkflowInstance:
        with self._transition(db, "configure_timeline"):
            document = self._load(db, document_id, actor, expected_version)
            instance = document.workflow
            if document.current_status != DocumentStatus.draft or (
                instance is not None and instance.is_started
            ):
                raise InvalidState(
                    "The timeline can only be changed before the document is submitted"
                )
            if not policy.can_submit(document, actor):
                raise Unauthorized("Only the author can configure the workflow")
            steps = build_steps(db, timeline)
            if instance is None:
                instance = WorkflowInstance(current_step=1)
                document.workflow = instance
            else:
                instance.steps.clear()
                db.flush()
            instance.steps.extend(steps)
            document.updated_at = datetime.now(timezone.utc)

        logger.info(
            "Configured %d-step timeline for document %s", len(steps), document.id
        )
        return WorkflowEngine.get_workflow(db, document.id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @staticmethod
    def get_workflow(db: Session, document_id, actor: User | None = None):
        document = Documents.get(db, document_id, actor)
        if document.workflow is None:
            raise NotFound("Document has no workflow")
        return document.workflow

    @staticmethod
    def inbox(db: Session, actor: User) -> dict:
        """Documents routed through the actor's departments.

        ``all_documents`` holds every such document; ``documents`` keeps the
        ones the actor can act on now or has a pending step in.
        """
        department_ids = users.department_ids_for(db, actor.id)
        if not department_ids:
            return {"documents": [], "all_documents": []}
        stmt = (
            select(Document)
            .options(*DOCUMENT_LOAD_OPTIONS)
            .where(
                Document.workflow.has(
                    WorkflowInstance.steps.any(
                        WorkflowStep.department_id.in_(department_ids)
                    )
                )
            )
            .order_by(Document.updated_at.desc())
        )
        items = []
        for document in db.scalars(stmt).unique().all():
            items.append(_inbox_item(document, actor, department_ids))
        pending = [
            item
            for item in items
            if item["can_interact"]
            or (
                item["user_step"] is not None
                and item["user_step"]["step_status"] == WorkflowStepStatus.pending
            )
        ]
        return {"documents": pending, "all_documents": items}


def _inbox_item(document: Document, actor: User, department_ids) -> dict:
    instance = document.workflow
    actionable = policy.actionable_step(document)
    can_interact = False
    user_step = None
    for step in instance.steps:
        if step.department_id not in department_ids:
            continue
        if not policy.can_act_on_step(step, actor, department_ids):
            continue
        is_current = step.step_order == instance.current_step
        user_step = {
            "step_order": step.step_order,
            "department_name": step.department.name if step.department else "Unknown",
            "required_role": step.role,
            "step_status": step.status,
            "is_current_step": is_current,
        }
        if step is actionable:
            can_interact = True
            break
    return {"document": document, "can_interact": can_interact, "user_step": user_step}


workflow = WorkflowEngine()
