"""Role requirements and the visibility / authorization rules.

Everything here is a pure function of already-loaded ORM objects so the
rules can be evaluated without a session.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass

from deptflow.config import settings
from deptflow.models.approval import (
    OPEN_STEP_STATUSES,
    Document,
    DocumentStatus,
    WorkflowStep,
)
from deptflow.models.directory import User, UserRole

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RolePolicy:
    file_required: bool = False
    comment_required: bool = False


DEFAULT_ROLE_POLICIES: dict[UserRole, RolePolicy] = {
    UserRole.editor: RolePolicy(file_required=True, comment_required=True),
    UserRole.reviewer: RolePolicy(comment_required=True),
    UserRole.approver: RolePolicy(comment_required=True),
}


def load_role_policies(raw: str | None = None) -> dict[UserRole, RolePolicy]:
    """Default table merged with a JSON override keyed by role value."""
    policies = dict(DEFAULT_ROLE_POLICIES)
    raw = raw if raw is not None else settings.workflow_role_policy
    if not raw:
        return policies
    try:
        overrides = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"WORKFLOW_ROLE_POLICY is not valid JSON: {exc}") from exc
    for role_value, flags in overrides.items():
        role = UserRole(role_value)
        policies[role] = RolePolicy(
            file_required=bool(flags.get("file_required", False)),
            comment_required=bool(flags.get("comment_required", False)),
        )
    return policies


# ---------------------------------------------------------------------------
# Visibility & authorization
# ---------------------------------------------------------------------------


def is_visible(document: Document, user: User) -> bool:
    if user.is_admin or not document.departments:
        return True
    return bool(document.department_ids & user.department_ids)


def can_act_on_step(
    step: WorkflowStep,
    user: User,
    user_department_ids: set[uuid.UUID] | None = None,
) -> bool:
    if user.is_admin:
        return True
    if step.role != user.role:
        return False
    if step.department_id is None:
        return True
    if user_department_ids is None:
        user_department_ids = user.department_ids
    return step.department_id in user_department_ids


def actionable_step(document: Document) -> WorkflowStep | None:
    """The step a reviewer may act on now, or None.

    Requires a started, incomplete workflow, a FOR_REVIEW document and an
    open current step.
    """
    instance = document.workflow
    if instance is None or not instance.is_started or instance.is_complete:
        return None
    if document.current_status != DocumentStatus.for_review:
        return None
    step = instance.step_at(instance.current_step)
    if step is None or step.status not in OPEN_STEP_STATUSES:
        return None
    return step


def can_interact(
    document: Document,
    user: User,
    user_department_ids: set[uuid.UUID] | None = None,
) -> bool:
    step = actionable_step(document)
    if step is None:
        return False
    return can_act_on_step(step, user, user_department_ids)


def is_author(document: Document, user: User) -> bool:
    return document.created_by_id == user.id


def can_edit(document: Document, user: User) -> bool:
    if document.current_status == DocumentStatus.final:
        return False
    return user.is_admin or is_author(document, user)


def can_submit(document: Document, user: User) -> bool:
    return user.is_admin or is_author(document, user)


def can_upload_version(document: Document, user: User) -> bool:
    return user.is_admin or is_author(document, user)


def can_delete(document: Document, user: User) -> bool:
    if user.is_admin:
        return True
    return is_author(document, user) and document.current_status == DocumentStatus.draft
