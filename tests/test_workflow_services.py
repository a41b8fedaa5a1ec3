import pytest
from sqlalchemy.orm import sessionmaker

from deptflow.errors import Conflict, InvalidState, StorageUnavailable, Unauthorized
from deptflow.errors import ValidationFailed
from deptflow.models.approval import (
    Document,
    DocumentStatus,
    WorkflowInstanceStatus,
    WorkflowStepStatus,
)
from deptflow.models.directory import UserRole
from deptflow.schemas.workflow import TimelineStep
from deptflow.services import documents as documents_service
from deptflow.services import workflow_policy as policy
from deptflow.services.documents import Documents
from deptflow.services.storage import StorageError, storage
from deptflow.services.workflow import WorkflowEngine, workflow


def _snapshot(db_session, document_id):
    db_session.expire_all()
    doc = Documents.get(db_session, document_id)
    instance = doc.workflow
    return {
        "status": doc.current_status,
        "row_version": doc.row_version,
        "current_version_id": doc.current_version_id,
        "versions": sorted(v.version_number for v in doc.versions),
        "current_step": instance.current_step if instance else None,
        "instance_status": instance.status if instance else None,
        "steps": [
            (s.step_order, s.status, s.comment, s.completed_by_id)
            for s in (instance.steps if instance else [])
        ],
    }


def _published_types(published):
    return [c.kwargs["event_type"] for c in published.call_args_list]


# ---------------------------------------------------------------------------
# submit
# ---------------------------------------------------------------------------


class TestSubmit:
    def test_preconfigured_timeline_starts_at_step_one(
        self, db_session, two_step_document, author
    ):
        assert two_step_document.workflow.started_at is None

        doc = workflow.submit(db_session, two_step_document.id, author)

        assert doc.current_status == DocumentStatus.for_review
        assert doc.workflow.current_step == 1
        assert doc.workflow.status == WorkflowInstanceStatus.active
        assert doc.workflow.started_at is not None
        assert doc.workflow.started_by_id == author.id
        assert [s.step_order for s in doc.workflow.steps] == [1, 2]
        assert all(s.status == WorkflowStepStatus.pending for s in doc.workflow.steps)

    def test_without_timeline_creates_default_approver_step(
        self, db_session, make_document, author
    ):
        doc = make_document()
        assert doc.workflow is None

        doc = workflow.submit(db_session, doc.id, author)

        assert len(doc.workflow.steps) == 1
        step = doc.workflow.steps[0]
        assert step.step_order == 1
        assert step.role == UserRole.approver
        assert step.assigned_to_id == author.id
        assert step.department_id is None

    def test_timeline_supplied_on_submit(
        self, db_session, make_document, author, dept_x
    ):
        doc = make_document()
        timeline = [
            TimelineStep(role="EDITOR"),
            TimelineStep(role="REVIEWER", department_id=dept_x.id),
            TimelineStep(role="APPROVER"),
        ]

        doc = workflow.submit(db_session, doc.id, author, timeline=timeline)

        assert [s.role for s in doc.workflow.steps] == [
            UserRole.editor,
            UserRole.reviewer,
            UserRole.approver,
        ]
        assert [s.step_order for s in doc.workflow.steps] == [1, 2, 3]

    def test_submit_twice_fails(self, db_session, two_step_document, author):
        workflow.submit(db_session, two_step_document.id, author)
        before = _snapshot(db_session, two_step_document.id)

        with pytest.raises(InvalidState):
            workflow.submit(db_session, two_step_document.id, author)

        assert _snapshot(db_session, two_step_document.id) == before

    def test_only_author_or_admin_may_submit(
        self, db_session, two_step_document, reviewer_x, admin
    ):
        with pytest.raises(Unauthorized):
            workflow.submit(db_session, two_step_document.id, reviewer_x)

        doc = workflow.submit(db_session, two_step_document.id, admin)
        assert doc.current_status == DocumentStatus.for_review

    def test_resubmit_after_changes_requested_keeps_pointer(
        self, db_session, two_step_document, author, reviewer_x, approver_y
    ):
        workflow.submit(db_session, two_step_document.id, author)
        workflow.approve(db_session, two_step_document.id, reviewer_x)
        workflow.request_changes(
            db_session, two_step_document.id, approver_y, "numbers are off"
        )

        doc = workflow.submit(db_session, two_step_document.id, author)

        assert doc.current_status == DocumentStatus.for_review
        assert doc.workflow.current_step == 2
        assert doc.workflow.step_at(1).status == WorkflowStepStatus.completed

    def test_submit_publishes_event(self, db_session, two_step_document, author, published):
        published.reset_mock()
        workflow.submit(db_session, two_step_document.id, author)
        assert _published_types(published) == ["workflow.submitted"]
        assert published.call_args.kwargs["document_id"] == str(two_step_document.id)


# ---------------------------------------------------------------------------
# approve
# ---------------------------------------------------------------------------


class TestApprove:
    def test_full_route_to_approved(
        self, db_session, two_step_document, author, reviewer_x, approver_y
    ):
        workflow.submit(db_session, two_step_document.id, author)

        doc = workflow.approve(db_session, two_step_document.id, reviewer_x, "ok")
        assert doc.workflow.step_at(1).status == WorkflowStepStatus.completed
        assert doc.workflow.step_at(1).comment == "ok"
        assert doc.workflow.step_at(1).completed_by_id == reviewer_x.id
        assert doc.workflow.current_step == 2
        assert doc.current_status == DocumentStatus.for_review
        assert doc.workflow.completed_at is None

        doc = workflow.approve(db_session, two_step_document.id, approver_y)
        assert doc.workflow.step_at(2).status == WorkflowStepStatus.completed
        assert doc.workflow.current_step is None
        assert doc.workflow.is_complete
        assert doc.workflow.completed_at is not None
        assert doc.current_status == DocumentStatus.approved

    def test_approve_without_comment_keeps_existing_comment(
        self, db_session, two_step_document, author, reviewer_x, approver_y
    ):
        workflow.submit(db_session, two_step_document.id, author)
        workflow.approve(db_session, two_step_document.id, reviewer_x)
        workflow.request_changes(db_session, two_step_document.id, approver_y, "why?")
        workflow.submit(db_session, two_step_document.id, author)

        doc = workflow.approve(db_session, two_step_document.id, approver_y)

        assert doc.workflow.step_at(2).comment == "why?"

    def test_admin_may_act_on_any_step(
        self, db_session, two_step_document, author, admin
    ):
        workflow.submit(db_session, two_step_document.id, author)
        workflow.approve(db_session, two_step_document.id, admin)
        doc = workflow.approve(db_session, two_step_document.id, admin)
        assert doc.current_status == DocumentStatus.approved

    def test_step_without_department_accepts_role_from_anywhere(
        self, db_session, make_document, author, make_user, dept_z
    ):
        doc = make_document()
        workflow.submit(db_session, doc.id, author)
        approver = make_user(UserRole.approver, [dept_z])

        doc = workflow.approve(db_session, doc.id, approver)

        assert doc.current_status == DocumentStatus.approved

    def test_wrong_department_is_rejected_without_mutation(
        self, db_session, two_step_document, author, make_user, dept_y
    ):
        workflow.submit(db_session, two_step_document.id, author)
        reviewer_y = make_user(UserRole.reviewer, [dept_y])
        before = _snapshot(db_session, two_step_document.id)

        with pytest.raises(Unauthorized):
            workflow.approve(db_session, two_step_document.id, reviewer_y, "sneaky")

        assert _snapshot(db_session, two_step_document.id) == before

    def test_wrong_role_is_rejected(
        self, db_session, two_step_document, author, approver_y, make_user, dept_x
    ):
        workflow.submit(db_session, two_step_document.id, author)
        approver_x = make_user(UserRole.approver, [dept_x])
        with pytest.raises(Unauthorized):
            workflow.approve(db_session, two_step_document.id, approver_x)
        with pytest.raises(Unauthorized):
            workflow.approve(db_session, two_step_document.id, approver_y)

    def test_user_outside_document_departments_is_rejected(
        self, db_session, two_step_document, author, reviewer_z
    ):
        workflow.submit(db_session, two_step_document.id, author)
        before = _snapshot(db_session, two_step_document.id)

        with pytest.raises(Unauthorized):
            workflow.approve(db_session, two_step_document.id, reviewer_z)

        assert _snapshot(db_session, two_step_document.id) == before

    def test_approve_before_submit_fails(
        self, db_session, two_step_document, reviewer_x
    ):
        with pytest.raises(InvalidState):
            workflow.approve(db_session, two_step_document.id, reviewer_x)

    def test_approve_without_workflow_fails(self, db_session, make_document, admin):
        doc = make_document()
        with pytest.raises(InvalidState):
            workflow.approve(db_session, doc.id, admin)

    def test_approve_after_completion_fails(
        self, db_session, two_step_document, author, admin
    ):
        workflow.submit(db_session, two_step_document.id, author)
        workflow.approve(db_session, two_step_document.id, admin)
        workflow.approve(db_session, two_step_document.id, admin)

        with pytest.raises(InvalidState):
            workflow.approve(db_session, two_step_document.id, admin)

    def test_approve_while_changes_requested_fails(
        self, db_session, two_step_document, author, reviewer_x
    ):
        workflow.submit(db_session, two_step_document.id, author)
        workflow.request_changes(db_session, two_step_document.id, reviewer_x, "no")

        with pytest.raises(InvalidState):
            workflow.approve(db_session, two_step_document.id, reviewer_x)

    def test_missing_current_step_is_reported_as_corrupt(
        self, db_session, two_step_document, author, admin
    ):
        workflow.submit(db_session, two_step_document.id, author)
        doc = Documents.get(db_session, two_step_document.id)
        doc.workflow.current_step = 7
        db_session.commit()

        with pytest.raises(InvalidState) as exc:
            workflow.approve(db_session, two_step_document.id, admin)
        assert "corrupt" in exc.value.detail["message"]

    def test_last_step_publishes_completion(
        self, db_session, two_step_document, author, admin, published
    ):
        workflow.submit(db_session, two_step_document.id, author)
        workflow.approve(db_session, two_step_document.id, admin)
        published.reset_mock()

        workflow.approve(db_session, two_step_document.id, admin)

        assert _published_types(published) == [
            "workflow.step_completed",
            "workflow.completed",
        ]

    def test_rejected_transition_publishes_nothing(
        self, db_session, two_step_document, author, approver_y, published
    ):
        workflow.submit(db_session, two_step_document.id, author)
        published.reset_mock()

        with pytest.raises(Unauthorized):
            workflow.approve(db_session, two_step_document.id, approver_y)

        published.assert_not_called()


# ---------------------------------------------------------------------------
# request_changes
# ---------------------------------------------------------------------------


class TestRequestChanges:
    def test_resets_current_step_and_demotes_document(
        self, db_session, two_step_document, author, reviewer_x
    ):
        workflow.submit(db_session, two_step_document.id, author)

        doc = workflow.request_changes(
            db_session, two_step_document.id, reviewer_x, "fix X"
        )

        step = doc.workflow.step_at(1)
        assert step.status == WorkflowStepStatus.pending
        assert step.comment == "fix X"
        assert doc.current_status == DocumentStatus.changes_requested
        assert doc.workflow.current_step == 1

    def test_does_not_reopen_completed_steps(
        self, db_session, two_step_document, author, reviewer_x, approver_y
    ):
        workflow.submit(db_session, two_step_document.id, author)
        workflow.approve(db_session, two_step_document.id, reviewer_x)

        doc = workflow.request_changes(
            db_session, two_step_document.id, approver_y, "recheck totals"
        )

        assert doc.workflow.current_step == 2
        assert doc.workflow.step_at(1).status == WorkflowStepStatus.completed

    def test_comment_is_required(
        self, db_session, two_step_document, author, reviewer_x
    ):
        workflow.submit(db_session, two_step_document.id, author)
        before = _snapshot(db_session, two_step_document.id)

        with pytest.raises(ValidationFailed):
            workflow.request_changes(db_session, two_step_document.id, reviewer_x, "  ")

        assert _snapshot(db_session, two_step_document.id) == before

    def test_same_authorization_as_approve(
        self, db_session, two_step_document, author, approver_y
    ):
        workflow.submit(db_session, two_step_document.id, author)
        with pytest.raises(Unauthorized):
            workflow.request_changes(
                db_session, two_step_document.id, approver_y, "not mine"
            )


# ---------------------------------------------------------------------------
# complete_step
# ---------------------------------------------------------------------------


@pytest.fixture()
def editor(make_user, dept_x):
    return make_user(UserRole.editor, [dept_x], username="editor")


@pytest.fixture()
def editing_document(make_document, dept_x):
    """DRAFT document routed EDITOR, EDITOR, REVIEWER/Legal."""
    return make_document(
        departments=[dept_x],
        timeline=[
            TimelineStep(role="EDITOR"),
            TimelineStep(role="EDITOR"),
            TimelineStep(role="REVIEWER", department_id=dept_x.id),
        ],
    )


class TestCompleteStep:
    def test_with_file_appends_version_and_advances(
        self, db_session, editing_document, author, editor, make_upload
    ):
        workflow.submit(db_session, editing_document.id, author)

        result = workflow.complete_step(
            db_session,
            editing_document.id,
            editor,
            "first pass",
            make_upload(b"edited", "edited.pdf"),
        )

        doc = result["document"]
        assert result["version_number"] == 2
        assert doc.current_version_id == result["version_id"]
        assert doc.current_version.file_name == "edited.pdf"
        assert doc.workflow.current_step == 2
        assert doc.workflow.step_at(1).comment == "first pass"

    def test_version_numbers_have_no_gaps(
        self, db_session, editing_document, author, editor, reviewer_x, make_upload
    ):
        Documents.upload_version(db_session, editing_document.id, make_upload(), author)
        workflow.submit(db_session, editing_document.id, author)
        workflow.complete_step(
            db_session, editing_document.id, editor, "one", make_upload(b"a")
        )
        workflow.complete_step(
            db_session, editing_document.id, editor, "two", make_upload(b"b")
        )
        result = workflow.complete_step(
            db_session, editing_document.id, reviewer_x, "done", make_upload(b"c")
        )

        doc = result["document"]
        assert sorted(v.version_number for v in doc.versions) == [1, 2, 3, 4, 5]
        assert doc.current_version.version_number == 5
        assert doc.current_status == DocumentStatus.approved

    def test_editor_step_requires_file(
        self, db_session, editing_document, author, editor
    ):
        workflow.submit(db_session, editing_document.id, author)
        before = _snapshot(db_session, editing_document.id)

        with pytest.raises(ValidationFailed):
            workflow.complete_step(db_session, editing_document.id, editor, "no file")

        assert _snapshot(db_session, editing_document.id) == before

    def test_editor_step_requires_comment(
        self, db_session, editing_document, author, editor, make_upload
    ):
        workflow.submit(db_session, editing_document.id, author)
        with pytest.raises(ValidationFailed):
            workflow.complete_step(
                db_session, editing_document.id, editor, "", make_upload()
            )

    def test_reviewer_step_requires_comment_but_not_file(
        self, db_session, make_document, author, reviewer_x, dept_x
    ):
        doc = make_document(
            departments=[dept_x],
            timeline=[TimelineStep(role="REVIEWER", department_id=dept_x.id)],
        )
        workflow.submit(db_session, doc.id, author)

        with pytest.raises(ValidationFailed):
            workflow.complete_step(db_session, doc.id, reviewer_x, None)

        result = workflow.complete_step(db_session, doc.id, reviewer_x, "fine")
        assert result["version_id"] is None
        assert result["document"].current_status == DocumentStatus.approved

    def test_empty_upload_counts_as_no_file(
        self, db_session, editing_document, author, editor, make_upload
    ):
        workflow.submit(db_session, editing_document.id, author)
        with pytest.raises(ValidationFailed):
            workflow.complete_step(
                db_session, editing_document.id, editor, "x", make_upload(b"")
            )

    def test_policy_override(
        self, db_session, editing_document, author, editor
    ):
        engine = WorkflowEngine(policies={})
        workflow.submit(db_session, editing_document.id, author)

        result = engine.complete_step(db_session, editing_document.id, editor, None)

        assert result["document"].workflow.current_step == 2

    def test_storage_failure_leaves_state_untouched(
        self, db_session, editing_document, author, editor, make_upload, monkeypatch
    ):
        workflow.submit(db_session, editing_document.id, author)
        before = _snapshot(db_session, editing_document.id)

        def _fail(*args, **kwargs):
            raise StorageError("disk full")

        monkeypatch.setattr(storage, "save", _fail)

        with pytest.raises(StorageUnavailable):
            workflow.complete_step(
                db_session, editing_document.id, editor, "edit", make_upload()
            )

        assert _snapshot(db_session, editing_document.id) == before

    def test_failure_after_write_removes_stored_file(
        self,
        db_session,
        editing_document,
        author,
        editor,
        make_upload,
        monkeypatch,
        upload_root,
    ):
        workflow.submit(db_session, editing_document.id, author)
        files_before = sorted(p for p in upload_root.rglob("*") if p.is_file())

        def _boom(*args, **kwargs):
            raise RuntimeError("database went away")

        monkeypatch.setattr(documents_service.Documents, "append_version", _boom)

        with pytest.raises(RuntimeError):
            workflow.complete_step(
                db_session, editing_document.id, editor, "edit", make_upload()
            )

        files_after = sorted(p for p in upload_root.rglob("*") if p.is_file())
        assert files_after == files_before

    def test_publishes_version_and_step_events(
        self, db_session, editing_document, author, editor, make_upload, published
    ):
        workflow.submit(db_session, editing_document.id, author)
        published.reset_mock()

        workflow.complete_step(
            db_session, editing_document.id, editor, "edit", make_upload()
        )

        assert _published_types(published) == [
            "version.created",
            "workflow.step_completed",
        ]


# ---------------------------------------------------------------------------
# Optimistic concurrency
# ---------------------------------------------------------------------------


class TestConcurrency:
    def test_stale_expected_version_conflicts(
        self, db_session, two_step_document, author, reviewer_x
    ):
        doc = workflow.submit(db_session, two_step_document.id, author)
        stale = doc.row_version - 1

        with pytest.raises(Conflict):
            workflow.approve(
                db_session, doc.id, reviewer_x, expected_version=stale
            )

    def test_matching_expected_version_succeeds(
        self, db_session, two_step_document, author, reviewer_x
    ):
        doc = workflow.submit(db_session, two_step_document.id, author)
        doc = workflow.approve(
            db_session, doc.id, reviewer_x, expected_version=doc.row_version
        )
        assert doc.workflow.current_step == 2

    def test_concurrent_writer_causes_conflict(
        self, db_session, engine, two_step_document, author, reviewer_x
    ):
        doc = workflow.submit(db_session, two_step_document.id, author)

        other = sessionmaker(bind=engine)()
        try:
            other_doc = other.get(Document, doc.id)
            other_doc.title = "Edited elsewhere"
            other.commit()
        finally:
            other.close()

        with pytest.raises(Conflict):
            workflow.approve(db_session, doc.id, reviewer_x)

        db_session.expire_all()
        reloaded = Documents.get(db_session, doc.id)
        assert reloaded.title == "Edited elsewhere"
        assert reloaded.workflow.current_step == 1


# ---------------------------------------------------------------------------
# Timeline configuration
# ---------------------------------------------------------------------------


class TestConfigureTimeline:
    def test_replaces_steps_before_submission(
        self, db_session, two_step_document, author, dept_y
    ):
        instance = workflow.configure_timeline(
            db_session,
            two_step_document.id,
            author,
            [TimelineStep(role="APPROVER", department_id=dept_y.id)],
        )

        assert len(instance.steps) == 1
        assert instance.steps[0].role == UserRole.approver
        assert instance.started_at is None

    def test_creates_instance_when_missing(self, db_session, make_document, author):
        doc = make_document()
        instance = workflow.configure_timeline(
            db_session, doc.id, author, [TimelineStep(role="REVIEWER")]
        )
        assert instance.current_step == 1
        assert instance.started_at is None

    def test_rejected_after_submission(self, db_session, two_step_document, author):
        workflow.submit(db_session, two_step_document.id, author)
        with pytest.raises(InvalidState):
            workflow.configure_timeline(
                db_session, two_step_document.id, author, [TimelineStep(role="ADMIN")]
            )

    def test_unknown_role_is_rejected(self, db_session, two_step_document, author):
        with pytest.raises(ValidationFailed):
            workflow.configure_timeline(
                db_session, two_step_document.id, author, [TimelineStep(role="BOSS")]
            )

    def test_only_author_may_configure(
        self, db_session, two_step_document, reviewer_x
    ):
        with pytest.raises(Unauthorized):
            workflow.configure_timeline(
                db_session,
                two_step_document.id,
                reviewer_x,
                [TimelineStep(role="REVIEWER")],
            )


# ---------------------------------------------------------------------------
# Inbox
# ---------------------------------------------------------------------------


class TestInbox:
    def test_current_step_user_can_interact(
        self, db_session, two_step_document, author, reviewer_x, approver_y
    ):
        workflow.submit(db_session, two_step_document.id, author)

        inbox = workflow.inbox(db_session, reviewer_x)
        assert len(inbox["all_documents"]) == 1
        item = inbox["documents"][0]
        assert item["can_interact"] is True
        assert item["user_step"]["step_order"] == 1
        assert item["user_step"]["department_name"] == "Legal"
        assert item["user_step"]["is_current_step"] is True

        later = workflow.inbox(db_session, approver_y)["all_documents"][0]
        assert later["can_interact"] is False
        assert later["user_step"]["step_order"] == 2
        assert later["user_step"]["is_current_step"] is False

    def test_changes_requested_blocks_interaction(
        self, db_session, two_step_document, author, reviewer_x
    ):
        workflow.submit(db_session, two_step_document.id, author)
        workflow.request_changes(db_session, two_step_document.id, reviewer_x, "no")

        doc = Documents.get(db_session, two_step_document.id)
        assert doc.current_status == DocumentStatus.changes_requested
        assert policy.can_interact(doc, reviewer_x) is False
        item = workflow.inbox(db_session, reviewer_x)["all_documents"][0]
        assert item["can_interact"] is False
        with pytest.raises(InvalidState):
            workflow.approve(db_session, two_step_document.id, reviewer_x, "ok")

    def test_completed_steps_drop_out_of_pending(
        self, db_session, two_step_document, author, reviewer_x
    ):
        workflow.submit(db_session, two_step_document.id, author)
        workflow.approve(db_session, two_step_document.id, reviewer_x)

        inbox = workflow.inbox(db_session, reviewer_x)

        assert inbox["documents"] == []
        assert len(inbox["all_documents"]) == 1

    def test_user_without_departments_has_empty_inbox(
        self, db_session, two_step_document, author, make_user
    ):
        workflow.submit(db_session, two_step_document.id, author)
        loner = make_user(UserRole.reviewer)
        assert workflow.inbox(db_session, loner) == {
            "documents": [],
            "all_documents": [],
        }
