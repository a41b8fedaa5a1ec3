import os
import uuid
from unittest.mock import patch

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-deptflow-tests")
os.environ.setdefault("CELERY_TASK_ALWAYS_EAGER", "false")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import deptflow.models  # noqa: E402,F401
from deptflow.db import Base  # noqa: E402
from deptflow.models.directory import Department, User, UserRole  # noqa: E402
from deptflow.schemas.documents import DocumentCreate  # noqa: E402
from deptflow.schemas.workflow import TimelineStep  # noqa: E402
from deptflow.services.auth import create_access_token  # noqa: E402
from deptflow.services.documents import Documents  # noqa: E402
from deptflow.services.storage import Upload, storage  # noqa: E402


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def db_session(engine):
    session = sessionmaker(bind=engine, autoflush=False, autocommit=False)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def published():
    """Every event published during a test, without a broker."""
    with patch(
        "deptflow.tasks.notifications.dispatch_notifications.delay"
    ) as mock_delay:
        yield mock_delay


@pytest.fixture(autouse=True)
def upload_root(tmp_path, monkeypatch):
    root = tmp_path / "uploads"
    monkeypatch.setattr(storage, "root", root)
    monkeypatch.setattr(storage, "backend", "local")
    return root


@pytest.fixture()
def client(db_session):
    from deptflow.api.deps import get_db
    from deptflow.main import app

    def _override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Directory factories
# ---------------------------------------------------------------------------


@pytest.fixture()
def make_department(db_session):
    def _make(name=None):
        department = Department(name=name or f"dept_{uuid.uuid4().hex[:8]}")
        db_session.add(department)
        db_session.commit()
        db_session.refresh(department)
        return department

    return _make


@pytest.fixture()
def make_user(db_session):
    def _make(role=UserRole.author, departments=(), username=None):
        username = username or f"user_{uuid.uuid4().hex[:8]}"
        user = User(
            username=username,
            name=username.title(),
            email=f"{username}@example.com",
            role=role,
        )
        user.departments = list(departments)
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make


@pytest.fixture()
def dept_x(make_department):
    return make_department("Legal")


@pytest.fixture()
def dept_y(make_department):
    return make_department("Finance")


@pytest.fixture()
def dept_z(make_department):
    return make_department("Facilities")


@pytest.fixture()
def author(make_user, dept_x, dept_y):
    return make_user(UserRole.author, [dept_x, dept_y], username="author")


@pytest.fixture()
def admin(make_user):
    return make_user(UserRole.admin, username="admin")


@pytest.fixture()
def reviewer_x(make_user, dept_x):
    return make_user(UserRole.reviewer, [dept_x], username="reviewer_x")


@pytest.fixture()
def approver_y(make_user, dept_y):
    return make_user(UserRole.approver, [dept_y], username="approver_y")


@pytest.fixture()
def reviewer_z(make_user, dept_z):
    return make_user(UserRole.reviewer, [dept_z], username="reviewer_z")


@pytest.fixture()
def headers_for():
    def _headers(user):
        token = create_access_token(user.id, user.username, user.role.value)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture()
def auth_headers(headers_for, author):
    return headers_for(author)


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


@pytest.fixture()
def make_upload():
    def _make(content=b"%PDF-1.4 test", name="report.pdf"):
        return Upload(file_name=name, content=content, mime_type="application/pdf")

    return _make


@pytest.fixture()
def make_document(db_session, author, make_upload):
    def _make(actor=None, departments=(), timeline=None, title="Budget 2027"):
        payload = DocumentCreate(
            title=title,
            type="policy",
            department_ids=[dept.id for dept in departments],
            timeline=timeline,
        )
        return Documents.create(db_session, payload, make_upload(), actor or author)

    return _make


@pytest.fixture()
def two_step_document(make_document, dept_x, dept_y):
    """DRAFT document routed REVIEWER/Legal then APPROVER/Finance."""
    return make_document(
        departments=[dept_x, dept_y],
        timeline=[
            TimelineStep(role="REVIEWER", department_id=dept_x.id),
            TimelineStep(role="APPROVER", department_id=dept_y.id),
        ],
    )
