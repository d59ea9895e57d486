import os

# Configure before the application modules read settings
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["JWT_SECRET_KEY"] = "test-secret"

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from retest_backend.core.database import Base, get_db
from retest_backend.core.dependencies import Principal
from retest_backend.core.security import ROLE_ADMIN, ROLE_STUDENT, ROLE_TEACHER, create_access_token
from retest_backend.main import app
from retest_backend.models import Assessment, AssessmentResult, AssessmentType
from retest_backend.schemas.attempt import SubmissionRequest
from retest_backend.schemas.retest import RetestAssignmentCreate
from retest_backend.services.retest import RetestAssignmentService
from retest_backend.services.submission import SubmissionService

engine = create_engine(
    "sqlite+pysqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(
    bind=engine,
    class_=Session,
    expire_on_commit=False,
    autoflush=False,
)

NOW = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)


def override_get_db():
    session = TestingSessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


app.dependency_overrides[get_db] = override_get_db


@pytest.fixture(autouse=True)
def reset_database():
    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)


@pytest.fixture
def db_session():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def teacher():
    return Principal(role=ROLE_TEACHER, teacher_id="t-1")


@pytest.fixture
def make_assessment(db_session):
    def _make(test_type=AssessmentType.MULTIPLE_CHOICE, teacher_id="t-1", name="Fractions quiz"):
        assessment = Assessment(
            test_type=test_type,
            test_name=name,
            teacher_id=teacher_id,
            subject_id="math",
        )
        db_session.add(assessment)
        db_session.commit()
        return assessment

    return _make


@pytest.fixture
def make_result(db_session):
    def _make(assessment, student_id, score="30", max_score="100", created_at=None):
        result = AssessmentResult(
            test_type=assessment.test_type,
            test_id=assessment.id,
            student_id=student_id,
            score=Decimal(score),
            max_score=Decimal(max_score),
            created_at=created_at or NOW - timedelta(days=7),
        )
        db_session.add(result)
        db_session.commit()
        return result

    return _make


@pytest.fixture
def make_retest(db_session, teacher):
    def _make(
        assessment,
        student_ids,
        max_attempts=3,
        passing_threshold="50",
        window_start=None,
        window_end=None,
    ):
        request = RetestAssignmentCreate(
            test_type=assessment.test_type,
            original_test_id=assessment.id,
            student_ids=student_ids,
            passing_threshold=Decimal(passing_threshold),
            max_attempts=max_attempts,
            window_start=window_start or NOW - timedelta(days=1),
            window_end=window_end or NOW + timedelta(days=6),
        )
        return RetestAssignmentService(db_session).create_assignment(request, teacher)

    return _make


@pytest.fixture
def submit(db_session):
    """Submit through the service with a fixed clock."""

    def _submit(student_id, test_id, score=None, max_score="100", retest_id=None, now=NOW, **extra):
        request = SubmissionRequest(
            test_id=test_id,
            retest_assignment_id=retest_id,
            score=Decimal(str(score)) if score is not None else None,
            max_score=Decimal(max_score) if score is not None else None,
            **extra,
        )
        return SubmissionService(db_session).submit(student_id, request, now=now)

    return _submit


def auth_headers(role, subject_id=None, **profile):
    kwargs = {}
    if role == ROLE_STUDENT:
        kwargs["student_id"] = subject_id
    elif subject_id is not None:
        kwargs["teacher_id"] = subject_id
    token = create_access_token(subject=subject_id or role, role=role, profile=profile or None, **kwargs)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def teacher_headers():
    return auth_headers(ROLE_TEACHER, "t-1")


@pytest.fixture
def admin_headers():
    return auth_headers(ROLE_ADMIN)


@pytest.fixture
def student_headers():
    def _headers(student_id, **profile):
        return auth_headers(ROLE_STUDENT, student_id, **profile)

    return _headers
