from datetime import datetime, timedelta, timezone
from pathlib import Path
import os
import tempfile

import pytest

# Settings are read at import time, so point the app at a throwaway
# database before any test module imports `gradeflow`.
_TMP_DIR = Path(tempfile.mkdtemp(prefix="gradeflow-tests-"))
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP_DIR / 'test.db'}"
os.environ["AI_GRADER_URL"] = ""
os.environ["GRADER_CALLBACK_TOKEN"] = "test-grader-token"
os.environ["ALLOW_DEV_CORS"] = "false"
os.environ["JWT_SECRET"] = "test-secret-for-the-suite-0123456789abcdef"

from sqlmodel import Session, SQLModel  # noqa: E402

from gradeflow.database import engine, create_db_and_tables  # noqa: E402
from gradeflow.models import Role  # noqa: E402
from gradeflow import services  # noqa: E402


class FakeClock:
    """Deterministic clock; advance it explicitly."""
    def __init__(self, start=None):
        self.now = start or datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture(autouse=True)
def reset_db():
    """Ensure a fresh set of tables for every test."""
    SQLModel.metadata.drop_all(engine)
    create_db_and_tables()
    yield


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session():
    with Session(engine) as s:
        yield s


@pytest.fixture
def people(session):
    """Callers for an author, a second reviewer and a student."""
    auth = services.AuthService(session)
    return {
        'author': auth.register('author', 'pw', Role.TEACHER).as_caller(),
        'reviewer': auth.register('reviewer', 'pw', Role.ADVISOR).as_caller(),
        'student': auth.register('student', 'pw', Role.STUDENT).as_caller(),
        'other_student': auth.register('other', 'pw', Role.STUDENT).as_caller(),
    }


def mcq_questions(n=4):
    return [
        {'prompt': f'Question {i + 1}?', 'options': ['A', 'B', 'C'], 'correct_option_index': i % 3}
        for i in range(n)
    ]


def qa_questions(n=2):
    return [
        {'prompt': f'Explain topic {i + 1}.', 'expected_points': f'point {i + 1}a; point {i + 1}b'}
        for i in range(n)
    ]
