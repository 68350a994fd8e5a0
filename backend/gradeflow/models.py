"""SQLModel data models.

This module defines the application's database tables using SQLModel.
Questions, answers and AI feedback are stored as JSON columns; their
typed views live in `questions.py` and `schemas.py`.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from sqlalchemy import JSON, Column, Index, UniqueConstraint, text
from sqlmodel import Field, SQLModel

from .questions import Modality


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    STUDENT = "student"
    TEACHER = "teacher"
    ADVISOR = "advisor"
    ADMIN = "admin"


# roles allowed to author, approve/reject definitions and grade submissions
STAFF_ROLES = frozenset({Role.TEACHER, Role.ADVISOR, Role.ADMIN})


@dataclass(frozen=True)
class Caller:
    """Explicit identity passed to every workflow call."""
    user_id: int
    role: Role

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


class ApprovalStatus(str, Enum):
    DRAFT = "draft"
    PENDING_REVIEW = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    ARCHIVED = "archived"


class SubmissionStatus(str, Enum):
    SUBMITTED = "submitted"
    # MCQ review outcomes
    APPROVED = "approved"
    REJECTED = "rejected"
    # QA grading path
    AI_GRADED = "ai_graded"
    TEACHER_REVIEW = "teacher_review"
    FINALIZED = "finalized"


class User(SQLModel, table=True):
    """A registered user.

    Fields:
    - `username`: unique login name
    - `password_hash`: hashed password string (never store plaintext)
    - `role`: student, teacher, advisor or admin
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, nullable=False, unique=True)
    password_hash: str
    role: Role = Field(default=Role.STUDENT)
    created_at: datetime = Field(default_factory=utcnow)

    def as_caller(self) -> Caller:
        return Caller(user_id=self.id, role=self.role)


class AssessmentDefinition(SQLModel, table=True):
    """An authored, lesson-scoped set of questions of a single modality.

    Owned by its author while draft or rejected; read-only once pending or
    approved. Only one approved definition per (lesson_ref, modality) is
    offered to students, which the partial unique index backs up.
    """
    __table_args__ = (
        Index(
            "uq_approved_definition_per_lesson",
            "lesson_ref",
            "modality",
            unique=True,
            sqlite_where=text("status = 'APPROVED'"),
            postgresql_where=text("status = 'APPROVED'"),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    lesson_ref: int = Field(index=True)
    title: str
    modality: Modality = Field(index=True)
    questions: List[dict] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    time_limit_minutes: Optional[int] = None
    status: ApprovalStatus = Field(default=ApprovalStatus.DRAFT, index=True)
    author_id: int = Field(foreign_key="user.id")
    reviewer_id: Optional[int] = Field(default=None, foreign_key="user.id")
    review_notes: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    version: int = 1
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Submission(SQLModel, table=True):
    """The recorded, gradable result of a finished attempt.

    Immutable once finalized (QA) or reviewed (MCQ).
    """
    __table_args__ = (
        UniqueConstraint("student_id", "attempt_token"),
        UniqueConstraint("definition_id", "student_id", "attempt_number"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    definition_id: int = Field(foreign_key="assessmentdefinition.id", index=True)
    student_id: int = Field(foreign_key="user.id", index=True)
    modality: Modality
    answers: List[dict] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    score: Optional[int] = None
    correct_count: Optional[int] = None
    ai_feedback: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    ai_analysis: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    ai_graded_at: Optional[datetime] = None
    teacher_feedback: Optional[str] = None
    final_score: Optional[int] = None
    status: SubmissionStatus = Field(default=SubmissionStatus.SUBMITTED, index=True)
    time_taken_seconds: int = 0
    integrity_event_count: int = 0
    attempt_number: int = 1
    attempt_token: Optional[str] = None
    submitted_at: datetime = Field(default_factory=utcnow)
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[int] = Field(default=None, foreign_key="user.id")
