"""Repository classes encapsulating database operations.

Each repository is small and focused on a single aggregate (users,
definitions, submissions). Workflow transitions are written with
`compare_and_set`: an UPDATE guarded by the status the record had when it
was read, so two concurrent writers cannot both apply a transition. Callers
run the workflow engines on detached copies (`get_detached`) and hand the
resulting field changes back here.
"""

import copy
from typing import Iterable, List, Optional

from sqlalchemy import func, update
from sqlmodel import Session, select

from . import models
from .questions import Modality


def snapshot(obj) -> dict:
    """Copy of a record's field values, used to diff after a transition."""
    return copy.deepcopy(obj.model_dump())


def changed_fields(before: dict, obj) -> dict:
    """Fields of `obj` whose value differs from the `before` snapshot."""
    after = obj.model_dump()
    return {k: v for k, v in after.items() if k != "id" and before.get(k) != v}


class UserRepository:
    """CRUD operations for `User` objects."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, user: models.User) -> models.User:
        """Persist a new user and return the managed instance."""
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user

    def get_by_username(self, username: str) -> Optional[models.User]:
        """Return a `User` by username or `None` if not found."""
        stmt = select(models.User).where(models.User.username == username)
        return self.session.exec(stmt).first()

    def get(self, user_id: int) -> Optional[models.User]:
        """Get a `User` by primary key."""
        return self.session.get(models.User, user_id)


class _StatusGuardedRepository:
    model = None

    def __init__(self, session: Session):
        self.session = session

    def get(self, obj_id: int):
        return self.session.get(self.model, obj_id)

    def get_detached(self, obj_id: int):
        """Load a record and detach it so in-memory edits are never flushed implicitly."""
        obj = self.session.get(self.model, obj_id)
        if obj is not None:
            self.session.expunge(obj)
        return obj

    def compare_and_set(self, obj_id: int, expected_status, changes: dict, commit: bool = True) -> bool:
        """Apply `changes` only if the record still has `expected_status`.

        Returns False (and writes nothing) when another writer got there
        first. With `commit=False` the caller owns the transaction.
        """
        if not changes:
            return True
        stmt = (
            update(self.model)
            .where(self.model.id == obj_id, self.model.status == expected_status)
            .values(**changes)
        )
        result = self.session.connection().execute(stmt)
        if result.rowcount != 1:
            return False
        if commit:
            self.session.commit()
        return True


class DefinitionRepository(_StatusGuardedRepository):
    """Queries and guarded writes for `AssessmentDefinition`."""
    model = models.AssessmentDefinition

    def create(self, definition: models.AssessmentDefinition) -> models.AssessmentDefinition:
        self.session.add(definition)
        self.session.commit()
        self.session.refresh(definition)
        return definition

    def list(
        self,
        lesson_ref: Optional[int] = None,
        modality: Optional[Modality] = None,
        statuses: Optional[Iterable[models.ApprovalStatus]] = None,
        author_id: Optional[int] = None,
    ) -> List[models.AssessmentDefinition]:
        """Return definitions matching every filter that is given."""
        stmt = select(models.AssessmentDefinition)
        if lesson_ref is not None:
            stmt = stmt.where(models.AssessmentDefinition.lesson_ref == lesson_ref)
        if modality is not None:
            stmt = stmt.where(models.AssessmentDefinition.modality == modality)
        if statuses is not None:
            stmt = stmt.where(models.AssessmentDefinition.status.in_(list(statuses)))
        if author_id is not None:
            stmt = stmt.where(models.AssessmentDefinition.author_id == author_id)
        return self.session.exec(stmt.order_by(models.AssessmentDefinition.id)).all()

    def approved_for_lesson(self, lesson_ref: int, modality: Optional[Modality] = None) -> List[models.AssessmentDefinition]:
        """The definitions students can currently take for a lesson."""
        return self.list(lesson_ref=lesson_ref, modality=modality, statuses=[models.ApprovalStatus.APPROVED])


class SubmissionRepository(_StatusGuardedRepository):
    """Queries and guarded writes for `Submission`."""
    model = models.Submission

    def create(self, submission: models.Submission) -> models.Submission:
        self.session.add(submission)
        self.session.commit()
        self.session.refresh(submission)
        return submission

    def get_by_token(self, student_id: int, attempt_token: str) -> Optional[models.Submission]:
        stmt = select(models.Submission).where(
            models.Submission.student_id == student_id,
            models.Submission.attempt_token == attempt_token,
        )
        return self.session.exec(stmt).first()

    def count_attempts(self, definition_id: int, student_id: int) -> int:
        stmt = select(func.count(models.Submission.id)).where(
            models.Submission.definition_id == definition_id,
            models.Submission.student_id == student_id,
        )
        return self.session.exec(stmt).one()

    def list_for_student(self, student_id: int) -> List[models.Submission]:
        stmt = (
            select(models.Submission)
            .where(models.Submission.student_id == student_id)
            .order_by(models.Submission.submitted_at.desc())
        )
        return self.session.exec(stmt).all()

    def list_by_status(self, statuses: Iterable[models.SubmissionStatus], modality: Optional[Modality] = None) -> List[models.Submission]:
        stmt = select(models.Submission).where(models.Submission.status.in_(list(statuses)))
        if modality is not None:
            stmt = stmt.where(models.Submission.modality == modality)
        return self.session.exec(stmt.order_by(models.Submission.submitted_at)).all()
