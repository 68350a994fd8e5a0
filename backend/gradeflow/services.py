"""Business logic services used by HTTP controllers.

This module holds small service classes that coordinate repositories,
workflow engines and the AI grader. Services are intentionally thin: they
load a record, run the matching workflow function on a detached copy and
persist the resulting changes with a status-guarded write. Every method
that can fail for a domain reason returns a `Result`.
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

import jwt
from passlib.context import CryptContext
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from . import approval, grading, models, repositories
from .config import settings
from .errors import (
    Failure,
    Result,
    already_finalized,
    forbidden,
    incomplete_attempt,
    invalid_input,
    invalid_transition,
    not_approved,
    not_found,
)
from .models import ApprovalStatus, Caller, SubmissionStatus, utcnow
from .questions import FreeText, Modality, SelectedOption, dump_questions, parse_question, parse_questions
from .schemas import AiGradingResult, AnswerItem, AttemptIn, DefinitionIn, ReviewQueueItem, SubmissionDraft
from .scoring import AiGrader, build_grading_items, parse_ai_response, score_mcq, suggested_final_score
from .utils.parsers import parse_file_to_questions

PWD_CTX = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
logger = logging.getLogger("gradeflow.services")

REVIEW_QUEUE_STATUSES = (
    SubmissionStatus.SUBMITTED,
    SubmissionStatus.AI_GRADED,
    SubmissionStatus.TEACHER_REVIEW,
)


def _log(event: str, **fields) -> None:
    logger.info("%s %s", event, json.dumps(fields, ensure_ascii=True, default=str))


class AuthService:
    """Authentication related operations (register + authenticate)."""
    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)

    def register(self, username: str, password: str, role: models.Role = models.Role.STUDENT) -> models.User:
        """Create a new user with a hashed password.

        Returns the persisted `User` instance.
        """
        hashed = PWD_CTX.hash(password)
        u = models.User(username=username, password_hash=hashed, role=role)
        return self.user_repo.create(u)

    def authenticate(self, username: str, password: str):
        """Verify credentials and return a signed JWT token on success.

        Returns `None` if authentication fails.
        """
        user = self.user_repo.get_by_username(username)
        if not user:
            return None
        if not PWD_CTX.verify(password, user.password_hash):
            return None
        expire = datetime.now(timezone.utc) + timedelta(hours=settings.JWT_EXPIRE_HOURS)
        payload = {"user_id": user.id, "username": user.username, "role": user.role.value, "exp": int(expire.timestamp())}
        return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


class ImportService:
    """Turn an uploaded question file into validated question payloads."""
    def __init__(self, session: Session):
        self.session = session

    def import_file(self, file_bytes: bytes, filename: str, modality: Modality) -> dict:
        """Parse `filename` contents for a `modality` definition.

        Returns the valid questions in canonical form and any validation
        `errors` encountered per item (with the item's position).
        """
        parsed = parse_file_to_questions(file_bytes, filename, modality)
        questions = []
        errors = []
        for idx, p in enumerate(parsed):
            try:
                questions.append(parse_question(modality, p))
            except ValueError as e:
                errors.append({'index': idx, 'error': str(e), 'item': p})
        return {'questions': dump_questions(questions), 'errors': errors}


class DefinitionService:
    """Authoring and approval of assessment definitions."""
    def __init__(self, session: Session, clock: Callable[[], datetime] = utcnow):
        self.session = session
        self.clock = clock
        self.repo = repositories.DefinitionRepository(session)

    def create(self, caller: Caller, payload: DefinitionIn) -> Result[models.AssessmentDefinition]:
        """Create a draft definition owned by `caller`."""
        if not caller.is_staff:
            return Result.fail(forbidden("only teachers can author assessments"))
        try:
            questions = parse_questions(payload.modality, payload.questions)
        except ValueError as e:
            return Result.fail(invalid_input(str(e)))
        problem = approval.validate_time_limit(payload.modality, payload.time_limit_minutes)
        if problem:
            return Result.fail(invalid_input(problem))
        now = self.clock()
        definition = models.AssessmentDefinition(
            lesson_ref=payload.lesson_ref,
            title=payload.title,
            modality=payload.modality,
            questions=dump_questions(questions),
            time_limit_minutes=payload.time_limit_minutes,
            status=ApprovalStatus.DRAFT,
            author_id=caller.user_id,
            created_at=now,
            updated_at=now,
        )
        created = self.repo.create(definition)
        _log("definition_created", definition_id=created.id, lesson_ref=created.lesson_ref, modality=created.modality.value, author_id=caller.user_id)
        return Result.success(created)

    def create_from_file(
        self,
        caller: Caller,
        lesson_ref: int,
        title: str,
        modality: Modality,
        file_bytes: bytes,
        filename: str,
        time_limit_minutes: Optional[int] = None,
    ):
        """Create a draft definition from an uploaded question file.

        Returns `(result, import_report)`; the definition is only created
        when every item in the file is valid.
        """
        report = ImportService(self.session).import_file(file_bytes, filename, modality)
        if report['errors']:
            first = report['errors'][0]
            return Result.fail(invalid_input(f"question {first['index'] + 1}: {first['error']}")), report
        payload = DefinitionIn(
            lesson_ref=lesson_ref,
            title=title,
            modality=modality,
            questions=report['questions'],
            time_limit_minutes=time_limit_minutes,
        )
        return self.create(caller, payload), report

    def get(self, caller: Caller, definition_id: int) -> Result[models.AssessmentDefinition]:
        """Fetch a definition; students only see approved ones."""
        definition = self.repo.get(definition_id)
        if definition is None or (not caller.is_staff and definition.status != ApprovalStatus.APPROVED):
            return Result.fail(not_found("definition"))
        return Result.success(definition)

    def list(self, caller: Caller, lesson_ref: Optional[int] = None, modality: Optional[Modality] = None, status: Optional[ApprovalStatus] = None) -> List[models.AssessmentDefinition]:
        if not caller.is_staff:
            status = ApprovalStatus.APPROVED
        return self.repo.list(lesson_ref=lesson_ref, modality=modality, statuses=[status] if status else None)

    def approved_for_lesson(self, lesson_ref: int, modality: Optional[Modality] = None) -> List[models.AssessmentDefinition]:
        return self.repo.approved_for_lesson(lesson_ref, modality)

    def update_questions(self, caller: Caller, definition_id: int, questions: List[dict], time_limit_minutes: Optional[int] = None) -> Result[models.AssessmentDefinition]:
        return self._transition(
            definition_id,
            lambda d: approval.update_questions(d, caller, questions, time_limit_minutes, clock=self.clock),
            "definition_questions_updated",
        )

    def submit_for_review(self, caller: Caller, definition_id: int) -> Result[models.AssessmentDefinition]:
        return self._transition(
            definition_id,
            lambda d: approval.submit_for_review(d, caller, clock=self.clock),
            "definition_submitted_for_review",
        )

    def reject(self, caller: Caller, definition_id: int, notes: Optional[str]) -> Result[models.AssessmentDefinition]:
        return self._transition(
            definition_id,
            lambda d: approval.reject(d, caller, notes, clock=self.clock),
            "definition_rejected",
        )

    def approve(self, caller: Caller, definition_id: int, notes: Optional[str] = None) -> Result[models.AssessmentDefinition]:
        """Approve a pending definition and archive the one it replaces, atomically."""
        definition = self.repo.get_detached(definition_id)
        if definition is None:
            return Result.fail(not_found("definition"))
        peers = [
            self.repo.get_detached(p.id)
            for p in self.repo.approved_for_lesson(definition.lesson_ref, definition.modality)
        ]
        before = repositories.snapshot(definition)
        peer_before = {p.id: repositories.snapshot(p) for p in peers}
        expected = definition.status
        outcome = approval.approve(definition, caller, notes, approved_peers=peers, clock=self.clock)
        if not outcome.ok:
            return Result.fail(outcome.error)
        try:
            # archive first so the one-approved-per-lesson index never sees two
            for peer in outcome.value.demoted:
                changes = repositories.changed_fields(peer_before[peer.id], peer)
                if not self.repo.compare_and_set(peer.id, ApprovalStatus.APPROVED, changes, commit=False):
                    self.session.rollback()
                    return Result.fail(self._stale())
            changes = repositories.changed_fields(before, definition)
            if not self.repo.compare_and_set(definition_id, expected, changes, commit=False):
                self.session.rollback()
                return Result.fail(self._stale())
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            return Result.fail(self._stale())
        _log(
            "definition_approved",
            definition_id=definition_id,
            reviewer_id=caller.user_id,
            archived=[p.id for p in outcome.value.demoted],
        )
        return Result.success(self.repo.get(definition_id))

    def _stale(self) -> Failure:
        return invalid_transition("definition changed since it was loaded; refresh and retry")

    def _transition(self, definition_id: int, fn, event: str) -> Result[models.AssessmentDefinition]:
        definition = self.repo.get_detached(definition_id)
        if definition is None:
            return Result.fail(not_found("definition"))
        before = repositories.snapshot(definition)
        expected = definition.status
        outcome = fn(definition)
        if not outcome.ok:
            return Result.fail(outcome.error)
        if not self.repo.compare_and_set(definition_id, expected, repositories.changed_fields(before, definition)):
            self.session.rollback()
            return Result.fail(self._stale())
        _log(event, definition_id=definition_id, status=definition.status.value)
        return Result.success(self.repo.get(definition_id))


class SubmissionService:
    """Record finished attempts as submissions."""
    MAX_INSERT_TRIES = 3

    def __init__(self, session: Session, clock: Callable[[], datetime] = utcnow):
        self.session = session
        self.clock = clock
        self.definitions = repositories.DefinitionRepository(session)
        self.repo = repositories.SubmissionRepository(session)

    def submit(self, caller: Caller, definition_id: int, attempt: AttemptIn) -> Result[models.Submission]:
        """Validate and store an attempt.

        MCQ attempts are rescored here from the stored answer key; any score
        the client computed is ignored. A repeated `attempt_token` returns
        the submission created by the first call, provided it was for the
        same definition.
        """
        if attempt.attempt_token:
            existing = self._by_token(caller, definition_id, attempt.attempt_token)
            if existing is not None:
                return existing
        definition = self.definitions.get(definition_id)
        if definition is None or definition.status != ApprovalStatus.APPROVED:
            return Result.fail(not_approved())
        questions = parse_questions(definition.modality, definition.questions)
        captured = self._capture(definition, questions, attempt)
        if not captured.ok:
            return Result.fail(captured.error)
        answers = captured.value
        items = []
        for i in range(len(questions)):
            if definition.modality == Modality.MCQ:
                items.append(AnswerItem(question_index=i, selected_option_index=answers[i].index))
            else:
                items.append(AnswerItem(question_index=i, answer_text=answers[i].text))
        draft = SubmissionDraft(
            definition_id=definition.id,
            modality=definition.modality,
            answers=items,
            score=score_mcq(questions, answers) if definition.modality == Modality.MCQ else None,
            time_taken_seconds=attempt.time_taken_seconds,
            integrity_event_count=attempt.integrity_event_count,
            attempt_token=attempt.attempt_token,
        )
        created = None
        for _ in range(self.MAX_INSERT_TRIES):
            # (definition, student, attempt_number) is unique, so a concurrent
            # submit that took the same number makes this insert fail
            attempt_number = self.repo.count_attempts(definition.id, caller.user_id) + 1
            submission = grading.new_submission(draft, caller.user_id, attempt_number, clock=self.clock)
            try:
                created = self.repo.create(submission)
                break
            except IntegrityError:
                self.session.rollback()
                if attempt.attempt_token:
                    existing = self._by_token(caller, definition.id, attempt.attempt_token)
                    if existing is not None:
                        return existing
        if created is None:
            return Result.fail(invalid_transition("submission conflicted with concurrent attempts; retry"))
        _log(
            "submission_created",
            submission_id=created.id,
            definition_id=definition.id,
            student_id=caller.user_id,
            modality=definition.modality.value,
            attempt_number=created.attempt_number,
            score=created.score,
            integrity_event_count=created.integrity_event_count,
        )
        return Result.success(created)

    def _by_token(self, caller: Caller, definition_id: int, token: str) -> Optional[Result[models.Submission]]:
        existing = self.repo.get_by_token(caller.user_id, token)
        if existing is None:
            return None
        if existing.definition_id != definition_id:
            return Result.fail(invalid_input("attempt token belongs to another assessment"))
        return Result.success(existing)

    def _capture(self, definition: models.AssessmentDefinition, questions: list, attempt: AttemptIn) -> Result[Dict[int, object]]:
        """Map submitted items onto question indices, rejecting anything malformed."""
        answers: Dict[int, object] = {}
        for item in attempt.answers:
            i = item.question_index
            if i >= len(questions):
                return Result.fail(invalid_input(f"answer for unknown question {i + 1}"))
            if i in answers:
                return Result.fail(invalid_input(f"question {i + 1} answered twice"))
            if definition.modality == Modality.MCQ:
                if item.selected_option_index is None:
                    continue
                if not 0 <= item.selected_option_index < len(questions[i].options):
                    return Result.fail(invalid_input(f"question {i + 1} has only {len(questions[i].options)} options"))
                answers[i] = SelectedOption(index=item.selected_option_index)
            else:
                if item.answer_text is None:
                    continue
                answers[i] = FreeText(text=item.answer_text)
        timed_out = (
            attempt.timed_out
            and definition.modality == Modality.QA
            and bool(definition.time_limit_minutes)
        )
        missing = [
            i for i in range(len(questions))
            if i not in answers or (isinstance(answers[i], FreeText) and answers[i].is_blank and not timed_out)
        ]
        if timed_out:
            for i in missing:
                answers[i] = FreeText(text="")
            missing = []
        if missing:
            return Result.fail(incomplete_attempt(missing))
        return Result.success(answers)

    def get(self, caller: Caller, submission_id: int) -> Result[models.Submission]:
        submission = self.repo.get(submission_id)
        if submission is None or (not caller.is_staff and submission.student_id != caller.user_id):
            return Result.fail(not_found("submission"))
        return Result.success(submission)

    def list_for_student(self, caller: Caller) -> List[models.Submission]:
        return self.repo.list_for_student(caller.user_id)


class GradingService:
    """AI augmentation and human finalization of submissions."""
    def __init__(self, session: Session, grader: Optional[AiGrader] = None, clock: Callable[[], datetime] = utcnow):
        self.session = session
        self.clock = clock
        self.grader = grader or AiGrader()
        self.definitions = repositories.DefinitionRepository(session)
        self.repo = repositories.SubmissionRepository(session)

    def request_ai_grading(self, submission_id: int) -> Result[models.Submission]:
        """Ask the AI grader for feedback and apply it.

        Can be retried any number of times: a submission that already has
        feedback is returned unchanged, and a failure leaves it `submitted`.
        """
        submission = self.repo.get(submission_id)
        if submission is None:
            return Result.fail(not_found("submission"))
        if submission.modality != Modality.QA:
            return Result.fail(invalid_transition("AI grading only applies to free-response submissions"))
        if submission.status != SubmissionStatus.SUBMITTED:
            return Result.success(submission)
        definition = self.definitions.get(submission.definition_id)
        questions = parse_questions(definition.modality, definition.questions)
        answers = {a["question_index"]: FreeText(text=a.get("answer_text") or "") for a in submission.answers}
        items = build_grading_items(questions, answers)
        graded = self.grader.grade(submission_id, items)
        if not graded.ok:
            _log("ai_grading_failed", submission_id=submission_id, error=graded.error.message)
            return Result.fail(graded.error)
        return self.receive_ai_feedback(submission_id, graded.value)

    def receive_ai_callback(self, submission_id: int, payload: dict) -> Result[models.Submission]:
        """Handle a (possibly re-delivered) callback from the AI grader."""
        submission = self.repo.get(submission_id)
        if submission is None:
            return Result.fail(not_found("submission"))
        try:
            result = parse_ai_response(payload, question_count=len(submission.answers))
        except ValueError as e:
            return Result.fail(invalid_input(f"invalid AI feedback: {e}"))
        return self.receive_ai_feedback(submission_id, result)

    def receive_ai_feedback(self, submission_id: int, result: AiGradingResult) -> Result[models.Submission]:
        submission = self.repo.get_detached(submission_id)
        if submission is None:
            return Result.fail(not_found("submission"))
        before = repositories.snapshot(submission)
        expected = submission.status
        applied = grading.apply_ai_feedback(submission, result, clock=self.clock)
        if not applied.ok:
            return Result.fail(applied.error)
        if applied.value and self.repo.compare_and_set(submission_id, expected, repositories.changed_fields(before, submission)):
            _log("ai_feedback_applied", submission_id=submission_id, overall_score=result.feedback.overall_score)
        else:
            self.session.rollback()
            _log("ai_feedback_ignored", submission_id=submission_id, status=expected.value)
        return Result.success(self.repo.get(submission_id))

    def begin_review(self, caller: Caller, submission_id: int) -> Result[models.Submission]:
        return self._transition(submission_id, lambda s: grading.begin_review(s, caller), "submission_review_started")

    def finalize(self, caller: Caller, submission_id: int, final_score, teacher_feedback: str = "") -> Result[models.Submission]:
        """Finalize once; exactly one of several concurrent callers succeeds."""
        return self._transition(
            submission_id,
            lambda s: grading.finalize(s, caller, final_score, teacher_feedback, clock=self.clock),
            "submission_finalized",
        )

    def review_mcq(self, caller: Caller, submission_id: int, approve: bool, feedback: str = "") -> Result[models.Submission]:
        return self._transition(
            submission_id,
            lambda s: grading.review_mcq(s, caller, approve, feedback, clock=self.clock),
            "submission_reviewed",
        )

    def _transition(self, submission_id: int, fn, event: str) -> Result[models.Submission]:
        submission = self.repo.get_detached(submission_id)
        if submission is None:
            return Result.fail(not_found("submission"))
        before = repositories.snapshot(submission)
        expected = submission.status
        outcome = fn(submission)
        if not outcome.ok:
            return Result.fail(outcome.error)
        changes = repositories.changed_fields(before, submission)
        if not self.repo.compare_and_set(submission_id, expected, changes):
            self.session.rollback()
            current = self.repo.get(submission_id)
            if current is not None and current.status == SubmissionStatus.FINALIZED:
                return Result.fail(already_finalized())
            return Result.fail(invalid_transition("submission changed since it was loaded; refresh and retry"))
        _log(event, submission_id=submission_id, status=submission.status.value, reviewer_id=submission.reviewed_by)
        return Result.success(self.repo.get(submission_id))


class ReviewService:
    """Read model behind the reviewer screens. Never changes state."""
    def __init__(self, session: Session):
        self.session = session
        self.definitions = repositories.DefinitionRepository(session)
        self.submissions = repositories.SubmissionRepository(session)

    def pending_definitions(self, modality: Optional[Modality] = None) -> List[models.AssessmentDefinition]:
        return self.definitions.list(modality=modality, statuses=[ApprovalStatus.PENDING_REVIEW])

    def submission_queue(self, modality: Optional[Modality] = None) -> List[ReviewQueueItem]:
        """Submissions waiting for a human decision, oldest first."""
        titles: Dict[int, str] = {}
        out = []
        for s in self.submissions.list_by_status(REVIEW_QUEUE_STATUSES, modality=modality):
            if s.modality == Modality.MCQ and s.status != SubmissionStatus.SUBMITTED:
                continue
            if s.definition_id not in titles:
                definition = self.definitions.get(s.definition_id)
                titles[s.definition_id] = definition.title if definition else ""
            out.append(self._queue_item(s, titles[s.definition_id]))
        return out

    def submission_detail(self, submission_id: int) -> Result[dict]:
        submission = self.submissions.get(submission_id)
        if submission is None:
            return Result.fail(not_found("submission"))
        definition = self.definitions.get(submission.definition_id)
        return Result.success({
            'submission': submission,
            'definition_title': definition.title if definition else "",
            'questions': definition.questions if definition else [],
            'suggested_final_score': suggested_final_score(submission.ai_feedback),
        })

    def _queue_item(self, s: models.Submission, title: str) -> ReviewQueueItem:
        overall = (s.ai_feedback or {}).get("overall_score")
        return ReviewQueueItem(
            submission_id=s.id,
            definition_id=s.definition_id,
            definition_title=title,
            modality=s.modality,
            student_id=s.student_id,
            status=s.status,
            score=s.score,
            ai_overall_score=overall,
            suggested_final_score=suggested_final_score(s.ai_feedback),
            time_taken_seconds=s.time_taken_seconds,
            integrity_event_count=s.integrity_event_count,
            submitted_at=s.submitted_at,
        )
