"""Submission grading workflow.

MCQ:  submitted ──review──▶ approved | rejected            (score set at submit)
QA:   submitted ──AI callback──▶ ai_graded ──begin_review──▶ teacher_review
          │                          │                          │
          └──────────────────────────┴────────finalize──────────┴──▶ finalized

Like the approval workflow, each function inspects a `Submission`, and
either mutates it and returns success or returns a typed failure with
nothing changed. A reviewer may finalize straight from `submitted` when
the AI never answered; the human score always wins over the AI one.
"""

from datetime import datetime
from typing import Callable, Optional

from .errors import Result, already_finalized, forbidden, invalid_input, invalid_transition
from .models import Caller, Submission, SubmissionStatus, utcnow
from .questions import Modality
from .schemas import AiGradingResult, SubmissionDraft

FINALIZABLE_STATUSES = (
    SubmissionStatus.SUBMITTED,
    SubmissionStatus.AI_GRADED,
    SubmissionStatus.TEACHER_REVIEW,
)


def new_submission(draft: SubmissionDraft, student_id: int, attempt_number: int = 1, clock: Callable[[], datetime] = utcnow) -> Submission:
    """Build the `submitted` record for a finished attempt."""
    submission = Submission(
        definition_id=draft.definition_id,
        student_id=student_id,
        modality=draft.modality,
        answers=[a.model_dump(exclude_none=True) for a in draft.answers],
        status=SubmissionStatus.SUBMITTED,
        time_taken_seconds=draft.time_taken_seconds,
        integrity_event_count=draft.integrity_event_count,
        attempt_number=attempt_number,
        attempt_token=draft.attempt_token,
        submitted_at=clock(),
    )
    if draft.score is not None:
        submission.score = draft.score.percentage
        submission.correct_count = draft.score.correct_count
    return submission


def apply_ai_feedback(submission: Submission, result: AiGradingResult, clock: Callable[[], datetime] = utcnow) -> Result[bool]:
    """Attach AI feedback to a submitted QA submission.

    Safe to call more than once for the same submission: only the first
    delivery is applied (value True); later ones return value False and
    change nothing.
    """
    if submission.modality != Modality.QA:
        return Result.fail(invalid_transition("AI grading only applies to free-response submissions"))
    if submission.status != SubmissionStatus.SUBMITTED:
        return Result.success(False)
    submission.ai_feedback = result.feedback.model_dump(mode="json")
    submission.ai_analysis = result.analysis_report
    submission.ai_graded_at = clock()
    submission.status = SubmissionStatus.AI_GRADED
    return Result.success(True)


def begin_review(submission: Submission, caller: Caller) -> Result[bool]:
    """Explicitly open an AI-graded submission for teacher review.

    Returns True when the status moved to `teacher_review`, False when
    nothing had to change (already in review, or still waiting for AI).
    """
    if not caller.is_staff:
        return Result.fail(forbidden("only reviewers can review submissions"))
    if submission.modality != Modality.QA:
        return Result.fail(invalid_transition("multiple-choice submissions are reviewed directly"))
    if submission.status == SubmissionStatus.FINALIZED:
        return Result.fail(already_finalized())
    if submission.status == SubmissionStatus.AI_GRADED:
        submission.status = SubmissionStatus.TEACHER_REVIEW
        submission.reviewed_by = caller.user_id
        return Result.success(True)
    return Result.success(False)


def _validate_final_score(final_score) -> Optional[str]:
    if isinstance(final_score, bool) or not isinstance(final_score, (int, float)):
        return "final score must be a number"
    if not 0 <= final_score <= 100:
        return "final score must be between 0 and 100"
    return None


def finalize(
    submission: Submission,
    caller: Caller,
    final_score,
    teacher_feedback: str = "",
    clock: Callable[[], datetime] = utcnow,
) -> Result[Submission]:
    """Freeze a QA submission with the reviewer's score and feedback.

    The AI feedback stays on the record; only `final_score` is
    authoritative. A second call fails with `already_finalized`.
    """
    if submission.status == SubmissionStatus.FINALIZED:
        return Result.fail(already_finalized())
    if not caller.is_staff:
        return Result.fail(forbidden("only reviewers can finalize submissions"))
    if submission.modality != Modality.QA:
        return Result.fail(invalid_transition("multiple-choice submissions are approved or rejected, not finalized"))
    if submission.status not in FINALIZABLE_STATUSES:
        return Result.fail(invalid_transition(f"cannot finalize a {submission.status.value} submission"))
    problem = _validate_final_score(final_score)
    if problem:
        return Result.fail(invalid_input(problem))
    submission.final_score = int(final_score + 0.5)
    submission.teacher_feedback = teacher_feedback or ""
    submission.status = SubmissionStatus.FINALIZED
    submission.reviewed_by = caller.user_id
    submission.reviewed_at = clock()
    return Result.success(submission)


def review_mcq(
    submission: Submission,
    caller: Caller,
    approve: bool,
    feedback: str = "",
    clock: Callable[[], datetime] = utcnow,
) -> Result[Submission]:
    """Approve (marks saved) or reject (feedback required) an MCQ submission."""
    if not caller.is_staff:
        return Result.fail(forbidden("only reviewers can review submissions"))
    if submission.modality != Modality.MCQ:
        return Result.fail(invalid_transition("free-response submissions are finalized, not approved"))
    if submission.status != SubmissionStatus.SUBMITTED:
        return Result.fail(invalid_transition(f"submission was already {submission.status.value}"))
    if not approve and not (feedback or "").strip():
        return Result.fail(invalid_transition("rejection requires feedback"))
    if approve:
        submission.status = SubmissionStatus.APPROVED
        submission.final_score = submission.score
    else:
        submission.status = SubmissionStatus.REJECTED
    submission.teacher_feedback = (feedback or "").strip()
    submission.reviewed_by = caller.user_id
    submission.reviewed_at = clock()
    return Result.success(submission)
