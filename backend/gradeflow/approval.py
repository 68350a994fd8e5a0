"""Approval workflow for assessment definitions.

    draft ──submit──▶ pending ──approve──▶ approved ──(newer approval)──▶ archived
      ▲                  │
      │               reject
      └── edit ◀── rejected ──submit──▶ pending

Every function takes the definition and an explicit `Caller` and returns
a `Result`. A failed transition leaves every field of the definition as it
was. Persisting the change is the caller's job (see `DefinitionService`).
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from .errors import Result, forbidden, invalid_input, invalid_transition
from .models import ApprovalStatus, AssessmentDefinition, Caller, Role, utcnow
from .questions import Modality, dump_questions, parse_questions

EDITABLE_STATUSES = (ApprovalStatus.DRAFT, ApprovalStatus.REJECTED)


@dataclass
class ApprovalOutcome:
    definition: AssessmentDefinition
    demoted: List[AssessmentDefinition] = field(default_factory=list)


def _is_owner(definition: AssessmentDefinition, caller: Caller) -> bool:
    return caller.user_id == definition.author_id or caller.role is Role.ADMIN


def validate_time_limit(modality: Modality, time_limit_minutes: Optional[int]) -> Optional[str]:
    """Return an error message for an unusable time limit, else None."""
    if time_limit_minutes is None:
        return None
    if Modality(modality) is Modality.MCQ:
        return "time limits only apply to free-response assessments"
    if time_limit_minutes <= 0:
        return "time limit must be a positive number of minutes"
    return None


def submit_for_review(definition: AssessmentDefinition, caller: Caller, clock: Callable[[], datetime] = utcnow) -> Result[AssessmentDefinition]:
    """Move a draft or rejected definition to pending review."""
    if not _is_owner(definition, caller):
        return Result.fail(forbidden("only the author can submit a definition for review"))
    if definition.status not in EDITABLE_STATUSES:
        return Result.fail(invalid_transition(f"cannot submit a {definition.status.value} definition for review"))
    try:
        parse_questions(definition.modality, definition.questions)
    except ValueError as e:
        return Result.fail(invalid_transition(f"definition is not ready for review: {e}"))
    definition.status = ApprovalStatus.PENDING_REVIEW
    definition.review_notes = None
    definition.updated_at = clock()
    return Result.success(definition)


def approve(
    definition: AssessmentDefinition,
    caller: Caller,
    notes: Optional[str] = None,
    approved_peers: Iterable[AssessmentDefinition] = (),
    clock: Callable[[], datetime] = utcnow,
) -> Result[ApprovalOutcome]:
    """Approve a pending definition and archive the one it replaces.

    `approved_peers` are the currently approved definitions the caller knows
    about; only the one sharing this definition's (lesson_ref, modality) is
    demoted.
    """
    if not caller.is_staff:
        return Result.fail(forbidden("only reviewers can approve definitions"))
    if definition.status != ApprovalStatus.PENDING_REVIEW:
        return Result.fail(invalid_transition(f"cannot approve a {definition.status.value} definition"))
    if caller.user_id == definition.author_id:
        return Result.fail(invalid_transition("authors cannot approve their own definitions"))
    demoted = [
        peer for peer in approved_peers
        if peer.id != definition.id
        and peer.status == ApprovalStatus.APPROVED
        and peer.lesson_ref == definition.lesson_ref
        and peer.modality == definition.modality
    ]
    now = clock()
    definition.status = ApprovalStatus.APPROVED
    definition.reviewer_id = caller.user_id
    definition.reviewed_at = now
    definition.review_notes = notes or None
    definition.updated_at = now
    for peer in demoted:
        peer.status = ApprovalStatus.ARCHIVED
        peer.updated_at = now
    return Result.success(ApprovalOutcome(definition=definition, demoted=demoted))


def reject(definition: AssessmentDefinition, caller: Caller, notes: Optional[str], clock: Callable[[], datetime] = utcnow) -> Result[AssessmentDefinition]:
    """Reject a pending definition; notes are required so the author knows what to fix."""
    if not caller.is_staff:
        return Result.fail(forbidden("only reviewers can reject definitions"))
    if definition.status != ApprovalStatus.PENDING_REVIEW:
        return Result.fail(invalid_transition(f"cannot reject a {definition.status.value} definition"))
    if not notes or not notes.strip():
        return Result.fail(invalid_transition("rejection requires notes"))
    now = clock()
    definition.status = ApprovalStatus.REJECTED
    definition.reviewer_id = caller.user_id
    definition.reviewed_at = now
    definition.review_notes = notes.strip()
    definition.updated_at = now
    return Result.success(definition)


def update_questions(
    definition: AssessmentDefinition,
    caller: Caller,
    questions: list,
    time_limit_minutes: Optional[int] = None,
    clock: Callable[[], datetime] = utcnow,
) -> Result[AssessmentDefinition]:
    """Replace the question list of an editable definition and bump its version."""
    if not _is_owner(definition, caller):
        return Result.fail(forbidden("only the author can edit a definition"))
    if definition.status not in EDITABLE_STATUSES:
        return Result.fail(invalid_transition(f"a {definition.status.value} definition is read-only"))
    try:
        parsed = parse_questions(definition.modality, questions)
    except ValueError as e:
        return Result.fail(invalid_input(str(e)))
    problem = validate_time_limit(definition.modality, time_limit_minutes)
    if problem:
        return Result.fail(invalid_input(problem))
    definition.questions = dump_questions(parsed)
    if time_limit_minutes is not None:
        definition.time_limit_minutes = time_limit_minutes
    definition.version += 1
    definition.updated_at = clock()
    return Result.success(definition)
