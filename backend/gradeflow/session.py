"""Attempt session controller.

An `AttemptSession` drives one student through one approved definition.
It lives only in memory: nothing is persisted until `finish()` produces a
`SubmissionDraft` and the caller submits it. Reloading or abandoning the
session discards it. Answer capture and navigation never touch the
network.
"""

import uuid
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .errors import Result, incomplete_attempt, invalid_input, invalid_transition, not_approved
from .models import ApprovalStatus, utcnow
from .questions import Answer, FreeText, MCQQuestion, Modality, coerce_answer, parse_questions
from .schemas import AnswerItem, SubmissionDraft
from .scoring import score_mcq


class AttemptSession:
    """Client-held state for one student traversing one definition."""

    def __init__(
        self,
        definition_id: int,
        modality: Modality,
        questions: list,
        time_limit_minutes: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.definition_id = definition_id
        self.modality = Modality(modality)
        self.questions = parse_questions(self.modality, questions)
        self.time_limit_minutes = time_limit_minutes if self.modality is Modality.QA else None
        self._clock = clock
        self.started_at = clock()
        self.current_index = 0
        self.captured_answers: Dict[int, Answer] = {}
        self.integrity_event_count = 0
        self.attempt_token = uuid.uuid4().hex
        self._furthest_index = 0

    @classmethod
    def start(cls, definition, clock: Callable[[], datetime] = utcnow) -> Result["AttemptSession"]:
        """Open a session on `definition`, which must be approved.

        `definition` can be an `AssessmentDefinition` row or a
        `DefinitionOut` fetched through the API client.
        """
        if definition is None or ApprovalStatus(definition.status) != ApprovalStatus.APPROVED:
            return Result.fail(not_approved())
        try:
            session = cls(
                definition_id=definition.id,
                modality=definition.modality,
                questions=definition.questions,
                time_limit_minutes=definition.time_limit_minutes,
                clock=clock,
            )
        except ValueError as e:
            return Result.fail(not_approved(f"assessment cannot be taken: {e}"))
        return Result.success(session)

    @property
    def question_count(self) -> int:
        return len(self.questions)

    @property
    def current_question(self):
        return self.questions[self.current_index]

    def select_answer(self, index: int, value) -> Result[Answer]:
        """Capture an answer for `index` without moving.

        Allowed for the current question and any question already visited,
        so answers can be revised after navigating back.
        """
        if not 0 <= index <= self._furthest_index:
            return Result.fail(invalid_transition(f"question {index + 1} has not been reached yet"))
        try:
            answer = coerce_answer(self.modality, value)
        except ValueError as e:
            return Result.fail(invalid_input(str(e)))
        question = self.questions[index]
        if isinstance(question, MCQQuestion) and answer.index >= len(question.options):
            return Result.fail(invalid_input(f"question {index + 1} has only {len(question.options)} options"))
        self.captured_answers[index] = answer
        return Result.success(answer)

    def go_next(self) -> int:
        """Advance one question; a no-op on the last one (use `finish()`)."""
        if self.current_index < self.question_count - 1:
            self.current_index += 1
            self._furthest_index = max(self._furthest_index, self.current_index)
        return self.current_index

    def go_previous(self) -> int:
        if self.current_index > 0:
            self.current_index -= 1
        return self.current_index

    def question_result(self, index: int) -> Optional[bool]:
        """Correctness of a captured MCQ answer, or None if not applicable yet."""
        if self.modality is not Modality.MCQ:
            return None
        answer = self.captured_answers.get(index)
        if answer is None:
            return None
        return answer.index == self.questions[index].correct_option_index

    def record_integrity_event(self) -> int:
        """Count a loss of exclusive focus (e.g. leaving fullscreen). Never blocks."""
        self.integrity_event_count += 1
        return self.integrity_event_count

    def _is_answered(self, index: int) -> bool:
        answer = self.captured_answers.get(index)
        if answer is None:
            return False
        return not (isinstance(answer, FreeText) and answer.is_blank)

    def missing_indices(self) -> List[int]:
        return [i for i in range(self.question_count) if not self._is_answered(i)]

    def elapsed_seconds(self) -> int:
        return max(0, int((self._clock() - self.started_at).total_seconds()))

    def time_remaining_seconds(self) -> Optional[int]:
        if not self.time_limit_minutes:
            return None
        return max(0, self.time_limit_minutes * 60 - self.elapsed_seconds())

    def is_expired(self) -> bool:
        remaining = self.time_remaining_seconds()
        return remaining is not None and remaining == 0

    def finish(self) -> Result[SubmissionDraft]:
        """Package the attempt for submission.

        Fails with the exact set of unanswered indices if any question lacks
        an answer. The session itself is left untouched either way, so a
        failed submit can simply be retried.
        """
        missing = self.missing_indices()
        if missing:
            return Result.fail(incomplete_attempt(missing))
        return Result.success(self._draft())

    def finish_on_timeout(self) -> Result[SubmissionDraft]:
        """Submit a timed-out free-response attempt with blanks for unanswered questions."""
        if not self.is_expired():
            return Result.fail(invalid_transition("the time limit has not been reached"))
        return Result.success(self._draft(timed_out=True))

    def _draft(self, timed_out: bool = False) -> SubmissionDraft:
        items = []
        for i in range(self.question_count):
            answer = self.captured_answers.get(i)
            if self.modality is Modality.MCQ:
                items.append(AnswerItem(question_index=i, selected_option_index=answer.index))
            else:
                items.append(AnswerItem(question_index=i, answer_text=answer.text if answer else ""))
        score = None
        if self.modality is Modality.MCQ:
            score = score_mcq(self.questions, self.captured_answers)
        return SubmissionDraft(
            definition_id=self.definition_id,
            modality=self.modality,
            answers=items,
            score=score,
            time_taken_seconds=self.elapsed_seconds(),
            integrity_event_count=self.integrity_event_count,
            attempt_token=self.attempt_token,
            timed_out=timed_out,
        )
