"""Scoring engine.

MCQ scoring is pure and deterministic. Free-response (QA) answers are
never graded locally: `AiGrader` forwards them to the external AI grading
service and validates what comes back. The AI overall score is only a
suggestion for the reviewer's final score.
"""

import logging
from typing import List, Mapping, Optional, Sequence

import requests

from .config import settings
from .errors import Result, remote_failure
from .questions import FreeText, MCQQuestion, QAQuestion, SelectedOption
from .schemas import AiFeedback, AiGradingResult, GradingItem, MCQScore

logger = logging.getLogger("gradeflow.scoring")


def round_half_up_percent(numerator: int, denominator: int) -> int:
    """Return round(100 * numerator / denominator) with halves rounded up."""
    if denominator <= 0:
        raise ValueError("denominator must be positive")
    return (200 * numerator + denominator) // (2 * denominator)


def _option_index(answer) -> Optional[int]:
    if isinstance(answer, SelectedOption):
        return answer.index
    if isinstance(answer, int) and not isinstance(answer, bool):
        return answer
    return None


def score_mcq(questions: Sequence[MCQQuestion], answers: Mapping[int, object], pass_percentage: Optional[int] = None) -> MCQScore:
    """Score captured MCQ answers against the answer key.

    `answers` maps question index to a `SelectedOption` (or a bare option
    index). A missing answer counts as incorrect.
    """
    if not questions:
        raise ValueError("cannot score an empty question list")
    if pass_percentage is None:
        pass_percentage = settings.MCQ_PASS_PERCENTAGE
    per_question = [
        _option_index(answers.get(i)) == q.correct_option_index
        for i, q in enumerate(questions)
    ]
    correct = sum(per_question)
    percentage = round_half_up_percent(correct, len(questions))
    return MCQScore(
        correct_count=correct,
        question_count=len(questions),
        percentage=percentage,
        per_question=per_question,
        passed=percentage >= pass_percentage,
    )


def build_grading_items(questions: Sequence[QAQuestion], answers: Mapping[int, object]) -> List[GradingItem]:
    """Pair each QA question with the student's text, in question order."""
    items = []
    for i, q in enumerate(questions):
        answer = answers.get(i)
        text = answer.text if isinstance(answer, FreeText) else (answer or "")
        items.append(GradingItem(question=q.prompt, expected_points=q.expected_points, student_answer=str(text)))
    return items


def parse_ai_response(payload: dict, question_count: Optional[int] = None) -> AiGradingResult:
    """Validate an AI grading response.

    Accepts a flat `{perQuestion, overallScore, analysisReport}` body or one
    with a nested `feedback` object. Raises `ValueError` on a malformed body
    or when the per-question list does not match `question_count`.
    """
    if not isinstance(payload, dict):
        raise ValueError("AI grading response must be an object")
    if "feedback" in payload and isinstance(payload["feedback"], dict):
        result = AiGradingResult.model_validate(payload)
    else:
        report = payload.get("analysisReport", payload.get("analysis_report", payload.get("ai_analysis")))
        result = AiGradingResult(feedback=AiFeedback.model_validate(payload), analysis_report=report)
    if question_count is not None and len(result.feedback.per_question) != question_count:
        raise ValueError(
            f"AI feedback covers {len(result.feedback.per_question)} questions, expected {question_count}"
        )
    # fill in positional indices the grader left out
    per_question = [
        fb if fb.question_index is not None else fb.model_copy(update={"question_index": i})
        for i, fb in enumerate(result.feedback.per_question)
    ]
    return result.model_copy(update={"feedback": result.feedback.model_copy(update={"per_question": per_question})})


def suggested_final_score(feedback: Optional[dict]) -> Optional[int]:
    """Pre-populated final score derived from stored AI feedback."""
    if not feedback or feedback.get("overall_score") is None:
        return None
    score = float(feedback["overall_score"])
    return int(score + 0.5)


class AiGrader:
    """Client façade for the remote AI grading service."""

    def __init__(self, base_url: Optional[str] = None, token: Optional[str] = None, timeout_seconds: Optional[float] = None, http: Optional[requests.Session] = None):
        self.base_url = (base_url if base_url is not None else settings.AI_GRADER_URL).rstrip("/")
        self.token = token if token is not None else settings.AI_GRADER_TOKEN
        self.timeout_seconds = float(timeout_seconds if timeout_seconds is not None else settings.AI_GRADER_TIMEOUT_SECONDS)
        self.http = http or requests.Session()

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def grade(self, submission_id: int, items: List[GradingItem]) -> Result[AiGradingResult]:
        """Request grading for one submission.

        Network errors, non-2xx responses and malformed bodies all come back
        as a retryable remote failure; nothing is graded locally.
        """
        if not self.enabled:
            return Result.fail(remote_failure("AI grader is not configured"))
        body = {"submission_id": submission_id, "items": [it.model_dump() for it in items]}
        try:
            r = self.http.post(f"{self.base_url}/grade", json=body, headers=self._headers(), timeout=self.timeout_seconds)
            r.raise_for_status()
            payload = r.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning("ai_grading_request_failed submission_id=%s error=%s", submission_id, e)
            return Result.fail(remote_failure(f"AI grading request failed: {e}"))
        try:
            return Result.success(parse_ai_response(payload, question_count=len(items)))
        except ValueError as e:
            logger.warning("ai_grading_response_invalid submission_id=%s error=%s", submission_id, e)
            return Result.fail(remote_failure(f"AI grading response was invalid: {e}"))
