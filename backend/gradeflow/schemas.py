"""Pydantic request/response schemas used by the API.

Schemas keep API input/output shapes stable and provide validation for
controller handlers, the API client and tests. AI grading payloads accept
both the camelCase keys of the grading service and the snake_case keys
stored on submissions.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .models import ApprovalStatus, Role, SubmissionStatus
from .questions import Modality


class RegisterIn(BaseModel):
    """Payload for user registration."""
    username: str
    password: str
    role: Role = Role.STUDENT


class LoginIn(BaseModel):
    username: str
    password: str


class TokenOut(BaseModel):
    """Authentication response containing an access token."""
    access_token: str


class DefinitionIn(BaseModel):
    """Request format for authoring a definition."""
    lesson_ref: int
    title: str = Field(min_length=1)
    modality: Modality
    questions: List[dict]
    time_limit_minutes: Optional[int] = None


class QuestionsIn(BaseModel):
    questions: List[dict]
    time_limit_minutes: Optional[int] = None


class ReviewIn(BaseModel):
    """Approve/reject payload for definitions."""
    notes: Optional[str] = None


class DefinitionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    lesson_ref: int
    title: str
    modality: Modality
    questions: List[dict]
    time_limit_minutes: Optional[int] = None
    status: ApprovalStatus
    author_id: int
    reviewer_id: Optional[int] = None
    review_notes: Optional[str] = None
    version: int = 1


class AnswerItem(BaseModel):
    """One captured answer; exactly one of the two value fields is set."""
    question_index: int = Field(ge=0)
    selected_option_index: Optional[int] = None
    answer_text: Optional[str] = None


class AttemptIn(BaseModel):
    """Request body for submitting a finished attempt."""
    answers: List[AnswerItem]
    time_taken_seconds: int = Field(default=0, ge=0)
    integrity_event_count: int = Field(default=0, ge=0)
    # lets a client retry a failed submit without creating a duplicate
    attempt_token: Optional[str] = Field(default=None, max_length=64)
    # blank free-text answers are accepted only for a timed-out attempt
    timed_out: bool = False


class MCQScore(BaseModel):
    correct_count: int
    question_count: int
    percentage: int
    per_question: List[bool]
    passed: bool


class SubmissionDraft(BaseModel):
    """What `AttemptSession.finish()` hands to the submit call."""
    definition_id: int
    modality: Modality
    status: SubmissionStatus = SubmissionStatus.SUBMITTED
    answers: List[AnswerItem]
    score: Optional[MCQScore] = None
    time_taken_seconds: int = 0
    integrity_event_count: int = 0
    attempt_token: Optional[str] = None
    timed_out: bool = False

    def to_attempt(self) -> AttemptIn:
        return AttemptIn(
            answers=self.answers,
            time_taken_seconds=self.time_taken_seconds,
            integrity_event_count=self.integrity_event_count,
            attempt_token=self.attempt_token,
            timed_out=self.timed_out,
        )


class GradingItem(BaseModel):
    """One `{question, expected_points, student_answer}` tuple sent to the AI grader."""
    question: str
    expected_points: str
    student_answer: str


class QuestionFeedback(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    question_index: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("question_index", "questionIndex")
    )
    score: float = Field(ge=0, le=10)
    feedback: str = ""
    strengths: str = ""
    improvements: str = ""
    points_covered: List[str] = Field(
        default_factory=list, validation_alias=AliasChoices("points_covered", "pointsCovered")
    )


class AiFeedback(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    per_question: List[QuestionFeedback] = Field(
        validation_alias=AliasChoices("per_question", "perQuestion", "question_feedback")
    )
    overall_score: float = Field(ge=0, le=100, validation_alias=AliasChoices("overall_score", "overallScore"))


class AiGradingResult(BaseModel):
    """Feedback plus the qualitative analysis report for one QA submission."""
    model_config = ConfigDict(populate_by_name=True)

    feedback: AiFeedback
    analysis_report: Optional[dict] = Field(
        default=None, validation_alias=AliasChoices("analysis_report", "analysisReport", "ai_analysis")
    )


class FinalizeIn(BaseModel):
    final_score: float
    teacher_feedback: str = ""


class SubmissionReviewIn(BaseModel):
    """MCQ submission review: approve or reject with feedback."""
    approve: bool
    feedback: str = ""


class SubmissionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    definition_id: int
    student_id: int
    modality: Modality
    answers: List[dict]
    score: Optional[int] = None
    correct_count: Optional[int] = None
    ai_feedback: Optional[dict] = None
    ai_analysis: Optional[dict] = None
    teacher_feedback: Optional[str] = None
    final_score: Optional[int] = None
    status: SubmissionStatus
    time_taken_seconds: int
    integrity_event_count: int
    attempt_number: int
    submitted_at: datetime
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[int] = None


class SubmitReceipt(BaseModel):
    """Submit response: the assigned id and, for MCQ, the immediate score."""
    submission_id: int
    status: SubmissionStatus
    score: Optional[int] = None
    passed: Optional[bool] = None
    attempt_number: int = 1


class ReviewQueueItem(BaseModel):
    """Row of the reviewer's submission queue."""
    submission_id: int
    definition_id: int
    definition_title: str
    modality: Modality
    student_id: int
    status: SubmissionStatus
    score: Optional[int] = None
    ai_overall_score: Optional[float] = None
    suggested_final_score: Optional[int] = None
    time_taken_seconds: int
    integrity_event_count: int
    submitted_at: datetime
