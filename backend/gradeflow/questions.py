"""Question and answer value types.

Definitions store their questions as JSON. This module is the single place
where that JSON is validated into typed, immutable questions, discriminated
by the definition's modality. Answers are validated the same way.
"""

from enum import Enum
from typing import List, Literal, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


class Modality(str, Enum):
    MCQ = "mcq"
    QA = "qa"


class MCQQuestion(BaseModel):
    """A multiple-choice question with exactly one correct option."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["mcq"] = "mcq"
    prompt: str = Field(min_length=1)
    options: Tuple[str, ...]
    correct_option_index: int
    explanation: str = ""

    @model_validator(mode="after")
    def _check_options(self):
        if len(self.options) < 2:
            raise ValueError("a multiple-choice question needs at least two options")
        if any(not o.strip() for o in self.options):
            raise ValueError("options must not be empty")
        if not 0 <= self.correct_option_index < len(self.options):
            raise ValueError(
                f"correct_option_index {self.correct_option_index} does not index one of {len(self.options)} options"
            )
        return self


class QAQuestion(BaseModel):
    """A free-response question graded against rubric text."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["qa"] = "qa"
    prompt: str = Field(min_length=1)
    expected_points: str = ""


Question = Union[MCQQuestion, QAQuestion]


class SelectedOption(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["selected_option"] = "selected_option"
    index: int = Field(ge=0)


class FreeText(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["free_text"] = "free_text"
    text: str

    @property
    def is_blank(self) -> bool:
        return not self.text.strip()


Answer = Union[SelectedOption, FreeText]


def _normalize_mcq(item: dict) -> dict:
    # legacy payloads use `question` / `correct_answer`
    return {
        "prompt": item.get("prompt") or item.get("question") or item.get("question_text") or "",
        "options": tuple(item.get("options") or ()),
        "correct_option_index": item.get("correct_option_index", item.get("correct_answer")),
        "explanation": item.get("explanation") or "",
    }


def _normalize_qa(item: dict) -> dict:
    return {
        "prompt": item.get("prompt") or item.get("question") or item.get("question_text") or "",
        "expected_points": item.get("expected_points") or item.get("rubric") or "",
    }


def parse_question(modality: Modality, item) -> Question:
    """Validate a single raw question for `modality`."""
    if isinstance(item, (MCQQuestion, QAQuestion)):
        if item.kind != Modality(modality).value:
            raise ValueError(f"{item.kind} question in a {Modality(modality).value} definition")
        return item
    if not isinstance(item, dict):
        raise ValueError("question item must be an object")
    kind = item.get("kind")
    if kind is not None and kind != Modality(modality).value:
        raise ValueError(f"{kind} question in a {Modality(modality).value} definition")
    if Modality(modality) is Modality.MCQ:
        return MCQQuestion(**_normalize_mcq(item))
    return QAQuestion(**_normalize_qa(item))


def parse_questions(modality: Modality, payload) -> List[Question]:
    """Validate an ordered, modality-homogeneous question list.

    Raises `ValueError` naming the first offending item. An empty list is
    rejected as well.
    """
    if not isinstance(payload, (list, tuple)) or not payload:
        raise ValueError("a definition needs at least one question")
    out = []
    for idx, item in enumerate(payload):
        try:
            out.append(parse_question(modality, item))
        except ValueError as e:
            raise ValueError(f"question {idx + 1}: {e}") from e
    return out


def dump_questions(questions: List[Question]) -> List[dict]:
    """Serialize questions into the JSON shape stored on a definition."""
    return [q.model_dump(mode="json") for q in questions]


def coerce_answer(modality: Modality, raw) -> Answer:
    """Turn a raw captured value into the modality's answer type."""
    if isinstance(raw, (SelectedOption, FreeText)):
        answer = raw
    elif Modality(modality) is Modality.MCQ:
        if isinstance(raw, bool) or not isinstance(raw, int):
            raise ValueError("a multiple-choice answer must be an option index")
        answer = SelectedOption(index=raw)
    else:
        if not isinstance(raw, str):
            raise ValueError("a free-response answer must be text")
        answer = FreeText(text=raw)
    expected = SelectedOption if Modality(modality) is Modality.MCQ else FreeText
    if not isinstance(answer, expected):
        raise ValueError(f"answer does not match a {Modality(modality).value} definition")
    return answer
