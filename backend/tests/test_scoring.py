import pytest
import requests

from gradeflow.errors import ErrorCode
from gradeflow.questions import FreeText, Modality, SelectedOption, parse_questions
from gradeflow.scoring import (
    AiGrader,
    build_grading_items,
    parse_ai_response,
    round_half_up_percent,
    score_mcq,
    suggested_final_score,
)

from conftest import mcq_questions, qa_questions


def camel_response(scores=(7, 8), overall=68):
    return {
        'perQuestion': [
            {'score': s, 'feedback': 'ok', 'strengths': 's', 'improvements': 'i', 'pointsCovered': ['a']}
            for s in scores
        ],
        'overallScore': overall,
        'analysisReport': {'summary': 'solid'},
    }


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f'{self.status_code} error')

    def json(self):
        if self._payload is None:
            raise ValueError('no json')
        return self._payload


class FakeHttp:
    def __init__(self, response=None, exc=None):
        self.response = response
        self.exc = exc
        self.calls = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({'url': url, 'json': json, 'headers': headers, 'timeout': timeout})
        if self.exc:
            raise self.exc
        return self.response


@pytest.mark.parametrize('num,den,expected', [(3, 4, 75), (1, 8, 13), (1, 3, 33), (2, 3, 67), (0, 5, 0), (5, 5, 100)])
def test_round_half_up(num, den, expected):
    assert round_half_up_percent(num, den) == expected


def test_missing_answers_count_as_incorrect():
    qs = parse_questions(Modality.MCQ, mcq_questions(4))
    result = score_mcq(qs, {0: SelectedOption(index=0), 1: 1})
    assert result.correct_count == 2
    assert result.percentage == 50
    assert result.per_question == [True, True, False, False]
    assert result.passed is False


def test_pass_threshold_is_inclusive():
    qs = parse_questions(Modality.MCQ, mcq_questions(10))
    answers = {i: q.correct_option_index for i, q in enumerate(qs) if i < 7}
    assert score_mcq(qs, answers).passed is True
    assert score_mcq(qs, answers, pass_percentage=71).passed is False


def test_parse_camel_case_response():
    result = parse_ai_response(camel_response(), question_count=2)
    assert result.feedback.overall_score == 68
    assert [fb.question_index for fb in result.feedback.per_question] == [0, 1]
    assert result.feedback.per_question[0].points_covered == ['a']
    assert result.analysis_report == {'summary': 'solid'}


def test_parse_nested_snake_case_response():
    payload = {
        'feedback': {'per_question': [{'question_index': 0, 'score': 9}], 'overall_score': 90},
        'ai_analysis': {'tone': 'confident'},
    }
    result = parse_ai_response(payload, question_count=1)
    assert result.feedback.per_question[0].score == 9
    assert result.analysis_report == {'tone': 'confident'}


@pytest.mark.parametrize('payload', [
    camel_response(scores=(7,)),
    camel_response(overall=140),
    camel_response(scores=(11, 3)),
    {'overallScore': 50},
    ['not', 'an', 'object'],
])
def test_malformed_ai_response_rejected(payload):
    with pytest.raises(ValueError):
        parse_ai_response(payload, question_count=2)


def test_suggested_final_score():
    assert suggested_final_score({'overall_score': 67.5}) == 68
    assert suggested_final_score({'overall_score': 68}) == 68
    assert suggested_final_score(None) is None


def test_grading_items_pair_questions_with_answers():
    qs = parse_questions(Modality.QA, qa_questions(2))
    items = build_grading_items(qs, {0: FreeText(text='my answer')})
    assert items[0].question == 'Explain topic 1.'
    assert items[0].expected_points == 'point 1a; point 1b'
    assert items[0].student_answer == 'my answer'
    assert items[1].student_answer == ''


def test_ai_grader_posts_items_and_parses_reply():
    http = FakeHttp(FakeResponse(payload=camel_response()))
    grader = AiGrader(base_url='http://grader.local/', token='secret', timeout_seconds=3, http=http)
    items = build_grading_items(parse_questions(Modality.QA, qa_questions(2)), {})
    res = grader.grade(42, items)
    assert res.ok
    assert res.value.feedback.overall_score == 68
    call = http.calls[0]
    assert call['url'] == 'http://grader.local/grade'
    assert call['json']['submission_id'] == 42
    assert len(call['json']['items']) == 2
    assert call['headers']['Authorization'] == 'Bearer secret'
    assert call['timeout'] == 3


@pytest.mark.parametrize('http', [
    FakeHttp(exc=requests.ConnectionError('refused')),
    FakeHttp(FakeResponse(status_code=503, payload={})),
    FakeHttp(FakeResponse(payload=None)),
    FakeHttp(FakeResponse(payload=camel_response(scores=(1,)))),
])
def test_ai_grader_failures_are_retryable(http):
    grader = AiGrader(base_url='http://grader.local', http=http)
    items = build_grading_items(parse_questions(Modality.QA, qa_questions(2)), {})
    res = grader.grade(1, items)
    assert res.error.code is ErrorCode.REMOTE_FAILURE
    assert res.error.retryable is True


def test_unconfigured_grader_never_calls_out():
    http = FakeHttp()
    grader = AiGrader(base_url='', http=http)
    assert not grader.enabled
    assert grader.grade(1, []).error.code is ErrorCode.REMOTE_FAILURE
    assert http.calls == []
