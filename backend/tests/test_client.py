import json

import requests

from gradeflow.client import AssessmentApiClient
from gradeflow.errors import ErrorCode
from gradeflow.models import ApprovalStatus
from gradeflow.session import AttemptSession

from conftest import mcq_questions


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload
        self.content = b'' if payload is None else json.dumps(payload).encode()

    def json(self):
        if self._payload is None:
            raise ValueError('no body')
        return self._payload


class FakeHttp:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, headers=None, timeout=None, **kwargs):
        self.calls.append({'method': method, 'url': url, 'headers': headers, **kwargs})
        nxt = self.responses.pop(0)
        if isinstance(nxt, Exception):
            raise nxt
        return nxt

    def close(self):
        pass


def definition_json(**over):
    body = {'id': 3, 'lesson_ref': 1, 'title': 'Quiz', 'modality': 'mcq', 'questions': mcq_questions(),
            'time_limit_minutes': None, 'status': 'approved', 'author_id': 1, 'version': 1}
    body.update(over)
    return body


def finished_draft():
    session = AttemptSession(3, 'mcq', mcq_questions())
    for i, v in enumerate([0, 1, 2, 0]):
        session.select_answer(i, v)
        session.go_next()
    return session, session.finish().value


def test_fetch_approved_definitions():
    http = FakeHttp(FakeResponse(payload=[definition_json()]))
    api = AssessmentApiClient('http://api.local/', token='tok', http=http)
    res = api.fetch_approved_definitions(1, 'mcq')
    assert res.ok
    assert res.value[0].status is ApprovalStatus.APPROVED
    assert http.calls[0]['url'] == 'http://api.local/lessons/1/assessments'
    assert http.calls[0]['params'] == {'modality': 'mcq'}
    assert http.calls[0]['headers']['Authorization'] == 'Bearer tok'
    assert AttemptSession.start(res.value[0]).ok


def test_submit_attempt_sends_draft_with_token():
    http = FakeHttp(FakeResponse(201, {'submission_id': 9, 'status': 'submitted', 'score': 100, 'passed': True, 'attempt_number': 1}))
    _, draft = finished_draft()
    res = AssessmentApiClient('http://api.local', http=http).submit_attempt(draft)
    assert res.value.submission_id == 9
    sent = http.calls[0]['json']
    assert sent['attempt_token'] == draft.attempt_token
    assert [a['selected_option_index'] for a in sent['answers']] == [0, 1, 2, 0]
    assert 'score' not in sent


def test_transport_failure_is_retryable_and_keeps_session():
    http = FakeHttp(requests.ConnectionError('offline'),
                    FakeResponse(201, {'submission_id': 1, 'status': 'submitted', 'attempt_number': 1}))
    session, draft = finished_draft()
    api = AssessmentApiClient('http://api.local', http=http)
    first = api.submit_attempt(draft)
    assert first.error.code is ErrorCode.REMOTE_FAILURE
    assert first.error.retryable
    assert len(session.captured_answers) == 4
    assert api.submit_attempt(session.finish().value).ok
    assert http.calls[0]['json']['attempt_token'] == http.calls[1]['json']['attempt_token']


def test_typed_failures_map_back():
    detail = {'code': 'incomplete_attempt', 'message': 'unanswered questions: 2', 'missing_indices': [1], 'retryable': False}
    http = FakeHttp(FakeResponse(422, {'detail': detail}), FakeResponse(409, {'detail': {'code': 'already_finalized', 'message': 'x'}}))
    api = AssessmentApiClient('http://api.local', http=http)
    _, draft = finished_draft()
    res = api.submit_attempt(draft)
    assert res.error.code is ErrorCode.INCOMPLETE_ATTEMPT
    assert res.error.missing_indices == (1,)
    assert api.finalize(5, 72, 'ok').error.code is ErrorCode.ALREADY_FINALIZED
    assert http.calls[1]['json'] == {'final_score': 72, 'teacher_feedback': 'ok'}


def test_plain_errors_and_server_errors():
    http = FakeHttp(FakeResponse(401, {'detail': 'invalid token'}), FakeResponse(500, None), FakeResponse(404, {'detail': 'Not Found'}))
    api = AssessmentApiClient('http://api.local', http=http)
    assert api.begin_review(1).error.code is ErrorCode.FORBIDDEN
    server = api.approve_definition(2, 'ok')
    assert server.error.code is ErrorCode.REMOTE_FAILURE
    assert api.reject_definition(2, 'no').error.code is ErrorCode.NOT_FOUND


def test_unexpected_response_shape_is_remote_failure():
    http = FakeHttp(FakeResponse(200, {'unexpected': True}))
    res = AssessmentApiClient('http://api.local', http=http).begin_review(1)
    assert res.error.code is ErrorCode.REMOTE_FAILURE


def test_request_ai_grading_returns_job():
    http = FakeHttp(FakeResponse(202, {'job_id': 'j', 'status': 'queued', 'status_url': '/grading/jobs/j'}))
    res = AssessmentApiClient('http://api.local', http=http).request_ai_grading(4)
    assert res.value['job_id'] == 'j'
    assert http.calls[0]['method'] == 'POST'
