import io

from docx import Document
from fastapi.testclient import TestClient

from gradeflow import main
from gradeflow.main import app
from gradeflow.errors import Result
from gradeflow.scoring import parse_ai_response
from gradeflow.utils.grading_jobs import GradingQueueFull

from conftest import mcq_questions, qa_questions

client = TestClient(app)
GRADER = {'X-Grader-Token': 'test-grader-token'}


def login(username, role='student'):
    client.post('/auth/register', json={'username': username, 'password': 'pw', 'role': role})
    r = client.post('/auth/login', json={'username': username, 'password': 'pw'})
    assert r.status_code == 200
    return {'Authorization': f"Bearer {r.json()['access_token']}"}


def publish(author, reviewer, modality='mcq', lesson_ref=1, questions=None, **extra):
    body = {'lesson_ref': lesson_ref, 'title': 'Lesson quiz', 'modality': modality,
            'questions': questions or (mcq_questions() if modality == 'mcq' else qa_questions()), **extra}
    r = client.post('/definitions', json=body, headers=author)
    assert r.status_code == 201, r.text
    def_id = r.json()['id']
    assert client.post(f'/definitions/{def_id}/submit', headers=author).status_code == 200
    r = client.post(f'/definitions/{def_id}/approve', json={'notes': 'fine'}, headers=reviewer)
    assert r.status_code == 200, r.text
    return r.json()


def test_health_and_request_id():
    r = client.get('/health', headers={'X-Request-ID': 'abc123'})
    assert r.status_code == 200
    assert r.json() == {'status': 'ok'}
    assert r.headers['X-Request-ID'] == 'abc123'


def test_approving_a_draft_is_a_conflict():
    author, reviewer = login('t1', 'teacher'), login('r1', 'advisor')
    r = client.post('/definitions', json={'lesson_ref': 1, 'title': 'q', 'modality': 'mcq', 'questions': mcq_questions()}, headers=author)
    r2 = client.post(f"/definitions/{r.json()['id']}/approve", json={}, headers=reviewer)
    assert r2.status_code == 409
    assert r2.json()['detail']['code'] == 'invalid_transition'
    assert client.get(f"/definitions/{r.json()['id']}", headers=author).json()['status'] == 'draft'


def test_reject_without_notes_is_refused():
    author, reviewer = login('t2', 'teacher'), login('r2', 'advisor')
    r = client.post('/definitions', json={'lesson_ref': 1, 'title': 'q', 'modality': 'mcq', 'questions': mcq_questions()}, headers=author)
    def_id = r.json()['id']
    client.post(f'/definitions/{def_id}/submit', headers=author)
    r2 = client.post(f'/definitions/{def_id}/reject', json={'notes': ''}, headers=reviewer)
    assert r2.status_code == 409
    assert r2.json()['detail']['message'] == 'rejection requires notes'
    r3 = client.post(f'/definitions/{def_id}/reject', json={'notes': 'too easy'}, headers=reviewer)
    assert r3.json()['status'] == 'rejected'
    r4 = client.put(f'/definitions/{def_id}/questions', json={'questions': mcq_questions(6)}, headers=author)
    assert r4.status_code == 200
    assert r4.json()['version'] == 2


def test_students_cannot_author_or_review():
    student = login('s0')
    r = client.post('/definitions', json={'lesson_ref': 1, 'title': 'q', 'modality': 'mcq', 'questions': mcq_questions()}, headers=student)
    assert r.status_code == 403
    assert client.get('/review/submissions', headers=student).status_code == 403


def test_mcq_attempt_end_to_end():
    author, reviewer, student = login('t3', 'teacher'), login('r3', 'advisor'), login('s3')
    definition = publish(author, reviewer)
    listed = client.get('/lessons/1/assessments', headers=student).json()
    assert [d['id'] for d in listed] == [definition['id']]

    missing = client.post(f"/definitions/{definition['id']}/attempts", json={
        'answers': [{'question_index': 0, 'selected_option_index': 0}],
    }, headers=student)
    assert missing.status_code == 422
    assert missing.json()['detail']['missing_indices'] == [1, 2, 3]

    body = {
        'answers': [{'question_index': i, 'selected_option_index': s} for i, s in enumerate([0, 1, 0, 0])],
        'time_taken_seconds': 42,
        'integrity_event_count': 1,
        'attempt_token': 'attempt-1',
    }
    r = client.post(f"/definitions/{definition['id']}/attempts", json=body, headers=student)
    assert r.status_code == 201
    receipt = r.json()
    assert receipt['score'] == 75
    assert receipt['passed'] is True
    assert receipt['status'] == 'submitted'

    retry = client.post(f"/definitions/{definition['id']}/attempts", json=body, headers=student)
    assert retry.json()['submission_id'] == receipt['submission_id']
    assert len(client.get('/submissions/mine', headers=student).json()) == 1

    queue = client.get('/review/submissions?modality=mcq', headers=reviewer).json()
    assert queue[0]['integrity_event_count'] == 1
    r = client.post(f"/submissions/{receipt['submission_id']}/review", json={'approve': True}, headers=reviewer)
    assert r.json()['status'] == 'approved'
    assert r.json()['final_score'] == 75


def test_unapproved_definition_cannot_be_attempted():
    author, student = login('t4', 'teacher'), login('s4')
    r = client.post('/definitions', json={'lesson_ref': 4, 'title': 'q', 'modality': 'mcq', 'questions': mcq_questions()}, headers=author)
    r2 = client.post(f"/definitions/{r.json()['id']}/attempts", json={'answers': []}, headers=student)
    assert r2.status_code == 404
    assert r2.json()['detail']['code'] == 'not_approved'


def test_qa_review_with_teacher_override():
    author, reviewer, student = login('t5', 'teacher'), login('r5', 'advisor'), login('s5')
    definition = publish(author, reviewer, modality='qa', time_limit_minutes=30)
    r = client.post(f"/definitions/{definition['id']}/attempts", json={
        'answers': [{'question_index': 0, 'answer_text': 'one'}, {'question_index': 1, 'answer_text': 'two'}],
    }, headers=student)
    sub_id = r.json()['submission_id']
    assert r.json()['score'] is None

    feedback = {'perQuestion': [{'score': 6, 'feedback': 'a'}, {'score': 7, 'feedback': 'b'}], 'overallScore': 68}
    assert client.post(f'/submissions/{sub_id}/ai-feedback', json=feedback).status_code == 401
    r = client.post(f'/submissions/{sub_id}/ai-feedback', json=feedback, headers=GRADER)
    assert r.status_code == 200
    assert r.json()['status'] == 'ai_graded'
    assert client.post(f'/submissions/{sub_id}/ai-feedback', json=feedback, headers=GRADER).json()['status'] == 'ai_graded'

    detail = client.get(f'/review/submissions/{sub_id}', headers=reviewer).json()
    assert detail['suggested_final_score'] == 68
    assert len(detail['questions']) == 2

    assert client.post(f'/submissions/{sub_id}/begin-review', headers=reviewer).json()['status'] == 'teacher_review'
    r = client.post(f'/submissions/{sub_id}/finalize', json={'final_score': 72, 'teacher_feedback': 'Nice'}, headers=reviewer)
    assert r.status_code == 200
    assert r.json()['final_score'] == 72
    assert r.json()['ai_feedback']['overall_score'] == 68

    again = client.post(f'/submissions/{sub_id}/finalize', json={'final_score': 10}, headers=reviewer)
    assert again.status_code == 409
    assert again.json()['detail']['code'] == 'already_finalized'
    assert client.get(f'/submissions/{sub_id}', headers=student).json()['final_score'] == 72


def test_ai_grading_request_without_grader_is_bad_gateway():
    author, reviewer, student = login('t6', 'teacher'), login('r6', 'advisor'), login('s6')
    definition = publish(author, reviewer, modality='qa', lesson_ref=6)
    r = client.post(f"/definitions/{definition['id']}/attempts", json={
        'answers': [{'question_index': 0, 'answer_text': 'one'}, {'question_index': 1, 'answer_text': 'two'}],
    }, headers=student)
    r2 = client.post(f"/submissions/{r.json()['submission_id']}/ai-grading", headers=reviewer)
    assert r2.status_code == 502
    assert r2.json()['detail']['retryable'] is True


def test_ai_grading_job_runs_in_background(monkeypatch):
    author, reviewer, student = login('t7', 'teacher'), login('r7', 'advisor'), login('s7')
    definition = publish(author, reviewer, modality='qa', lesson_ref=7)

    class Grader:
        enabled = True

        def grade(self, submission_id, items):
            return Result.success(parse_ai_response(
                {'perQuestion': [{'score': 8}, {'score': 9}], 'overallScore': 85}, question_count=len(items)
            ))

    jobs = []
    monkeypatch.setattr(main, '_ai_grader', Grader())
    monkeypatch.setattr(main._grading_jobs, 'submit', lambda **kw: jobs.append(kw) or {'job_id': 'j1', 'status': 'queued'})
    r = client.post(f"/definitions/{definition['id']}/attempts", json={
        'answers': [{'question_index': 0, 'answer_text': 'one'}, {'question_index': 1, 'answer_text': 'two'}],
    }, headers=student)
    sub_id = r.json()['submission_id']
    assert jobs[0]['submission_id'] == sub_id

    # run the queued worker inline
    assert jobs[0]['worker'](sub_id) == {'submission_id': sub_id, 'status': 'ai_graded'}
    assert client.get(f'/submissions/{sub_id}', headers=reviewer).json()['ai_feedback']['overall_score'] == 85


def test_import_docx_creates_draft():
    author = login('t8', 'teacher')
    doc = Document()
    for line in ('What is 2+2?', '* 4', '3', '', 'Capital of France?', 'London', 'Paris (correct)'):
        doc.add_paragraph(line)
    bio = io.BytesIO()
    doc.save(bio)
    files = {'file': ('questions.docx', bio.getvalue())}
    data = {'lesson_ref': '8', 'title': 'Imported', 'modality': 'mcq'}
    r = client.post('/definitions/import', files=files, data=data, headers=author)
    assert r.status_code == 201, r.text
    assert r.json()['imported'] == 2
    definition = r.json()['definition']
    assert definition['status'] == 'draft'
    assert [q['correct_option_index'] for q in definition['questions']] == [0, 1]


def test_import_reports_invalid_items():
    author = login('t9', 'teacher')
    files = {'file': ('q.json', b'[{"prompt": "only one option", "options": ["a"], "correct_option_index": 0}]')}
    r = client.post('/definitions/import', files=files, data={'lesson_ref': '9', 'title': 'x', 'modality': 'mcq'}, headers=author)
    assert r.status_code == 422
    assert r.json()['detail']['errors'][0]['index'] == 0
    assert client.get('/definitions?lesson_ref=9', headers=author).json() == []


def test_import_rejects_corrupt_docx():
    author = login('t10', 'teacher')
    files = {'file': ('q.docx', b'not a zip')}
    r = client.post('/definitions/import', files=files, data={'lesson_ref': '10', 'title': 'x', 'modality': 'mcq'}, headers=author)
    assert r.status_code == 400
    assert r.json()['detail'] == 'invalid DOCX file'


def test_import_reports_separator_only_block():
    author = login('t11', 'teacher')
    files = {'file': ('q.txt', b'Q1?\n* A\nB\n\n|\n')}
    r = client.post('/definitions/import', files=files, data={'lesson_ref': '11', 'title': 'x', 'modality': 'mcq'}, headers=author)
    assert r.status_code == 422
    assert r.json()['detail']['errors'][0]['index'] == 1


def test_full_grading_queue_keeps_submission(monkeypatch):
    author, reviewer, student = login('t12', 'teacher'), login('r12', 'advisor'), login('s12')
    definition = publish(author, reviewer, modality='qa', lesson_ref=12)

    class Grader:
        enabled = True

    def full(**kw):
        raise GradingQueueFull('2 grading jobs already in flight')

    monkeypatch.setattr(main, '_ai_grader', Grader())
    monkeypatch.setattr(main._grading_jobs, 'submit', full)
    r = client.post(f"/definitions/{definition['id']}/attempts", json={
        'answers': [{'question_index': 0, 'answer_text': 'one'}, {'question_index': 1, 'answer_text': 'two'}],
    }, headers=student)
    assert r.status_code == 201
    assert r.json()['status'] == 'submitted'
    retry = client.post(f"/submissions/{r.json()['submission_id']}/ai-grading", headers=reviewer)
    assert retry.status_code == 502
    assert retry.json()['detail']['retryable'] is True
