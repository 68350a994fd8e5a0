import threading

from sqlmodel import Session

from gradeflow import services
from gradeflow.database import engine
from gradeflow.errors import ErrorCode
from gradeflow.models import ApprovalStatus, SubmissionStatus
from gradeflow.questions import Modality
from gradeflow.schemas import AnswerItem, AttemptIn, DefinitionIn

from conftest import qa_questions, mcq_questions


def run_concurrently(*calls):
    """Run each call on its own thread and session, starting them together."""
    barrier = threading.Barrier(len(calls))
    results = [None] * len(calls)

    def work(i, call):
        with Session(engine) as s:
            barrier.wait()
            results[i] = call(s)

    threads = [threading.Thread(target=work, args=(i, c)) for i, c in enumerate(calls)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return results


def qa_submission(session, people):
    defs = services.DefinitionService(session)
    d = defs.create(people['author'], DefinitionIn(
        lesson_ref=1, title='Essay', modality=Modality.QA, questions=qa_questions()
    )).value
    defs.submit_for_review(people['author'], d.id)
    defs.approve(people['reviewer'], d.id)
    attempt = AttemptIn(answers=[AnswerItem(question_index=0, answer_text='a'),
                                 AnswerItem(question_index=1, answer_text='b')])
    return services.SubmissionService(session).submit(people['student'], d.id, attempt).value.id


def test_two_concurrent_finalizations_one_winner(session, people):
    sub_id = qa_submission(session, people)

    def finalize_with(caller, score):
        return lambda s: services.GradingService(s).finalize(caller, sub_id, score, 'feedback')

    results = run_concurrently(finalize_with(people['author'], 60), finalize_with(people['reviewer'], 80))
    winners = [r for r in results if r.ok]
    losers = [r for r in results if not r.ok]
    assert len(winners) == 1
    assert len(losers) == 1
    assert losers[0].error.code is ErrorCode.ALREADY_FINALIZED

    with Session(engine) as s:
        stored = services.SubmissionService(s).get(people['reviewer'], sub_id).value
        assert stored.status == SubmissionStatus.FINALIZED
        assert stored.final_score == winners[0].value.final_score


def test_concurrent_callbacks_apply_once(session, people):
    sub_id = qa_submission(session, people)

    def deliver(overall):
        payload = {'perQuestion': [{'score': 5}, {'score': 6}], 'overallScore': overall}
        return lambda s: services.GradingService(s).receive_ai_callback(sub_id, payload)

    results = run_concurrently(deliver(40), deliver(90))
    assert all(r.ok for r in results)
    with Session(engine) as s:
        stored = services.SubmissionService(s).get(people['reviewer'], sub_id).value
        assert stored.status == SubmissionStatus.AI_GRADED
        assert stored.ai_feedback['overall_score'] in (40, 90)
        assert {r.value.ai_feedback['overall_score'] for r in results} == {stored.ai_feedback['overall_score']}


def test_concurrent_approvals_leave_one_approved(session, people):
    defs = services.DefinitionService(session)
    ids = []
    for title in ('first', 'second'):
        d = defs.create(people['author'], DefinitionIn(
            lesson_ref=9, title=title, modality=Modality.MCQ, questions=mcq_questions()
        )).value
        defs.submit_for_review(people['author'], d.id)
        ids.append(d.id)

    def approve(definition_id):
        return lambda s: services.DefinitionService(s).approve(people['reviewer'], definition_id)

    results = run_concurrently(approve(ids[0]), approve(ids[1]))
    assert any(r.ok for r in results)
    for r in results:
        if not r.ok:
            assert r.error.code is ErrorCode.INVALID_TRANSITION
    with Session(engine) as s:
        approved = services.DefinitionService(s).approved_for_lesson(9, Modality.MCQ)
        assert len(approved) == 1
        statuses = {services.DefinitionService(s).get(people['author'], i).value.status for i in ids}
        assert ApprovalStatus.APPROVED in statuses
