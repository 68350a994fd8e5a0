"""FastAPI application entrypoint and HTTP controllers.

This module defines the HTTP endpoints of the assessment backend.
Controllers are intentionally thin: they resolve the caller, delegate to
services, and turn a failed `Result` into an HTTP error whose body is
`{"code", "message", "missing_indices", "retryable"}`.

Endpoints implemented:
- POST /auth/register, POST /auth/login
- POST /definitions, GET /definitions, GET /definitions/{id}
- POST /definitions/import
- PUT /definitions/{id}/questions
- POST /definitions/{id}/submit, /approve, /reject
- GET /lessons/{lesson_ref}/assessments
- POST /definitions/{id}/attempts
- GET /submissions/mine, GET /submissions/{id}
- POST /submissions/{id}/ai-grading, GET /grading/jobs/{job_id}
- POST /submissions/{id}/ai-feedback (grader callback)
- POST /submissions/{id}/begin-review, /finalize, /review
- GET /review/definitions, /review/submissions, /review/submissions/{id}
- GET /health
"""

from typing import List, Optional
import json
import logging
import os
import time
import uuid

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from sqlmodel import Session

from . import models, repositories, services
from .auth import get_caller, require_grader, require_staff
from .config import settings
from .database import create_db_and_tables, engine, get_session
from .errors import ErrorCode, Failure, Result
from .models import ApprovalStatus, Caller
from .questions import Modality
from .schemas import (
    AttemptIn,
    DefinitionIn,
    DefinitionOut,
    FinalizeIn,
    LoginIn,
    QuestionsIn,
    RegisterIn,
    ReviewIn,
    ReviewQueueItem,
    SubmissionOut,
    SubmissionReviewIn,
    SubmitReceipt,
    TokenOut,
)
from .scoring import AiGrader
from .utils.grading_jobs import GradingJobStore, GradingQueueFull

app = FastAPI(title="Assessment Review API")
logger = logging.getLogger("gradeflow.api")
if not logger.handlers:
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
_ai_grader = AiGrader()
_grading_jobs = GradingJobStore(
    max_jobs=settings.GRADING_JOB_MAX_JOBS,
    ttl_seconds=settings.GRADING_JOB_TTL_SECONDS,
)

_STATUS_BY_CODE = {
    ErrorCode.INVALID_TRANSITION: 409,
    ErrorCode.ALREADY_FINALIZED: 409,
    ErrorCode.INCOMPLETE_ATTEMPT: 422,
    ErrorCode.INVALID_INPUT: 422,
    ErrorCode.NOT_APPROVED: 404,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.REMOTE_FAILURE: 502,
}

# Wide-open CORS keeps local front ends working without extra config in dev.
if settings.ALLOW_DEV_CORS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

create_db_and_tables()


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    req_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    request.state.request_id = req_id
    started = time.perf_counter()
    response: Response
    try:
        response = await call_next(request)
    except Exception:
        elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
        logger.exception(
            "request_failed %s",
            json.dumps(
                {
                    "request_id": req_id,
                    "path": request.url.path,
                    "method": request.method,
                    "duration_ms": elapsed_ms,
                    "client": request.client.host if request.client else "unknown",
                },
                ensure_ascii=True,
            ),
        )
        raise
    response.headers["X-Request-ID"] = req_id
    elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
    logger.info(
        "request_done %s",
        json.dumps(
            {
                "request_id": req_id,
                "path": request.url.path,
                "method": request.method,
                "status_code": response.status_code,
                "duration_ms": elapsed_ms,
                "client": request.client.host if request.client else "unknown",
            },
            ensure_ascii=True,
        ),
    )
    return response


def _raise_for(failure: Failure):
    raise HTTPException(status_code=_STATUS_BY_CODE.get(failure.code, 400), detail=failure.to_dict())


def _unwrap(result: Result):
    if not result.ok:
        _raise_for(result.error)
    return result.value


def _validate_upload_filename(filename: str) -> None:
    if not filename or len(filename) > 200:
        raise HTTPException(status_code=400, detail="invalid filename")
    if "/" in filename or "\\" in filename:
        raise HTTPException(status_code=400, detail="invalid filename path")


def _grading_job_worker(submission_id: int) -> dict:
    """Run one AI grading request in its own database session."""
    with Session(engine) as session:
        result = services.GradingService(session, grader=_ai_grader).request_ai_grading(submission_id)
        if not result.ok:
            raise RuntimeError(result.error.message)
        return {"submission_id": submission_id, "status": result.value.status.value}


def _queue_ai_grading(request: Request, submission_id: int) -> dict:
    created = _grading_jobs.submit(
        submission_id=submission_id,
        request_id=getattr(request.state, "request_id", ""),
        worker=_grading_job_worker,
    )
    return {**created, "status_url": f"/grading/jobs/{created['job_id']}"}


@app.post('/auth/register')
def register(payload: RegisterIn, db: Session = Depends(get_session)):
    """Register a new user (idempotent).

    Returns the existing user if the username is already taken, which keeps
    automation and tests simple.
    """
    existing = repositories.UserRepository(db).get_by_username(payload.username)
    if existing:
        return {'id': existing.id, 'username': existing.username, 'role': existing.role.value}
    user = services.AuthService(db).register(payload.username, payload.password, payload.role)
    return {'id': user.id, 'username': user.username, 'role': user.role.value}


@app.post('/auth/login', response_model=TokenOut)
def login(payload: LoginIn, db: Session = Depends(get_session)):
    """Authenticate a user and return a short-lived JWT token."""
    token = services.AuthService(db).authenticate(payload.username, payload.password)
    if not token:
        raise HTTPException(status_code=401, detail='invalid credentials')
    return {'access_token': token}


@app.post('/definitions', response_model=DefinitionOut, status_code=201)
def create_definition(payload: DefinitionIn, db: Session = Depends(get_session), caller: Caller = Depends(get_caller)):
    """Author a new draft definition (staff only)."""
    return _unwrap(services.DefinitionService(db).create(caller, payload))


@app.post('/definitions/import', status_code=201)
def import_definition(
    lesson_ref: int = Form(...),
    title: str = Form(...),
    modality: Modality = Form(...),
    time_limit_minutes: Optional[int] = Form(default=None),
    file: UploadFile = File(...),
    db: Session = Depends(get_session),
    caller: Caller = Depends(get_caller),
):
    """Create a draft definition from a JSON, CSV, TXT or DOCX question file.

    Nothing is created if any item fails validation; the per-item errors
    are returned in the 422 body.
    """
    _validate_upload_filename(file.filename)
    content = file.file.read(settings.MAX_UPLOAD_BYTES + 1)
    if len(content) > settings.MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=400, detail='file too large')
    svc = services.DefinitionService(db)
    try:
        result, report = svc.create_from_file(caller, lesson_ref, title, modality, content, file.filename, time_limit_minutes)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not result.ok:
        detail = result.error.to_dict()
        detail['errors'] = [{'index': e['index'], 'error': e['error']} for e in report['errors']]
        raise HTTPException(status_code=_STATUS_BY_CODE[result.error.code], detail=detail)
    return {
        'definition': DefinitionOut.model_validate(result.value).model_dump(mode='json'),
        'imported': len(report['questions']),
    }


@app.get('/definitions', response_model=List[DefinitionOut])
def list_definitions(
    lesson_ref: Optional[int] = None,
    modality: Optional[Modality] = None,
    status: Optional[ApprovalStatus] = None,
    db: Session = Depends(get_session),
    caller: Caller = Depends(get_caller),
):
    """List definitions; students only ever see approved ones."""
    return services.DefinitionService(db).list(caller, lesson_ref, modality, status)


@app.get('/definitions/{definition_id}', response_model=DefinitionOut)
def get_definition(definition_id: int, db: Session = Depends(get_session), caller: Caller = Depends(get_caller)):
    return _unwrap(services.DefinitionService(db).get(caller, definition_id))


@app.put('/definitions/{definition_id}/questions', response_model=DefinitionOut)
def update_questions(definition_id: int, payload: QuestionsIn, db: Session = Depends(get_session), caller: Caller = Depends(get_caller)):
    """Replace the questions of a draft or rejected definition."""
    svc = services.DefinitionService(db)
    return _unwrap(svc.update_questions(caller, definition_id, payload.questions, payload.time_limit_minutes))


@app.post('/definitions/{definition_id}/submit', response_model=DefinitionOut)
def submit_for_review(definition_id: int, db: Session = Depends(get_session), caller: Caller = Depends(get_caller)):
    return _unwrap(services.DefinitionService(db).submit_for_review(caller, definition_id))


@app.post('/definitions/{definition_id}/approve', response_model=DefinitionOut)
def approve_definition(definition_id: int, payload: ReviewIn, db: Session = Depends(get_session), caller: Caller = Depends(get_caller)):
    """Approve a pending definition; the previously approved one for the lesson is archived."""
    return _unwrap(services.DefinitionService(db).approve(caller, definition_id, payload.notes))


@app.post('/definitions/{definition_id}/reject', response_model=DefinitionOut)
def reject_definition(definition_id: int, payload: ReviewIn, db: Session = Depends(get_session), caller: Caller = Depends(get_caller)):
    return _unwrap(services.DefinitionService(db).reject(caller, definition_id, payload.notes))


@app.get('/lessons/{lesson_ref}/assessments', response_model=List[DefinitionOut])
def approved_for_lesson(lesson_ref: int, modality: Optional[Modality] = None, db: Session = Depends(get_session), caller: Caller = Depends(get_caller)):
    """The approved definitions a student can take for a lesson (at most one per modality)."""
    return services.DefinitionService(db).approved_for_lesson(lesson_ref, modality)


@app.post('/definitions/{definition_id}/attempts', response_model=SubmitReceipt, status_code=201)
def submit_attempt(
    definition_id: int,
    payload: AttemptIn,
    request: Request,
    db: Session = Depends(get_session),
    caller: Caller = Depends(get_caller),
):
    """Record a finished attempt.

    MCQ attempts are scored on the server and the score is returned
    immediately. Free-response attempts are queued for AI grading when an
    AI grader is configured.
    """
    submission = _unwrap(services.SubmissionService(db).submit(caller, definition_id, payload))
    receipt = SubmitReceipt(
        submission_id=submission.id,
        status=submission.status,
        score=submission.score,
        attempt_number=submission.attempt_number,
    )
    if submission.modality == Modality.MCQ:
        receipt.passed = submission.score >= settings.MCQ_PASS_PERCENTAGE
    elif submission.status == models.SubmissionStatus.SUBMITTED and _ai_grader.enabled:
        try:
            _queue_ai_grading(request, submission.id)
        except GradingQueueFull as e:
            # stored either way; grading can be requested again later
            logger.warning("grading_queue_full %s", json.dumps({"submission_id": submission.id, "error": str(e)}))
    return receipt


@app.get('/submissions/mine', response_model=List[SubmissionOut])
def my_submissions(db: Session = Depends(get_session), caller: Caller = Depends(get_caller)):
    return services.SubmissionService(db).list_for_student(caller)


@app.get('/submissions/{submission_id}', response_model=SubmissionOut)
def get_submission(submission_id: int, db: Session = Depends(get_session), caller: Caller = Depends(get_caller)):
    return _unwrap(services.SubmissionService(db).get(caller, submission_id))


@app.post('/submissions/{submission_id}/ai-grading', status_code=202)
def request_ai_grading(submission_id: int, request: Request, db: Session = Depends(get_session), caller: Caller = Depends(get_caller)):
    """Queue (or re-queue after a failure) AI grading for a free-response submission.

    Returns a job id for polling. A submission that already has AI feedback
    is left as it is.
    """
    submission = _unwrap(services.SubmissionService(db).get(caller, submission_id))
    if submission.modality != Modality.QA:
        _raise_for(Failure(ErrorCode.INVALID_TRANSITION, "AI grading only applies to free-response submissions"))
    if not _ai_grader.enabled:
        _raise_for(Failure(ErrorCode.REMOTE_FAILURE, "AI grader is not configured", retryable=True))
    try:
        return _queue_ai_grading(request, submission_id)
    except GradingQueueFull:
        _raise_for(Failure(ErrorCode.REMOTE_FAILURE, "AI grading queue is full; retry later", retryable=True))


@app.get('/grading/jobs/{job_id}')
def get_grading_job(job_id: str, caller: Caller = Depends(get_caller)):
    """Poll a background AI grading job."""
    job = _grading_jobs.get(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="job not found")
    return job


@app.post('/submissions/{submission_id}/ai-feedback', response_model=SubmissionOut, dependencies=[Depends(require_grader)])
def receive_ai_feedback(submission_id: int, payload: dict, db: Session = Depends(get_session)):
    """Callback for the AI grader. Re-delivery of the same feedback is harmless."""
    return _unwrap(services.GradingService(db, grader=_ai_grader).receive_ai_callback(submission_id, payload))


@app.post('/submissions/{submission_id}/begin-review', response_model=SubmissionOut)
def begin_review(submission_id: int, db: Session = Depends(get_session), caller: Caller = Depends(get_caller)):
    return _unwrap(services.GradingService(db, grader=_ai_grader).begin_review(caller, submission_id))


@app.post('/submissions/{submission_id}/finalize', response_model=SubmissionOut)
def finalize_submission(submission_id: int, payload: FinalizeIn, db: Session = Depends(get_session), caller: Caller = Depends(get_caller)):
    """Record the teacher's final score and feedback. Succeeds once per submission."""
    svc = services.GradingService(db, grader=_ai_grader)
    return _unwrap(svc.finalize(caller, submission_id, payload.final_score, payload.teacher_feedback))


@app.post('/submissions/{submission_id}/review', response_model=SubmissionOut)
def review_mcq_submission(submission_id: int, payload: SubmissionReviewIn, db: Session = Depends(get_session), caller: Caller = Depends(get_caller)):
    """Approve or reject an MCQ submission."""
    svc = services.GradingService(db, grader=_ai_grader)
    return _unwrap(svc.review_mcq(caller, submission_id, payload.approve, payload.feedback))


@app.get('/review/definitions', response_model=List[DefinitionOut])
def pending_definitions(modality: Optional[Modality] = None, db: Session = Depends(get_session), caller: Caller = Depends(require_staff)):
    return services.ReviewService(db).pending_definitions(modality)


@app.get('/review/submissions', response_model=List[ReviewQueueItem])
def review_queue(modality: Optional[Modality] = None, db: Session = Depends(get_session), caller: Caller = Depends(require_staff)):
    """Submissions waiting for a human decision, oldest first."""
    return services.ReviewService(db).submission_queue(modality)


@app.get('/review/submissions/{submission_id}')
def review_detail(submission_id: int, db: Session = Depends(get_session), caller: Caller = Depends(require_staff)):
    detail = _unwrap(services.ReviewService(db).submission_detail(submission_id))
    detail['submission'] = SubmissionOut.model_validate(detail['submission']).model_dump(mode='json')
    return detail


@app.get("/health")
def health():
    """Lightweight health check for uptime monitoring."""
    return {"status": "ok"}
