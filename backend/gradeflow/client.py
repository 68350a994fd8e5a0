"""HTTP client for the assessment API.

Used by front ends and scripts that drive an `AttemptSession` or the
review screens. Every call returns a `Result`: transport problems come back
as a retryable remote failure and error responses are mapped back to the
typed failure the server reported. Nothing here touches the session, so a
failed submit can be retried with the same draft.
"""

import logging
from typing import List, Optional

import requests
from pydantic import ValidationError

from .errors import ErrorCode, Failure, Result, remote_failure
from .questions import Modality
from .schemas import DefinitionOut, SubmissionDraft, SubmissionOut, SubmitReceipt

logger = logging.getLogger("gradeflow.client")


class AssessmentApiClient:
    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        *,
        timeout_seconds: float = 10.0,
        http: Optional[requests.Session] = None,
    ):
        if not base_url:
            raise ValueError("base_url is required")
        self._base_url = str(base_url).rstrip("/")
        self._timeout = float(timeout_seconds)
        self._headers = {"Content-Type": "application/json"}
        if token:
            self._headers["Authorization"] = f"Bearer {token}"
        self._session = http or requests.Session()

    def close(self) -> None:
        self._session.close()

    def _request(self, method: str, path: str, **kwargs) -> Result[object]:
        url = f"{self._base_url}{path}"
        try:
            resp = self._session.request(method, url, headers=self._headers, timeout=self._timeout, **kwargs)
        except requests.RequestException as e:
            logger.warning("api_request_failed method=%s path=%s error=%s", method, path, e)
            return Result.fail(remote_failure(f"request failed: {e}"))
        if resp.status_code >= 400:
            return Result.fail(self._failure_from(resp))
        try:
            return Result.success(resp.json() if resp.content else None)
        except ValueError:
            return Result.fail(remote_failure("server returned a non-JSON response"))

    @staticmethod
    def _failure_from(resp) -> Failure:
        """Rebuild the typed failure from an error body, if it carries one."""
        try:
            detail = resp.json().get("detail")
        except (ValueError, AttributeError):
            detail = None
        if isinstance(detail, dict) and detail.get("code"):
            try:
                code = ErrorCode(detail["code"])
            except ValueError:
                code = None
            if code is not None:
                return Failure(
                    code,
                    detail.get("message", ""),
                    missing_indices=tuple(detail.get("missing_indices") or ()),
                    retryable=bool(detail.get("retryable", code is ErrorCode.REMOTE_FAILURE)),
                )
        if resp.status_code >= 500:
            return remote_failure(f"server error {resp.status_code}")
        message = detail if isinstance(detail, str) else f"request rejected with status {resp.status_code}"
        if resp.status_code in (401, 403):
            return Failure(ErrorCode.FORBIDDEN, message)
        if resp.status_code == 404:
            return Failure(ErrorCode.NOT_FOUND, message)
        return Failure(ErrorCode.INVALID_INPUT, message)

    def _parse(self, result: Result[object], schema) -> Result:
        if not result.ok:
            return result
        try:
            if isinstance(result.value, list):
                return Result.success([schema.model_validate(item) for item in result.value])
            return Result.success(schema.model_validate(result.value))
        except ValidationError as e:
            return Result.fail(remote_failure(f"unexpected response shape: {e}"))

    def fetch_approved_definitions(self, lesson_ref: int, modality: Optional[Modality] = None) -> Result[List[DefinitionOut]]:
        params = {"modality": Modality(modality).value} if modality else None
        return self._parse(self._request("GET", f"/lessons/{int(lesson_ref)}/assessments", params=params), DefinitionOut)

    def submit_attempt(self, draft: SubmissionDraft) -> Result[SubmitReceipt]:
        """Send a finished attempt. Safe to retry: the draft's attempt token dedupes it."""
        body = draft.to_attempt().model_dump(mode="json")
        return self._parse(self._request("POST", f"/definitions/{draft.definition_id}/attempts", json=body), SubmitReceipt)

    def request_ai_grading(self, submission_id: int) -> Result[dict]:
        return self._request("POST", f"/submissions/{int(submission_id)}/ai-grading")

    def approve_definition(self, definition_id: int, notes: Optional[str] = None) -> Result[DefinitionOut]:
        result = self._request("POST", f"/definitions/{int(definition_id)}/approve", json={"notes": notes})
        return self._parse(result, DefinitionOut)

    def reject_definition(self, definition_id: int, notes: str) -> Result[DefinitionOut]:
        result = self._request("POST", f"/definitions/{int(definition_id)}/reject", json={"notes": notes})
        return self._parse(result, DefinitionOut)

    def begin_review(self, submission_id: int) -> Result[SubmissionOut]:
        return self._parse(self._request("POST", f"/submissions/{int(submission_id)}/begin-review"), SubmissionOut)

    def finalize(self, submission_id: int, final_score: float, teacher_feedback: str = "") -> Result[SubmissionOut]:
        body = {"final_score": final_score, "teacher_feedback": teacher_feedback}
        return self._parse(self._request("POST", f"/submissions/{int(submission_id)}/finalize", json=body), SubmissionOut)
