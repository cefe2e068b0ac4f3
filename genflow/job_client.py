"""
Async client for the external job-execution service.

    POST /jobs                 submit (or price with whatIf: true)
    GET  /workflows            paginated workflow listing by tag
    POST /jobs/{id}/cancel     cancel a running workflow

Submission is idempotent: one key per logical request, sent both in the body
and as an `Idempotency-Key` header, reused across every retry.
"""

import asyncio
import logging
import os
import random
import time
from typing import Any, Awaitable, Callable, Optional

import httpx

from .errors import FieldError, JobServiceError, JobServiceValidationError, SubmissionError

logger = logging.getLogger(__name__)

JOB_SERVICE_URL = os.environ.get("JOB_SERVICE_URL", "http://localhost:9000")
JOB_SERVICE_TOKEN = os.environ.get("JOB_SERVICE_TOKEN", "")

# ── Retry configuration ──────────────────────────────────────────────────────
MAX_RETRIES = int(os.environ.get("GENFLOW_SUBMIT_MAX_RETRIES", "2"))
BASE_DELAY = float(os.environ.get("GENFLOW_SUBMIT_BASE_DELAY", "0.5"))  # doubles each retry
SUBMIT_DEADLINE = float(os.environ.get("GENFLOW_SUBMIT_DEADLINE", "15"))  # whole submit loop, seconds
JITTER_MAX = 0.25
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
REQUEST_TIMEOUT = 10.0


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if value and value.strip().isdigit():
        return float(value.strip())
    return None


def _field_errors(body: Any) -> list[FieldError]:
    """
    Pull structured field errors out of a 400/422 body. Accepts
    {"errors": [{"field"|"path": ..., "message": ...}]} and
    {"errors": {"field": ["msg", ...]}}.
    """
    if not isinstance(body, dict):
        return []
    errors = body.get("errors")
    result: list[FieldError] = []
    if isinstance(errors, list):
        for err in errors:
            if not isinstance(err, dict):
                continue
            field = err.get("field") or err.get("path")
            if isinstance(field, list):
                field = ".".join(str(p) for p in field)
            if field:
                result.append(FieldError(field=str(field), message=str(err.get("message", "Invalid value"))))
    elif isinstance(errors, dict):
        for field, messages in errors.items():
            if isinstance(messages, list):
                messages = "; ".join(str(m) for m in messages)
            result.append(FieldError(field=str(field), message=str(messages)))
    return result


def _json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def _json_object(response: httpx.Response) -> dict:
    body = _json(response)
    return body if isinstance(body, dict) else {}


def _raise_for_response(response: httpx.Response) -> None:
    if response.is_success:
        return
    status = response.status_code
    body = response.text
    if status in (400, 422):
        errors = _field_errors(_json(response))
        if errors:
            raise JobServiceValidationError(
                f"Job service rejected the input ({status})",
                errors=errors,
                status_code=status,
                body=body,
            )
    raise JobServiceError(
        f"Job service returned {status}",
        status_code=status,
        body=body,
        retryable=status in RETRYABLE_STATUS_CODES,
    )


class JobServiceClient:
    """
    Thin async wrapper around the job service.

    `transport` is injectable (httpx.MockTransport in tests). `sleep` and
    `clock` exist so the retry loop can be driven without real waiting.
    """

    def __init__(
        self,
        base_url: str = JOB_SERVICE_URL,
        token: str = JOB_SERVICE_TOKEN,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_retries: int = MAX_RETRIES,
        base_delay: float = BASE_DELAY,
        deadline: float = SUBMIT_DEADLINE,
        timeout: float = REQUEST_TIMEOUT,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.deadline = deadline
        self._sleep = sleep
        self._clock = clock

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "JobServiceClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    # ── Submit ───────────────────────────────────────────────────────────────

    def _backoff(self, attempt: int) -> float:
        return self.base_delay * (2 ** attempt) + random.uniform(0, JITTER_MAX)

    async def submit(
        self,
        type: str,
        engine_input: dict[str, Any],
        tags: list[str],
        metadata: dict[str, Any],
        idempotency_key: str,
    ) -> str:
        """
        Create a workflow and return its id.

        Retries timeouts, connection errors, 5xx and 429 with the same
        idempotency key: `base_delay * 2^attempt + jitter`, or Retry-After
        when the server sends one. Raises JobServiceValidationError for
        structured field errors and SubmissionError for everything else.
        """
        payload = {
            "type": type,
            "engineInput": engine_input,
            "tags": tags,
            "metadata": metadata,
            "idempotencyKey": idempotency_key,
        }
        headers = {"Idempotency-Key": idempotency_key}
        started = self._clock()
        last_error: Optional[BaseException] = None
        attempts = 0

        for attempt in range(self.max_retries + 1):
            attempts = attempt + 1
            delay: Optional[float] = None
            try:
                response = await self._client.post("/jobs", json=payload, headers=headers)
                _raise_for_response(response)
                body = _json_object(response)
                workflow_id = body.get("workflowId") or body.get("id")
                if not workflow_id:
                    raise SubmissionError("Job service response had no workflow id", attempts)
                if attempt:
                    logger.info(f"Submit {idempotency_key} succeeded on attempt {attempts}")
                return str(workflow_id)

            except JobServiceValidationError:
                raise
            except JobServiceError as e:
                if not e.retryable:
                    raise SubmissionError(e.message, attempts, cause=e) from e
                last_error = e
                retry_after = _retry_after(response)
                delay = retry_after if retry_after is not None else self._backoff(attempt)
                logger.warning(
                    f"Job service {e.status_code} on attempt {attempts}/{self.max_retries + 1} "
                    f"(key={idempotency_key}), retrying in {delay:.1f}s"
                )
            except httpx.TransportError as e:
                # TimeoutException is a TransportError
                last_error = e
                delay = self._backoff(attempt)
                logger.warning(
                    f"Job service request error on attempt {attempts}/{self.max_retries + 1}: "
                    f"{e!r} (key={idempotency_key}), retrying in {delay:.1f}s"
                )

            if attempt >= self.max_retries:
                break
            if self._clock() - started + delay > self.deadline:
                logger.error(f"Submit {idempotency_key} would pass the {self.deadline}s deadline, giving up")
                raise SubmissionError(
                    f"Submission timed out after {attempts} attempts",
                    attempts,
                    cause=last_error,
                ) from last_error
            await self._sleep(delay)

        logger.error(f"Submit {idempotency_key} failed after {attempts} attempts: {last_error!r}")
        raise SubmissionError(
            f"Job service unavailable after {attempts} attempts",
            attempts,
            cause=last_error,
        ) from last_error

    # ── What-if ──────────────────────────────────────────────────────────────

    async def what_if(self, type: str, engine_input: dict[str, Any], tags: Optional[list[str]] = None) -> float:
        """Price a job without creating it. Raises JobServiceError."""
        payload = {
            "type": type,
            "engineInput": engine_input,
            "tags": tags or [],
            "whatIf": True,
        }
        try:
            response = await self._client.post("/jobs", json=payload)
        except httpx.TransportError as e:
            raise JobServiceError(f"What-if request failed: {e!r}", retryable=True) from e
        _raise_for_response(response)
        body = _json_object(response)
        cost = body.get("cost")
        if isinstance(cost, dict):
            cost = cost.get("total")
        try:
            return float(cost)
        except (TypeError, ValueError):
            raise JobServiceError("What-if response had no cost", status_code=response.status_code, body=response.text)

    # ── Query / cancel ───────────────────────────────────────────────────────

    async def query_workflows(self, tags: list[str], cursor: Optional[str] = None) -> tuple[list[dict], Optional[str]]:
        """One page of workflows matching all `tags`. Returns (items, next_cursor)."""
        params: dict[str, Any] = {"tags": ",".join(tags)}
        if cursor:
            params["cursor"] = cursor
        try:
            response = await self._client.get("/workflows", params=params)
        except httpx.TransportError as e:
            raise JobServiceError(f"Workflow query failed: {e!r}", retryable=True) from e
        _raise_for_response(response)
        body = _json_object(response)
        return list(body.get("items") or []), body.get("nextCursor") or None

    async def cancel(self, workflow_id: str) -> bool:
        try:
            response = await self._client.post(f"/jobs/{workflow_id}/cancel")
        except httpx.TransportError as e:
            raise JobServiceError(f"Cancel request failed: {e!r}", retryable=True) from e
        _raise_for_response(response)
        body = _json_object(response)
        return bool(body.get("ok", True))
