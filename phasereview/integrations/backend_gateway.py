"""
Dashboard Backend Gateway.

Every exchange with the persistence/notification backend goes through this
class.  The backend exposes a single dispatch URL; each request is a JSON
POST carrying an ``operation`` discriminator plus its payload, and every
response is an envelope ``{"status": "success"|"error", "message", "data"}``.

  - Bearer token injected from configuration
  - Timeout: 30 s (configurable per gateway)
  - Retry: read operations only, max 2 retries, backoff 1 s → 4 s.
    Mutating operations are sent once; a retry is the caller's decision
    because the backend does not guarantee idempotency.
  - Circuit breaker: ≥5 failures in 60 s → 30 s pause

Threading: circuit breaker state is an in-memory dict.  Multi-worker
deployments each keep their own breaker.

Testability: pass a mock ``session`` to BackendGateway() in tests instead of
letting it create a real requests.Session internally.
"""

from __future__ import annotations

import logging
import os
import time
from datetime import datetime, timedelta, timezone
from typing import Any

import requests

from phasereview.core.exceptions import (
    AlreadyAnsweredError,
    ConflictError,
    ExternalUnavailableError,
    IllegalTransitionError,
    NotFoundError,
    PermissionDenied,
    ReviewGuardError,
    ValidationError,
)
from phasereview.utils.errors import E

logger = logging.getLogger(__name__)

# ── Circuit breaker constants ──────────────────────────────────────────────
_CB_FAILURE_THRESHOLD = 5          # failures within window before opening
_CB_WINDOW_SECONDS = 60            # failure counting window (seconds)
_CB_OPEN_DURATION_SECONDS = 30     # how long circuit stays open

# ── Retry constants ────────────────────────────────────────────────────────
_RETRY_MAX = 2
_RETRY_BACKOFF_SECONDS = [1, 4]    # sleep[0] after 1st fail, sleep[1] after 2nd

# ── Default request timeout ────────────────────────────────────────────────
_DEFAULT_TIMEOUT = 30


class Operation:
    """Operation discriminators understood by the dispatch endpoint."""

    START_PHASE_INSTANCE = "startPhaseInstance"
    FETCH_PHASE_DETAIL = "fetchPhaseDetail"
    FETCH_PROJECT_PHASES = "fetchProjectPhases"
    SEND_TO_REVIEW = "sendToReview"
    APPROVE_PHASE = "approvePhase"
    CREATE_REVISION_REQUEST = "createRevisionRequest"
    APPEND_REVISION_STATUS = "appendRevisionStatus"
    ANSWER_REVISION = "answerRevision"
    LIST_REVISIONS = "listRevisions"
    POST_DISCUSSION = "postDiscussion"
    UPLOAD_ATTACHMENT = "uploadAttachment"
    FETCH_TASKS = "fetchTasks"


# Safe to repeat: no backend state changes.
READ_OPERATIONS = frozenset({
    Operation.FETCH_PHASE_DETAIL,
    Operation.FETCH_PROJECT_PHASES,
    Operation.LIST_REVISIONS,
    Operation.FETCH_TASKS,
})


class CircuitOpenError(Exception):
    """Raised internally when the circuit breaker is open for an endpoint."""


class GatewayResult:
    """Structured return value from BackendGateway calls.

    Attributes:
        ok:             True if transport succeeded AND envelope status is "success".
        operation:      Operation discriminator that was sent.
        status_code:    HTTP status code (None if network-level failure).
        data:           ``data`` member of the envelope, else None.
        message:        Envelope message or transport error text.
        code:           Machine-readable error code from the envelope, if any.
        details:        Structured error details from the envelope.
        duration_ms:    Round-trip latency in milliseconds.
        unavailable:    True when the failure is transport/backend-side
                        (network error, timeout, 5xx, circuit open).
    """

    def __init__(
        self,
        ok: bool,
        operation: str,
        status_code: int | None,
        data: Any,
        message: str | None,
        duration_ms: int,
        code: str | None = None,
        details: dict | None = None,
        unavailable: bool = False,
    ) -> None:
        self.ok = ok
        self.operation = operation
        self.status_code = status_code
        self.data = data
        self.message = message
        self.duration_ms = duration_ms
        self.code = code
        self.details = details or {}
        self.unavailable = unavailable

    def __repr__(self) -> str:
        return (
            f"<GatewayResult {self.operation} ok={self.ok} "
            f"status={self.status_code} code={self.code}>"
        )

    def raise_for_error(self) -> Any:
        """Return ``data`` on success, otherwise raise the mapped exception."""
        if self.ok:
            return self.data

        message = self.message or "Unknown backend error"
        if self.unavailable:
            raise ExternalUnavailableError(self.operation, message, self.status_code)

        details = self.details
        if self.code == E.NOT_FOUND:
            raise NotFoundError(
                details.get("resource", "Resource"), details.get("resource_id"),
            )
        if self.code == E.ILLEGAL_TRANSITION:
            raise IllegalTransitionError(
                details.get("event", self.operation),
                details.get("current_status", "unknown"),
                instance_id=details.get("instance_id"),
                reason=details.get("reason"),
            )
        if self.code == E.ALREADY_ANSWERED:
            raise AlreadyAnsweredError(
                details.get("revision_id"), details.get("revised_file"),
            )
        if self.code in (E.CONFLICT_DUPLICATE, E.CONFLICT_STATE):
            raise ConflictError(
                details.get("resource", "Resource"),
                details.get("field", "state"),
                details.get("value"),
                message=self.message,
            )
        if self.code == E.REVIEW_GUARD:
            raise ReviewGuardError(
                details.get("event", self.operation), details.get("instance_id"),
                details.get("reason", message),
            )
        if self.code == E.FORBIDDEN:
            raise PermissionDenied(
                details.get("actor_id"), details.get("role", "unknown"),
                details.get("event", self.operation),
            )
        raise ValidationError(message, details=details)


class BackendGateway:
    """Gateway to the operation-dispatch backend.

    Instantiate once at module level (module-level singleton pattern).
    Pass a custom `session` in tests to intercept HTTP calls without
    making real network requests.

    Usage:
        from phasereview.integrations.backend_gateway import backend_gateway
        result = backend_gateway.dispatch(Operation.FETCH_TASKS, project_main_id=3)
        tasks = result.raise_for_error()
    """

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        timeout: int = _DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
        backoff_seconds: list[int] | None = None,
    ) -> None:
        self.base_url = base_url
        self.token = token
        self.timeout = timeout
        self._session: requests.Session | None = session
        self._backoff = list(_RETRY_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds)

        # Circuit breaker: base_url → {"failures": [datetime, ...], "open_until": datetime|None}
        self._cb_state: dict[str, dict] = {}

    def configure(
        self,
        base_url: str | None,
        token: str | None = None,
        timeout: int | None = None,
    ) -> None:
        """Point the gateway at a backend (called from ``init_gateway``)."""
        self.base_url = base_url
        self.token = token
        if timeout:
            self.timeout = timeout
        self._cb_state.clear()

    # ── HTTP session ─────────────────────────────────────────────────────────

    @property
    def session(self) -> requests.Session:
        """Return (or lazily create) the requests.Session."""
        if self._session is None:
            self._session = requests.Session()
        return self._session

    @session.setter
    def session(self, value: requests.Session | None) -> None:
        self._session = value

    # ── Circuit breaker ───────────────────────────────────────────────────────

    def _ensure_cb_entry(self, key: str) -> dict:
        if key not in self._cb_state:
            self._cb_state[key] = {"failures": [], "open_until": None}
        return self._cb_state[key]

    def _circuit_closed(self, key: str) -> bool:
        """Return True if the circuit allows calls; False if open (paused)."""
        state = self._ensure_cb_entry(key)
        now = datetime.now(timezone.utc)

        if state["open_until"] and now < state["open_until"]:
            logger.warning("Circuit open for backend=%s until %s", key, state["open_until"])
            return False

        window_start = now - timedelta(seconds=_CB_WINDOW_SECONDS)
        state["failures"] = [f for f in state["failures"] if f >= window_start]

        if len(state["failures"]) >= _CB_FAILURE_THRESHOLD:
            state["open_until"] = now + timedelta(seconds=_CB_OPEN_DURATION_SECONDS)
            logger.error(
                "Circuit opened for backend=%s: %d failures in %ds window",
                key, len(state["failures"]), _CB_WINDOW_SECONDS,
            )
            return False

        return True

    def _record_failure(self, key: str) -> None:
        state = self._ensure_cb_entry(key)
        state["failures"].append(datetime.now(timezone.utc))

    def _record_success(self, key: str) -> None:
        """On success, reset failure history and close the circuit."""
        state = self._ensure_cb_entry(key)
        state["failures"].clear()
        state["open_until"] = None

    # ── Core request dispatcher ───────────────────────────────────────────────

    def _headers(self) -> dict:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def dispatch(self, operation: str, **payload: Any) -> GatewayResult:
        """Send one operation-tagged request to the backend.

        Implements:
          1. Circuit breaker check: reject immediately if the backend is paused.
          2. POST ``{"operation": operation, **payload}`` to ``base_url``.
          3. 2xx/4xx with a JSON envelope → result built from the envelope.
             Envelope errors are business outcomes, not failures: they do
             not count against the circuit breaker and are never retried.
          4. Network error, timeout, 5xx or unparseable body → failure,
             recorded for the circuit breaker; retried for READ_OPERATIONS.

        Returns:
            GatewayResult: always returns (never raises). Callers check .ok
            or call .raise_for_error().
        """
        if not self.base_url:
            return GatewayResult(
                ok=False, operation=operation, status_code=None, data=None,
                message="Backend URL is not configured", duration_ms=0,
                unavailable=True,
            )

        key = self.base_url
        if not self._circuit_closed(key):
            return GatewayResult(
                ok=False, operation=operation, status_code=None, data=None,
                message="Circuit breaker is open: backend calls temporarily suspended",
                duration_ms=0, unavailable=True,
            )

        body = {"operation": operation, **payload}
        max_retries = _RETRY_MAX if operation in READ_OPERATIONS else 0
        last_error = "Unknown error"
        last_status: int | None = None
        duration_ms = 0

        for attempt in range(max_retries + 1):
            try:
                t0 = time.perf_counter()
                resp = self.session.request(
                    "POST", self.base_url,
                    headers=self._headers(), json=body, timeout=self.timeout,
                )
                duration_ms = int((time.perf_counter() - t0) * 1000)
                last_status = resp.status_code

                if resp.status_code < 500:
                    envelope = self._parse_envelope(resp)
                    if envelope is not None:
                        self._record_success(key)
                        return self._result_from_envelope(
                            operation, resp.status_code, envelope, duration_ms,
                        )
                    last_error = f"HTTP {resp.status_code}: response is not a dispatch envelope"
                else:
                    last_error = f"HTTP {resp.status_code}: {resp.text[:500]}"

                self._record_failure(key)
                logger.warning(
                    "Backend request failed attempt=%d/%d status=%d operation=%s",
                    attempt + 1, max_retries + 1, resp.status_code, operation,
                    extra={"operation": operation, "status": resp.status_code},
                )

            except requests.Timeout:
                duration_ms = int(self.timeout * 1000)
                last_error = f"Request timed out after {self.timeout}s"
                self._record_failure(key)
                logger.warning(
                    "Backend request timed out attempt=%d/%d operation=%s",
                    attempt + 1, max_retries + 1, operation,
                    extra={"operation": operation},
                )

            except requests.RequestException as exc:
                last_error = str(exc)[:500]
                self._record_failure(key)
                logger.warning(
                    "Backend network error attempt=%d/%d operation=%s error=%s",
                    attempt + 1, max_retries + 1, operation, last_error,
                    extra={"operation": operation},
                )

            if attempt < max_retries:
                sleep_s = self._backoff[min(attempt, len(self._backoff) - 1)] if self._backoff else 0
                logger.info("Retrying %s in %ss (attempt %d)", operation, sleep_s, attempt + 2)
                time.sleep(sleep_s)

        return GatewayResult(
            ok=False, operation=operation, status_code=last_status, data=None,
            message=last_error, duration_ms=duration_ms, unavailable=True,
        )

    @staticmethod
    def _parse_envelope(resp: requests.Response) -> dict | None:
        try:
            envelope = resp.json()
        except ValueError:
            return None
        if not isinstance(envelope, dict) or envelope.get("status") not in ("success", "error"):
            return None
        return envelope

    @staticmethod
    def _result_from_envelope(
        operation: str, status_code: int, envelope: dict, duration_ms: int,
    ) -> GatewayResult:
        ok = envelope["status"] == "success"
        if not ok:
            logger.info(
                "Backend rejected %s: %s", operation, envelope.get("message"),
                extra={"operation": operation, "status": status_code},
            )
        return GatewayResult(
            ok=ok,
            operation=operation,
            status_code=status_code,
            data=envelope.get("data"),
            message=envelope.get("message"),
            duration_ms=duration_ms,
            code=envelope.get("code"),
            details=envelope.get("details"),
        )


def init_gateway(app) -> None:
    """Configure the module singleton from the Flask app config."""
    backend_gateway.configure(
        app.config.get("PHASE_BACKEND_URL"),
        token=app.config.get("PHASE_BACKEND_TOKEN"),
        timeout=app.config.get("PHASE_BACKEND_TIMEOUT"),
    )


# Module-level singleton: import this module in services and resolve
# ``gw_module.backend_gateway`` at call time.  In tests, override via:
#   from phasereview.integrations import backend_gateway as gw_module
#   gw_module.backend_gateway = BackendGateway(session=mock_session)
backend_gateway = BackendGateway(
    base_url=os.getenv("PHASE_BACKEND_URL"),
    token=os.getenv("PHASE_BACKEND_TOKEN"),
)
