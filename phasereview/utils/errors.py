"""Standardised dispatch error envelopes.

Usage
-----
    from phasereview.utils.errors import dispatch_error, E

    return dispatch_error(E.NOT_FOUND, "PhaseInstance id=4 not found")
    return dispatch_error(E.ILLEGAL_TRANSITION, str(exc), details={"current_status": "Approved"})

The same codes travel back to the client, where
``GatewayResult.raise_for_error`` maps them onto ``phasereview.core.exceptions``.
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants."""

    # Validation – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    UNKNOWN_OPERATION = "ERR_UNKNOWN_OPERATION"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"
    ILLEGAL_TRANSITION = "ERR_ILLEGAL_TRANSITION"
    ALREADY_ANSWERED = "ERR_ALREADY_ANSWERED"

    # Business rule – HTTP 422
    REVIEW_GUARD = "ERR_REVIEW_GUARD"

    # Permissions – HTTP 403
    FORBIDDEN = "ERR_FORBIDDEN"

    # Server – HTTP 500
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.UNKNOWN_OPERATION: 400,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.CONFLICT_STATE: 409,
    E.ILLEGAL_TRANSITION: 409,
    E.ALREADY_ANSWERED: 409,
    E.REVIEW_GUARD: 422,
    E.FORBIDDEN: 403,
    E.DATABASE: 500,
    E.INTERNAL: 500,
}


def status_for(code: str) -> int:
    """Return the default HTTP status for an error code (400 if unknown)."""
    return _DEFAULT_STATUS.get(code, 400)


def dispatch_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard error envelope.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation, shown to the actor.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``.
    details : dict, optional
        Extra structured payload (current status, revision id, ...).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """
    http_status = status or status_for(code)

    body: dict = {
        "status": "error",
        "message": message,
        "code": code,
        "data": None,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


def dispatch_success(data=None, message: str = "ok", *, status: int = 200):
    """Return a standard success envelope."""
    return jsonify({"status": "success", "message": message, "data": data}), status
