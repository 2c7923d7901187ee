"""Standardised API error responses.

Usage
-----
    from diagnostic.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Assessment not found")
    return api_error(E.VALIDATION_REQUIRED, "company_id is required")
    return api_error(E.DIAG_INCOMPLETE, "Answer every question", details={"missing": [...]})
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Convention:
     • ERR_  prefix for generic request/transport errors
     • bare UPPER_SNAKE for diagnostic domain outcomes
    """

    # Validation – HTTP 400 (malformed request)
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Not-found – HTTP 404
    NOT_FOUND = "NOT_FOUND"

    # Server – HTTP 500
    INTERNAL = "ERR_INTERNAL"

    # Domain validation – HTTP 422
    DIAG_INCOMPLETE = "DIAG_INCOMPLETE"
    PLAN_INVALID = "PLAN_INVALID"
    UNKNOWN_ACTION = "UNKNOWN_ACTION"
    CHECKLIST_INCOMPLETE = "CHECKLIST_INCOMPLETE"
    EVIDENCE_REQUIRED = "EVIDENCE_REQUIRED"
    DROP_REASON_REQUIRED = "DROP_REASON_REQUIRED"
    CYCLE_NOT_FINISHED = "CYCLE_NOT_FINISHED"
    GAP_NOT_PENDING = "GAP_NOT_PENDING"
    INVALID_STATUS = "INVALID_STATUS"
    INVALID_ANSWER = "INVALID_ANSWER"

    # Domain conflict – HTTP 409
    DIAG_NOT_DRAFT = "DIAG_NOT_DRAFT"
    DIAG_NOT_READY = "DIAG_NOT_READY"
    DIAG_IN_PROGRESS = "DIAG_IN_PROGRESS"
    CYCLE_CLOSED = "CYCLE_CLOSED"
    PLAN_IN_PROGRESS = "PLAN_IN_PROGRESS"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    GAP_ALREADY_CLASSIFIED = "GAP_ALREADY_CLASSIFIED"
    EVIDENCE_WRITE_ONCE = "EVIDENCE_WRITE_ONCE"

    # Startup / non-error outcomes
    CATALOG_INTEGRITY = "CATALOG_INTEGRITY"
    NO_CONTENT_MATCH = "NO_CONTENT_MATCH"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.NOT_FOUND: 404,
    E.INTERNAL: 500,
    E.DIAG_INCOMPLETE: 422,
    E.PLAN_INVALID: 422,
    E.UNKNOWN_ACTION: 422,
    E.CHECKLIST_INCOMPLETE: 422,
    E.EVIDENCE_REQUIRED: 422,
    E.DROP_REASON_REQUIRED: 422,
    E.CYCLE_NOT_FINISHED: 422,
    E.GAP_NOT_PENDING: 422,
    E.INVALID_STATUS: 422,
    E.INVALID_ANSWER: 422,
    E.DIAG_NOT_DRAFT: 409,
    E.DIAG_NOT_READY: 409,
    E.DIAG_IN_PROGRESS: 409,
    E.CYCLE_CLOSED: 409,
    E.PLAN_IN_PROGRESS: 409,
    E.INVALID_TRANSITION: 409,
    E.GAP_ALREADY_CLASSIFIED: 409,
    E.EVIDENCE_WRITE_ONCE: 409,
    E.CATALOG_INTEGRITY: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (missing answers, pending slots, etc.).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status
