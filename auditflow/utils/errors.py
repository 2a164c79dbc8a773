"""API error envelope.

Every error response has the body ``{"error": <message>, "code": <ERR_*>}``
plus ``"details"`` when there is a field-level payload.

    return api_error(E.VALIDATION_REQUIRED, "status is required")
"""

from __future__ import annotations

from flask import jsonify


class E:
    """Machine-readable error codes."""

    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"    # 400 missing field
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"      # 422 business rule
    VALIDATION_REFERENCE = "ERR_VALIDATION_REFERENCE"  # 422 id outside scope
    FORBIDDEN = "ERR_FORBIDDEN"                        # 403
    NOT_FOUND = "ERR_NOT_FOUND"                        # 404
    CONFLICT_STATE = "ERR_CONFLICT_STATE"              # 409
    PROJECT_INACTIVE = "ERR_PROJECT_INACTIVE"          # 423
    INTERNAL = "ERR_INTERNAL"                          # 500


HTTP_STATUS = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 422,
    E.VALIDATION_REFERENCE: 422,
    E.FORBIDDEN: 403,
    E.NOT_FOUND: 404,
    E.CONFLICT_STATE: 409,
    E.PROJECT_INACTIVE: 423,
    E.INTERNAL: 500,
}


def api_error(code: str, message: str, *, status: int | None = None, details: dict | None = None):
    """``(response, status)`` for ``code``; ``status`` overrides the default."""
    body = {"error": message, "code": code}
    if details:
        body["details"] = details
    return jsonify(body), status or HTTP_STATUS.get(code, 400)
