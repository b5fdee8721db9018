"""Standardised diagnostic error payloads.

Usage
-----
    from portfolio_engine.utils.errors import error_payload, E

    payload = error_payload(E.NOT_FOUND, "ScheduledItem id=item-7 not found")
    payload = error_payload(E.VALIDATION_INVALID, "Unknown change kind",
                            details={"kind": "TELEPORT"})
"""

from __future__ import annotations


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Convention:
     • ERR_  prefix for request-level errors
     • GOVERNANCE_ prefix for decision outcomes surfaced as errors
    """

    # Malformed request
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Referenced team / item missing
    NOT_FOUND = "ERR_NOT_FOUND"

    # Duplicate id / stale baseline
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"

    # Unexpected failure inside projection or evaluation
    INTERNAL = "ERR_INTERNAL"

    # Governance
    GOVERNANCE_BLOCK = "GOVERNANCE_BLOCK"
    GOVERNANCE_WARN = "GOVERNANCE_WARN"


# ── Diagnostic violation codes per error code ─────────────────────────
_VIOLATION_CODE: dict[str, str] = {
    E.VALIDATION_REQUIRED: "INVALID_REQUEST",
    E.VALIDATION_INVALID: "INVALID_REQUEST",
    E.NOT_FOUND: "NOT_FOUND",
    E.CONFLICT_DUPLICATE: "INVALID_REQUEST",
    E.CONFLICT_STATE: "INVALID_REQUEST",
    E.INTERNAL: "INTERNAL_ERROR",
    E.GOVERNANCE_BLOCK: "GOVERNANCE_BLOCK",
    E.GOVERNANCE_WARN: "GOVERNANCE_WARN",
}


def violation_code_for(code: str) -> str:
    """Map an ``E.*`` code to the violation code used on diagnostic rejections."""
    return _VIOLATION_CODE.get(code, "INTERNAL_ERROR")


def error_payload(
    code: str,
    message: str,
    *,
    details: dict | None = None,
) -> dict:
    """Return a standard error payload.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation.
    details : dict, optional
        Extra context (field errors, offending ids, etc.).

    Returns
    -------
    dict with keys ``error``, ``code`` and, when given, ``details``.
    """
    body: dict = {"error": message, "code": code}
    if details:
        body["details"] = details
    return body
