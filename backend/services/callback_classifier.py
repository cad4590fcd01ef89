"""Interpret the aggregator's redirect parameters.

The aggregator redirects the browser back to us with some combination of
``status``, ``error`` and ``error_description``.  Only an explicitly
recognized success signal is ever treated as success.
"""

import re
from enum import Enum

GENERIC_FAILURE_MESSAGE = "Bank connection failed. Please try again."
NO_ACCOUNTS_MESSAGE = "No accounts found. Please try again."
UNEXPECTED_STATUS_MESSAGE = "Bank connection returned an unexpected status. Please try again."

MAX_MESSAGE_LENGTH = 120

SUCCESS_STATUSES = frozenset({"successful", "success", "completed", "authorised", "authorized"})
FAILURE_STATUSES = frozenset({"failed"})

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f]")
_MARKUP_RE = re.compile(r"<[^>]*>")
_WHITESPACE_RE = re.compile(r"\s+")


class CallbackOutcome(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    UNEXPECTED = "unexpected"


def classify(status: str | None, error: str | None) -> CallbackOutcome:
    """Classify redirect parameters into SUCCESS, ERROR or UNEXPECTED.

    - an ``error`` parameter, or ``status=failed``, is ERROR;
    - a recognized success token, or no status parameter at all, is SUCCESS;
    - anything else, including a blank status, is UNEXPECTED.
    """
    if error:
        return CallbackOutcome.ERROR

    if status is None:
        return CallbackOutcome.SUCCESS

    normalized = status.strip().lower()
    if normalized in FAILURE_STATUSES:
        return CallbackOutcome.ERROR
    if normalized in SUCCESS_STATUSES:
        return CallbackOutcome.SUCCESS
    return CallbackOutcome.UNEXPECTED


def sanitize_error_message(
    error: str | None,
    error_description: str | None = None,
    default: str = GENERIC_FAILURE_MESSAGE,
) -> str:
    """Build a short user-facing message from the redirect's error fields.

    Prefers ``error_description`` over ``error``.  Control characters and
    anything that looks like markup are removed, whitespace collapsed, and
    the result truncated to :data:`MAX_MESSAGE_LENGTH` characters.
    """
    raw = error_description or error
    if not raw:
        return default

    cleaned = _MARKUP_RE.sub("", raw)
    cleaned = _CONTROL_CHARS_RE.sub(" ", cleaned)
    cleaned = cleaned.replace("<", "").replace(">", "")
    cleaned = _WHITESPACE_RE.sub(" ", cleaned).strip()
    if not cleaned:
        return default

    if len(cleaned) > MAX_MESSAGE_LENGTH:
        cleaned = cleaned[: MAX_MESSAGE_LENGTH - 3].rstrip() + "..."
    return cleaned
