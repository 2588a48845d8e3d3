# -*- coding: utf-8 -*-
"""
Error Handling for Sora Studio

Provides:
- Exception taxonomy for production and publishing
- Error classification and codes
- User-friendly error messages
- Logging integration
"""

import json
import re
import traceback
from collections import Counter
from typing import Any, Dict, List, Optional, Tuple
from dataclasses import dataclass
from datetime import datetime, timezone

import httpx

from config import ErrorCode


class StudioError(Exception):
    """Base class for every error the studio raises on purpose"""

    code: ErrorCode = ErrorCode.UNKNOWN
    recoverable: bool = False

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(StudioError):
    """Pre-flight failure: the batch is not started"""
    code = ErrorCode.INVALID_SELECTION

    def __init__(self, message: str, code: ErrorCode = None, **details):
        super().__init__(message, **details)
        if code is not None:
            self.code = code


class SubmissionError(StudioError):
    """Create-job request answered with a non-2xx status"""
    code = ErrorCode.SUBMISSION_REJECTED

    def __init__(self, status_code: int, body: str = ""):
        super().__init__(f"Server responded with an error ({status_code}): {body}", status_code=status_code, body=body)
        self.status_code = status_code
        self.body = body


class TransportError(StudioError):
    """Network-level failure talking to a remote backend"""
    code = ErrorCode.API_NETWORK_ERROR
    recoverable = True


class PollTimeout(StudioError):
    code = ErrorCode.PRODUCTION_TIMEOUT

    def __init__(self, timeout_sec: float):
        minutes = int(timeout_sec // 60)
        super().__init__(f"Production timeout ({minutes} minutes)", timeout_sec=timeout_sec)


class TaskFailedError(StudioError):
    """Backend reported the task as failed"""
    code = ErrorCode.TASK_FAILED


class FetchError(StudioError):
    code = ErrorCode.FETCH_FAILED
    recoverable = True


class PublishError(StudioError):
    """Publishing backend rejected one credential (auth, quota, ...)"""
    code = ErrorCode.PUBLISH_REJECTED

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message, status_code=status_code)
        self.status_code = status_code


class CredentialExhaustedError(StudioError):
    code = ErrorCode.CREDENTIALS_EXHAUSTED


class ScriptGenerationError(StudioError):
    code = ErrorCode.SCRIPT_GENERATION_FAILED


class InvalidTransitionError(StudioError):
    code = ErrorCode.INVALID_TRANSITION


class ItemNotFoundError(StudioError):
    code = ErrorCode.ITEM_NOT_FOUND


@dataclass
class ErrorRecord:
    """Structured error information"""
    code: ErrorCode
    message: str
    user_message: str
    details: Dict[str, Any]
    recoverable: bool
    suggestion: str
    timestamp: datetime = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "user_message": self.user_message,
            "details": self.details,
            "recoverable": self.recoverable,
            "suggestion": self.suggestion,
            "timestamp": self.timestamp.isoformat(),
        }


# Suggestions shown next to known studio errors
SUGGESTIONS: Dict[ErrorCode, str] = {
    ErrorCode.INVALID_SELECTION: "Select at least one eligible item and try again.",
    ErrorCode.MISSING_PUBLISH_TIME: "Set a publish time for every selected video, or apply the smart schedule.",
    ErrorCode.INVALID_CREDENTIAL: "Paste a fresh cURL copied from the browser, including the Authorization header.",
    ErrorCode.SUBMISSION_REJECTED: "Check the active Sora credential or switch to another account.",
    ErrorCode.API_NETWORK_ERROR: "Check your network connection and try again.",
    ErrorCode.PRODUCTION_TIMEOUT: "The job may still finish remotely; resubmit if it does not appear.",
    ErrorCode.TASK_FAILED: "Adjust the visual prompt and resubmit.",
    ErrorCode.FETCH_FAILED: "The download link may have expired. Resubmit the item.",
    ErrorCode.PUBLISH_REJECTED: "Refresh the YouTube access token or add another one.",
    ErrorCode.CREDENTIALS_EXHAUSTED: "Add a valid YouTube access token and publish again.",
    ErrorCode.SCRIPT_GENERATION_FAILED: "Check your Gemini/OpenAI keys or try a different engine.",
    ErrorCode.INVALID_TRANSITION: "Wait for the current run to finish before changing this item.",
    ErrorCode.ITEM_NOT_FOUND: "Reload the item list.",
}


@dataclass(frozen=True)
class _Rule:
    """How one family of foreign exceptions is reported"""
    code: ErrorCode
    message: str
    user_message: str
    recoverable: bool
    suggestion: str
    types: Tuple[type, ...] = ()
    pattern: Optional[re.Pattern] = None

    def matches(self, exception: BaseException) -> bool:
        if self.types and isinstance(exception, self.types):
            return True
        return self.pattern is not None and bool(self.pattern.search(str(exception)))


# First match wins: exception types before message patterns
_RULES: List[_Rule] = [
    _Rule(
        ErrorCode.API_NETWORK_ERROR, "Request timed out", "The request took too long.",
        True, SUGGESTIONS[ErrorCode.API_NETWORK_ERROR], types=(httpx.TimeoutException,),
    ),
    _Rule(
        ErrorCode.API_NETWORK_ERROR, "Network error", "Connection failed. Check network access to the backend.",
        True, SUGGESTIONS[ErrorCode.API_NETWORK_ERROR], types=(httpx.TransportError, ConnectionError),
    ),
    _Rule(
        ErrorCode.API_NETWORK_ERROR, "Invalid API response (not JSON)", "Received an invalid response from the backend.",
        True, "This is usually temporary. Try again.", types=(json.JSONDecodeError,),
    ),
    _Rule(
        ErrorCode.FILE_WRITE_ERROR, "Output file missing", "The video file could not be found.",
        False, "Produce the item again; its local copy is gone and no mirror holds it.",
        types=(FileNotFoundError,),
    ),
    _Rule(
        ErrorCode.FILE_WRITE_ERROR, "File system error", "Could not access the output file.",
        False, "Check file system permissions for the outputs directory.", types=(OSError,),
    ),
    _Rule(
        ErrorCode.PUBLISH_REJECTED, "Rate limit or quota exceeded", "The account hit its rate limit or quota.",
        True, "Wait a moment or add more credentials for rotation.",
        pattern=re.compile(r"429|rate.?limit|quota.?exceeded|uploadLimitExceeded|too.?many.?requests", re.I),
    ),
    _Rule(
        ErrorCode.INVALID_CREDENTIAL, "Authentication failed", "The credential is invalid or expired.",
        False, SUGGESTIONS[ErrorCode.INVALID_CREDENTIAL],
        pattern=re.compile(r"401|403|unauthori[sz]ed|invalid.?credentials|authError|forbidden", re.I),
    ),
    _Rule(
        ErrorCode.API_NETWORK_ERROR, "Network error during API call", "Network connection issue.",
        True, SUGGESTIONS[ErrorCode.API_NETWORK_ERROR],
        pattern=re.compile(r"connection.?(error|reset|refused)|timed?.?out|unreachable|\bdns\b|\bssl\b", re.I),
    ),
]


class ErrorHandler:
    """
    Turns any exception into an ErrorRecord and keeps per-code counts.

        record = error_handler.classify_exception(exc, context={"item_id": "gm-1"})
        item_log = format_error_for_user(record)

    Studio errors carry their own code. Foreign exceptions go through
    _RULES; whatever is left is UNKNOWN.
    """

    def __init__(self, rules: List[_Rule] = None):
        self.rules = rules if rules is not None else _RULES
        self.error_counts: Counter = Counter()

    def classify_exception(self, exception: BaseException, context: Dict[str, Any] = None) -> ErrorRecord:
        details = {
            "exception_type": type(exception).__name__,
            "exception_message": str(exception),
            "traceback": "".join(traceback.format_exception(type(exception), exception, exception.__traceback__)),
            **(context or {}),
        }

        if isinstance(exception, StudioError):
            details.update(exception.details)
            record = ErrorRecord(
                code=exception.code,
                message=exception.message,
                user_message=exception.message,
                details=details,
                recoverable=exception.recoverable,
                suggestion=SUGGESTIONS.get(exception.code, "Try again."),
            )
        else:
            record = self._apply_rules(exception, details)

        self.error_counts[record.code] += 1
        return record

    def _apply_rules(self, exception: BaseException, details: Dict[str, Any]) -> ErrorRecord:
        rule = next((r for r in self.rules if r.matches(exception)), None)
        if rule is None:
            text = str(exception)[:200]
            return ErrorRecord(
                code=ErrorCode.UNKNOWN,
                message=f"Unknown error: {type(exception).__name__}: {text}",
                user_message=text or type(exception).__name__,
                details=details,
                recoverable=True,
                suggestion="Try again. If the problem persists, check the logs for details.",
            )
        return ErrorRecord(
            code=rule.code,
            message=f"{rule.message}: {exception}" if rule.types else rule.message,
            user_message=rule.user_message,
            details=details,
            recoverable=rule.recoverable,
            suggestion=rule.suggestion,
        )

    def get_error_summary(self) -> Dict[str, int]:
        return {code.value: count for code, count in self.error_counts.items()}


error_handler = ErrorHandler()


def format_error_for_user(error: ErrorRecord) -> str:
    """Progress-log line for a failed item"""
    return f"❌ Error: {error.user_message}"


def format_error_for_log(error: ErrorRecord) -> str:
    details = {k: v for k, v in error.details.items() if k != "traceback"}
    text = f"[{error.code.value}] {error.message} (recoverable={error.recoverable}) {details}"
    if error.details.get("traceback"):
        text += f"\nTraceback:\n{error.details['traceback']}"
    return text


def mask_secret(value: str, visible: int = 6) -> str:
    """Show only the tail of a credential"""
    if not value:
        return "?"
    return f"...{value[-visible:]}" if len(value) > visible else "***"
