"""Error classification and rendering."""

import httpx

from config import ErrorCode
from error_handler import (
    ErrorHandler, PollTimeout, SubmissionError, format_error_for_log, format_error_for_user, mask_secret,
)


def test_studio_errors_keep_their_code():
    record = ErrorHandler().classify_exception(PollTimeout(1200), context={"item_id": "a"})
    assert record.code == ErrorCode.PRODUCTION_TIMEOUT
    assert record.user_message == "Production timeout (20 minutes)"
    assert record.details["item_id"] == "a"
    assert format_error_for_user(record) == "❌ Error: Production timeout (20 minutes)"


def test_submission_error_message():
    error = SubmissionError(403, "forbidden")
    assert error.message == "Server responded with an error (403): forbidden"
    assert error.code == ErrorCode.SUBMISSION_REJECTED


def test_httpx_errors_are_network_errors():
    request = httpx.Request("GET", "https://x.test")
    record = ErrorHandler().classify_exception(httpx.ConnectError("refused", request=request))
    assert record.code == ErrorCode.API_NETWORK_ERROR
    assert record.recoverable


def test_pattern_classification():
    handler = ErrorHandler()
    assert handler.classify_exception(RuntimeError("429 Too Many Requests")).code == ErrorCode.PUBLISH_REJECTED
    assert handler.classify_exception(RuntimeError("401 Unauthorized")).code == ErrorCode.INVALID_CREDENTIAL
    assert handler.classify_exception(RuntimeError("something odd")).code == ErrorCode.UNKNOWN
    assert handler.get_error_summary()[ErrorCode.UNKNOWN.value] == 1


def test_missing_file_is_not_reported_as_a_write_failure():
    handler = ErrorHandler()
    missing = handler.classify_exception(FileNotFoundError(2, "No such file", "/out/a/Whale.mp4"))
    assert missing.code == ErrorCode.FILE_WRITE_ERROR
    assert missing.user_message == "The video file could not be found."
    assert not missing.recoverable

    denied = handler.classify_exception(PermissionError(13, "Permission denied"))
    assert denied.user_message == "Could not access the output file."
    assert "write" not in format_error_for_user(denied)


def test_log_format_includes_traceback():
    try:
        raise ValueError("bad value")
    except ValueError as e:
        record = ErrorHandler().classify_exception(e)
    text = format_error_for_log(record)
    assert text.startswith("[UNKNOWN_ERROR]")
    assert "Traceback" in text


def test_mask_secret():
    assert mask_secret("Bearer abcdefghijkl") == "...ghijkl"
    assert mask_secret("short") == "***"
    assert mask_secret("") == "?"
