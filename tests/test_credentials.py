"""Credential pool, rotation and cURL parsing."""

import pytest

from config import CredentialKind, ErrorCode
from credentials import CredentialPool, parse_headers_from_curl, require_authorization
from error_handler import ValidationError

from conftest import SORA_CURL


def test_select_sets_active_credential():
    pool = CredentialPool(CredentialKind.SORA, ["a", "b", "c"])
    assert pool.active().value == "a"

    pool.select(2)

    assert pool.active().value == "c"
    assert pool.active().position == 2


def test_select_out_of_range_is_rejected():
    pool = CredentialPool(CredentialKind.SORA, ["a"])
    with pytest.raises(ValidationError) as exc_info:
        pool.select(3)
    assert exc_info.value.code == ErrorCode.INVALID_CREDENTIAL


def test_empty_values_are_dropped_and_empty_add_rejected():
    pool = CredentialPool(CredentialKind.YOUTUBE, ["tok-1", "  ", ""])
    assert pool.values == ["tok-1"]
    with pytest.raises(ValidationError):
        pool.add("   ")


def test_remove_resets_active_index_when_it_overflows():
    pool = CredentialPool(CredentialKind.SORA, ["a", "b"], active_index=1)
    pool.remove(1)
    assert pool.active_index == 0
    assert pool.active().value == "a"


def test_active_is_none_for_empty_pool():
    assert CredentialPool(CredentialKind.SORA).active() is None


def test_rotation_drains_working_copy_without_touching_pool():
    pool = CredentialPool(CredentialKind.YOUTUBE, ["A", "B", "C"])
    rotation = pool.working_copy()

    assert rotation.current.value == "A"
    assert rotation.rotate_next().value == "B"
    assert rotation.rotate_next().value == "C"
    assert rotation.rotate_next() is None
    assert rotation.exhausted
    assert [e.value for e in rotation.discarded] == ["A", "B", "C"]

    assert pool.values == ["A", "B", "C"]


def test_working_copy_is_independent_of_later_pool_edits():
    pool = CredentialPool(CredentialKind.YOUTUBE, ["A", "B"])
    rotation = pool.working_copy()
    pool.add("C")
    pool.remove(0)
    assert [e.value for e in rotation.remaining] == ["A", "B"]


def test_to_dict_never_exposes_full_values():
    pool = CredentialPool(CredentialKind.GEMINI, ["AIzaSyVerySecretKey123456"])
    preview = pool.to_dict()["entries"][0]["preview"]
    assert preview == "...123456"
    assert "VerySecret" not in str(pool.to_dict())


def test_parse_headers_from_curl_lowercases_names():
    headers = parse_headers_from_curl(SORA_CURL)
    assert headers["authorization"] == "Bearer test-token-abcdef123456"
    assert headers["openai-sentinel-token"] == "sentinel-xyz"
    assert headers["accept"] == "*/*"


def test_parse_headers_handles_double_quotes():
    headers = parse_headers_from_curl('curl "https://x" -H "Authorization: Bearer abc"')
    assert headers == {"authorization": "Bearer abc"}


def test_require_authorization():
    with pytest.raises(ValidationError) as exc_info:
        require_authorization(parse_headers_from_curl("curl 'https://x' -H 'accept: */*'"))
    assert exc_info.value.code == ErrorCode.INVALID_CREDENTIAL
    assert require_authorization({"authorization": "Bearer x"})["authorization"] == "Bearer x"
