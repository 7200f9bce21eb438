import hashlib

from paygate.payments.correlation import build_order_reference, user_id_from_reference
from paygate.payments.signatures import (
    constant_time_equals,
    generate_signature,
    hmac_hex,
    is_timestamp_valid,
    parse_signature_header,
    verify_signature,
)
from paygate.core.errors import UnrecognizedCorrelationId

import pytest


def test_generate_and_verify_signature():
    sig = generate_signature("secret", 1_700_000_000, b'{"a":1}')
    assert sig.startswith("sha256=")
    assert verify_signature("secret", 1_700_000_000, '{"a":1}', sig)
    assert not verify_signature("secret", 1_700_000_001, '{"a":1}', sig)
    assert not verify_signature("other", 1_700_000_000, '{"a":1}', sig)
    assert not verify_signature("secret", 1_700_000_000, '{"a":2}', sig)
    assert not verify_signature("secret", 1_700_000_000, '{"a": 1}', sig)
    assert generate_signature("secret", 1_700_000_000, '{"a":1}') == sig


def test_constant_time_equals_ignores_case_and_rejects_empty():
    digest = hmac_hex("k", "msg")
    assert constant_time_equals(digest, digest.upper())
    assert not constant_time_equals(digest, "")
    assert not constant_time_equals(digest, None)


def test_hmac_hex_digest_choice():
    assert len(hmac_hex("k", "msg")) == 64
    assert len(hmac_hex("k", "msg", digest=hashlib.sha512)) == 128


def test_timestamp_tolerance():
    assert is_timestamp_valid(1000, 300, now=1200)
    assert not is_timestamp_valid(1000, 300, now=1301)
    assert is_timestamp_valid(1000, 0, now=999_999)


def test_parse_signature_header():
    assert parse_signature_header("ts=123;h1=abc") == {"ts": "123", "h1": "abc"}
    assert parse_signature_header("garbage;ts=1") == {"ts": "1"}
    assert parse_signature_header(None) == {}


def test_order_reference_round_trip_with_dashed_user_id():
    ref = build_order_reference("3f2c-uuid-like-id", now_ms=1_700_000_000_000)
    assert ref == "3f2c-uuid-like-id-1700000000000"
    assert user_id_from_reference(ref) == "3f2c-uuid-like-id"


@pytest.mark.parametrize("reference", [None, "", "nodash", "user-abc", "-123"])
def test_unrecognized_order_reference(reference):
    with pytest.raises(UnrecognizedCorrelationId):
        user_id_from_reference(reference)
