"""
Tests for HMAC request signatures.
"""
import hashlib
import hmac

import pytest

from movie_api_server.signatures import (
    DEFAULT_MAX_SKEW_MS,
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    RequestContext,
    SignatureFailure,
    compute_signature,
    parse_timestamp,
    sign_request,
    signing_payload,
    verify_signature,
)

NOW_MS = 1_740_843_000_000
SECRET = "mk_abc"


def signed_context(method="POST", path="/api/movies", body='{"title": "Alien"}', timestamp_ms=NOW_MS, **overrides):
    headers = sign_request(SECRET, method, path, body, timestamp_ms)
    headers.update(overrides)
    return RequestContext(method=method, path=path, body=body, headers=headers)


class TestSigningPayload:
    """Test the message that gets signed."""

    def test_concatenates_parts(self):
        assert signing_payload("123", "post", "/api/movies", "{}") == "123POST/api/movies{}"

    @pytest.mark.parametrize("method", ["GET", "HEAD"])
    def test_bodyless_methods_drop_body(self, method):
        assert signing_payload("123", method, "/api/movies", "ignored") == f"123{method}/api/movies"

    def test_compute_signature_is_hmac_sha256_hex(self):
        expected = hmac.new(b"key", b"1GET/x", hashlib.sha256).hexdigest()
        assert compute_signature("key", "1", "GET", "/x") == expected


class TestVerifySignature:
    """Test signature verification outcomes."""

    def test_valid_signature(self):
        assert verify_signature(SECRET, signed_context(), NOW_MS) is None

    def test_header_names_are_case_insensitive(self):
        headers = {k.lower(): v for k, v in sign_request(SECRET, "GET", "/api/movies", "", NOW_MS).items()}
        context = RequestContext(method="GET", path="/api/movies", headers=headers)

        assert verify_signature(SECRET, context, NOW_MS) is None

    def test_missing_timestamp(self):
        context = RequestContext(headers={SIGNATURE_HEADER: "abc"})
        assert verify_signature(SECRET, context, NOW_MS) == SignatureFailure.MISSING_SIGNATURE

    def test_missing_signature(self):
        context = RequestContext(headers={TIMESTAMP_HEADER: str(NOW_MS)})
        assert verify_signature(SECRET, context, NOW_MS) == SignatureFailure.MISSING_SIGNATURE

    @pytest.mark.parametrize("offset", [DEFAULT_MAX_SKEW_MS, -DEFAULT_MAX_SKEW_MS, 0])
    def test_timestamp_inside_window(self, offset):
        context = signed_context(timestamp_ms=NOW_MS + offset)
        assert verify_signature(SECRET, context, NOW_MS) is None

    @pytest.mark.parametrize("offset", [DEFAULT_MAX_SKEW_MS + 1, -(DEFAULT_MAX_SKEW_MS + 1)])
    def test_timestamp_outside_window(self, offset):
        context = signed_context(timestamp_ms=NOW_MS + offset)
        assert verify_signature(SECRET, context, NOW_MS) == SignatureFailure.TIMESTAMP_EXPIRED

    def test_unparseable_timestamp_is_expired(self):
        context = RequestContext(headers={SIGNATURE_HEADER: "abc", TIMESTAMP_HEADER: "yesterday"})
        assert verify_signature(SECRET, context, NOW_MS) == SignatureFailure.TIMESTAMP_EXPIRED

    @pytest.mark.parametrize("raw", [f"{NOW_MS}.0", f"{NOW_MS}abc", f" {NOW_MS}"])
    def test_timestamp_with_trailing_text_uses_leading_integer(self, raw):
        signature = compute_signature(SECRET, raw, "GET", "/api/movies")
        context = RequestContext(
            method="GET",
            path="/api/movies",
            headers={TIMESTAMP_HEADER: raw, SIGNATURE_HEADER: signature},
        )

        assert verify_signature(SECRET, context, NOW_MS) is None

    def test_raw_header_is_what_gets_signed(self):
        # Signing the parsed value instead of the header text must not verify
        raw = f"{NOW_MS}.0"
        signature = compute_signature(SECRET, str(NOW_MS), "GET", "/api/movies")
        context = RequestContext(
            method="GET",
            path="/api/movies",
            headers={TIMESTAMP_HEADER: raw, SIGNATURE_HEADER: signature},
        )

        assert verify_signature(SECRET, context, NOW_MS) == SignatureFailure.SIGNATURE_MISMATCH

    def test_tampered_body(self):
        context = signed_context()
        tampered = RequestContext(
            method=context.method,
            path=context.path,
            body='{"title": "Aliens"}',
            headers=context.headers,
        )
        assert verify_signature(SECRET, tampered, NOW_MS) == SignatureFailure.SIGNATURE_MISMATCH

    def test_wrong_secret(self):
        assert verify_signature("mk_other", signed_context(), NOW_MS) == SignatureFailure.SIGNATURE_MISMATCH

    def test_signature_for_other_timestamp(self):
        context = signed_context(**{TIMESTAMP_HEADER: str(NOW_MS + 1)})
        assert verify_signature(SECRET, context, NOW_MS) == SignatureFailure.SIGNATURE_MISMATCH

    def test_custom_skew(self):
        context = signed_context(timestamp_ms=NOW_MS - 2_000)
        assert verify_signature(SECRET, context, NOW_MS, max_skew_ms=1_000) == SignatureFailure.TIMESTAMP_EXPIRED


class TestRequestContext:
    def test_is_signed(self):
        assert RequestContext(headers={"x-signature": "abc"}).is_signed
        assert not RequestContext(headers={"X-Signature": ""}).is_signed
        assert not RequestContext().is_signed


class TestParseTimestamp:
    @pytest.mark.parametrize("raw, expected", [
        ("1740843000000", 1740843000000),
        ("1740843000000.0", 1740843000000),
        ("1740843000000abc", 1740843000000),
        ("  42", 42),
        ("-5", -5),
    ])
    def test_leading_integer(self, raw, expected):
        assert parse_timestamp(raw) == expected

    @pytest.mark.parametrize("raw", ["", "yesterday", ".5", "abc123"])
    def test_no_leading_integer(self, raw):
        assert parse_timestamp(raw) is None
