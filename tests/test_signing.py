"""Callback digest construction and verification."""

import base64
import hashlib
import hmac

import pytest

from cvpay.services.gateway.signing import (
    InvalidSignature,
    SignatureVerifier,
    build_string_to_sign,
    compute_digest,
    parse_signed_fields,
)


TS = "2026-10-18T10:15:00+03:00"
FIELDS = ["transid", "order_id", "reference", "resultcode", "result", "amount"]
BODY = {
    "result": "SUCCESS",
    "resultcode": "000",
    "order_id": "CV-1-2",
    "transid": "TXN123",
    "reference": "REF1",
    "amount": "5000",
}


def test_string_to_sign_follows_field_order_and_skips_missing():
    data = {"order_id": "CV-1-2", "amount": 5000.0, "flag": True, "reference": None}

    message = build_string_to_sign(TS, data, ["amount", "order_id", "reference", "flag", "absent"])

    assert message == f"timestamp={TS}&amount=5000&order_id=CV-1-2&flag=true"


def test_digest_is_base64_hmac_sha256():
    message = build_string_to_sign(TS, BODY, FIELDS)
    expected = base64.b64encode(hmac.new(b"s3cret", message.encode(), hashlib.sha256).digest()).decode()

    assert compute_digest("s3cret", TS, BODY, FIELDS) == expected


def test_parse_signed_fields_tolerates_spaces_and_empty():
    assert parse_signed_fields(" transid, order_id ,,amount") == ["transid", "order_id", "amount"]
    assert parse_signed_fields(None) == []


def test_verifier_accepts_valid_digest():
    verifier = SignatureVerifier("s3cret")

    verifier.verify(TS, compute_digest("s3cret", TS, BODY, FIELDS), ",".join(FIELDS), BODY)


def test_verifier_rejects_tampered_body():
    verifier = SignatureVerifier("s3cret")
    digest = compute_digest("s3cret", TS, BODY, FIELDS)

    with pytest.raises(InvalidSignature):
        verifier.verify(TS, digest, ",".join(FIELDS), {**BODY, "resultcode": "999"})


def test_verifier_rejects_wrong_secret_and_missing_headers():
    verifier = SignatureVerifier("s3cret")

    with pytest.raises(InvalidSignature):
        verifier.verify(TS, compute_digest("other", TS, BODY, FIELDS), ",".join(FIELDS), BODY)
    with pytest.raises(InvalidSignature):
        verifier.verify(None, "abc", ",".join(FIELDS), BODY)
    with pytest.raises(InvalidSignature):
        verifier.verify(TS, None, ",".join(FIELDS), BODY)


def test_verifier_rejects_non_ascii_digest_without_crashing():
    with pytest.raises(InvalidSignature):
        SignatureVerifier("s3cret").verify(TS, "ñot-base64", ",".join(FIELDS), BODY)


def test_verifier_without_secret_is_disabled():
    verifier = SignatureVerifier("")

    assert not verifier.enabled
    verifier.verify(None, None, None, BODY)
