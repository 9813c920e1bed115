import hashlib
import hmac

import pytest

from venice.config import configure
from venice.exceptions import SignatureError
from venice.webhooks import (
    WebhookSignature, WebhookVerifier, get_webhook_headers, verify_webhook_signature
)

SECRET = "whsec_test"
TIMESTAMP = "1700000000"
PAYLOAD = b'{"a":1}'


def expected_signature(payload=PAYLOAD, timestamp=TIMESTAMP, secret=SECRET):
    message = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


@pytest.fixture
def verifier():
    return WebhookVerifier(tolerance_window=300, clock=lambda: 1700000000)


def test_sign_matches_reference_hmac(verifier):
    assert verifier.sign(PAYLOAD, TIMESTAMP, SECRET) == expected_signature()


def test_valid_signature_accepted(verifier):
    verifier.verify(PAYLOAD, expected_signature(), TIMESTAMP, SECRET)
    assert verifier.is_valid(PAYLOAD, expected_signature(), TIMESTAMP, SECRET)


def test_uppercase_hex_accepted(verifier):
    assert verifier.is_valid(PAYLOAD, expected_signature().upper(), TIMESTAMP, SECRET)


def test_str_payload_and_int_timestamp(verifier):
    assert verifier.is_valid('{"a":1}', expected_signature(), 1700000000, SECRET)


def test_altered_last_hex_digit_rejected(verifier):
    signature = expected_signature()
    altered = signature[:-1] + ("0" if signature[-1] != "0" else "1")

    with pytest.raises(SignatureError) as exc_info:
        verifier.verify(PAYLOAD, altered, TIMESTAMP, SECRET)
    assert exc_info.value.reason == "mismatch"


def test_wrong_secret_rejected(verifier):
    with pytest.raises(SignatureError) as exc_info:
        verifier.verify(PAYLOAD, expected_signature(), TIMESTAMP, "whsec_other")
    assert exc_info.value.reason == "mismatch"


def test_payload_bit_flip_rejected(verifier):
    tampered = bytes([PAYLOAD[0] ^ 0x01]) + PAYLOAD[1:]
    assert not verifier.is_valid(tampered, expected_signature(), TIMESTAMP, SECRET)


@pytest.mark.parametrize("now, valid", [
    (1700000000 + 300, True),
    (1700000000 - 300, True),
    (1700000000 + 301, False),
    (1700000000 - 301, False),
])
def test_tolerance_window(now, valid):
    verifier = WebhookVerifier(tolerance_window=300, clock=lambda: now)
    assert verifier.is_valid(PAYLOAD, expected_signature(), TIMESTAMP, SECRET) is valid


def test_expired_reason():
    verifier = WebhookVerifier(tolerance_window=300, clock=lambda: 1700001000)

    with pytest.raises(SignatureError) as exc_info:
        verifier.verify(PAYLOAD, expected_signature(), TIMESTAMP, SECRET)
    assert exc_info.value.reason == "expired"


@pytest.mark.parametrize("signature", [
    "abc",
    "zz" * 32,
    "0x" + "ab" * 31,
])
def test_malformed_signature(verifier, signature):
    with pytest.raises(SignatureError) as exc_info:
        verifier.verify(PAYLOAD, signature, TIMESTAMP, SECRET)
    assert exc_info.value.reason == "malformed_signature"


@pytest.mark.parametrize("timestamp", ["17e8", "-1700000000", "1700000000.5", "soon"])
def test_malformed_timestamp(verifier, timestamp):
    with pytest.raises(SignatureError) as exc_info:
        verifier.verify(PAYLOAD, expected_signature(), timestamp, SECRET)
    assert exc_info.value.reason == "malformed_timestamp"


@pytest.mark.parametrize("payload, signature, timestamp, secret", [
    (None, "ab", TIMESTAMP, SECRET),
    (PAYLOAD, "", TIMESTAMP, SECRET),
    (PAYLOAD, None, TIMESTAMP, SECRET),
    (PAYLOAD, "ab", None, SECRET),
    (PAYLOAD, "ab", "", SECRET),
    (PAYLOAD, "ab", TIMESTAMP, ""),
])
def test_missing_input(verifier, payload, signature, timestamp, secret):
    with pytest.raises(SignatureError) as exc_info:
        verifier.verify(payload, signature, timestamp, secret)
    assert exc_info.value.reason == "missing_input"


def test_clock_read_once():
    calls = []

    def clock():
        calls.append(1)
        return 1700000000

    WebhookVerifier(clock=clock).verify(PAYLOAD, expected_signature(), TIMESTAMP, SECRET)

    assert len(calls) == 1


def test_signature_from_headers(verifier):
    headers = {"X-Venice-Signature": expected_signature(), "X-VENICE-TIMESTAMP": TIMESTAMP}

    signature = WebhookSignature.from_headers(headers)

    assert signature.signature_hex == expected_signature()
    assert signature.timestamp == TIMESTAMP
    verifier.verify_signature(signature, PAYLOAD, SECRET)


def test_signature_tolerance_override():
    verifier = WebhookVerifier(tolerance_window=300, clock=lambda: 1700000600)
    signature = WebhookSignature(expected_signature(), TIMESTAMP, tolerance_window=900)

    verifier.verify_signature(signature, PAYLOAD, SECRET)


def test_get_webhook_headers_missing():
    assert get_webhook_headers({}) == (None, None)


def test_verify_webhook_signature_helper(mocker):
    mock_time = mocker.patch("venice.webhooks.time")
    mock_time.time.return_value = 1700000000

    assert verify_webhook_signature(PAYLOAD, expected_signature(), TIMESTAMP, SECRET)
    assert not verify_webhook_signature(PAYLOAD, "00" * 32, TIMESTAMP, SECRET)


def test_configured_secret_used_when_omitted(verifier):
    configure(webhook_secret=SECRET)

    verifier.verify(PAYLOAD, expected_signature(), TIMESTAMP)
    assert verifier.is_valid(PAYLOAD, expected_signature(), TIMESTAMP)


def test_missing_secret_without_configuration(verifier):
    with pytest.raises(SignatureError) as exc_info:
        verifier.verify(PAYLOAD, expected_signature(), TIMESTAMP)
    assert exc_info.value.reason == "missing_input"


def test_configured_tolerance_is_default():
    configure(webhook_tolerance=900)

    verifier = WebhookVerifier(clock=lambda: 1700000600)

    assert verifier.tolerance_window == 900
    verifier.verify(PAYLOAD, expected_signature(), TIMESTAMP, SECRET)


def test_explicit_tolerance_beats_configuration():
    configure(webhook_tolerance=900)

    verifier = WebhookVerifier(tolerance_window=300, clock=lambda: 1700000600)

    assert not verifier.is_valid(PAYLOAD, expected_signature(), TIMESTAMP, SECRET)


def test_helper_uses_configured_secret(mocker):
    configure(webhook_secret=SECRET)
    mock_time = mocker.patch("venice.webhooks.time")
    mock_time.time.return_value = 1700000000

    assert verify_webhook_signature(PAYLOAD, expected_signature(), TIMESTAMP)
