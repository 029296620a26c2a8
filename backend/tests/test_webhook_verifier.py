import json
import time

import pytest

from pipeline.errors import SignatureInvalid
from pipeline.webhook_verifier import WebhookVerifier
from tests.factories import WEBHOOK_SECRET, checkout_session, encode, make_event, sign_payload


@pytest.fixture
def verifier():
    return WebhookVerifier(WEBHOOK_SECRET, tolerance=300)


def test_valid_signature_returns_envelope(verifier):
    event = make_event("checkout.session.completed", checkout_session(), event_id="evt_1")
    payload = encode(event)

    envelope = verifier.verify(payload, sign_payload(payload))

    assert envelope["id"] == "evt_1"
    assert envelope["data"]["object"]["id"] == "cs_test_1"


def test_missing_signature_rejected(verifier):
    payload = encode(make_event("checkout.session.completed", checkout_session()))
    with pytest.raises(SignatureInvalid):
        verifier.verify(payload, None)


def test_wrong_secret_rejected(verifier):
    payload = encode(make_event("checkout.session.completed", checkout_session()))
    with pytest.raises(SignatureInvalid):
        verifier.verify(payload, sign_payload(payload, secret="whsec_other"))


def test_reserialized_body_rejected(verifier):
    event = make_event("checkout.session.completed", checkout_session())
    payload = encode(event)
    signature = sign_payload(payload)

    reserialized = json.dumps(event, indent=2).encode("utf-8")
    with pytest.raises(SignatureInvalid):
        verifier.verify(reserialized, signature)


def test_stale_timestamp_rejected(verifier):
    payload = encode(make_event("checkout.session.completed", checkout_session()))
    with pytest.raises(SignatureInvalid):
        verifier.verify(payload, sign_payload(payload, timestamp=int(time.time()) - 3600))


def test_signed_non_json_body_rejected(verifier):
    payload = b"not json"
    with pytest.raises(SignatureInvalid):
        verifier.verify(payload, sign_payload(payload))


def test_empty_secret_not_allowed():
    with pytest.raises(ValueError):
        WebhookVerifier("")
