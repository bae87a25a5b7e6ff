from api.middleware.logging import mask_contact, redact
from api.middleware.request_id import lending_ids_from_path
from core.logging_config import redact_secrets


def test_path_ids_are_extracted_for_log_context():
    assert lending_ids_from_path("/api/v1/deposits/12/return") == {"transaction_id": 12}
    assert lending_ids_from_path("/status/7") == {"transaction_id": 7}
    assert lending_ids_from_path("/api/v1/payments/31/confirm") == {"payment_id": 31}
    assert lending_ids_from_path("/api/v1/locations/4/payments") == {"location_id": 4}
    assert lending_ids_from_path("/api/v1/payments/pending") == {}


def test_request_payloads_are_redacted():
    payload = {
        "borrower_name": "Leah F",
        "borrower_email": "leah@gemach.test",
        "borrower_phone": "5551234",
        "token": "a" * 64,
        "items": [{"client_secret": "pi_1_secret", "refund_amount": 10.0}],
    }
    cleaned = redact(payload)
    assert cleaned["borrower_name"] == "Leah F"
    assert cleaned["borrower_email"] == "le***st"
    assert cleaned["borrower_phone"] == "55***34"
    assert cleaned["token"] == "***"
    assert cleaned["items"] == [{"client_secret": "***", "refund_amount": 10.0}]
    assert mask_contact(None) is None
    assert mask_contact("123") == "***"


def test_log_events_never_carry_magic_tokens():
    event = redact_secrets(None, "info", {"event": "setup", "raw_token": "abc", "transaction_id": 3})
    assert event == {"event": "setup", "raw_token": "***", "transaction_id": 3}
