"""Tests for masking helpers."""
from leasepay.utils.masking import fingerprint, mask_phone, mask_reference


def test_mask_phone_keeps_last_three_digits():
    assert mask_phone("254708374149") == "***149"
    assert mask_phone("+254 708 374 149") == "***149"
    assert mask_phone(254708374149) == "***149"
    assert mask_phone(None) == "***"
    assert mask_phone("n/a") == "***"


def test_mask_reference_hides_short_values_entirely():
    assert mask_reference("ABCD1234") == "***1234"
    assert mask_reference("ABC") == "***"
    assert mask_reference(None) == "***"


def test_fingerprint_is_stable_and_opaque():
    first = fingerprint("test-webhook-token")

    assert first == fingerprint("test-webhook-token")
    assert first.startswith("sha256:")
    assert "test-webhook-token" not in first
    assert fingerprint("other-token") != first
    assert fingerprint(None) is None
    assert fingerprint("") is None
