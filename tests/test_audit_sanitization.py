from leasepay.models.audit import AuditLog
from leasepay.utils.audit import log_audit


def test_audit_log_masks_sensitive_fields(db_session):
    payload = {
        "phone": "254708374149",
        "provider_receipt_number": "QJK7TY12AB",
        "passkey": "bfb279f9aa9bdbcf",
        "amount": "500.00",
        "nested": [{"PhoneNumber": 254712345678, "MpesaReceiptNumber": "NLJ7RT61SV"}],
    }

    log_audit(
        db_session,
        actor="test",
        action="MASK_TEST",
        entity="Payment",
        entity_id=1,
        data=payload,
    )
    db_session.commit()

    entry = (
        db_session.query(AuditLog)
        .filter(AuditLog.action == "MASK_TEST")
        .order_by(AuditLog.id.desc())
        .first()
    )
    assert entry is not None
    assert entry.data_json["phone"] == "***149"
    assert entry.data_json["provider_receipt_number"] == "***12AB"
    assert entry.data_json["passkey"] == "***"
    assert entry.data_json["amount"] == "500.00"
    assert entry.data_json["nested"][0]["PhoneNumber"] == "***678"
    assert entry.data_json["nested"][0]["MpesaReceiptNumber"] == "***61SV"


def test_audit_log_does_not_commit(db_session):
    log_audit(db_session, actor="test", action="STAGED", entity="Payment", entity_id=None)
    db_session.rollback()

    assert db_session.query(AuditLog).filter(AuditLog.action == "STAGED").first() is None
