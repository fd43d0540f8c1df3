from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from leasepay.models.scheduler_lock import SchedulerLock
from leasepay.services.scheduler_lock import (
    LOCK_NAME,
    describe_scheduler_lock,
    refresh_scheduler_lock,
    release_scheduler_lock,
    try_acquire_scheduler_lock,
)


def test_scheduler_lock_is_reentrant_for_owner(db_session):
    assert try_acquire_scheduler_lock(db_session=db_session) is True
    assert try_acquire_scheduler_lock(db_session=db_session) is True

    release_scheduler_lock(db_session=db_session)
    assert describe_scheduler_lock(db_session=db_session)["present"] is False


def test_lock_cannot_be_taken_if_not_expired(monkeypatch, db_session):
    monkeypatch.setattr("leasepay.services.scheduler_lock._owner_id", lambda: "node-A")
    assert try_acquire_scheduler_lock(db_session=db_session, ttl_seconds=300)

    monkeypatch.setattr("leasepay.services.scheduler_lock._owner_id", lambda: "node-B")
    assert try_acquire_scheduler_lock(db_session=db_session, ttl_seconds=300) is False
    assert refresh_scheduler_lock(db_session=db_session) is False

    # node-B cannot release node-A's lease either.
    release_scheduler_lock(db_session=db_session)
    assert describe_scheduler_lock(db_session=db_session)["owner"] == "node-A"


def test_lock_can_be_reacquired_after_expiry(monkeypatch, db_session):
    monkeypatch.setattr("leasepay.services.scheduler_lock._owner_id", lambda: "node-A")
    assert try_acquire_scheduler_lock(db_session=db_session, ttl_seconds=60)

    lock = db_session.execute(select(SchedulerLock).where(SchedulerLock.name == LOCK_NAME)).scalar_one()
    lock.expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)
    db_session.commit()

    monkeypatch.setattr("leasepay.services.scheduler_lock._owner_id", lambda: "node-B")
    assert try_acquire_scheduler_lock(db_session=db_session, ttl_seconds=300)
    assert describe_scheduler_lock(db_session=db_session)["owner"] == "node-B"


def test_refresh_extends_own_lease(monkeypatch, db_session):
    monkeypatch.setattr("leasepay.services.scheduler_lock._owner_id", lambda: "node-A")
    assert try_acquire_scheduler_lock(db_session=db_session, ttl_seconds=10)

    assert refresh_scheduler_lock(db_session=db_session, ttl_seconds=600) is True

    info = describe_scheduler_lock(db_session=db_session)
    assert info["expires_in_seconds"] > 500


def test_describe_scheduler_lock_contains_expiry(db_session, monkeypatch):
    monkeypatch.setattr("leasepay.services.scheduler_lock._owner_id", lambda: "node-A")
    assert try_acquire_scheduler_lock(db_session=db_session, ttl_seconds=60)

    info = describe_scheduler_lock(db_session=db_session)
    assert info.get("present") is True
    assert info["status"] == "owned_by_self"
    assert "age_seconds" in info
    assert "expires_in_seconds" in info
    assert info["stale"] is False
