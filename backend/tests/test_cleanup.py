# backend/tests/test_cleanup.py
from datetime import timedelta

import pytest
from sqlalchemy import select

from tenantlink.core.rate_limit import RateLimiter
from tenantlink.models import AccessGrant, InviteToken, RateLimitCounter
from tenantlink.services.cleanup import run_cleanup
from tenantlink.services.invite_acceptance import accept_invite
from tenantlink.services.invite_issue import generate_invite, revoke_invite
from tenantlink.services.invite_tokens import utcnow


def _ids(db):
    db.expire_all()
    return set(db.execute(select(InviteToken.id)).scalars().all())


def test_cleanup_deletes_only_tokens_past_retention(db, make_property):
    prop = make_property()
    now = utcnow()

    active = generate_invite(db, owner_id="owner-1", resource_id=prop.id, now=now)

    # expired 2 days ago: inside the 7 day retention
    recently_expired = generate_invite(
        db, owner_id="owner-1", resource_id=prop.id, ttl=timedelta(days=1), now=now - timedelta(days=3)
    )
    # expired 20 days ago
    long_expired = generate_invite(
        db, owner_id="owner-1", resource_id=prop.id, ttl=timedelta(days=1), now=now - timedelta(days=21)
    )

    old_exhausted = generate_invite(db, owner_id="owner-1", resource_id=prop.id, max_uses=1, now=now - timedelta(days=10), ttl=timedelta(days=30))
    accept_invite(db, old_exhausted.token, grantee_id="tenant-1", now=now - timedelta(days=9))

    old_revoked = generate_invite(db, owner_id="owner-1", resource_id=prop.id, now=now - timedelta(days=40), ttl=timedelta(days=100))
    revoke_invite(db, owner_id="owner-1", token_id=old_revoked.invite.id, now=now - timedelta(days=31))

    recent_revoked = generate_invite(db, owner_id="owner-1", resource_id=prop.id, now=now)
    revoke_invite(db, owner_id="owner-1", token_id=recent_revoked.invite.id, now=now - timedelta(days=1))

    result = run_cleanup(db, now=now)

    assert result.tokens_deleted == 3
    assert _ids(db) == {active.invite.id, recently_expired.invite.id, recent_revoked.invite.id}

    # Grants outlive the invite that produced them.
    grants = db.execute(select(AccessGrant).where(AccessGrant.grantee_id == "tenant-1")).scalars().all()
    assert len(grants) == 1


def test_cleanup_deletes_closed_rate_windows(db):
    now = utcnow()
    limiter = RateLimiter("validate-invite", limit=5, window_seconds=60)
    epoch = now.timestamp()

    limiter.check_and_increment(db, "old", now=epoch - 600)
    limiter.check_and_increment(db, "current", now=epoch)

    result = run_cleanup(db, now=now)

    assert result.counters_deleted == 1
    keys = set(db.execute(select(RateLimitCounter.limiter_key)).scalars().all())
    assert keys == {"validate-invite:current"}


def test_cleanup_is_a_no_op_on_an_empty_store(db):
    result = run_cleanup(db)
    assert result.tokens_deleted == 0
    assert result.counters_deleted == 0
    assert set(result.as_dict()) == {"tokens_deleted", "counters_deleted", "cleaned_at"}


def test_celery_task_runs_cleanup(db, session_factory, make_property, monkeypatch):
    from tenantlink.tasks import cleanup_tasks

    prop = make_property()
    now = utcnow()
    generate_invite(db, owner_id="owner-1", resource_id=prop.id, ttl=timedelta(days=1), now=now - timedelta(days=30))

    monkeypatch.setattr(cleanup_tasks, "SessionLocal", session_factory)

    out = cleanup_tasks.cleanup_invite_tokens()
    assert out["tokens_deleted"] == 1


def test_celery_task_logs_and_reraises(session_factory, monkeypatch, caplog):
    from tenantlink.tasks import cleanup_tasks

    def _boom(db, **kwargs):
        raise RuntimeError("store exploded")

    monkeypatch.setattr(cleanup_tasks, "SessionLocal", session_factory)
    monkeypatch.setattr(cleanup_tasks, "run_cleanup", _boom)

    with caplog.at_level("ERROR"):
        with pytest.raises(RuntimeError):
            cleanup_tasks.cleanup_invite_tokens()

    assert "Invite cleanup run failed" in caplog.text


def test_daily_schedule_is_registered():
    from tenantlink.worker import celery_app

    entry = celery_app.conf.beat_schedule["invite-cleanup-daily"]
    assert entry["task"] == "tenantlink.tasks.cleanup_tasks.cleanup_invite_tokens"
