# backend/tests/test_invite_accept.py
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from tenantlink.core.errors import CapacityReached, InviteRejected, InviteRevoked
from tenantlink.models import AccessGrant, InviteToken
from tenantlink.services import invite_acceptance
from tenantlink.services.invite_acceptance import accept_invite
from tenantlink.services.invite_issue import generate_invite, revoke_invite
from tenantlink.services.invite_tokens import generate_invite_token, utcnow


def _accept(client, auth_headers, token, sub="tenant-1", email=None):
    return client.post("/api/v1/invites/accept", json={"token": token}, headers=auth_headers(sub, email))


def _grant_count(db, resource_id) -> int:
    return db.execute(
        select(func.count()).select_from(AccessGrant).where(AccessGrant.resource_id == resource_id)
    ).scalar_one()


def test_single_use_invite_links_first_tenant_only(client, db, make_property, auth_headers):
    prop = make_property()
    issued = generate_invite(db, owner_id="owner-1", resource_id=prop.id, max_uses=1)

    r = _accept(client, auth_headers, issued.token, sub="tenant-1")
    assert r.status_code == 200, r.text
    assert r.json() == {"success": True, "resource_id": prop.id, "already_linked": False}

    r = _accept(client, auth_headers, issued.token, sub="tenant-2")
    assert r.status_code == 409
    body = r.json()
    assert body["success"] is False
    assert body["error"] == "capacity_reached"
    assert body["code"] == "CAPACITY_REACHED"

    db.refresh(issued.invite)
    assert issued.invite.use_count == 1
    assert issued.invite.exhausted_at is not None
    assert issued.invite.last_used_at is not None


def test_multi_use_invite_counts_each_tenant(client, db, make_property, auth_headers):
    prop = make_property()
    issued = generate_invite(db, owner_id="owner-1", resource_id=prop.id, max_uses=3)

    for i in range(3):
        assert _accept(client, auth_headers, issued.token, sub=f"tenant-{i}").status_code == 200

    assert _accept(client, auth_headers, issued.token, sub="tenant-9").status_code == 409
    assert _grant_count(db, prop.id) == 3


def test_replay_by_same_tenant_is_idempotent(client, db, make_property, auth_headers):
    prop = make_property()
    issued = generate_invite(db, owner_id="owner-1", resource_id=prop.id, max_uses=1)

    assert _accept(client, auth_headers, issued.token).json()["already_linked"] is False

    # Token is now exhausted, but the grantee already holds the grant it produced.
    r = _accept(client, auth_headers, issued.token)
    assert r.status_code == 200
    assert r.json()["already_linked"] is True

    db.refresh(issued.invite)
    assert issued.invite.use_count == 1
    assert _grant_count(db, prop.id) == 1


def test_tenant_already_linked_through_another_invite(client, db, make_property, auth_headers):
    prop = make_property()
    first = generate_invite(db, owner_id="owner-1", resource_id=prop.id)
    second = generate_invite(db, owner_id="owner-1", resource_id=prop.id)

    assert _accept(client, auth_headers, first.token).status_code == 200
    r = _accept(client, auth_headers, second.token)
    assert r.status_code == 200
    assert r.json()["already_linked"] is True

    db.refresh(second.invite)
    assert second.invite.use_count == 0
    assert _grant_count(db, prop.id) == 1


def test_unknown_token_is_404_invalid(client, auth_headers):
    r = _accept(client, auth_headers, generate_invite_token())
    assert r.status_code == 404
    assert r.json()["error"] == "invalid"


def test_accept_requires_authentication(client, db, make_property, auth_headers):
    prop = make_property()
    issued = generate_invite(db, owner_id="owner-1", resource_id=prop.id)

    assert client.post("/api/v1/invites/accept", json={"token": issued.token}).status_code == 401
    r = client.post(
        "/api/v1/invites/accept",
        json={"token": issued.token},
        headers=auth_headers("tenant-1", token_type="refresh"),
    )
    assert r.status_code == 401
    r = client.post(
        "/api/v1/invites/accept",
        json={"token": issued.token},
        headers={"Authorization": "Bearer not-a-jwt"},
    )
    assert r.status_code == 401

    db.refresh(issued.invite)
    assert issued.invite.use_count == 0


@pytest.mark.parametrize(
    "minutes_past_expiry, status, error",
    [
        (1, 200, None),
        (10, 410, "expired"),
    ],
)
def test_clock_skew_grace_on_accept(client, db, make_property, auth_headers, minutes_past_expiry, status, error):
    prop = make_property()
    issued = generate_invite(
        db,
        owner_id="owner-1",
        resource_id=prop.id,
        ttl=timedelta(days=1),
        now=utcnow() - timedelta(days=1, minutes=minutes_past_expiry),
    )

    r = _accept(client, auth_headers, issued.token)
    assert r.status_code == status, r.text
    if error:
        assert r.json()["error"] == error


def test_revocation_is_final(client, db, make_property, auth_headers):
    prop = make_property()
    issued = generate_invite(db, owner_id="owner-1", resource_id=prop.id, max_uses=5)
    assert _accept(client, auth_headers, issued.token, sub="tenant-1").status_code == 200

    r = client.delete(f"/api/v1/invites/{issued.invite.id}", headers=auth_headers("owner-1"))
    assert r.status_code == 200

    r = _accept(client, auth_headers, issued.token, sub="tenant-2")
    assert r.status_code == 410
    assert r.json()["error"] == "revoked"

    assert client.post("/api/v1/invites/validate", json={"token": issued.token}).json()["valid"] is False

    # Existing grants survive revocation.
    assert _grant_count(db, prop.id) == 1
    db.refresh(issued.invite)
    assert issued.invite.use_count == 1


def test_revoked_beats_expired_and_exhausted(db, make_property):
    prop = make_property()
    issued = generate_invite(
        db, owner_id="owner-1", resource_id=prop.id, max_uses=1, ttl=timedelta(days=1), now=utcnow() - timedelta(days=3)
    )
    revoke_invite(db, owner_id="owner-1", token_id=issued.invite.id)

    with pytest.raises(InviteRevoked):
        accept_invite(db, issued.token, grantee_id="tenant-1")


def test_wrong_account(client, db, make_property, auth_headers):
    prop = make_property()
    issued = generate_invite(db, owner_id="owner-1", resource_id=prop.id, intended_identity="tenant@example.com")

    r = _accept(client, auth_headers, issued.token, sub="tenant-x", email="other@example.com")
    assert r.status_code == 403
    assert r.json()["error"] == "wrong_account"

    r = _accept(client, auth_headers, issued.token, sub="tenant-1", email="Tenant@Example.com")
    assert r.status_code == 200, r.text

    db.refresh(issued.invite)
    assert issued.invite.use_count == 1


def test_concurrent_accepts_never_exceed_max_uses(db, session_factory, make_property):
    max_uses, extra = 5, 7
    prop = make_property()
    issued = generate_invite(db, owner_id="owner-1", resource_id=prop.id, max_uses=max_uses)

    def _one(i):
        s = session_factory()
        try:
            accept_invite(s, issued.token, grantee_id=f"tenant-{i}")
            return "ok"
        except InviteRejected as exc:
            return exc.code
        finally:
            s.close()

    with ThreadPoolExecutor(max_workers=max_uses + extra) as pool:
        outcomes = list(pool.map(_one, range(max_uses + extra), timeout=30))

    assert outcomes.count("ok") == max_uses
    assert outcomes.count("capacity_reached") == extra

    db.expire_all()
    inv = db.get(InviteToken, issued.invite.id)
    assert inv.use_count == max_uses
    assert _grant_count(db, prop.id) == max_uses


def test_concurrent_accepts_by_same_tenant_spend_one_use(db, session_factory, make_property):
    prop = make_property()
    issued = generate_invite(db, owner_id="owner-1", resource_id=prop.id, max_uses=10)

    def _one(_):
        s = session_factory()
        try:
            return accept_invite(s, issued.token, grantee_id="tenant-1")
        finally:
            s.close()

    with ThreadPoolExecutor(max_workers=6) as pool:
        results = list(pool.map(_one, range(6), timeout=30))

    assert sum(1 for r in results if not r.already_linked) == 1
    db.expire_all()
    assert db.get(InviteToken, issued.invite.id).use_count == 1
    assert _grant_count(db, prop.id) == 1


def test_exhausted_token_raises_capacity_reached(db, make_property):
    prop = make_property()
    issued = generate_invite(db, owner_id="owner-1", resource_id=prop.id, max_uses=1)
    accept_invite(db, issued.token, grantee_id="tenant-1")

    with pytest.raises(CapacityReached):
        accept_invite(db, issued.token, grantee_id="tenant-2")


def test_revoked_before_first_use(client, db, make_property, auth_headers):
    prop = make_property()
    r = client.post(
        f"/api/v1/properties/{prop.id}/invites",
        json={"max_uses": 1, "expires_in_days": 7},
        headers=auth_headers("owner-1"),
    )
    body = r.json()
    assert client.delete(f"/api/v1/invites/{body['token_id']}", headers=auth_headers("owner-1")).status_code == 200

    assert client.post("/api/v1/invites/validate", json={"token": body["token"]}).json() == {
        "valid": False,
        "reason": "invalid",
    }
    r = _accept(client, auth_headers, body["token"])
    assert r.status_code == 410
    assert r.json()["error"] == "revoked"
    assert _grant_count(db, prop.id) == 0


def _duplicate_accepts_in_lockstep(session_factory, monkeypatch, token, grantee_id):
    # Both calls pass the existing-grant read before either runs the conditional update.
    barrier = threading.Barrier(2, timeout=10)
    consume = invite_acceptance._consume_one_use

    def _consume_after_barrier(db, token_id, now):
        barrier.wait()
        return consume(db, token_id, now)

    monkeypatch.setattr(invite_acceptance, "_consume_one_use", _consume_after_barrier)

    def _one(_):
        s = session_factory()
        try:
            return accept_invite(s, token, grantee_id=grantee_id)
        finally:
            s.close()

    with ThreadPoolExecutor(max_workers=2) as pool:
        return list(pool.map(_one, range(2), timeout=30))


def test_duplicate_accepts_on_single_use_token_both_succeed(db, session_factory, make_property, monkeypatch):
    prop = make_property()
    issued = generate_invite(db, owner_id="owner-1", resource_id=prop.id, max_uses=1)

    results = _duplicate_accepts_in_lockstep(session_factory, monkeypatch, issued.token, "tenant-1")

    assert all(r.resource_id == prop.id for r in results)
    assert sorted(r.already_linked for r in results) == [False, True]

    db.expire_all()
    assert db.get(InviteToken, issued.invite.id).use_count == 1
    assert _grant_count(db, prop.id) == 1


def test_duplicate_accepts_on_last_remaining_use_both_succeed(db, session_factory, make_property, monkeypatch):
    prop = make_property()
    issued = generate_invite(db, owner_id="owner-1", resource_id=prop.id, max_uses=2)
    accept_invite(db, issued.token, grantee_id="tenant-0")

    results = _duplicate_accepts_in_lockstep(session_factory, monkeypatch, issued.token, "tenant-1")

    assert sorted(r.already_linked for r in results) == [False, True]

    db.expire_all()
    assert db.get(InviteToken, issued.invite.id).use_count == 2
    assert _grant_count(db, prop.id) == 2
