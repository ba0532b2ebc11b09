"""
Tests for the HTTP API

Tests cover:
1. Onboarding creators and members
2. Payment and refund webhooks end to end
3. Member stats, risk and leaderboard reads
4. Job endpoints
"""

from uuid import uuid4

import fakeredis
from fastapi.testclient import TestClient

from ledger.api import app, processor

processor.scorer.cache = fakeredis.FakeRedis(server=fakeredis.FakeServer())
client = TestClient(app)


def unique(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:8]}"


def onboard():
    """Creator plus a referrer with a fresh click on their link."""
    creator_id = unique("creator")
    referrer_id = unique("ref")
    client.post("/creators", json={"creator_id": creator_id, "name": "Trading Club"})
    member = client.post("/members", json={
        "creator_id": creator_id, "member_id": referrer_id, "username": "mike",
    }).json()
    client.post("/clicks", json={"referral_code": member["referral_code"]})
    return creator_id, referrer_id, member["referral_code"]


class TestOnboarding:
    """Tests for creator and member endpoints."""

    def test_health(self):
        """Health check reports the service name."""
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_create_creator_and_member(self):
        """New members get a referral code."""
        creator_id = unique("creator")

        created = client.post("/creators", json={"creator_id": creator_id})
        member = client.post("/members", json={
            "creator_id": creator_id, "member_id": unique("m"), "username": "anna",
        })

        assert created.status_code == 201
        assert created.json()["id"] == creator_id
        assert member.status_code == 201
        assert member.json()["referral_code"].startswith("ANNA-")

    def test_member_for_unknown_creator(self):
        """Unknown creators are a bad request."""
        response = client.post("/members", json={"creator_id": unique("nobody"), "member_id": unique("m")})

        assert response.status_code == 400

    def test_create_referred_member(self):
        """A member registered with a referrer is marked as referred."""
        creator_id, referrer_id, _ = onboard()

        response = client.post("/members", json={
            "creator_id": creator_id, "member_id": unique("m"), "referred_by": referrer_id,
        })

        assert response.status_code == 201
        assert response.json()["referred_by"] == referrer_id
        assert response.json()["origin"] == "referred"

    def test_referrer_from_another_creator(self):
        """A referrer outside the creator's community is a bad request."""
        _, referrer_id, _ = onboard()
        other_creator = unique("creator")
        client.post("/creators", json={"creator_id": other_creator})

        response = client.post("/members", json={
            "creator_id": other_creator, "member_id": unique("m"), "referred_by": referrer_id,
        })

        assert response.status_code == 400

    def test_click_unknown_code(self):
        """Clicks on unknown codes are not tracked."""
        response = client.post("/clicks", json={"referral_code": "NOPE-000000"})

        assert response.json() == {"tracked": False, "click_id": None}


class TestWebhooks:
    """Tests for payment and refund webhooks."""

    def test_payment_refund_flow(self):
        """Pay, replay, read stats, then refund."""
        creator_id, referrer_id, code = onboard()
        payment = {
            "payment_id": unique("pay"),
            "creator_id": creator_id,
            "member_id": unique("new"),
            "amount": "49.99",
            "billing_period": "monthly",
            "referral_code": code,
        }

        first = client.post("/payments", json=payment)
        replay = client.post("/payments", json=payment)

        assert first.status_code == 200
        assert first.json()["status"] == "accepted"
        assert replay.json()["status"] == "duplicate"
        assert replay.json()["commission_id"] == first.json()["commission_id"]

        stats = client.get(f"/members/{referrer_id}/stats").json()
        assert stats["lifetime_earnings"] == "4.999"
        assert stats["total_referred"] == 1
        assert stats["bonus"]["has_bonus"] is True

        refund = client.post("/refunds", json={"refund_id": unique("rf"), "payment_id": payment["payment_id"]})

        assert refund.status_code == 200
        assert refund.json()["status"] == "reversed"
        assert client.get(f"/members/{referrer_id}/stats").json()["total_referred"] == 0

    def test_invalid_amount(self):
        """Negative amounts are rejected, not errors."""
        creator_id, _, code = onboard()

        response = client.post("/payments", json={
            "payment_id": unique("pay"),
            "creator_id": creator_id,
            "member_id": unique("new"),
            "amount": "-10",
            "referral_code": code,
        })

        assert response.status_code == 200
        assert response.json()["status"] == "rejected"

    def test_refund_with_bad_amount(self):
        """A negative refund amount is reported without reversing anything."""
        creator_id, _, code = onboard()
        payment_id = unique("pay")
        client.post("/payments", json={
            "payment_id": payment_id,
            "creator_id": creator_id,
            "member_id": unique("new"),
            "amount": "20",
            "referral_code": code,
        })

        response = client.post("/refunds", json={
            "refund_id": unique("rf"), "payment_id": payment_id, "amount": "-1",
        })

        assert response.status_code == 200
        assert response.json()["status"] == "not_found"
        assert response.json()["reason"] == "invalid_amount"


class TestReads:
    """Tests for read endpoints."""

    def test_unknown_member_stats(self):
        """Unknown members are 404."""
        assert client.get(f"/members/{unique('ghost')}/stats").status_code == 404
        assert client.get(f"/members/{unique('ghost')}/risk").status_code == 404

    def test_member_risk(self):
        """Risk reports a score and level."""
        _, referrer_id, _ = onboard()

        body = client.get(f"/members/{referrer_id}/risk").json()

        assert body["score"] == 0
        assert body["level"] == "low"

    def test_leaderboard(self):
        """Leaderboards are served from the snapshot after a refresh."""
        creator_id, referrer_id, code = onboard()
        client.post("/payments", json={
            "payment_id": unique("pay"),
            "creator_id": creator_id,
            "member_id": unique("new"),
            "amount": "49.99",
            "referral_code": code,
        })

        refreshed = client.post("/jobs/refresh-snapshot").json()
        board = client.get(f"/leaderboards/{creator_id}", params={"metric": "lifetime_earnings"}).json()

        assert refreshed["failed"] == []
        assert board["scope"] == creator_id
        assert board["stale"] is False
        assert board["entries"][0]["member_id"] == referrer_id

    def test_leaderboard_limit_validated(self):
        """Limits outside 1..100 are rejected."""
        assert client.get("/leaderboards/global", params={"limit": 0}).status_code == 422
        assert client.get("/leaderboards/global", params={"limit": 101}).status_code == 422


class TestJobs:
    """Tests for job and admin endpoints."""

    def test_bonus_jobs(self):
        """Nothing is due right after the first referral."""
        confirm = client.post("/jobs/confirm-bonuses")
        pay = client.post("/jobs/pay-bonuses")

        assert confirm.status_code == 200
        assert "confirmed" in confirm.json()
        assert pay.status_code == 200

    def test_reconcile(self):
        """Reconciliation returns a report."""
        response = client.post("/jobs/reconcile")

        assert response.status_code == 200
        assert response.json()["members_checked"] >= 0

    def test_admin_queues(self):
        """Review and parked queues are listable."""
        assert client.get("/review-queue").status_code == 200
        assert client.get("/parked-events").status_code == 200
        assert client.post("/jobs/reprocess-parked").json()["processed"] >= 0


class TestServerlessHandler:
    """Tests for the serverless entry point."""

    def test_handler_wraps_app(self):
        """The handler serves the same application without lifespan events."""
        from mangum import Mangum
        from api.index import handler

        assert isinstance(handler, Mangum)
        assert handler.app is app
