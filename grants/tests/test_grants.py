"""
Unit Tests for the Grant Engine

Tests cover:
1. Daily check-in window
2. Referral exactly-once across both accounts
3. Milestone thresholds
4. Admin and package grants with audit records
5. Automated and support refunds
6. Signed purchase webhooks
"""

import json
import pytest
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

from gateway.identity import Identity
from grants.engine import (
    DAILY_REASON,
    REFERRAL_CLAIMED_REASON,
    REFERRAL_FRIEND_JOINED_REASON,
    GrantEngine,
)
from grants.milestones import exact_milestone_bonus, milestone_for
from grants.payments import PaymentWebhookHandler, sign_payload
from ledger.errors import (
    AccountNotFound,
    AlreadyClaimed,
    AlreadyReferred,
    ConfigError,
    Forbidden,
    InvalidAmount,
    InvalidCode,
    InvalidSignature,
    LedgerServiceError,
    SelfReferral,
    UnknownPackage,
)
from ledger.models import AppConfig, CreditPack
from ledger.service import LedgerService
from ledger.store import InMemoryStorage


ALICE = Identity(account_id="uid-alice")
BOB = Identity(account_id="uid-bob")
CAROL = Identity(account_id="uid-carol")
ADMIN = Identity(account_id="uid-admin", role="admin")
WEBHOOK_SECRET = "whsec_test_secret"
T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

PACKS = [
    CreditPack(name="Starter Pack", credits=50, bonus=0, price=99),
    CreditPack(name="Studio Pack", credits=500, bonus=100, price=999, is_plan=True),
]


def make_engine(starting_credits: int = 0) -> GrantEngine:
    service = LedgerService(InMemoryStorage(AppConfig(credit_packs=PACKS)), starting_credits=starting_credits)
    for identity in (ALICE, BOB, CAROL, ADMIN):
        service.get_or_create_account(identity.account_id, is_admin=identity.is_admin)
    return GrantEngine(service)


def balance(engine: GrantEngine, identity: Identity) -> int:
    return engine.service.get_account(identity.account_id).balance


def entry_count(engine: GrantEngine, identity: Identity) -> int:
    return len(engine.storage.entries_for(identity.account_id))


def record_generations(engine: GrantEngine, identity: Identity, count: int) -> None:
    with engine.storage.transaction() as txn:
        txn.require_account(identity.account_id)["lifetime_generations"] = count


class TestDailyClaim:
    """Tests for the daily check-in."""

    def test_first_claim_pays_one_credit(self):
        """Test that a first claim pays one credit and stamps the marker."""
        engine = make_engine()

        response = engine.daily_claim(ALICE, now=T0)

        assert response.awarded == 1
        assert response.account.balance == 1
        assert response.account.last_claim_at == T0
        assert response.ledger_entries[0].reason == DAILY_REASON

    def test_claim_inside_window_fails(self):
        """Test that claiming again at T+23h59m fails without changes."""
        engine = make_engine()
        engine.daily_claim(ALICE, now=T0)

        with pytest.raises(AlreadyClaimed):
            engine.daily_claim(ALICE, now=T0 + timedelta(hours=23, minutes=59))

        assert balance(engine, ALICE) == 1
        assert entry_count(engine, ALICE) == 1

    def test_claim_after_window_succeeds(self):
        """Test that claiming again at T+24h01m succeeds."""
        engine = make_engine()
        engine.daily_claim(ALICE, now=T0)

        response = engine.daily_claim(ALICE, now=T0 + timedelta(hours=24, minutes=1))

        assert response.account.balance == 2
        assert response.account.total_acquired == 2

    def test_claims_are_per_account(self):
        """Test that one account's claim does not block another's."""
        engine = make_engine()
        engine.daily_claim(ALICE, now=T0)

        engine.daily_claim(BOB, now=T0)

        assert balance(engine, BOB) == 1

    def test_unknown_account(self):
        """Test that a claim for an account without a ledger record fails."""
        engine = make_engine()

        with pytest.raises(AccountNotFound):
            engine.daily_claim(Identity(account_id="uid-ghost"), now=T0)


class TestReferralClaim:
    """Tests for referral claims."""

    def test_claim_credits_both_sides(self):
        """Test that B claiming A's code pays both exactly once."""
        engine = make_engine()
        code = engine.service.get_account(ALICE.account_id).referral_code

        response = engine.referral_claim(BOB, code)

        alice = engine.service.get_account(ALICE.account_id)
        bob = engine.service.get_account(BOB.account_id)
        assert alice.balance == 10
        assert alice.referral_count == 1
        assert bob.balance == 10
        assert bob.referred_by == ALICE.account_id
        assert response.account.referred_by == ALICE.account_id
        assert {e.reason for e in response.ledger_entries} == {
            REFERRAL_CLAIMED_REASON, REFERRAL_FRIEND_JOINED_REASON,
        }
        assert "Friend Joined" in engine.storage.entries_for(ALICE.account_id)[-1].reason
        assert "Claimed" in engine.storage.entries_for(BOB.account_id)[-1].reason

    def test_second_claim_rejected(self):
        """Test that a referred account cannot claim again with any code at all."""
        engine = make_engine()
        alice_code = engine.service.get_account(ALICE.account_id).referral_code
        bob_code = engine.service.get_account(BOB.account_id).referral_code
        carol_code = engine.service.get_account(CAROL.account_id).referral_code
        engine.referral_claim(BOB, alice_code)

        for code in (alice_code, carol_code, "NOSUCHCODE", bob_code):
            with pytest.raises(AlreadyReferred):
                engine.referral_claim(BOB, code)

        assert balance(engine, ALICE) == 10
        assert balance(engine, BOB) == 10
        assert balance(engine, CAROL) == 0
        assert engine.service.get_account(ALICE.account_id).referral_count == 1

    def test_invalid_code(self):
        """Test that an unknown code is rejected."""
        engine = make_engine()

        with pytest.raises(InvalidCode):
            engine.referral_claim(BOB, "NOPE1234")

        assert engine.service.get_account(BOB.account_id).referred_by is None

    def test_self_referral(self):
        """Test that an account cannot claim its own code."""
        engine = make_engine()
        code = engine.service.get_account(ALICE.account_id).referral_code

        with pytest.raises(SelfReferral):
            engine.referral_claim(ALICE, code)

        assert balance(engine, ALICE) == 0

    def test_code_is_case_insensitive(self):
        """Test that codes are matched regardless of case and whitespace."""
        engine = make_engine()
        code = engine.service.get_account(ALICE.account_id).referral_code

        engine.referral_claim(BOB, f"  {code.lower()} ")

        assert balance(engine, BOB) == 10

    def test_concurrent_claims_pay_once(self):
        """Test that racing claims from one account pay out exactly once."""
        engine = make_engine()
        code = engine.service.get_account(ALICE.account_id).referral_code

        def attempt(_):
            try:
                engine.referral_claim(BOB, code)
                return True
            except AlreadyReferred:
                return False

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(attempt, range(16)))

        assert sum(results) == 1
        assert balance(engine, ALICE) == 10
        assert balance(engine, BOB) == 10


class TestMilestones:
    """Tests for the milestone table and claims."""

    @pytest.mark.parametrize("count,threshold,bonus", [
        (10, 10, 5), (24, 10, 5), (25, 25, 10), (50, 50, 15),
        (75, 75, 20), (100, 100, 30), (199, 100, 30), (200, 200, 30), (1250, 1200, 30),
    ])
    def test_milestone_for(self, count, threshold, bonus):
        """Test the threshold reached at a generation count."""
        milestone = milestone_for(count)
        assert (milestone.threshold, milestone.bonus) == (threshold, bonus)

    def test_below_first_threshold(self):
        """Test that nothing is reached before ten generations."""
        assert milestone_for(0) is None
        assert milestone_for(9) is None

    def test_exact_bonus(self):
        """Test that only exact threshold counts report a bonus."""
        assert exact_milestone_bonus(25) == 10
        assert exact_milestone_bonus(300) == 30
        assert exact_milestone_bonus(26) is None

    def test_claim_pays_once_per_threshold(self):
        """Test that retrying at the same count pays nothing the second time."""
        engine = make_engine()
        record_generations(engine, ALICE, 10)

        first = engine.milestone_claim(ALICE, generation_count=10)
        retry = engine.milestone_claim(ALICE, generation_count=10)

        assert first.awarded == 5
        assert retry.awarded == 0
        assert balance(engine, ALICE) == 5
        assert engine.service.get_account(ALICE.account_id).highest_milestone_claimed == 10

    def test_claim_advances_through_table(self):
        """Test that later thresholds pay their own bonus."""
        engine = make_engine()
        record_generations(engine, ALICE, 30)

        engine.milestone_claim(ALICE, generation_count=10)
        engine.milestone_claim(ALICE, generation_count=30)
        engine.milestone_claim(ALICE, generation_count=12)

        assert balance(engine, ALICE) == 15
        assert engine.service.get_account(ALICE.account_id).highest_milestone_claimed == 25

    def test_claim_below_threshold_is_noop(self):
        """Test that an unreached milestone writes nothing."""
        engine = make_engine()

        response = engine.milestone_claim(ALICE, generation_count=9)

        assert response.awarded == 0
        assert entry_count(engine, ALICE) == 0

    def test_claim_uses_recorded_generations(self):
        """Test that the recorded generation count is used when none is given."""
        engine = make_engine(starting_credits=50)
        for _ in range(10):
            engine.service.deduct(ALICE.account_id, 1, feature="X", actor=ALICE.account_id)

        response = engine.milestone_claim(ALICE)

        assert response.awarded == 5
        assert balance(engine, ALICE) == 45

    def test_concurrent_retries_pay_once(self):
        """Test that racing retries at one count pay exactly once."""
        engine = make_engine()
        record_generations(engine, ALICE, 100)

        with ThreadPoolExecutor(max_workers=8) as pool:
            responses = list(pool.map(lambda _: engine.milestone_claim(ALICE, generation_count=100), range(16)))

        assert sum(r.awarded for r in responses) == 30
        assert balance(engine, ALICE) == 30

    def test_claimed_count_capped_at_recorded_generations(self):
        """Test that a count above the recorded generations earns nothing extra."""
        engine = make_engine()

        counts = [10, 25, 50, 75, 100, 200, 1000, 100000]
        responses = [engine.milestone_claim(ALICE, generation_count=c) for c in counts]

        assert sum(r.awarded for r in responses) == 0
        assert balance(engine, ALICE) == 0

    def test_claimed_count_below_recorded_is_honored(self):
        """Test that a lower count than recorded pays the lower threshold."""
        engine = make_engine()
        record_generations(engine, ALICE, 30)

        response = engine.milestone_claim(ALICE, generation_count=12)

        assert response.awarded == 5
        assert engine.service.get_account(ALICE.account_id).highest_milestone_claimed == 10


class TestRefunds:
    """Tests for automated and support refunds."""

    def charged_engine(self, cost: int = 10) -> GrantEngine:
        engine = make_engine(starting_credits=50)
        engine.service.deduct(ALICE.account_id, cost, feature="Pixa Together", actor=ALICE.account_id)
        return engine

    def test_refund_returns_last_charge(self):
        """Test that a refund credits back the last generation and stamps the marker."""
        engine = self.charged_engine()

        response = engine.refund_claim(ALICE, 10, reason="Blurry faces", now=T0)

        entry = response.ledger_entries[0]
        assert response.account.balance == 50
        assert response.account.last_refund_at == T0
        assert entry.reason == "Refund: Pixa Together"
        assert entry.metadata["note"] == "Blurry faces"

    def test_second_refund_inside_window_fails(self):
        """Test that a second automated refund within 24 hours is rejected without changes."""
        engine = self.charged_engine()
        engine.refund_claim(ALICE, 10, now=T0)
        engine.service.deduct(ALICE.account_id, 10, feature="Pixa Together", actor=ALICE.account_id)

        with pytest.raises(AlreadyClaimed):
            engine.refund_claim(ALICE, 10, now=T0 + timedelta(hours=23))

        assert balance(engine, ALICE) == 40

    def test_refund_after_window_succeeds(self):
        """Test that the automated refund is available again after 24 hours."""
        engine = self.charged_engine()
        engine.refund_claim(ALICE, 10, now=T0)
        engine.service.deduct(ALICE.account_id, 10, feature="Pixa Together", actor=ALICE.account_id)

        response = engine.refund_claim(ALICE, 10, now=T0 + timedelta(hours=24, minutes=1))

        assert response.account.balance == 50

    def test_same_generation_refunded_once(self):
        """Test that one generation cannot be refunded in two windows."""
        engine = self.charged_engine()
        engine.refund_claim(ALICE, 10, now=T0)

        with pytest.raises(AlreadyClaimed):
            engine.refund_claim(ALICE, 10, now=T0 + timedelta(days=2))

        assert balance(engine, ALICE) == 50

    @pytest.mark.parametrize("cost", [0, -1, 11])
    def test_refund_amount_bounded_by_charge(self, cost):
        """Test that a refund must be positive and at most the last charge."""
        engine = self.charged_engine()

        with pytest.raises(InvalidAmount):
            engine.refund_claim(ALICE, cost, now=T0)

        assert balance(engine, ALICE) == 40
        assert engine.service.get_account(ALICE.account_id).last_refund_at is None

    def test_nothing_to_refund(self):
        """Test that an account without generations has nothing to refund."""
        engine = make_engine(starting_credits=50)

        with pytest.raises(InvalidAmount):
            engine.refund_claim(ALICE, 1, now=T0)

    def test_support_refund_is_audited(self):
        """Test that an admin refund writes an entry and an audit record."""
        engine = self.charged_engine()

        response = engine.support_refund(ADMIN, ALICE.account_id, 10, reference="Ticket #42")

        entry = response.ledger_entries[0]
        assert response.account.balance == 50
        assert entry.reason == "Support Refund"
        assert entry.actor == ADMIN.account_id
        record = engine.storage.list_audit_records()[0]
        assert (record.action, record.target_account_id, record.amount, record.details) == (
            "support_refund", ALICE.account_id, 10, "Ticket #42",
        )

    def test_support_refund_needs_admin(self):
        """Test that members cannot issue support refunds."""
        engine = self.charged_engine()

        with pytest.raises(Forbidden):
            engine.support_refund(ALICE, ALICE.account_id, 10)

        assert engine.storage.list_audit_records() == []


class TestAdminGrants:
    """Tests for privileged grants."""

    def test_admin_grant_writes_entry_and_audit(self):
        """Test that an admin grant is recorded in the ledger and the audit log."""
        engine = make_engine()

        response = engine.admin_grant(ADMIN, ALICE.account_id, 25, reason="Support credit")

        entry = response.ledger_entries[0]
        assert response.account.balance == 25
        assert entry.actor == ADMIN.account_id
        assert entry.reason == "Support credit"
        records = engine.storage.list_audit_records()
        assert len(records) == 1
        assert records[0].admin_id == ADMIN.account_id
        assert records[0].target_account_id == ALICE.account_id
        assert records[0].amount == 25

    def test_non_admin_forbidden(self):
        """Test that members cannot grant credits."""
        engine = make_engine()

        with pytest.raises(Forbidden):
            engine.admin_grant(BOB, BOB.account_id, 100)

        assert balance(engine, BOB) == 0
        assert engine.storage.list_audit_records() == []

    @pytest.mark.parametrize("amount", [0, -5])
    def test_non_positive_amount(self, amount):
        """Test that grants must be positive."""
        engine = make_engine()

        with pytest.raises(InvalidAmount):
            engine.admin_grant(ADMIN, ALICE.account_id, amount)

    def test_grant_to_unknown_account_leaves_no_audit(self):
        """Test that a failed grant writes neither entry nor audit record."""
        engine = make_engine()

        with pytest.raises(AccountNotFound):
            engine.admin_grant(ADMIN, "uid-ghost", 10)

        assert engine.storage.list_audit_records() == []

    def test_package_grant(self):
        """Test that a plan package credits credits plus bonus and sets the plan."""
        engine = make_engine()

        response = engine.package_grant(ADMIN, ALICE.account_id, "Studio Pack")

        assert response.awarded == 600
        assert response.account.balance == 600
        assert response.account.plan == "Studio Pack"
        assert engine.storage.list_audit_records()[0].action == "grant_package"

    def test_unknown_package(self):
        """Test that granting a missing package fails."""
        engine = make_engine()

        with pytest.raises(UnknownPackage):
            engine.package_grant(ADMIN, ALICE.account_id, "Mega Pack")


def payment_event(payment_id="pay_001", account_id="uid-alice", credits="50", event="payment.captured", **notes):
    return json.dumps({
        "event": event,
        "payload": {"payment": {"entity": {
            "id": payment_id,
            "notes": {"userId": account_id, "packName": "Starter Pack", "credits": credits, "price": "99", **notes},
        }}},
    }).encode()


class TestPaymentWebhook:
    """Tests for signed purchase notifications."""

    def test_captured_payment_credits_once(self):
        """Test that a redelivered payment is acknowledged without a second credit."""
        engine = make_engine()
        handler = PaymentWebhookHandler(engine, WEBHOOK_SECRET)
        body = payment_event()
        signature = sign_payload(body, WEBHOOK_SECRET)

        first = handler.handle(body, signature)
        second = handler.handle(body, signature)

        assert first["status"] == "ok"
        assert second == {"status": "ok", "duplicate": True}
        assert balance(engine, ALICE) == 50
        assert engine.service.get_account(ALICE.account_id).total_acquired == 50
        assert engine.storage.processed_payments["pay_001"]["amount_paid"] == 99

    def test_plan_purchase_sets_plan(self):
        """Test that plan purchases update the account plan."""
        engine = make_engine()
        handler = PaymentWebhookHandler(engine, WEBHOOK_SECRET)
        body = payment_event(type="plan")

        handler.handle(body, sign_payload(body, WEBHOOK_SECRET))

        assert engine.service.get_account(ALICE.account_id).plan == "Starter Pack"
        assert engine.storage.entries_for(ALICE.account_id)[-1].reason == "Purchase: Starter Pack"

    def test_bad_signature(self):
        """Test that unsigned notifications are rejected."""
        engine = make_engine()
        handler = PaymentWebhookHandler(engine, WEBHOOK_SECRET)

        with pytest.raises(InvalidSignature):
            handler.handle(payment_event(), "deadbeef")

        assert balance(engine, ALICE) == 0

    def test_other_events_ignored(self):
        """Test that unrelated events are acknowledged and ignored."""
        engine = make_engine()
        handler = PaymentWebhookHandler(engine, WEBHOOK_SECRET)
        body = payment_event(event="payment.failed")

        assert handler.handle(body, sign_payload(body, WEBHOOK_SECRET)) == {"status": "ignored"}

    def test_missing_metadata(self):
        """Test that a payment without account metadata credits nobody."""
        engine = make_engine()
        handler = PaymentWebhookHandler(engine, WEBHOOK_SECRET)
        body = payment_event(account_id="")

        result = handler.handle(body, sign_payload(body, WEBHOOK_SECRET))

        assert result["warning"] == "Metadata missing"
        assert engine.storage.processed_payments == {}

    @pytest.mark.parametrize("body", [
        json.dumps({"event": "payment.captured", "payload": None}).encode(),
        json.dumps({"event": "payment.captured", "payload": {"payment": ["pay_001"]}}).encode(),
        json.dumps(["payment.captured"]).encode(),
        payment_event(credits="fifty"),
        payment_event(price="n/a"),
        b"not json",
    ])
    def test_malformed_payload(self, body):
        """Test that malformed payloads are rejected as invalid without crediting."""
        engine = make_engine()
        handler = PaymentWebhookHandler(engine, WEBHOOK_SECRET)

        with pytest.raises(LedgerServiceError) as exc_info:
            handler.handle(body, sign_payload(body, WEBHOOK_SECRET))

        assert exc_info.value.kind == "INVALID_PAYLOAD"
        assert exc_info.value.status_code == 400
        assert balance(engine, ALICE) == 0
        assert engine.storage.processed_payments == {}

    def test_missing_secret(self):
        """Test that the webhook refuses to run without its secret."""
        handler = PaymentWebhookHandler(make_engine(), None)

        with pytest.raises(ConfigError):
            handler.handle(payment_event(), "anything")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
