"""
Integration tests for payment matching and apply.

Tests cover:
- Reference-code, intent, explicit-store and amount-range matching
- Idempotent redelivery (same external_id applied once)
- Renewal arithmetic and monotonic expiry
- Optimistic version check with bounded retry (no lost update)
- Unmatched queue and operator link
- Cancelled / suspended subscriptions and provider-declined payments
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import update

from dukabill.billing.errors import (
    ConcurrencyConflictError,
    InvalidTransitionError,
    PaymentEventNotFoundError,
    StoreNotFoundError,
    UnknownPlanError,
)
from dukabill.entitlements.evaluator import Tier, effective_tier
from dukabill.models.base import as_utc
from dukabill.models.billing_event import BillingEvent, BillingEventType
from dukabill.models.payment_event import MatchStatus, PaymentEvent
from dukabill.models.payment_intent import IntentStatus
from dukabill.models.subscription import Subscription, SubscriptionStatus
from dukabill.services.channel_adapters import (
    AdminGrantAdapter,
    CheckoutProviderAdapter,
    CustomerPaymentAdapter,
    PushPaymentAdapter,
)
from dukabill.services.payment_event_log import PaymentEventLog
from dukabill.services.payment_ingestion import PaymentIngestionService
from dukabill.services.payment_intent_service import PaymentIntentService
from dukabill.services.reconciler import (
    ApplyOutcome,
    MatchMethod,
    PaymentReconciler,
    UnmatchedReason,
)
from dukabill.services.subscription_service import SubscriptionService
from dukabill.services.unmatched_queue import UnmatchedQueue


def customer_payment(trans_id, amount, reference, msisdn="254700000001"):
    return {
        "trans_id": trans_id,
        "trans_amount": str(amount),
        "bill_ref_number": reference,
        "msisdn": msisdn,
        "business_short_code": "600100",
    }


@pytest.fixture
def reconciler(db_session, catalog, clock):
    return PaymentReconciler(db_session, catalog, clock)


@pytest.fixture
def ingest(db_session, reconciler):
    service = PaymentIngestionService(db_session, reconciler=reconciler)

    def _ingest(adapter, payload, **overrides):
        return service.ingest(adapter, payload, **overrides)
    return _ingest


@pytest.fixture
def customer_adapter():
    return CustomerPaymentAdapter(callback_token="t", short_code="600100")


def get_subscription(db_session, store_id) -> Subscription:
    return (
        db_session.query(Subscription)
        .populate_existing()
        .filter(Subscription.store_id == store_id)
        .one()
    )


class TestScenarios:
    """End-to-end reconciliation scenarios."""

    def test_new_store_starts_on_trial(self, db_session, make_store, catalog, clock):
        make_store("S1")
        sub = get_subscription(db_session, "S1")

        assert sub.status == SubscriptionStatus.TRIAL.value
        assert sub.is_trial is True
        assert as_utc(sub.expires_at) == clock() + timedelta(days=7)
        assert effective_tier(sub, clock(), catalog) == Tier.TRIAL

    def test_reference_code_payment_applies_basic_monthly(
        self, db_session, make_store, ingest, customer_adapter, catalog, clock
    ):
        make_store("S1")
        trial_end = clock() + timedelta(days=7)
        clock.advance(days=1)

        ingestion = ingest(customer_adapter, customer_payment("MPESA-AAA111", 500, "DUKA-0001"))

        assert ingestion.result.outcome == ApplyOutcome.APPLIED
        assert ingestion.result.match_method == MatchMethod.REFERENCE_CODE
        sub = get_subscription(db_session, "S1")
        assert sub.status == SubscriptionStatus.ACTIVE.value
        assert sub.plan_id == "basic-monthly"
        assert sub.is_trial is False
        assert sub.last_payment_ref == "MPESA-AAA111"
        assert as_utc(sub.expires_at) == trial_end + timedelta(days=30)
        assert effective_tier(sub, clock(), catalog) == Tier.BASIC

        event = db_session.query(PaymentEvent).filter_by(external_id="MPESA-AAA111").one()
        assert event.match_status == MatchStatus.APPLIED.value
        assert event.matched_store_id == "S1"

    def test_redelivery_is_a_no_op(self, db_session, make_store, ingest, customer_adapter):
        make_store("S1")
        payload = customer_payment("MPESA-AAA111", 500, "DUKA-0001")
        ingest(customer_adapter, payload)
        before = get_subscription(db_session, "S1")
        expires_before, version_before = as_utc(before.expires_at), before.version

        again = ingest(customer_adapter, payload)

        assert again.duplicate is True
        assert again.result.outcome == ApplyOutcome.ALREADY_APPLIED
        after = get_subscription(db_session, "S1")
        assert as_utc(after.expires_at) == expires_before
        assert after.version == version_before
        assert db_session.query(PaymentEvent).filter_by(external_id="MPESA-AAA111").count() == 1
        applied = db_session.query(BillingEvent).filter_by(
            event_type=BillingEventType.PAYMENT_APPLIED
        ).count()
        assert applied == 1

    def test_unknown_reference_is_queued_then_linked(
        self, db_session, make_store, ingest, customer_adapter, reconciler, catalog, clock
    ):
        make_store("S1")
        make_store("S2")

        ingestion = ingest(customer_adapter, customer_payment("MPESA-BBB222", 1500, "DUKA-9999"))

        assert ingestion.result.outcome == ApplyOutcome.UNMATCHED
        assert ingestion.result.reason == UnmatchedReason.UNKNOWN_REFERENCE
        queue = UnmatchedQueue(db_session, reconciler)
        assert [e.external_id for e in queue.list_unmatched()] == ["MPESA-BBB222"]

        result = queue.link("MPESA-BBB222", "S2", "premium-monthly", actor_id="ops-1")

        assert result.outcome == ApplyOutcome.APPLIED
        assert result.match_method == MatchMethod.MANUAL_LINK
        sub = get_subscription(db_session, "S2")
        assert sub.plan_id == "premium-monthly"
        assert effective_tier(sub, clock(), catalog) == Tier.PREMIUM
        assert queue.list_unmatched() == []

        event = db_session.query(PaymentEvent).filter_by(external_id="MPESA-BBB222").one()
        assert event.linked_by == "ops-1"

        # Linking again is idempotent
        again = queue.link("MPESA-BBB222", "S2", "premium-monthly")
        assert again.outcome == ApplyOutcome.ALREADY_APPLIED
        assert as_utc(get_subscription(db_session, "S2").expires_at) == result.new_expires_at


class TestMatching:

    def test_access_code_matches(self, db_session, make_store, ingest, customer_adapter):
        from dukabill.services.store_service import StoreService

        make_store("S1")
        StoreService(db_session).add_access_code("S1", "KIOSK-0042", label="second till")

        result = ingest(customer_adapter, customer_payment("MPESA-C1", 500, "kiosk-0042")).result

        assert result.outcome == ApplyOutcome.APPLIED
        assert result.store_id == "S1"

    def test_inactive_access_code_does_not_match(self, db_session, make_store, ingest, customer_adapter):
        from dukabill.services.store_service import StoreService

        make_store("S1")
        service = StoreService(db_session)
        service.add_access_code("S1", "KIOSK-0042")
        service.deactivate_access_code("S1", "KIOSK-0042")

        result = ingest(customer_adapter, customer_payment("MPESA-C2", 500, "KIOSK-0042")).result

        assert result.outcome == ApplyOutcome.UNMATCHED

    def test_malformed_reference_is_unmatched(self, make_store, ingest, customer_adapter):
        make_store("S1")
        result = ingest(customer_adapter, customer_payment("MPESA-C3", 500, "my shop")).result
        assert result.outcome == ApplyOutcome.UNMATCHED
        assert result.reason == UnmatchedReason.INVALID_REFERENCE

    def test_amount_below_every_plan_is_unmatched(self, make_store, ingest, customer_adapter):
        make_store("S1")
        result = ingest(customer_adapter, customer_payment("MPESA-C4", 100, "DUKA-0001")).result
        assert result.outcome == ApplyOutcome.UNMATCHED
        assert result.reason == UnmatchedReason.AMOUNT_OUT_OF_RANGE

    @pytest.mark.parametrize("amount,plan_id,days", [
        (1500, "premium-monthly", 30),
        (5000, "basic-yearly", 365),
        (15000, "premium-yearly", 365),
    ])
    def test_amount_selects_plan(self, db_session, make_store, ingest, customer_adapter, clock,
                                 amount, plan_id, days):
        make_store("S1")
        trial_end = clock() + timedelta(days=7)

        result = ingest(customer_adapter, customer_payment("MPESA-P", amount, "DUKA-0001")).result

        assert result.plan_id == plan_id
        assert result.new_expires_at == trial_end + timedelta(days=days)

    def test_amount_range_with_payer_phone(self, db_session, make_store, ingest, customer_adapter):
        make_store("S1", phone="0711000111")
        make_store("S2", phone="0722000222")

        result = ingest(
            customer_adapter, customer_payment("MPESA-D1", 1500, "", msisdn="254711000111")
        ).result

        assert result.outcome == ApplyOutcome.APPLIED
        assert result.store_id == "S1"
        assert result.match_method == MatchMethod.AMOUNT_RANGE
        assert result.plan_id == "premium-monthly"

    def test_amount_range_ambiguous_payer(self, make_store, ingest, customer_adapter):
        make_store("S1", phone="0711000111")
        make_store("S2", phone="0711000111")

        result = ingest(
            customer_adapter, customer_payment("MPESA-D2", 500, "", msisdn="0711000111")
        ).result

        assert result.outcome == ApplyOutcome.UNMATCHED
        assert result.reason == UnmatchedReason.AMBIGUOUS_PAYER

    def test_reference_beats_amount_range(self, make_store, ingest, customer_adapter):
        make_store("S1", phone="0711000111")
        make_store("S2")

        result = ingest(
            customer_adapter, customer_payment("MPESA-D3", 500, "DUKA-0002", msisdn="0711000111")
        ).result

        assert result.store_id == "S2"
        assert result.match_method == MatchMethod.REFERENCE_CODE

    def test_push_payment_matches_through_intent(self, db_session, make_store, ingest, catalog):
        make_store("S1")
        PaymentIntentService(db_session, catalog).record_intent(
            intent_id="ws_CO_1", channel="PUSH_PAYMENT", store_id="S1", plan_id="premium-monthly",
        )

        result = ingest(PushPaymentAdapter(callback_token="t"), {
            "checkout_request_id": "ws_CO_1", "result_code": 0, "receipt_number": "QK1",
        }).result

        assert result.outcome == ApplyOutcome.APPLIED
        assert result.match_method == MatchMethod.PAYMENT_INTENT
        assert result.plan_id == "premium-monthly"
        event = db_session.query(PaymentEvent).filter_by(external_id="ws_CO_1").one()
        assert event.amount == Decimal("1500.00")
        intent = PaymentIntentService(db_session, catalog).get("ws_CO_1")
        db_session.refresh(intent)
        assert intent.status == IntentStatus.COMPLETED.value

    def test_push_payment_without_intent_is_unmatched(self, make_store, ingest):
        make_store("S1")
        result = ingest(PushPaymentAdapter(callback_token="t"), {
            "checkout_request_id": "ws_CO_404", "result_code": 0, "amount": 500,
        }).result
        assert result.outcome == ApplyOutcome.UNMATCHED
        assert result.reason == UnmatchedReason.UNKNOWN_INTENT

    def test_declined_push_payment_is_failed(self, db_session, make_store, ingest, catalog):
        make_store("S1")
        PaymentIntentService(db_session, catalog).record_intent(
            intent_id="ws_CO_2", channel="PUSH_PAYMENT", store_id="S1", plan_id="basic-monthly",
        )
        before = get_subscription(db_session, "S1").version

        result = ingest(PushPaymentAdapter(callback_token="t"), {
            "checkout_request_id": "ws_CO_2", "result_code": 1032, "result_desc": "Cancelled",
        }).result

        assert result.outcome == ApplyOutcome.FAILED
        assert get_subscription(db_session, "S1").version == before
        intent = PaymentIntentService(db_session, catalog).get("ws_CO_2")
        db_session.refresh(intent)
        assert intent.status == IntentStatus.FAILED.value

        # A failed payment can never be linked
        with pytest.raises(InvalidTransitionError):
            UnmatchedQueue(db_session).link("ws_CO_2", "S1", "basic-monthly")

    def test_checkout_payment_matches_through_session(self, db_session, make_store, ingest, catalog):
        make_store("S1")
        PaymentIntentService(db_session, catalog).record_intent(
            intent_id="sess-77", channel="CHECKOUT_PROVIDER", store_id="S1", plan_id="basic-yearly",
        )

        result = ingest(CheckoutProviderAdapter(secret="s"), {
            "status_code": "COMPLETED", "reference": "PSP-77", "subscription_id": "sess-77",
        }).result

        assert result.outcome == ApplyOutcome.APPLIED
        assert result.plan_id == "basic-yearly"


class TestRenewal:

    def test_early_renewal_extends_from_current_expiry(self, db_session, make_store, ingest,
                                                       customer_adapter, clock):
        make_store("S1")
        ingest(customer_adapter, customer_payment("P1", 500, "DUKA-0001"))
        first_expiry = as_utc(get_subscription(db_session, "S1").expires_at)

        clock.advance(days=10)
        result = ingest(customer_adapter, customer_payment("P2", 500, "DUKA-0001")).result

        assert result.new_expires_at == first_expiry + timedelta(days=30)

    def test_late_renewal_extends_from_now(self, db_session, make_store, ingest, customer_adapter, clock):
        make_store("S1")
        clock.advance(days=20)

        result = ingest(customer_adapter, customer_payment("P3", 500, "DUKA-0001")).result

        assert result.new_expires_at == clock() + timedelta(days=30)

    def test_expiry_is_monotonic(self, db_session, make_store, ingest, customer_adapter, clock):
        make_store("S1")
        seen = [as_utc(get_subscription(db_session, "S1").expires_at)]
        for i, (advance, amount) in enumerate([(0, 500), (40, 1500), (1, 500), (400, 5000), (0, 500)]):
            clock.advance(days=advance)
            ingest(customer_adapter, customer_payment(f"M{i}", amount, "DUKA-0001"))
            ingest(customer_adapter, customer_payment(f"M{i}", amount, "DUKA-0001"))
            seen.append(as_utc(get_subscription(db_session, "S1").expires_at))

        assert seen == sorted(seen)
        assert len(set(seen)) == len(seen)

    def test_suspended_store_keeps_suspension_but_banks_the_payment(
        self, db_session, make_store, ingest, customer_adapter, catalog, clock
    ):
        make_store("S1")
        SubscriptionService(db_session, catalog, clock).suspend("S1", reason="abuse")
        trial_end = clock() + timedelta(days=7)

        result = ingest(customer_adapter, customer_payment("P4", 500, "DUKA-0001")).result

        assert result.outcome == ApplyOutcome.APPLIED
        sub = get_subscription(db_session, "S1")
        assert sub.status == SubscriptionStatus.SUSPENDED.value
        assert as_utc(sub.expires_at) == trial_end + timedelta(days=30)
        assert result.subscription_status == SubscriptionStatus.SUSPENDED.value
        assert effective_tier(sub, clock(), catalog) == Tier.EXPIRED


class TestCancelled:

    def test_automatic_payment_to_cancelled_store_is_unmatched(
        self, db_session, make_store, ingest, customer_adapter, catalog, clock
    ):
        make_store("S1")
        SubscriptionService(db_session, catalog, clock).cancel("S1")

        result = ingest(customer_adapter, customer_payment("P5", 500, "DUKA-0001")).result

        assert result.outcome == ApplyOutcome.UNMATCHED
        assert result.reason == UnmatchedReason.SUBSCRIPTION_CANCELLED
        assert get_subscription(db_session, "S1").status == SubscriptionStatus.CANCELLED.value

    def test_operator_link_reactivates_cancelled_store(
        self, db_session, make_store, ingest, customer_adapter, reconciler, catalog, clock
    ):
        make_store("S1")
        SubscriptionService(db_session, catalog, clock).cancel("S1")
        ingest(customer_adapter, customer_payment("P6", 500, "DUKA-0001"))

        result = UnmatchedQueue(db_session, reconciler).link("P6", "S1", "basic-monthly")

        assert result.outcome == ApplyOutcome.APPLIED
        sub = get_subscription(db_session, "S1")
        assert sub.status == SubscriptionStatus.ACTIVE.value
        assert sub.cancelled_at is None

    def test_admin_grant_applies_to_cancelled_store(self, db_session, make_store, ingest, catalog, clock):
        make_store("S1")
        SubscriptionService(db_session, catalog, clock).cancel("S1")

        result = ingest(AdminGrantAdapter(), {
            "store_id": "S1", "plan_id": "premium-yearly", "payment_ref": "CASH-9",
        }, actor_id="ops-2").result

        assert result.outcome == ApplyOutcome.APPLIED
        assert result.match_method == MatchMethod.EXPLICIT_STORE
        assert get_subscription(db_session, "S1").status == SubscriptionStatus.ACTIVE.value

    def test_cancel_between_match_and_apply(self, db_session, make_store, reconciler, catalog, clock):
        make_store("S1")
        event = PaymentEvent(
            external_id="RACE-1", channel="CUSTOMER_PAYMENT", amount=Decimal("500"),
            currency="KES", correlation_kind="reference", correlation_value="DUKA-0001",
            received_at=clock(), match_status=MatchStatus.MATCHED.value,
            matched_store_id="S1", plan_id="basic-monthly", match_method=MatchMethod.REFERENCE_CODE,
        )
        db_session.add(event)
        db_session.commit()
        SubscriptionService(db_session, catalog, clock).cancel("S1")

        result = reconciler.process(event)

        assert result.outcome == ApplyOutcome.UNMATCHED
        db_session.refresh(event)
        assert event.match_status == MatchStatus.UNMATCHED.value


class TestOptimisticConcurrency:

    @pytest.fixture
    def logged_event(self, db_session, customer_adapter, clock):
        def _log(external_id):
            canonical = customer_adapter.normalize(customer_payment(external_id, 500, "DUKA-0001"))
            return PaymentEventLog(db_session, clock).append(canonical)
        return _log

    def test_concurrent_write_is_not_lost(self, db_session, session_factory, make_store,
                                          logged_event, catalog, clock):
        """A competing writer bumps the version mid-apply; both extensions survive."""
        make_store("S1")
        trial_end = clock() + timedelta(days=7)
        event = logged_event("RACE-2")
        other = session_factory()
        state = {"interfered": False}

        def racing_clock():
            if not state["interfered"]:
                state["interfered"] = True
                sub = other.query(Subscription).filter_by(store_id="S1").one()
                other.execute(
                    update(Subscription)
                    .where(Subscription.id == sub.id, Subscription.version == sub.version)
                    .values(expires_at=as_utc(sub.expires_at) + timedelta(days=30),
                            version=sub.version + 1)
                )
                other.commit()
            return clock()

        result = PaymentReconciler(db_session, catalog, racing_clock, max_attempts=3).process(event)
        other.close()

        assert result.outcome == ApplyOutcome.APPLIED
        assert result.attempts == 2
        assert result.previous_expires_at == trial_end + timedelta(days=30)
        sub = get_subscription(db_session, "S1")
        assert as_utc(sub.expires_at) == trial_end + timedelta(days=60)
        assert sub.version == 3

    def test_slower_duplicate_delivery_does_not_extend_twice(
        self, db_session, session_factory, make_store, logged_event, catalog, clock, monkeypatch
    ):
        """Delivery B has read the event as PENDING when delivery A applies it."""
        make_store("S1")
        trial_end = clock() + timedelta(days=7)
        event = logged_event("DUP-1")
        other = session_factory()
        fast = PaymentReconciler(other, catalog, clock)
        slow = PaymentReconciler(db_session, catalog, clock)
        fast_results = []
        real_transition = slow._transition

        def transition_after_fast_delivery(evt, new_status, **values):
            if not fast_results:
                fast_results.append(fast.process(other.get(PaymentEvent, evt.id)))
            return real_transition(evt, new_status, **values)

        monkeypatch.setattr(slow, "_transition", transition_after_fast_delivery)
        result = slow.process(event)
        other.close()

        assert fast_results[0].outcome == ApplyOutcome.APPLIED
        assert result.outcome == ApplyOutcome.ALREADY_APPLIED
        sub = get_subscription(db_session, "S1")
        assert as_utc(sub.expires_at) == trial_end + timedelta(days=30)
        assert sub.version == 2
        applied = db_session.query(BillingEvent).filter_by(
            event_type=BillingEventType.PAYMENT_APPLIED
        ).count()
        assert applied == 1

    def test_concurrent_links_do_not_extend_twice(
        self, db_session, session_factory, make_store, ingest, customer_adapter,
        reconciler, catalog, clock, monkeypatch
    ):
        make_store("S1")
        trial_end = clock() + timedelta(days=7)
        ingest(customer_adapter, customer_payment("MPESA-BBB222", 500, "DUKA-9999"))
        other = session_factory()
        other_queue = UnmatchedQueue(other, PaymentReconciler(other, catalog, clock))
        other_results = []
        real_transition = reconciler._transition

        def transition_after_other_link(evt, new_status, **values):
            if not other_results:
                other_results.append(
                    other_queue.link("MPESA-BBB222", "S1", "basic-monthly", actor_id="ops-2")
                )
            return real_transition(evt, new_status, **values)

        monkeypatch.setattr(reconciler, "_transition", transition_after_other_link)
        result = UnmatchedQueue(db_session, reconciler).link(
            "MPESA-BBB222", "S1", "basic-monthly", actor_id="ops-1"
        )
        other.close()

        assert other_results[0].outcome == ApplyOutcome.APPLIED
        assert result.outcome == ApplyOutcome.ALREADY_APPLIED
        sub = get_subscription(db_session, "S1")
        assert as_utc(sub.expires_at) == trial_end + timedelta(days=30)
        linked = db_session.query(BillingEvent).filter_by(
            event_type=BillingEventType.PAYMENT_LINKED
        ).all()
        assert [e.actor_id for e in linked] == ["ops-2"]

    def test_gives_up_after_bounded_attempts(self, db_session, session_factory, make_store,
                                             logged_event, catalog, clock):
        make_store("S1")
        event = logged_event("RACE-3")
        other = session_factory()

        def always_racing_clock():
            other.execute(update(Subscription).values(version=Subscription.version + 1))
            other.commit()
            return clock()

        with pytest.raises(ConcurrencyConflictError) as exc_info:
            PaymentReconciler(db_session, catalog, always_racing_clock, max_attempts=2).process(event)
        other.close()

        assert exc_info.value.attempts == 2
        assert exc_info.value.store_id == "S1"
        event = db_session.query(PaymentEvent).populate_existing().filter_by(external_id="RACE-3").one()
        assert event.match_status == MatchStatus.MATCHED.value

        # Once the contention is gone, processing again applies it exactly once
        result = PaymentReconciler(db_session, catalog, clock).process(event)
        assert result.outcome == ApplyOutcome.APPLIED
        again = PaymentReconciler(db_session, catalog, clock).process(event)
        assert again.outcome == ApplyOutcome.ALREADY_APPLIED

    def test_ingestion_defers_conflict_to_redrive(self, db_session, session_factory, make_store,
                                                  customer_adapter, catalog, clock):
        make_store("S1")
        other = session_factory()

        def always_racing_clock():
            other.execute(update(Subscription).values(version=Subscription.version + 1))
            other.commit()
            return clock()

        reconciler = PaymentReconciler(db_session, catalog, always_racing_clock, max_attempts=2)
        ingestion = PaymentIngestionService(db_session, reconciler=reconciler).ingest(
            customer_adapter, customer_payment("RACE-4", 500, "DUKA-0001")
        )
        other.close()

        assert ingestion.result is None
        assert ingestion.outcome is None
        assert ingestion.error == ConcurrencyConflictError.code
        assert ingestion.event.external_id == "RACE-4"


class TestLinkValidation:

    def test_unknown_event(self, db_session, make_store):
        make_store("S1")
        with pytest.raises(PaymentEventNotFoundError):
            UnmatchedQueue(db_session).link("NOPE", "S1", "basic-monthly")

    def test_unknown_store(self, db_session, make_store, ingest, customer_adapter):
        make_store("S1")
        ingest(customer_adapter, customer_payment("L1", 500, "DUKA-7777"))
        with pytest.raises(StoreNotFoundError):
            UnmatchedQueue(db_session).link("L1", "S404", "basic-monthly")

    def test_unknown_plan(self, db_session, make_store, ingest, customer_adapter):
        make_store("S1")
        ingest(customer_adapter, customer_payment("L2", 500, "DUKA-7777"))
        with pytest.raises(UnknownPlanError):
            UnmatchedQueue(db_session).link("L2", "S1", "gold")
