"""Unit tests for SubscriptionEngine service."""

from threading import Barrier, Thread
from unittest.mock import MagicMock, patch

import pytest

from recurring_billing.errors import (
    AccountFrozenError,
    AlreadyExistsError,
    InsufficientFundsError,
    InvalidArgumentError,
    InvalidTransitionError,
    NotActiveError,
    PeriodElapsedError,
    PeriodNotElapsedError,
    SubscriptionNotFoundError,
    UnauthorizedError,
)
from recurring_billing.models.events import EventTopic
from recurring_billing.models.subscription import SubscriptionKey, SubscriptionStatus
from recurring_billing.repositories.subscription_store import (
    LOCK_STRIPES,
    SubscriptionStore,
    get_subscription_store,
)
from recurring_billing.services.authorization import AuthorizationContext
from recurring_billing.services.billing_engine import (
    SubscriptionEngine,
    get_subscription_engine,
    reset_subscription_engine,
)
from recurring_billing.services.clock import SystemClock, VirtualClock
from recurring_billing.services.event_dispatcher import InMemoryEventDispatcher
from recurring_billing.services.ledger import InMemoryLedger

PAYER = "alice"
MERCHANT = "bob"
ASSET = "USDC"
PRODUCT = "pro_monthly"

AS_PAYER = AuthorizationContext({PAYER})
AS_MERCHANT = AuthorizationContext({MERCHANT})
AS_NOBODY = AuthorizationContext()


@pytest.fixture
def mock_config():
    """Mock configuration."""
    config = MagicMock()
    config.authorization_mode = "or"
    return config


@pytest.fixture
def subscription_store():
    """Create a fresh subscription store for each test."""
    store = SubscriptionStore()
    yield store
    store.clear()


@pytest.fixture
def clock():
    return VirtualClock(start_time=0)


@pytest.fixture
def ledger():
    """Ledger where the payer can afford ten periods."""
    ledger = InMemoryLedger()
    ledger.deposit(ASSET, PAYER, 1000)
    return ledger


@pytest.fixture
def dispatcher(clock):
    return InMemoryEventDispatcher(clock=clock)


@pytest.fixture
def engine(subscription_store, ledger, clock, dispatcher, mock_config):
    """Create a subscription engine with test dependencies."""
    with patch("recurring_billing.services.billing_engine.get_config", return_value=mock_config):
        engine = SubscriptionEngine(
            subscription_store=subscription_store,
            ledger=ledger,
            clock=clock,
            event_dispatcher=dispatcher,
        )
        yield engine


@pytest.fixture
def started(engine):
    """Subscription started at t=0: 100 USDC every 30 seconds."""
    return engine.start(PAYER, MERCHANT, ASSET, PRODUCT, 100, 30, auth=AS_PAYER)


class TestStart:
    """Tests for starting subscriptions."""

    def test_start_creates_active_subscription(self, engine, started):
        subscription = engine.get(PAYER, PRODUCT)

        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.payer == PAYER
        assert subscription.beneficiary == MERCHANT
        assert subscription.asset == ASSET
        assert subscription.amount == 100
        assert subscription.period_duration == 30
        assert subscription.period_end == 30
        assert subscription.created_at == 0
        assert subscription.charge_count == 0

    def test_start_collects_first_payment(self, ledger, started):
        assert ledger.balance_of(ASSET, PAYER) == 900
        assert ledger.balance_of(ASSET, MERCHANT) == 100

    def test_start_period_end_is_relative_to_now(self, engine, clock):
        clock.set_time(1_000)
        subscription = engine.start(PAYER, MERCHANT, ASSET, PRODUCT, 100, 30, auth=AS_PAYER)
        assert subscription.period_end == 1_030

    def test_start_emits_started_event(self, dispatcher, started):
        events = dispatcher.events
        assert len(events) == 1
        assert events[0].topic == EventTopic.SUBSCRIPTION_STARTED
        assert events[0].payer == PAYER
        assert events[0].product_id == PRODUCT
        assert events[0].payload == {"amount": 100}

    def test_start_requires_payer_authorization(self, engine, subscription_store):
        with pytest.raises(UnauthorizedError):
            engine.start(PAYER, MERCHANT, ASSET, PRODUCT, 100, 30, auth=AS_MERCHANT)
        assert not subscription_store.exists(SubscriptionKey(PAYER, PRODUCT))

    def test_start_duplicate_key_fails(self, engine, started, ledger):
        with pytest.raises(AlreadyExistsError):
            engine.start(PAYER, MERCHANT, ASSET, PRODUCT, 50, 60, auth=AS_PAYER)

        # the original record and balances are untouched
        assert engine.get(PAYER, PRODUCT).amount == 100
        assert ledger.balance_of(ASSET, PAYER) == 900

    def test_start_duplicate_key_fails_after_cancel(self, engine, started):
        engine.cancel(PAYER, PRODUCT, auth=AS_PAYER)
        with pytest.raises(AlreadyExistsError):
            engine.start(PAYER, MERCHANT, ASSET, PRODUCT, 100, 30, auth=AS_PAYER)

    def test_same_payer_different_products(self, engine, started):
        other = engine.start(PAYER, MERCHANT, ASSET, "team_yearly", 200, 365, auth=AS_PAYER)
        assert other.product_id == "team_yearly"
        assert engine.get(PAYER, PRODUCT).amount == 100

    @pytest.mark.parametrize("amount", [0, -1])
    def test_start_rejects_non_positive_amount(self, engine, amount):
        with pytest.raises(InvalidArgumentError):
            engine.start(PAYER, MERCHANT, ASSET, PRODUCT, amount, 30, auth=AS_PAYER)

    @pytest.mark.parametrize("duration", [0, -30])
    def test_start_rejects_non_positive_duration(self, engine, duration):
        with pytest.raises(InvalidArgumentError):
            engine.start(PAYER, MERCHANT, ASSET, PRODUCT, 100, duration, auth=AS_PAYER)

    def test_start_transfer_failure_writes_nothing(self, engine, subscription_store, dispatcher):
        with pytest.raises(InsufficientFundsError):
            engine.start(PAYER, MERCHANT, ASSET, PRODUCT, 5_000, 30, auth=AS_PAYER)

        assert subscription_store.count() == 0
        assert dispatcher.events == []


class TestCharge:
    """Tests for recurring charges."""

    def test_charge_before_period_end_fails(self, engine, clock, started):
        clock.set_time(29)
        with pytest.raises(PeriodNotElapsedError):
            engine.charge(PAYER, PRODUCT)

    def test_charge_at_period_end_advances_by_duration(self, engine, clock, ledger, started):
        clock.set_time(30)
        charged = engine.charge(PAYER, PRODUCT)

        assert charged.period_end == 60
        assert charged.charge_count == 1
        assert engine.get(PAYER, PRODUCT).period_end == 60
        assert ledger.balance_of(ASSET, MERCHANT) == 200

    def test_late_charge_does_not_drift(self, engine, clock, started):
        """period_end is anchored on the previous period_end, not on now."""
        clock.set_time(47)
        charged = engine.charge(PAYER, PRODUCT)
        assert charged.period_end == 60

    def test_repeated_charges_increase_by_duration(self, engine, clock, started):
        period_ends = []
        for _ in range(4):
            clock.set_time(engine.get(PAYER, PRODUCT).period_end)
            period_ends.append(engine.charge(PAYER, PRODUCT).period_end)

        assert period_ends == [60, 90, 120, 150]

    def test_catch_up_charges_one_period_at_a_time(self, engine, clock, started):
        clock.set_time(100)
        assert engine.charge(PAYER, PRODUCT).period_end == 60
        assert engine.charge(PAYER, PRODUCT).period_end == 90
        assert engine.charge(PAYER, PRODUCT).period_end == 120
        with pytest.raises(PeriodNotElapsedError):
            engine.charge(PAYER, PRODUCT)

    def test_charge_emits_payment_event(self, engine, clock, dispatcher, started):
        clock.set_time(30)
        engine.charge(PAYER, PRODUCT)

        event = dispatcher.events[-1]
        assert event.topic == EventTopic.PAYMENT_COLLECTED
        assert event.payload == {"amount": 100, "period_end": 60}
        assert event.event_time == 30

    def test_charge_unknown_subscription(self, engine):
        with pytest.raises(SubscriptionNotFoundError):
            engine.charge(PAYER, "missing")

    def test_charge_paused_subscription_fails(self, engine, clock, started):
        engine.pause(PAYER, PRODUCT, auth=AS_PAYER)
        clock.set_time(30)
        with pytest.raises(NotActiveError):
            engine.charge(PAYER, PRODUCT)

    def test_failed_transfer_leaves_record_identical(
            self, engine, clock, ledger, subscription_store, dispatcher, started
    ):
        ledger.freeze(PAYER)
        clock.set_time(30)
        before = subscription_store.get(SubscriptionKey(PAYER, PRODUCT)).model_dump_json()
        events_before = len(dispatcher.events)

        with pytest.raises(AccountFrozenError):
            engine.charge(PAYER, PRODUCT)

        after = subscription_store.get(SubscriptionKey(PAYER, PRODUCT)).model_dump_json()
        assert before == after
        assert len(dispatcher.events) == events_before

    def test_charge_retry_after_funding_succeeds(self, engine, clock, ledger, started):
        # drain the payer
        ledger.transfer(ASSET, PAYER, "elsewhere", ledger.balance_of(ASSET, PAYER))
        clock.set_time(30)

        with pytest.raises(InsufficientFundsError):
            engine.charge(PAYER, PRODUCT)
        with pytest.raises(InsufficientFundsError):
            engine.charge(PAYER, PRODUCT)

        ledger.deposit(ASSET, PAYER, 100)
        assert engine.charge(PAYER, PRODUCT).period_end == 60

    def test_store_write_failure_reverses_transfer(self, engine, clock, ledger, subscription_store, started):
        clock.set_time(30)
        with patch.object(subscription_store, "set", side_effect=RuntimeError("disk full")):
            with pytest.raises(RuntimeError, match="disk full"):
                engine.charge(PAYER, PRODUCT)

        assert ledger.balance_of(ASSET, PAYER) == 900
        assert ledger.balance_of(ASSET, MERCHANT) == 100
        assert engine.get(PAYER, PRODUCT).period_end == 30

    def test_store_add_failure_reverses_first_payment(self, engine, ledger, subscription_store):
        with patch.object(subscription_store, "add", side_effect=RuntimeError("disk full")):
            with pytest.raises(RuntimeError):
                engine.start(PAYER, MERCHANT, ASSET, PRODUCT, 100, 30, auth=AS_PAYER)

        assert ledger.balance_of(ASSET, PAYER) == 1000
        assert not subscription_store.exists(SubscriptionKey(PAYER, PRODUCT))


class TestPause:
    """Tests for pausing subscriptions."""

    def test_payer_can_pause(self, engine, started):
        paused = engine.pause(PAYER, PRODUCT, auth=AS_PAYER)
        assert paused.status == SubscriptionStatus.PAUSED
        assert engine.get(PAYER, PRODUCT).status == SubscriptionStatus.PAUSED

    def test_beneficiary_can_pause(self, engine, dispatcher, started):
        engine.pause(PAYER, PRODUCT, auth=AS_MERCHANT)

        assert engine.get(PAYER, PRODUCT).status == SubscriptionStatus.PAUSED
        event = dispatcher.events[-1]
        assert event.topic == EventTopic.SUBSCRIPTION_PAUSED
        assert event.payload == {"acted_by": MERCHANT}

    def test_stranger_cannot_pause(self, engine, started):
        with pytest.raises(UnauthorizedError):
            engine.pause(PAYER, PRODUCT, auth=AuthorizationContext({"mallory"}))
        with pytest.raises(UnauthorizedError):
            engine.pause(PAYER, PRODUCT, auth=AS_NOBODY)
        assert engine.get(PAYER, PRODUCT).status == SubscriptionStatus.ACTIVE

    def test_pause_has_no_time_window(self, engine, clock, started):
        clock.set_time(10_000)
        assert engine.pause(PAYER, PRODUCT, auth=AS_PAYER).status == SubscriptionStatus.PAUSED

    def test_pause_twice_is_allowed(self, engine, started):
        engine.pause(PAYER, PRODUCT, auth=AS_PAYER)
        assert engine.pause(PAYER, PRODUCT, auth=AS_MERCHANT).status == SubscriptionStatus.PAUSED

    def test_pause_unknown_subscription(self, engine):
        with pytest.raises(SubscriptionNotFoundError):
            engine.pause(PAYER, "missing", auth=AS_PAYER)


class TestResume:
    """Tests for resuming subscriptions."""

    def test_resume_within_period(self, engine, clock, dispatcher, started):
        engine.pause(PAYER, PRODUCT, auth=AS_PAYER)
        clock.set_time(30)

        resumed = engine.resume(PAYER, PRODUCT, auth=AS_PAYER)
        assert resumed.status == SubscriptionStatus.ACTIVE
        assert dispatcher.events[-1].topic == EventTopic.SUBSCRIPTION_RESUMED

    def test_resume_after_period_end_fails(self, engine, clock, started):
        engine.pause(PAYER, PRODUCT, auth=AS_PAYER)
        clock.set_time(31)

        with pytest.raises(PeriodElapsedError):
            engine.resume(PAYER, PRODUCT, auth=AS_PAYER)
        assert engine.get(PAYER, PRODUCT).status == SubscriptionStatus.PAUSED

    def test_beneficiary_can_resume(self, engine, started):
        engine.pause(PAYER, PRODUCT, auth=AS_MERCHANT)
        assert engine.resume(PAYER, PRODUCT, auth=AS_MERCHANT).status == SubscriptionStatus.ACTIVE

    def test_resume_unauthorized(self, engine, started):
        engine.pause(PAYER, PRODUCT, auth=AS_PAYER)
        with pytest.raises(UnauthorizedError):
            engine.resume(PAYER, PRODUCT, auth=AS_NOBODY)

    def test_resume_unknown_subscription(self, engine):
        with pytest.raises(SubscriptionNotFoundError):
            engine.resume(PAYER, "missing", auth=AS_PAYER)


class TestCancel:
    """Tests for canceling subscriptions."""

    def test_cancel_by_payer(self, engine, dispatcher, started):
        canceled = engine.cancel(PAYER, PRODUCT, auth=AS_PAYER)
        assert canceled.status == SubscriptionStatus.CANCELED
        assert dispatcher.events[-1].topic == EventTopic.SUBSCRIPTION_CANCELED

    def test_cancel_by_beneficiary(self, engine, started):
        assert engine.cancel(PAYER, PRODUCT, auth=AS_MERCHANT).status == SubscriptionStatus.CANCELED

    def test_cancel_paused_subscription(self, engine, started):
        engine.pause(PAYER, PRODUCT, auth=AS_PAYER)
        assert engine.cancel(PAYER, PRODUCT, auth=AS_PAYER).status == SubscriptionStatus.CANCELED

    def test_cancel_unauthorized(self, engine, started):
        with pytest.raises(UnauthorizedError):
            engine.cancel(PAYER, PRODUCT, auth=AS_NOBODY)
        assert engine.get(PAYER, PRODUCT).status == SubscriptionStatus.ACTIVE

    def test_cancel_is_terminal(self, engine, clock, started):
        engine.cancel(PAYER, PRODUCT, auth=AS_PAYER)
        clock.set_time(30)

        with pytest.raises(NotActiveError):
            engine.charge(PAYER, PRODUCT)
        with pytest.raises(NotActiveError):
            engine.pause(PAYER, PRODUCT, auth=AS_PAYER)
        with pytest.raises(NotActiveError):
            engine.resume(PAYER, PRODUCT, auth=AS_PAYER)
        with pytest.raises(NotActiveError):
            engine.cancel(PAYER, PRODUCT, auth=AS_PAYER)

        assert engine.get(PAYER, PRODUCT).status == SubscriptionStatus.CANCELED

    def test_cancel_unknown_subscription(self, engine):
        with pytest.raises(SubscriptionNotFoundError):
            engine.cancel(PAYER, "missing", auth=AS_PAYER)


class TestStrictAuthorizationMode:
    """Tests with billing.authorization_mode = strict."""

    @pytest.fixture
    def strict_engine(self, subscription_store, ledger, clock, dispatcher):
        config = MagicMock()
        config.authorization_mode = "strict"
        with patch("recurring_billing.services.billing_engine.get_config", return_value=config):
            yield SubscriptionEngine(
                subscription_store=subscription_store,
                ledger=ledger,
                clock=clock,
                event_dispatcher=dispatcher,
            )

    def test_beneficiary_cannot_pause_or_cancel(self, strict_engine):
        strict_engine.start(PAYER, MERCHANT, ASSET, PRODUCT, 100, 30, auth=AS_PAYER)

        with pytest.raises(UnauthorizedError):
            strict_engine.pause(PAYER, PRODUCT, auth=AS_MERCHANT)
        with pytest.raises(UnauthorizedError):
            strict_engine.cancel(PAYER, PRODUCT, auth=AS_MERCHANT)

    def test_payer_can_still_pause(self, strict_engine):
        strict_engine.start(PAYER, MERCHANT, ASSET, PRODUCT, 100, 30, auth=AS_PAYER)
        assert strict_engine.pause(PAYER, PRODUCT, auth=AS_PAYER).status == SubscriptionStatus.PAUSED


class TestGet:
    """Tests for queries."""

    def test_get_unknown_subscription(self, engine):
        with pytest.raises(SubscriptionNotFoundError):
            engine.get(PAYER, "missing")

    def test_find_returns_none_for_unknown(self, engine):
        assert engine.find(PAYER, "missing") is None

    def test_get_returns_copy(self, engine, started):
        record = engine.get(PAYER, PRODUCT)
        record.amount = 1
        record.status = SubscriptionStatus.CANCELED

        stored = engine.get(PAYER, PRODUCT)
        assert stored.amount == 100
        assert stored.status == SubscriptionStatus.ACTIVE


class TestUpdate:
    """Tests for the administrative update."""

    def test_update_amount(self, engine, clock, ledger, dispatcher, started):
        updated = engine.update(PAYER, PRODUCT, auth=AS_PAYER, amount=250)
        assert updated.amount == 250
        assert dispatcher.events[-1].topic == EventTopic.SUBSCRIPTION_UPDATED
        assert dispatcher.events[-1].payload == {"amount": 250}

        clock.set_time(30)
        engine.charge(PAYER, PRODUCT)
        assert ledger.balance_of(ASSET, MERCHANT) == 350

    def test_update_period_end_override(self, engine, started):
        updated = engine.update(PAYER, PRODUCT, auth=AS_PAYER, period_end=5)
        assert updated.period_end == 5

    def test_update_period_duration(self, engine, clock, started):
        engine.update(PAYER, PRODUCT, auth=AS_PAYER, period_duration=90)
        clock.set_time(30)
        assert engine.charge(PAYER, PRODUCT).period_end == 120

    def test_update_status(self, engine, started):
        updated = engine.update(PAYER, PRODUCT, auth=AS_PAYER, status=SubscriptionStatus.PAUSED)
        assert updated.status == SubscriptionStatus.PAUSED

    def test_update_is_payer_only(self, engine, started):
        with pytest.raises(UnauthorizedError):
            engine.update(PAYER, PRODUCT, auth=AS_MERCHANT, amount=1)

    def test_update_requires_a_field(self, engine, started):
        with pytest.raises(InvalidArgumentError):
            engine.update(PAYER, PRODUCT, auth=AS_PAYER)

    def test_update_with_current_values_fails(self, engine, dispatcher, started):
        events_before = len(dispatcher.events)
        with pytest.raises(InvalidArgumentError):
            engine.update(
                PAYER,
                PRODUCT,
                auth=AS_PAYER,
                amount=100,
                period_end=30,
                status=SubscriptionStatus.ACTIVE,
            )
        assert len(dispatcher.events) == events_before

    @pytest.mark.parametrize(
        "fields",
        [{"amount": 0}, {"period_duration": -1}, {"period_end": -5}],
    )
    def test_update_rejects_invalid_values(self, engine, started, fields):
        with pytest.raises(InvalidArgumentError):
            engine.update(PAYER, PRODUCT, auth=AS_PAYER, **fields)

    def test_update_canceled_subscription_fails(self, engine, started):
        engine.cancel(PAYER, PRODUCT, auth=AS_PAYER)
        with pytest.raises(NotActiveError):
            engine.update(PAYER, PRODUCT, auth=AS_PAYER, status=SubscriptionStatus.ACTIVE)

    def test_update_can_cancel(self, engine, started):
        updated = engine.update(PAYER, PRODUCT, auth=AS_PAYER, status=SubscriptionStatus.CANCELED)
        assert updated.status == SubscriptionStatus.CANCELED


class TestConcurrency:
    """Operations on one key are serialized."""

    def test_racing_charges_collect_once(self, engine, clock, ledger, started):
        clock.set_time(30)
        workers = 8
        barrier = Barrier(workers)
        charged = []
        rejected = []

        def charge():
            barrier.wait()
            try:
                charged.append(engine.charge(PAYER, PRODUCT))
            except PeriodNotElapsedError as e:
                rejected.append(e)

        threads = [Thread(target=charge) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(charged) == 1
        assert len(rejected) == workers - 1
        # first period at start plus exactly one charge
        assert len(ledger.history) == 2
        assert ledger.balance_of(ASSET, MERCHANT) == 200
        assert engine.get(PAYER, PRODUCT).period_end == 60

    def test_unknown_keys_do_not_grow_lock_pool(self, engine, subscription_store):
        for i in range(1000):
            with pytest.raises(SubscriptionNotFoundError):
                engine.charge("ghost", f"p{i}")

        assert len(subscription_store._key_locks) == LOCK_STRIPES


class TestEventFailures:
    """Event sink failures never affect operations."""

    def test_dispatcher_exception_is_swallowed(self, subscription_store, ledger, clock, mock_config):
        dispatcher = MagicMock()
        dispatcher.notify.side_effect = RuntimeError("sink down")
        with patch("recurring_billing.services.billing_engine.get_config", return_value=mock_config):
            engine = SubscriptionEngine(
                subscription_store=subscription_store,
                ledger=ledger,
                clock=clock,
                event_dispatcher=dispatcher,
            )

        subscription = engine.start(PAYER, MERCHANT, ASSET, PRODUCT, 100, 30, auth=AS_PAYER)
        assert subscription.status == SubscriptionStatus.ACTIVE
        dispatcher.notify.assert_called_once()


def test_invalid_transition_is_rejected_by_record(started):
    record = started.model_copy(deep=True)
    record.set_status(SubscriptionStatus.CANCELED, reason="test")
    with pytest.raises(InvalidTransitionError):
        record.set_status(SubscriptionStatus.ACTIVE, reason="test")


def test_global_engine_uses_shared_collaborators(mock_config):
    reset_subscription_engine()
    try:
        with patch("recurring_billing.services.billing_engine.get_config", return_value=mock_config), \
                patch("recurring_billing.services.billing_engine.get_ledger", return_value=InMemoryLedger()):
            engine = get_subscription_engine()
            assert get_subscription_engine() is engine
        assert engine.store is get_subscription_store()
    finally:
        reset_subscription_engine()


def test_shared_dispatcher_stamps_engine_time(subscription_store, ledger, mock_config):
    clock = VirtualClock(start_time=1_000)
    shared = InMemoryEventDispatcher(clock=SystemClock())
    with patch("recurring_billing.services.billing_engine.get_config", return_value=mock_config), \
            patch("recurring_billing.services.billing_engine.get_event_dispatcher", return_value=shared):
        engine = SubscriptionEngine(subscription_store=subscription_store, ledger=ledger, clock=clock)
        engine.start(PAYER, MERCHANT, ASSET, PRODUCT, 100, 30, auth=AS_PAYER)

    assert [e.event_time for e in shared.events] == [1_000]
